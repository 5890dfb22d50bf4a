"""Minimal client for the MLflow tracking REST API used to publish results."""

from __future__ import annotations

import json
import logging
import re
import time
from os import PathLike
from typing import Any, Callable
from urllib.parse import quote

import requests

from .types import PirError

log = logging.getLogger(__name__)

_INITIAL_WAIT_S = 5
_RETRY_WAIT_S = 2
_RETRIES = 5


class MlflowError(PirError):
    """An MLflow request failed or returned an unexpected answer."""


def _load(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


class MlflowClient:
    """Talks to one MLflow tracking server."""

    def __init__(
        self,
        address: str,
        session: requests.Session | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.address = address
        self._session = session if session is not None else requests.Session()
        self._sleep = sleep

    def _post(self, url: str, payload: dict[str, Any]) -> str:
        try:
            response = self._session.post(
                url,
                data=json.dumps(payload),
                headers={"Content-Type": "application/json"},
            )
        except requests.RequestException as exc:
            log.error("POST request to %s failed: %s", url, exc)
            return ""
        return response.text

    def _get(self, url: str) -> str:
        try:
            response = self._session.get(url)
        except requests.RequestException as exc:
            log.error("GET request to %s failed: %s", url, exc)
            return ""
        return response.text

    def create_experiment(self, name: str) -> str:
        """Create an experiment and return its id."""
        text = self._post(
            f"{self.address}/api/2.0/mlflow/experiments/create", {"name": name}
        )
        data = _load(text)
        experiment_id = data.get("experiment_id") if isinstance(data, dict) else None
        if not isinstance(experiment_id, str) or not experiment_id:
            raise MlflowError(f"failed to create experiment {name!r}: {text!r}")
        log.info("created experiment %s with id %s", name, experiment_id)
        return experiment_id

    def get_experiment_id(self, name: str) -> str | None:
        """Look an experiment up by name; ``None`` if it cannot be found."""
        url = (
            f"{self.address}/api/2.0/mlflow/experiments/get-by-name"
            f"?experiment_name={quote(name, safe='')}"
        )
        data = _load(self._get(url))
        if not isinstance(data, dict):
            return None
        experiment = data.get("experiment")
        if not isinstance(experiment, dict):
            return None
        experiment_id = experiment.get("experiment_id")
        if isinstance(experiment_id, str) and experiment_id:
            return experiment_id
        return None

    def restore_experiment(self, experiment_id: str) -> None:
        """Restore a deleted experiment."""
        text = self._post(
            f"{self.address}/api/2.0/mlflow/experiments/restore",
            {"experiment_id": experiment_id},
        )
        log.info("restore request response: %s", text)
        data = _load(text)
        if not isinstance(data, dict) or data.get("experiment_id") != experiment_id:
            raise MlflowError(
                f"failed to restore experiment {experiment_id!r}: {text!r}"
            )
        log.info("restored experiment %s", experiment_id)

    def _confirm(self, name: str, action: str) -> str:
        self._sleep(_INITIAL_WAIT_S)
        experiment_id = self.get_experiment_id(name)
        retries = _RETRIES
        while not experiment_id and retries > 0:
            self._sleep(_RETRY_WAIT_S)
            experiment_id = self.get_experiment_id(name)
            retries -= 1
        if not experiment_id:
            raise MlflowError(f"failed to confirm experiment {action} for {name!r}")
        return experiment_id

    def ensure_experiment(self, name: str) -> str:
        """Return the id of an active experiment, restoring or creating it."""
        experiment_id = self.get_experiment_id(name)
        if experiment_id:
            text = self._get(
                f"{self.address}/api/2.0/mlflow/experiments/get"
                f"?experiment_id={experiment_id}"
            )
            data = _load(text)
            if data is None:
                raise MlflowError(f"invalid JSON response: {text!r}")
            experiment = data.get("experiment") if isinstance(data, dict) else None
            if (
                isinstance(experiment, dict)
                and experiment.get("lifecycle_stage") == "deleted"
            ):
                self.restore_experiment(experiment_id)
                return self._confirm(name, "restoration")
            return experiment_id
        self.create_experiment(name)
        return self._confirm(name, "creation")

    def upload_artifact(self, url: str, file_path: str | PathLike[str]) -> None:
        """Upload a file's contents with a PUT request."""
        try:
            with open(file_path, "rb") as handle:
                content = handle.read()
        except OSError as exc:
            raise MlflowError(f"could not open file: {file_path}") from exc
        try:
            self._session.put(url, data=content)
        except requests.RequestException as exc:
            raise MlflowError(f"file upload to {url} failed: {exc}") from exc

    def upload(
        self, experiment_id: str, run_name: str, file_path: str | PathLike[str]
    ) -> str:
        """Start a run, upload ``file_path`` as its artifact, return its URL."""
        payload = {
            "experiment_id": experiment_id,
            "start_time": int(time.time() * 1000),
            "run_name": run_name,
            "tags": {"mlflow.runName": run_name},
        }
        text = self._post(f"{self.address}/api/2.0/mlflow/runs/create", payload)
        data = _load(text)
        if data is None:
            raise MlflowError(f"invalid JSON response: {text!r}")
        try:
            run_id = data["run"]["info"]["run_id"]
        except (KeyError, TypeError) as exc:
            raise MlflowError(f"error creating run: {text!r}") from exc
        if not isinstance(run_id, str):
            raise MlflowError(f"error creating run: {text!r}")

        file_name = re.split(r"[/\\]", str(file_path))[-1]
        artifact_url = (
            f"{self.address}/api/2.0/mlflow-artifacts/artifacts/"
            f"{experiment_id}/{run_id}/artifacts/{file_name}"
        )
        self.upload_artifact(artifact_url, file_path)
        file_url = f"{self.address}/get-artifact?path={file_name}&run_uuid={run_id}"
        log.info("artifact URL: %s", file_url)
        return file_url