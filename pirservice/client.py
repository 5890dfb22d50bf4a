"""Querying side of the PIR service: parameters, result reporting and upload."""

from __future__ import annotations

import abc
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import requests

from .handler import STATUS_FAILED, STATUS_OK, Poster
from .mlflow import MlflowClient, MlflowError
from .settings import LOCALHOST, GlobalConfig
from .types import PirError

log = logging.getLogger(__name__)

DEFAULT_MEMBERS = ("member_self", "member_peer")
DEFAULT_IPS = (LOCALHOST, LOCALHOST)
CALLBACK_PATH = "/v1/service/pir/client_callback"
EXPERIMENT_NAME = "mpc-pir-1k"
URI_NOT_SET = "MLFLOW_TRACKING_URI not set"
CALLBACK_TIMEOUT_S = 30.0

Uploader = Callable[[str, str, str, str], "tuple[str, str]"]
ClientFactory = Callable[[str], Any]


@dataclass
class ClientRequest:
    """What a caller asks the querying party to do."""

    version: str = ""
    task_id: str = ""
    algorithm: str = ""
    data_file: str = ""
    query_ids: str = ""
    key: str = ""
    rank: int = 0
    members: list[str] = field(default_factory=list)
    ips: list[str] = field(default_factory=list)
    fields: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    test_local: bool = False
    callback_url: str = ""


@dataclass
class ClientParams:
    """Parameters of a query task after defaults have been filled in."""

    version: str = ""
    task_id: str = ""
    data_file: str = ""
    query_ids: str = ""
    key: str = ""
    rank: int = 0
    members: list[str] = field(default_factory=list)
    ips: list[str] = field(default_factory=list)
    fields: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    test_local: bool = False
    callback_url: str = ""


def _post_json(url: str, payload: Mapping[str, Any]) -> Any:
    response = requests.post(url, json=dict(payload), timeout=CALLBACK_TIMEOUT_S)
    response.raise_for_status()
    return response


def upload_results(
    full_path: str,
    full_name: str,
    part_path: str,
    part_name: str,
    environ: Mapping[str, str] | None = None,
    client_factory: ClientFactory | None = None,
) -> tuple[str, str]:
    """Upload the full and partial result files; return their URLs.

    A URL is empty when its upload failed. Without a tracking server
    configured, both URLs carry a note saying so.
    """
    env = os.environ if environ is None else environ
    factory = client_factory if client_factory is not None else MlflowClient
    address = env.get("MLFLOW_TRACKING_URI", "")
    if not address:
        log.error("MLFLOW_TRACKING_URI environment variable is not set.")
        return URI_NOT_SET, URI_NOT_SET
    try:
        client = factory(address)
        try:
            experiment_id = client.ensure_experiment(EXPERIMENT_NAME)
        except MlflowError as exc:
            log.error("failed to restore or create experiment: %s", exc)
            return "", ""

        urls = []
        for path, name, what in (
            (full_path, full_name, "full"),
            (part_path, part_name, "part"),
        ):
            try:
                url = client.upload(experiment_id, name, path)
                log.info("upload %s file successful: %s", what, name)
            except MlflowError as exc:
                log.info("upload %s file failed, %s: %s", what, path, exc)
                url = ""
            urls.append(url)
        return urls[0], urls[1]
    except Exception as exc:
        log.error("exception caught: %s", exc)
        return URI_NOT_SET, URI_NOT_SET


class PirClient(abc.ABC):
    """Runs a query against the other party and reports the result."""

    def __init__(
        self,
        config: GlobalConfig,
        request: ClientRequest,
        poster: Poster | None = None,
        uploader: Uploader | None = None,
    ) -> None:
        self.config = config
        self.request = request
        self._poster = poster if poster is not None else _post_json
        self._uploader = uploader if uploader is not None else upload_results
        self.params = ClientParams()
        self.output_name = ""
        self.part_output_name = ""
        self.output_path = ""
        self.part_output_path = ""
        self.status = STATUS_OK
        self.error_message = ""
        self.time_spend = 0
        self.server_profile = ""
        self.result_data: dict[str, list[str]] = {}
        self.full_result_url = ""
        self.part_result_url = ""

    def check_params(self) -> ClientParams:
        """Take over the request, filling in defaults and output locations."""
        request = self.request
        callback_url = request.callback_url
        if request.test_local and not callback_url:
            callback_url = f"http://{LOCALHOST}:{self.config.http.port}{CALLBACK_PATH}"
        self.params = ClientParams(
            version=request.version,
            task_id=request.task_id,
            data_file=request.data_file,
            query_ids=request.query_ids,
            key=request.key,
            rank=request.rank,
            members=list(request.members or DEFAULT_MEMBERS),
            ips=list(request.ips or DEFAULT_IPS),
            fields=list(request.fields),
            labels=list(request.labels),
            test_local=request.test_local,
            callback_url=callback_url,
        )
        task_id = self.params.task_id
        self.output_name = f"{task_id}_pir_result.txt"
        self.part_output_name = f"{task_id}_pir_result_part.txt"
        self.output_path = self.config.output_path(self.output_name)
        self.part_output_path = self.config.output_path(self.part_output_name)
        log.info(
            "taskid:%s data:%s rank:%s key:%s members:%d ips:%d fields:%d "
            "labels:%d output_name:%s output_path:%s callbackUrl:%s",
            task_id,
            self.params.data_file,
            self.params.rank,
            self.params.key,
            len(self.params.members),
            len(self.params.ips),
            len(self.params.fields),
            len(self.params.labels),
            self.output_name,
            self.output_path,
            self.params.callback_url,
        )
        return self.params

    def run_service(self) -> bool:
        """Run the query, time it and report the outcome; never raises."""
        start = time.perf_counter()
        try:
            self.run_service_impl()
        except Exception as exc:
            log.error("run pir client failed: %s taskid:%s", exc, self.params.task_id)
            self.status = STATUS_FAILED
            self.error_message = str(exc)
        self.time_spend = int((time.perf_counter() - start) * 1000)
        log.info(
            "time cost:%d milliseconds, taskid:%s", self.time_spend, self.params.task_id
        )
        return self.result_callback()

    @abc.abstractmethod
    def run_service_impl(self) -> None:
        """Carry out the query and write the result files."""

    def peer_host(self) -> str:
        """Address ``host:port`` of the other party."""
        return self.config.peer_host(
            self.params.ips,
            self.params.rank,
            self.params.test_local,
            self.config.grpc.self_port,
        )

    def _member(self, index: int) -> str:
        if not 0 <= index < len(self.params.members):
            raise PirError(f"no member {index} among {self.params.members}")
        return self.params.members[index]

    def self_member_id(self) -> str:
        """Member id of this party."""
        return self._member(self.params.rank)

    def peer_member_id(self) -> str:
        """Member id of the other party."""
        return self._member(1 - self.params.rank)

    def read_part_result(self) -> dict[str, list[str]]:
        """Read the partial result file into a map from key to label values."""
        try:
            handle = open(self.part_output_path, encoding="utf-8", newline="")
        except OSError as exc:
            raise PirError(
                f"failed to open result file {self.part_output_path}"
            ) from exc
        result: dict[str, list[str]] = {}
        with handle:
            next(handle, None)  # header
            for raw in handle:
                line = raw.rstrip("\r\n")
                if not line:
                    continue
                key, *values = line.split(",")
                if values and values[-1] == "":
                    values.pop()
                result[key] = values
        return result

    def callback_payload(self) -> dict[str, Any]:
        """Body of the callback that reports the query outcome."""
        return {
            "status": self.status,
            "message": self.error_message,
            "task_id": self.params.task_id,
            "service_type": "PIR",
            "data_result": [
                {
                    "data_content": {
                        key: {"values": list(values)}
                        for key, values in self.result_data.items()
                    }
                }
            ],
            "full_result_file": self.full_result_url,
            "part_result_file": self.part_result_url,
        }

    def result_callback(self) -> bool:
        """Upload the results and post the outcome; true if the post succeeded."""
        log.info(
            "begin callback status:%s taskid:%s url:%s",
            self.status,
            self.params.task_id,
            self.params.callback_url,
        )
        try:
            self.result_data = self.read_part_result()
        except PirError as exc:
            log.error("%s", exc)
            return False
        self.full_result_url, self.part_result_url = self._uploader(
            self.output_path, self.output_name, self.part_output_path, self.output_name
        )
        payload = self.callback_payload()
        log.info(
            "callback status:%s timespend:%s taskid:%s",
            self.status,
            self.time_spend,
            self.params.task_id,
        )
        try:
            self._poster(self.params.callback_url, payload)
        except Exception as exc:
            log.info("taskid:%s error %s", self.params.task_id, exc)
            return False
        return True