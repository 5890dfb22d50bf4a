"""Data handlers that prepare a PIR database and report the outcome."""

from __future__ import annotations

import abc
import csv
import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence
from urllib.parse import urlparse

import requests

from .settings import GlobalConfig
from .types import PirError, PirType, get_pir_type

log = logging.getLogger(__name__)

STATUS_OK = 200
STATUS_FAILED = 201
CALLBACK_TIMEOUT_S = 1.0

RemoveCallback = Callable[[str], Any]
Poster = Callable[[str, Mapping[str, Any]], Any]
SeBuilder = Callable[[str, str, Sequence[str], Sequence[str]], Any]
SpuBuilder = Callable[[Mapping[str, Any]], Any]


class InvalidRequestError(PirError):
    """A setup request is missing something it needs."""


@dataclass
class SetupRequest:
    """What a caller asks to prepare."""

    version: str = ""
    task_id: str = ""
    data_file: str = ""
    algorithm: str = ""
    fields: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    callback_url: str = ""


def _post_json(url: str, payload: Mapping[str, Any]) -> Any:
    response = requests.post(url, json=dict(payload), timeout=CALLBACK_TIMEOUT_S)
    response.raise_for_status()
    return response.json()


class PirDataHandler(abc.ABC):
    """Prepares data for PIR queries and posts the result to a callback URL."""

    type: PirType = PirType.UNKNOWN

    def __init__(
        self,
        config: GlobalConfig,
        key: str,
        remove_callback: RemoveCallback | None = None,
        poster: Poster | None = None,
    ) -> None:
        self.config = config
        self.key = key
        self.remove_callback = remove_callback
        self._poster = poster if poster is not None else _post_json
        self._setup_lock = threading.Lock()
        self._is_setup = False
        self.params = SetupRequest()
        self.status = STATUS_OK
        self.error_message = ""
        self.time_spend = 0

    def check_params(self, request: SetupRequest) -> SetupRequest:
        """Take over the request's parameters, raising if they are unusable."""
        self.params = SetupRequest(
            version=request.version,
            task_id=request.task_id,
            data_file=request.data_file,
            algorithm=request.algorithm,
            fields=list(request.fields),
            labels=list(request.labels),
            callback_url=request.callback_url,
        )
        log.info(
            "taskid:%s data:%s key:%s fields:%d labels:%d callbackUrl:%s",
            self.params.task_id,
            self.params.data_file,
            self.key,
            len(self.params.fields),
            len(self.params.labels),
            self.params.callback_url,
        )
        if not self.params.fields:
            raise InvalidRequestError("fields empty")
        if not self.params.callback_url:
            raise InvalidRequestError("callback url empty")
        parsed = urlparse(self.params.callback_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidRequestError(
                "callbackurl invailded: " + self.params.callback_url
            )
        return self.params

    def setup(self) -> None:
        """Run the setup, time it and report the outcome; never raises."""
        start = time.perf_counter()
        try:
            self.setup_impl()
        except Exception as exc:  # setup must not propagate failures
            log.error("task_id:%s, error:%s", self.params.task_id, exc)
            self.status = STATUS_FAILED
            self.error_message = str(exc)
        self.time_spend = int((time.perf_counter() - start) * 1000)
        log.info(
            "time cost:%d milliseconds, taskid:%s", self.time_spend, self.params.task_id
        )
        self.result_callback()

    @abc.abstractmethod
    def setup_impl(self) -> None:
        """Prepare the data; failures are recorded in status and message."""

    def callback_payload(self) -> dict[str, Any]:
        """Body of the callback that reports the setup outcome."""
        return {
            "status": self.status,
            "message": self.error_message,
            "task_id": self.params.task_id,
            "service_type": "PIR",
            "spend": self.time_spend,
            "data_result": {"algorithm": self.params.algorithm, "key": self.key},
        }

    def result_callback(self) -> bool:
        """Post the outcome; true if the receiver answered with code 0."""
        payload = self.callback_payload()
        log.info("callback status:%s taskid:%s", self.status, self.params.task_id)
        try:
            answer = self._poster(self.params.callback_url, payload)
        except Exception as exc:
            log.error("setup callback failed taskid:%s error:%s", self.params.task_id, exc)
            return False
        code = answer.get("code") if isinstance(answer, Mapping) else None
        if code == 0:
            log.info("taskid:%s received response", self.params.task_id)
            return True
        log.error(
            "setup callback failed taskid:%s code:%s answer:%s",
            self.params.task_id,
            code,
            answer,
        )
        return False

    def is_setup(self) -> bool:
        """Whether the data has been prepared successfully."""
        return self._is_setup


def _load_label_table(
    key: str, data_path: str, fields: Sequence[str], labels: Sequence[str]
) -> dict[str, str]:
    """Read a CSV file into a map from key values to comma-joined labels."""
    with open(data_path, newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        header = reader.fieldnames or []
        missing = [name for name in (*fields, *labels) if name not in header]
        if missing:
            raise PirError(f"columns {missing} not found in {data_path}")
        return {
            ",".join(row[name] for name in fields): ",".join(
                row[name] for name in labels
            )
            for row in reader
        }


class SeDataHandler(PirDataHandler):
    """Prepares the labeled database used by the SE protocol."""

    type = PirType.SE

    def __init__(
        self,
        config: GlobalConfig,
        key: str,
        remove_callback: RemoveCallback | None = None,
        poster: Poster | None = None,
        builder: SeBuilder | None = None,
    ) -> None:
        super().__init__(config, key, remove_callback, poster)
        self._builder = builder if builder is not None else _load_label_table
        self.database: Any = None
        log.info("SeDataHandler created key:%s", key)

    def setup_impl(self) -> None:
        try:
            data_path = self.config.input_path(self.params.data_file)
            self.database = self._builder(
                self.key, data_path, self.params.fields, self.params.labels
            )
        except Exception as exc:
            log.error("task_id:%s, error:%s", self.params.task_id, exc)
            self.status = STATUS_FAILED
            self.error_message = str(exc)


class SpuDataHandler(PirDataHandler):
    """Prepares an OPRF key and setup directory for the SPU protocol."""

    type = PirType.SPU

    def __init__(
        self,
        config: GlobalConfig,
        key: str,
        remove_callback: RemoveCallback | None = None,
        poster: Poster | None = None,
        builder: SpuBuilder | None = None,
    ) -> None:
        super().__init__(config, key, remove_callback, poster)
        self._builder = builder
        self.oprf_path = ""
        self.setup_path = ""

    def setup_impl(self) -> None:
        with self._setup_lock:
            if self._is_setup:
                return
            try:
                input_path = self.config.input_path(self.params.data_file)
                self._generate_oprf_file()
                self._generate_setup_dir()
                setup_config = {
                    "protocol": "KEYWORD_PIR_LABELED_PSI",
                    "store_type": "LEVELDB_KV_STORE",
                    "input_path": input_path,
                    "key_columns": list(self.params.fields),
                    "label_columns": list(self.params.labels),
                    "num_per_query": self.config.pir.count_per_query,
                    "label_max_len": 5
                    + self.config.pir.max_label_length * len(self.params.labels),
                    "oprf_key_path": self.oprf_path,
                    "setup_path": self.setup_path,
                }
                log.info(
                    "input_path:%s, oprf:%s, setup:%s",
                    input_path,
                    self.oprf_path,
                    self.setup_path,
                )
                if self._builder is None:
                    raise PirError("no SPU setup engine is configured")
                self._builder(setup_config)
                self._is_setup = True
            except Exception as exc:
                log.error("task_id:%s, error:%s", self.params.task_id, exc)
                self.status = STATUS_FAILED
                self.error_message = str(exc)

    def _generate_setup_dir(self) -> str:
        path = os.path.join(self.config.pir.apsi_setup_path, self.key)
        self._remove_dir(path)
        self._remove_dir(self.setup_path)
        os.makedirs(path, exist_ok=True)
        self.setup_path = path
        return path

    def _generate_oprf_file(self) -> None:
        directory = self.config.pir.oprf_key_path
        os.makedirs(directory, exist_ok=True)
        filename = os.path.join(directory, f"orpf_{self.key}.bin")
        with open(filename, "wb") as handle:
            handle.write(os.urandom(32))
        self.oprf_path = filename

    @staticmethod
    def _remove_dir(path: str) -> None:
        if path:
            shutil.rmtree(path, ignore_errors=True)

    def close(self) -> None:
        """Remove the setup directory."""
        self._remove_dir(self.setup_path)


def create_data_handler(
    config: GlobalConfig,
    key: str,
    request: SetupRequest,
    remove_callback: RemoveCallback | None = None,
    poster: Poster | None = None,
) -> PirDataHandler:
    """Build the data handler that fits the request's algorithm."""
    pir_type = get_pir_type(request.algorithm)
    if pir_type is PirType.SE:
        return SeDataHandler(config, key, remove_callback, poster)
    if pir_type is PirType.SPU:
        return SpuDataHandler(config, key, remove_callback, poster)
    raise InvalidRequestError(f"{request.algorithm} algorithm not supported")