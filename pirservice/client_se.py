"""Querying clients for the SE (labeled PSI) protocol and their factory."""

from __future__ import annotations

import csv
import logging
import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence, TypeVar

from .client import ClientRequest, PirClient, Uploader
from .handler import STATUS_FAILED, InvalidRequestError, Poster
from .params import query_batch_size, server_params
from .settings import GlobalConfig
from .types import LINK_RECV_TIMEOUT_MS, PirError, PirType, get_pir_type

log = logging.getLogger(__name__)

T = TypeVar("T")

BATCH_COUNT_KEY = "batch_count"
OPRF_REQUEST_KEY = "oprf_request"
OPRF_RESPONSE_KEY = "oprf_response"
QUERY_KEY = "query_string"
RESPONSE_KEY = "response_string"


@dataclass
class _QueryTask:
    """Everything a networked query engine needs to run one task."""

    peer_host: str
    self_member_id: str
    peer_member_id: str
    session_id: str
    task_id: str
    recv_timeout_ms: int
    input_path: str
    query_ids: str
    output_path: str
    part_output_path: str
    fields: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)


Runner = Callable[[_QueryTask], Any]


class _Transport(Protocol):
    def set_recv_timeout(self, timeout_ms: int) -> None: ...

    def send(self, key: str, data: bytes) -> None: ...

    def recv(self, key: str) -> bytes: ...


class _Engine(Protocol):
    def oprf_request(self, items: Sequence[str]) -> bytes: ...

    def build_query(self, oprf_response: bytes) -> bytes: ...

    def extract_labeled_result(self, response: bytes) -> list[str]: ...


EngineFactory = Callable[[dict], _Engine]


def split_batches(items: Sequence[T], batch_size: int) -> list[list[T]]:
    """Cut ``items`` into consecutive batches of at most ``batch_size``."""
    if batch_size <= 0:
        raise PirError(f"batch size must be positive, not {batch_size}")
    return [list(items[start:start + batch_size]) for start in range(0, len(items), batch_size)]


def save_result(
    path: str,
    key_field: str,
    label_names: Sequence[str],
    keys: Sequence[str],
    labels: Sequence[str],
) -> int:
    """Write matched keys with their labels as CSV; return the rows written.

    ``labels[i]`` holds the comma-joined labels of ``keys[i]``; keys whose
    label string is empty had no match and are left out.
    """
    if len(keys) != len(labels):
        raise PirError(f"{len(keys)} keys but {len(labels)} label entries")
    rows = []
    for key, label in zip(keys, labels):
        if not label:
            continue
        values = label.split(",")
        if len(values) != len(label_names):
            raise PirError(
                f"key {key!r} has {len(values)} labels, expected {len(label_names)}"
            )
        rows.append([key, *values])
    try:
        handle = open(path, "w", newline="", encoding="utf-8")
    except OSError as exc:
        raise PirError(f"Open result file failed : {path}") from exc
    with handle:
        writer = csv.writer(handle, lineterminator="\n")
        writer.writerow([key_field, *label_names])
        writer.writerows(rows)
    log.info("output_path:%s keys:%d matched:%d", path, len(keys), len(rows))
    return len(rows)


def _read_column(path: str, name: str) -> list[str]:
    try:
        handle = open(path, newline="", encoding="utf-8")
    except OSError as exc:
        raise PirError(f"could not open input file {path}") from exc
    with handle:
        reader = csv.DictReader(handle)
        if name not in (reader.fieldnames or []):
            raise PirError(f"column {name!r} not found in {path}")
        return [row[name] for row in reader]


class SeNetClient(PirClient):
    """Runs an SE query through a networked query engine."""

    def __init__(
        self,
        config: GlobalConfig,
        request: ClientRequest,
        poster: Poster | None = None,
        uploader: Uploader | None = None,
        runner: Runner | None = None,
    ) -> None:
        super().__init__(config, request, poster, uploader)
        self._runner = runner

    def _task(self) -> _QueryTask:
        return _QueryTask(
            peer_host=self.peer_host(),
            self_member_id=self.self_member_id(),
            peer_member_id=self.peer_member_id(),
            session_id=self.params.task_id,
            task_id=self.params.task_id,
            recv_timeout_ms=LINK_RECV_TIMEOUT_MS,
            input_path=self.config.input_path(self.params.data_file),
            query_ids=self.params.query_ids,
            output_path=self.output_path,
            part_output_path=self.part_output_path,
            fields=list(self.params.fields),
            labels=list(self.params.labels),
        )

    def run_service_impl(self) -> None:
        log.info("task_id:%s", self.params.task_id)
        try:
            if self._runner is None:
                raise PirError("no SE query engine is configured")
            profile = self._runner(self._task())
            self.server_profile = "" if profile is None else str(profile)
        except Exception as exc:
            log.error("run pir client failed: %s taskid:%s", exc, self.params.task_id)
            self.status = STATUS_FAILED
            self.error_message = str(exc)


class SeClient(PirClient):
    """Runs an SE query batch by batch over a message transport."""

    def __init__(
        self,
        config: GlobalConfig,
        request: ClientRequest,
        poster: Poster | None = None,
        uploader: Uploader | None = None,
        transport: _Transport | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        super().__init__(config, request, poster, uploader)
        self._transport = transport
        self._engine_factory = engine_factory

    def run_service_impl(self) -> None:
        log.info("task_id:%s", self.params.task_id)
        try:
            self._query()
        except Exception as exc:
            log.error("run pir client failed: %s taskid:%s", exc, self.params.task_id)
            self.status = STATUS_FAILED
            self.error_message = str(exc)

    def _query(self) -> None:
        transport = self._transport
        if transport is None or self._engine_factory is None:
            raise PirError("no SE transport or engine is configured")
        if not self.params.fields:
            raise PirError("fields empty")
        transport.set_recv_timeout(LINK_RECV_TIMEOUT_MS)

        input_path = self.config.input_path(self.params.data_file)
        query_data = _read_column(input_path, self.params.fields[0])
        params = server_params()
        batches = split_batches(query_data, query_batch_size(params))
        log.info(
            "query_data size:%d batch_count:%d task_id:%s",
            len(query_data),
            len(batches),
            self.params.task_id,
        )

        transport.send(BATCH_COUNT_KEY, struct.pack("<Q", len(batches)))
        merged: list[str] = []
        intersections: list[str] = []
        for batch in batches:
            engine = self._engine_factory(params)
            transport.send(OPRF_REQUEST_KEY, engine.oprf_request(batch))
            oprf_response = transport.recv(OPRF_RESPONSE_KEY)
            transport.send(QUERY_KEY, engine.build_query(oprf_response))
            response = transport.recv(RESPONSE_KEY)
            intersection = list(engine.extract_labeled_result(response))
            log.info(
                "batch size:%d intersection size:%d task_id:%s",
                len(batch),
                len(intersection),
                self.params.task_id,
            )
            merged.extend(batch)
            intersections.extend(intersection)

        save_result(
            self.output_path,
            self.params.fields[0],
            self.params.labels,
            merged,
            intersections,
        )


def create_pir_client(
    config: GlobalConfig,
    request: ClientRequest,
    poster: Poster | None = None,
    uploader: Uploader | None = None,
    runner: Runner | None = None,
) -> PirClient:
    """Build the querying client that fits the request's algorithm."""
    if get_pir_type(request.algorithm) is PirType.SE:
        return SeNetClient(config, request, poster, uploader, runner)
    raise InvalidRequestError(f"{request.algorithm} algorithm not supported")