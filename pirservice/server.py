"""Answering side of the PIR service: parameters, servers and their factory."""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .client_se import OPRF_REQUEST_KEY, OPRF_RESPONSE_KEY, QUERY_KEY, RESPONSE_KEY
from .handler import InvalidRequestError, PirDataHandler
from .settings import LOCALHOST, GlobalConfig
from .types import LINK_RECV_TIMEOUT_MS, PirError, PirType, get_pir_type

log = logging.getLogger(__name__)

DEFAULT_MEMBERS = ("member_self", "member_peer")
DEFAULT_IPS = (LOCALHOST, LOCALHOST)


@dataclass
class ServerRequest:
    """What a caller asks the answering party to do."""

    version: str = ""
    task_id: str = ""
    algorithm: str = ""
    key: str = ""
    rank: int = 0
    members: list[str] = field(default_factory=list)
    ips: list[str] = field(default_factory=list)
    test_local: bool = False


@dataclass
class ServerParams:
    """Parameters of a serving task after defaults have been filled in."""

    version: str = ""
    task_id: str = ""
    key: str = ""
    rank: int = 0
    members: list[str] = field(default_factory=list)
    ips: list[str] = field(default_factory=list)
    test_local: bool = False


@dataclass
class _ServeTask:
    """Everything a networked serving engine needs to answer one task."""

    peer_host: str
    self_member_id: str
    peer_member_id: str
    session_id: str
    task_id: str
    recv_timeout_ms: int
    key: str


Runner = Callable[[_ServeTask], Any]


class _Transport(Protocol):
    def set_recv_timeout(self, timeout_ms: int) -> None: ...

    def send(self, key: str, data: bytes) -> None: ...

    def recv(self, key: str) -> bytes: ...


class PirServer(abc.ABC):
    """Answers the other party's query from a prepared data handler."""

    def __init__(
        self,
        config: GlobalConfig,
        data_handler: PirDataHandler,
        request: ServerRequest,
    ) -> None:
        self.config = config
        self.data_handler = data_handler
        self.request = request
        self.params = ServerParams()
        self.time_spend = 0
        self.error_message = ""

    def check_params(self) -> ServerParams:
        """Take over the request, filling in default members and addresses."""
        request = self.request
        self.params = ServerParams(
            version=request.version,
            task_id=request.task_id,
            key=request.key,
            rank=request.rank,
            members=list(request.members or DEFAULT_MEMBERS),
            ips=list(request.ips or DEFAULT_IPS),
            test_local=request.test_local,
        )
        log.info(
            "check params taskid:%s key:%s rank:%s",
            self.params.task_id,
            self.params.key,
            self.params.rank,
        )
        return self.params

    def run_service(self) -> bool:
        """Serve the query and time it; true if no error was recorded."""
        start = time.perf_counter()
        try:
            self.run_service_impl()
        except Exception as exc:
            log.error("run pir failed: %s taskid:%s", exc, self.params.task_id)
            self.error_message = str(exc)
        self.time_spend = int((time.perf_counter() - start) * 1000)
        log.info(
            "time cost:%d milliseconds, taskid:%s", self.time_spend, self.params.task_id
        )
        return not self.error_message

    @abc.abstractmethod
    def run_service_impl(self) -> None:
        """Answer the query; failures are logged and kept in error_message."""

    def peer_host(self) -> str:
        """Address ``host:port`` of the other party."""
        return self.config.peer_host(
            self.params.ips,
            self.params.rank,
            self.params.test_local,
            self.config.grpc.other_port,
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


class SeNetServer(PirServer):
    """Answers an SE query through a networked serving engine."""

    def __init__(
        self,
        config: GlobalConfig,
        data_handler: PirDataHandler,
        request: ServerRequest,
        runner: Runner | None = None,
    ) -> None:
        super().__init__(config, data_handler, request)
        self._runner = runner
        log.info("SeNetServer created task_id:%s", request.task_id)

    def _task(self) -> _ServeTask:
        host = self.peer_host()
        log.info("host_str: %s", host)
        return _ServeTask(
            peer_host=host,
            self_member_id=self.self_member_id(),
            peer_member_id=self.peer_member_id(),
            session_id=self.params.task_id,
            task_id=self.params.task_id,
            recv_timeout_ms=LINK_RECV_TIMEOUT_MS,
            key=self.params.key,
        )

    def run_service_impl(self) -> None:
        try:
            if self._runner is None:
                raise PirError("no SE serving engine is configured")
            self._runner(self._task())
        except Exception as exc:
            log.error("run pir failed: %s taskid:%s", exc, self.params.task_id)
            self.error_message = str(exc)


class SeServer(PirServer):
    """Answers one SE query round over a message transport."""

    def __init__(
        self,
        config: GlobalConfig,
        data_handler: PirDataHandler,
        request: ServerRequest,
        transport: _Transport | None = None,
    ) -> None:
        super().__init__(config, data_handler, request)
        self._transport = transport

    def run_service_impl(self) -> None:
        try:
            self._serve()
        except Exception as exc:
            log.error("run pir failed: %s taskid:%s", exc, self.params.task_id)
            self.error_message = str(exc)

    def _serve(self) -> None:
        transport = self._transport
        if transport is None:
            raise PirError("no SE transport is configured")
        handler = self.data_handler
        handle_oprf = getattr(handler, "handle_oprf_request", None)
        handle_query = getattr(handler, "handle_query", None)
        if not callable(handle_oprf) or not callable(handle_query):
            raise PirError("data handler cannot answer SE queries")
        transport.set_recv_timeout(LINK_RECV_TIMEOUT_MS)

        oprf_request = transport.recv(OPRF_REQUEST_KEY)
        log.info("recv oprf_request size:%d task_id:%s", len(oprf_request), self.params.task_id)
        oprf_response = handle_oprf(oprf_request)
        transport.send(OPRF_RESPONSE_KEY, oprf_response)

        query = transport.recv(QUERY_KEY)
        log.info("recv query_string size:%d task_id:%s", len(query), self.params.task_id)
        response = handle_query(query)
        transport.send(RESPONSE_KEY, response)


def create_pir_server(
    config: GlobalConfig,
    data_handler: PirDataHandler,
    request: ServerRequest,
    runner: Runner | None = None,
) -> PirServer:
    """Build the server that fits the request and the prepared data."""
    requested = get_pir_type(request.algorithm)
    prepared = data_handler.type
    if requested != prepared:
        log.error("requested type %s differs from prepared type %s", requested, prepared)
        raise InvalidRequestError("algorithm between in setup and server should same")
    if requested is PirType.SE:
        return SeNetServer(config, data_handler, request, runner)
    raise InvalidRequestError("algorithm not supported")