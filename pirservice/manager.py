"""Registry of prepared data handlers and the entry point for PIR tasks."""

from __future__ import annotations

import hashlib
import logging
import threading
from typing import Any

from .client import ClientRequest, PirClient, Uploader
from .client_se import Runner as ClientRunner
from .client_se import create_pir_client
from .handler import (
    InvalidRequestError,
    PirDataHandler,
    Poster,
    SetupRequest,
    create_data_handler,
)
from .server import PirServer, ServerRequest, create_pir_server
from .settings import GlobalConfig

log = logging.getLogger(__name__)


class PirManager:
    """Keeps prepared data handlers by key and builds servers and clients."""

    def __init__(
        self,
        config: GlobalConfig | None = None,
        poster: Poster | None = None,
        uploader: Uploader | None = None,
        runner: Any = None,
    ) -> None:
        self.config = config if config is not None else GlobalConfig()
        self._poster = poster
        self._uploader = uploader
        self._runner = runner
        self._handlers: dict[str, PirDataHandler] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> PirManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def generate_key(self, request: SetupRequest) -> str:
        """Stable key of the data a setup request describes.

        The key depends on the algorithm, the data file and the sets of key
        and label columns, not on the order in which the columns are given.
        """
        text = f"{request.algorithm}_{request.data_file}"
        text += "".join(f"_fields:{name}" for name in sorted(request.fields))
        text += "".join(f"_labels:{name}" for name in sorted(request.labels))
        digest = hashlib.blake2b(text.encode("utf-8"), digest_size=8).digest()
        key = str(int.from_bytes(digest, "little"))
        log.info("str:%s key:%s task_id:%s", text, key, request.task_id)
        return key

    def remove(self, key: str) -> None:
        """Forget the data handler stored under ``key``."""
        self.remove_data_handler(key)

    def get_setuper(self, request: SetupRequest) -> PirDataHandler:
        """Data handler for the request, created and stored if not yet known."""
        key = self.generate_key(request)
        with self._lock:
            existing = self._handlers.get(key)
            if existing is not None:
                log.info("key:%s exists task_id:%s", key, request.task_id)
                return existing
            handler = create_data_handler(
                self.config, key, request, self._setup_remove_callback, self._poster
            )
            self._handlers[key] = handler
            return handler

    def get_server(self, request: ServerRequest) -> PirServer:
        """Server answering from the data prepared under the request's key."""
        handler = self.get_data_handler(request.key)
        if handler is None:
            raise InvalidRequestError("data not setuped")
        return create_pir_server(self.config, handler, request, self._runner)

    def get_client(self, request: ClientRequest) -> PirClient:
        """Querying client that fits the request's algorithm."""
        runner: ClientRunner | None = self._runner
        return create_pir_client(
            self.config, request, self._poster, self._uploader, runner
        )

    def get_data_handler(self, key: str) -> PirDataHandler | None:
        """The handler stored under ``key``, or ``None``."""
        with self._lock:
            return self._handlers.get(key)

    def _setup_remove_callback(self, key: str) -> None:
        log.info("key:%s", key)
        self.remove_data_handler(key)

    def remove_data_handler(self, key: str) -> None:
        """Drop the handler stored under ``key`` if there is one."""
        with self._lock:
            self._handlers.pop(key, None)

    def release(self) -> None:
        """Drop every stored handler."""
        with self._lock:
            self._handlers.clear()