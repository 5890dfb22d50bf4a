"""Service-wide configuration: data locations, ports and PIR setup options."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from typing import Sequence

from .types import PirError

LOCALHOST = "127.0.0.1"


@dataclass(frozen=True)
class DataConfig:
    """Where input data is read from and results are written to."""

    source_data_path: str = "data/source"
    output_data_path: str = "data/output"


@dataclass(frozen=True)
class GrpcConfig:
    """Ports of the peer-to-peer link: this party's and the other party's."""

    self_port: int = 9000
    other_port: int = 9001


@dataclass(frozen=True)
class HttpConfig:
    """Port of the local HTTP API."""

    port: int = 8080


@dataclass(frozen=True)
class ProxyConfig:
    """Routing through a gateway; ``proxy_mode == 1`` sends traffic via it."""

    proxy_mode: int = 0
    gateway_port: int = 9090


@dataclass(frozen=True)
class PirConfig:
    """Options used when preparing a PIR database."""

    count_per_query: int = 1
    max_label_length: int = 16
    apsi_setup_path: str = "data/pir/setup"
    oprf_key_path: str = "data/pir/oprf"


@dataclass(frozen=True)
class GlobalConfig:
    """All configuration sections of the service."""

    data: DataConfig = field(default_factory=DataConfig)
    grpc: GrpcConfig = field(default_factory=GrpcConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    pir: PirConfig = field(default_factory=PirConfig)

    def input_path(self, filename: str) -> str:
        """Path of an input data file."""
        return posixpath.join(self.data.source_data_path, filename)

    def output_path(self, filename: str) -> str:
        """Path of a result file."""
        return posixpath.join(self.data.output_data_path, filename)

    def peer_host(
        self,
        ips: Sequence[str],
        rank: int,
        test_local: bool,
        local_port: int,
    ) -> str:
        """Address ``host:port`` at which the other party is reached.

        Locally, the peer listens on ``local_port`` of the loopback address.
        Through a gateway, this party's own address and the gateway port are
        used; otherwise the other party's address and its link port.
        """
        if test_local:
            return f"{LOCALHOST}:{local_port}"
        if rank not in (0, 1):
            raise PirError(f"rank must be 0 or 1, not {rank}")
        index = rank if self.proxy.proxy_mode == 1 else 1 - rank
        if index >= len(ips):
            raise PirError(f"no address for party {index} among {list(ips)}")
        if self.proxy.proxy_mode == 1:
            return f"{ips[index]}:{self.proxy.gateway_port}"
        return f"{ips[index]}:{self.grpc.other_port}"