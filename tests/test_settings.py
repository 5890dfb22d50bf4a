import pytest

from pirservice.settings import (
    DataConfig,
    GlobalConfig,
    GrpcConfig,
    ProxyConfig,
)
from pirservice.types import PirError


def make_config(proxy_mode=0):
    return GlobalConfig(
        data=DataConfig(source_data_path="/in", output_data_path="/out"),
        grpc=GrpcConfig(self_port=7001, other_port=7002),
        proxy=ProxyConfig(proxy_mode=proxy_mode, gateway_port=7100),
    )


def test_input_path_joins_source_dir():
    assert make_config().input_path("a.csv") == "/in/a.csv"


def test_output_path_joins_output_dir():
    assert make_config().output_path("r.txt") == "/out/r.txt"


def test_peer_host_local_uses_given_port():
    host = make_config().peer_host(["10.0.0.1", "10.0.0.2"], 0, True, 7001)
    assert host == "127.0.0.1:7001"


@pytest.mark.parametrize("rank,expected", [(0, "10.0.0.2:7002"), (1, "10.0.0.1:7002")])
def test_peer_host_direct_uses_other_party(rank, expected):
    host = make_config().peer_host(["10.0.0.1", "10.0.0.2"], rank, False, 7001)
    assert host == expected


@pytest.mark.parametrize("rank,expected", [(0, "10.0.0.1:7100"), (1, "10.0.0.2:7100")])
def test_peer_host_proxy_uses_own_address_and_gateway(rank, expected):
    host = make_config(proxy_mode=1).peer_host(["10.0.0.1", "10.0.0.2"], rank, False, 7001)
    assert host == expected


def test_peer_host_bad_rank():
    with pytest.raises(PirError):
        make_config().peer_host(["10.0.0.1", "10.0.0.2"], 2, False, 7001)


def test_peer_host_missing_address():
    with pytest.raises(PirError):
        make_config().peer_host(["10.0.0.1"], 0, False, 7001)