import csv
import struct

import pytest

from pirservice.client import ClientRequest
from pirservice.client_se import (
    SeClient,
    SeNetClient,
    create_pir_client,
    save_result,
    split_batches,
)
from pirservice.handler import STATUS_FAILED, STATUS_OK, InvalidRequestError
from pirservice.params import query_batch_size, server_params
from pirservice.settings import DataConfig, GlobalConfig
from pirservice.types import LINK_RECV_TIMEOUT_MS, PirError


@pytest.fixture
def config(tmp_path):
    src = tmp_path / "src"
    out = tmp_path / "out"
    src.mkdir()
    out.mkdir()
    return GlobalConfig(data=DataConfig(source_data_path=str(src), output_data_path=str(out)))


def _request(**kwargs):
    base = dict(
        task_id="t1",
        algorithm="SE",
        data_file="query.csv",
        query_ids="a,b",
        rank=0,
        members=["alice", "bob"],
        ips=["10.0.0.1", "10.0.0.2"],
        fields=["id"],
        labels=["x", "y"],
        callback_url="http://localhost/cb",
    )
    base.update(kwargs)
    return ClientRequest(**base)


def _read(path):
    with open(path, newline="", encoding="utf-8") as handle:
        return list(csv.reader(handle))


def test_split_batches_keeps_order_and_sizes():
    items = list(range(7))
    batches = split_batches(items, 3)
    assert [len(b) for b in batches] == [3, 3, 1]
    assert [x for b in batches for x in b] == items


def test_split_batches_empty_and_invalid():
    assert split_batches([], 4) == []
    with pytest.raises(PirError):
        split_batches([1, 2], 0)


def test_save_result_skips_unmatched(tmp_path):
    path = tmp_path / "r.csv"
    count = save_result(str(path), "id", ["x", "y"], ["a", "b", "c"], ["1,2", "", "3,4"])
    assert count == 2
    assert _read(path) == [["id", "x", "y"], ["a", "1", "2"], ["c", "3", "4"]]


def test_save_result_errors(tmp_path):
    path = str(tmp_path / "r.csv")
    with pytest.raises(PirError):
        save_result(path, "id", ["x"], ["a", "b"], ["1"])
    with pytest.raises(PirError):
        save_result(path, "id", ["x"], ["a"], ["1,2"])


def test_se_net_client_passes_task_to_runner(config):
    seen = []

    def runner(task):
        seen.append(task)
        return "profile"

    client = SeNetClient(config, _request(), runner=runner)
    client.check_params()
    client.run_service_impl()
    assert client.status == STATUS_OK
    assert client.server_profile == "profile"
    task = seen[0]
    assert task.self_member_id == "alice"
    assert task.peer_member_id == "bob"
    assert task.session_id == "t1"
    assert task.recv_timeout_ms == LINK_RECV_TIMEOUT_MS
    assert task.input_path == config.input_path("query.csv")
    assert task.output_path == client.output_path
    assert task.part_output_path == client.part_output_path
    assert task.peer_host == client.peer_host()
    assert task.labels == ["x", "y"]


def test_se_net_client_failure_sets_status(config):
    def runner(task):
        raise RuntimeError("link down")

    client = SeNetClient(config, _request(), runner=runner)
    client.check_params()
    client.run_service_impl()
    assert client.status == STATUS_FAILED
    assert client.error_message == "link down"


def test_se_net_client_without_runner_fails(config):
    client = SeNetClient(config, _request())
    client.check_params()
    client.run_service_impl()
    assert client.status == STATUS_FAILED


def test_se_net_client_full_run_posts_result(config):
    posted = []

    def runner(task):
        with open(task.part_output_path, "w", encoding="utf-8") as handle:
            handle.write("id,x,y\nk1,1,2\n")

    client = SeNetClient(
        config,
        _request(),
        poster=lambda url, payload: posted.append((url, payload)),
        uploader=lambda *args: ("full-url", "part-url"),
        runner=runner,
    )
    client.check_params()
    assert client.run_service() is True
    url, payload = posted[0]
    assert url == "http://localhost/cb"
    assert payload["status"] == STATUS_OK
    assert payload["data_result"][0]["data_content"] == {"k1": {"values": ["1", "2"]}}


class _Transport:
    def __init__(self):
        self.sent = []
        self.timeout = None

    def set_recv_timeout(self, timeout_ms):
        self.timeout = timeout_ms

    def send(self, key, data):
        self.sent.append((key, data))

    def recv(self, key):
        return self.sent[-1][1]


class _Engine:
    def __init__(self, table):
        self.table = table
        self.items = []

    def oprf_request(self, items):
        self.items = list(items)
        return "|".join(items).encode()

    def build_query(self, oprf_response):
        return oprf_response

    def extract_labeled_result(self, response):
        return [self.table.get(item, "") for item in self.items]


def test_se_client_queries_in_batches(config):
    n = query_batch_size(server_params()) + 5
    ids = [f"id{i}" for i in range(n)]
    with open(config.input_path("query.csv"), "w", encoding="utf-8") as handle:
        handle.write("id\n" + "\n".join(ids) + "\n")
    table = {"id0": "1,2", ids[-1]: "3,4"}
    engines = []

    def factory(params):
        engines.append(_Engine(table))
        return engines[-1]

    transport = _Transport()
    client = SeClient(config, _request(), transport=transport, engine_factory=factory)
    client.check_params()
    client.run_service_impl()

    assert client.status == STATUS_OK
    assert transport.timeout == LINK_RECV_TIMEOUT_MS
    assert transport.sent[0] == ("batch_count", struct.pack("<Q", 2))
    assert len(engines) == 2
    assert sum(len(e.items) for e in engines) == n
    rows = _read(client.output_path)
    assert rows == [["id", "x", "y"], ["id0", "1", "2"], [ids[-1], "3", "4"]]


def test_se_client_missing_column_fails(config):
    with open(config.input_path("query.csv"), "w", encoding="utf-8") as handle:
        handle.write("other\nv\n")
    client = SeClient(
        config, _request(), transport=_Transport(), engine_factory=lambda p: _Engine({})
    )
    client.check_params()
    client.run_service_impl()
    assert client.status == STATUS_FAILED
    assert "id" in client.error_message


def test_create_pir_client_by_algorithm(config):
    assert isinstance(create_pir_client(config, _request(algorithm="SE")), SeNetClient)
    assert isinstance(create_pir_client(config, _request(algorithm="")), SeNetClient)
    with pytest.raises(InvalidRequestError):
        create_pir_client(config, _request(algorithm="SPU"))
    with pytest.raises(InvalidRequestError):
        create_pir_client(config, _request(algorithm="XYZ"))