import os

import pytest

from pirservice.handler import (
    InvalidRequestError,
    SeDataHandler,
    SetupRequest,
    SpuDataHandler,
    create_data_handler,
)
from pirservice.settings import DataConfig, GlobalConfig, PirConfig
from pirservice.types import PirType


class RecordingPoster:
    def __init__(self, answer=None, error=None):
        self.calls = []
        self.answer = {"code": 0} if answer is None else answer
        self.error = error

    def __call__(self, url, payload):
        self.calls.append((url, payload))
        if self.error:
            raise self.error
        return self.answer


@pytest.fixture
def config(tmp_path):
    return GlobalConfig(
        data=DataConfig(source_data_path=str(tmp_path / "in"), output_data_path=str(tmp_path / "out")),
        pir=PirConfig(
            count_per_query=4,
            max_label_length=10,
            apsi_setup_path=str(tmp_path / "setup"),
            oprf_key_path=str(tmp_path / "oprf"),
        ),
    )


def request(**kw):
    base = dict(
        task_id="t1",
        data_file="d.csv",
        algorithm="SE",
        fields=["id"],
        labels=["age", "city"],
        callback_url="http://localhost:8000/cb",
    )
    base.update(kw)
    return SetupRequest(**base)


def test_check_params_empty_fields(config):
    h = SeDataHandler(config, "k", poster=RecordingPoster())
    with pytest.raises(InvalidRequestError, match="fields empty"):
        h.check_params(request(fields=[]))


def test_check_params_empty_callback(config):
    h = SeDataHandler(config, "k", poster=RecordingPoster())
    with pytest.raises(InvalidRequestError, match="callback url empty"):
        h.check_params(request(callback_url=""))


def test_check_params_bad_callback(config):
    h = SeDataHandler(config, "k", poster=RecordingPoster())
    with pytest.raises(InvalidRequestError, match="not a url"):
        h.check_params(request(callback_url="not a url"))


def test_check_params_copies_request(config):
    h = SeDataHandler(config, "k", poster=RecordingPoster())
    req = request()
    params = h.check_params(req)
    req.fields.append("other")
    assert params.fields == ["id"]
    assert params.task_id == "t1"


def test_se_setup_with_builder_posts_payload(config):
    seen = []

    def builder(key, path, fields, labels):
        seen.append((key, path, list(fields), list(labels)))
        return {"x": "y"}

    poster = RecordingPoster()
    h = SeDataHandler(config, "key1", poster=poster, builder=builder)
    h.check_params(request())
    h.setup()
    assert seen == [("key1", config.input_path("d.csv"), ["id"], ["age", "city"])]
    assert h.database == {"x": "y"}
    url, payload = poster.calls[0]
    assert url == "http://localhost:8000/cb"
    assert payload["status"] == 200
    assert payload["service_type"] == "PIR"
    assert payload["data_result"] == {"algorithm": "SE", "key": "key1"}


def test_se_setup_failure_reported(config):
    def builder(key, path, fields, labels):
        raise ValueError("boom")

    poster = RecordingPoster()
    h = SeDataHandler(config, "k", poster=poster, builder=builder)
    h.check_params(request())
    h.setup()
    payload = poster.calls[0][1]
    assert payload["status"] == 201
    assert payload["message"] == "boom"


def test_se_default_builder_reads_csv(config, tmp_path):
    (tmp_path / "in").mkdir()
    (tmp_path / "in" / "d.csv").write_text("id,age,city\na,1,x\nb,2,y\n")
    h = SeDataHandler(config, "k", poster=RecordingPoster())
    h.check_params(request())
    h.setup()
    assert h.database == {"a": "1,x", "b": "2,y"}
    assert h.status == 200


def test_se_default_builder_missing_column(config, tmp_path):
    (tmp_path / "in").mkdir()
    (tmp_path / "in" / "d.csv").write_text("id,age\na,1\n")
    h = SeDataHandler(config, "k", poster=RecordingPoster())
    h.check_params(request())
    h.setup()
    assert h.status == 201
    assert "city" in h.error_message


def test_result_callback_outcomes(config):
    h = SeDataHandler(config, "k", poster=RecordingPoster(answer={"code": 3}))
    h.check_params(request())
    assert h.result_callback() is False
    h2 = SeDataHandler(config, "k", poster=RecordingPoster(error=OSError("down")))
    h2.check_params(request())
    assert h2.result_callback() is False
    h3 = SeDataHandler(config, "k", poster=RecordingPoster())
    h3.check_params(request())
    assert h3.result_callback() is True


def test_spu_setup_creates_files(config):
    configs = []
    h = SpuDataHandler(config, "kk", poster=RecordingPoster(), builder=configs.append)
    h.check_params(request(algorithm="SPU"))
    h.setup()
    assert h.is_setup()
    with open(h.oprf_path, "rb") as f:
        assert len(f.read()) == 32
    assert os.path.basename(h.oprf_path) == "orpf_kk.bin"
    assert os.path.isdir(h.setup_path)
    assert configs[0]["label_max_len"] == 5 + 10 * 2
    assert configs[0]["num_per_query"] == 4
    assert configs[0]["key_columns"] == ["id"]
    h.setup()
    assert len(configs) == 1
    h.close()
    assert not os.path.exists(h.setup_path)


def test_spu_without_engine_fails(config):
    h = SpuDataHandler(config, "kk", poster=RecordingPoster())
    h.check_params(request(algorithm="SPU"))
    h.setup()
    assert not h.is_setup()
    assert h.status == 201


@pytest.mark.parametrize(
    "algo,cls,kind",
    [("SE", SeDataHandler, PirType.SE), ("", SeDataHandler, PirType.SE), ("SPU", SpuDataHandler, PirType.SPU)],
)
def test_factory(config, algo, cls, kind):
    h = create_data_handler(config, "k", request(algorithm=algo))
    assert isinstance(h, cls)
    assert h.type is kind
    assert h.key == "k"


def test_factory_unknown(config):
    with pytest.raises(InvalidRequestError, match="XYZ algorithm not supported"):
        create_data_handler(config, "k", request(algorithm="XYZ"))