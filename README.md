# pirservice

Service logic for a two-party keyword PIR (private information retrieval)
exchange. One party holds a CSV table with an identifier column and label
columns; the other party asks for the labels of a list of identifiers.

The package handles everything around the exchange: checking requests,
preparing data sets, keeping them by key, deciding which party to contact,
writing and reading result files, posting callbacks and uploading results
to an MLflow tracking server. The query engine and the network transport
are supplied by the caller as plain callables or objects.

## Modules

- `pirservice.types` – `PirType` (`UNKNOWN`, `SPU`, `SE`), `get_pir_type`,
  and `PirError`, the base of every error the package raises.
- `pirservice.params` – the fixed labeled-PSI parameter sets
  (`server_params()`, `client_params()`) and `query_batch_size()`.
- `pirservice.settings` – `GlobalConfig` with its sections `DataConfig`,
  `GrpcConfig`, `HttpConfig`, `ProxyConfig` and `PirConfig`.
- `pirservice.handler` – data set setup: `SetupRequest`, `PirDataHandler`,
  `SeDataHandler`, `SpuDataHandler`, `create_data_handler`.
- `pirservice.client` – `ClientRequest`, `ClientParams`, the abstract
  `PirClient` and `upload_results`.
- `pirservice.client_se` – `SeNetClient`, `SeClient`, `split_batches`,
  `save_result` and `create_pir_client`.
- `pirservice.server` – `ServerRequest`, `ServerParams`, the abstract
  `PirServer`, `SeNetServer`, `SeServer` and `create_pir_server`.
- `pirservice.manager` – `PirManager`, which keeps prepared data handlers
  and builds servers and clients.
- `pirservice.mlflow` – `MlflowClient` and `MlflowError`.

## Algorithms

```python
from pirservice.types import PirType, get_pir_type

get_pir_type("SE")          # PirType.SE
get_pir_type("SPU")         # PirType.SPU
get_pir_type("", "SPU")     # empty name: the default is used -> PirType.SPU
get_pir_type("")            # default "SE" -> PirType.SE
get_pir_type("XYZ")         # PirType.UNKNOWN
```

## Query parameters

```python
from pirservice.params import query_batch_size, server_params

params = server_params()               # a fresh copy each call
params["table_params"]["table_size"]   # 512
query_batch_size(params)               # 426, i.e. table_size * 10 // 12
```

## Configuration

`GlobalConfig()` works with its defaults; every section is a frozen
dataclass. `config.input_path(name)` and `config.output_path(name)` join a
file name to the source and output data directories.
`config.peer_host(ips, rank, test_local, local_port)` gives the address of
the other party: `127.0.0.1:<local_port>` when testing locally, this
party's own address with the gateway port when `proxy.proxy_mode == 1`,
otherwise the other party's address with `grpc.other_port`.

## Setting up a data set

```python
from pirservice.handler import SetupRequest
from pirservice.manager import PirManager
from pirservice.settings import DataConfig, GlobalConfig

def poster(url, payload):
    # deliver payload to url and return the receiver's JSON answer
    return {"code": 0}

config = GlobalConfig(data=DataConfig(source_data_path="/data/in",
                                      output_data_path="/data/out"))
manager = PirManager(config, poster=poster)

request = SetupRequest(task_id="t1", data_file="users.csv", algorithm="SE",
                       fields=["id"], labels=["name", "age"],
                       callback_url="http://localhost:8000/setup_done")
handler = manager.get_setuper(request)   # one handler per key
handler.check_params(request)            # raises InvalidRequestError if unusable
handler.setup()                          # never raises; posts the outcome
handler.status, handler.error_message
```

`check_params` rejects requests without fields, without a callback URL, or
whose callback URL is not an http(s) URL. Without a `poster`, the callback
is sent with `requests.post` as JSON (one second timeout) and counts as
received when the answer carries `"code": 0`.

`SeDataHandler` reads the CSV file into a map from key values to
comma-joined labels, kept in `handler.database`. `SpuDataHandler` writes a
random 32-byte OPRF key file and a fresh setup directory, then hands a
setup description to the `builder` it was given; `close()` removes the
setup directory.

The key a data set is stored under comes from `manager.generate_key`: a
stable hash of the algorithm, the data file and the sorted field and label
names. `manager.remove(key)` and `manager.release()` forget handlers;
`PirManager` is also a context manager that releases on exit.

## Answering and querying

```python
from pirservice.client import ClientRequest
from pirservice.server import ServerRequest

server = manager.get_server(ServerRequest(task_id="t2", algorithm="SE",
                                          key=handler.key, rank=0,
                                          ips=["10.0.0.1", "10.0.0.2"]))
server.check_params()
server.run_service()      # True if no error was recorded

client = manager.get_client(ClientRequest(task_id="t3", algorithm="SE",
                                          data_file="ids.csv", rank=1,
                                          fields=["id"], labels=["name", "age"],
                                          callback_url="http://localhost:8000/done"))
client.check_params()
client.run_service()      # True if the result callback was posted
```

`get_server` raises `InvalidRequestError` when nothing is set up under the
key, or when the request's algorithm differs from that of the prepared
data. Missing members and addresses default to `member_self`/`member_peer`
and `127.0.0.1`.

The `runner` given to `PirManager` is called by `SeNetServer` and
`SeNetClient` with a task object describing the work: peer host, member
ids, session and task id, receive timeout and, for clients, input and
output paths, query ids, fields and labels. After a client's run, the
partial result file (`<task_id>_pir_result_part.txt` in the output
directory) is read, both result files are passed to the uploader, and the
outcome is posted to the callback URL.

`SeClient` and `SeServer` run the batch exchange themselves over a
`transport` with `set_recv_timeout`, `send(key, data)` and `recv(key)`;
`SeClient` also needs an `engine_factory` that builds an engine with
`oprf_request`, `build_query` and `extract_labeled_result`, and `SeServer`
needs a data handler with `handle_oprf_request` and `handle_query`.
`save_result` writes the matched keys and their labels as CSV.

## Uploading results to MLflow

`upload_results(full_path, full_name, part_path, part_name)` reads
`MLFLOW_TRACKING_URI` from the environment and uploads both files as
artifacts of runs in the `mpc-pir-1k` experiment, returning their URLs
(empty for a failed upload, `"MLFLOW_TRACKING_URI not set"` when no server
is configured). The steps are available directly:

```python
from pirservice.mlflow import MlflowClient

mlflow = MlflowClient("http://localhost:5000")
experiment_id = mlflow.ensure_experiment("mpc-pir-1k")   # creates or restores
url = mlflow.upload(experiment_id, "task_1", "/data/out/task_1_pir_result.txt")
```

Failures raise `MlflowError`.

## What the package does not do

- It has no command line and no HTTP or RPC server of its own; requests
  are built in Python and passed to `PirManager`.
- It contains no cryptographic query engine and no network transport:
  the SE exchange runs only through a supplied `runner`, `transport` or
  `engine_factory`, and SPU setup only through a supplied `builder`.
- `PirManager` builds clients and servers for the SE algorithm only.
  It creates SPU data handlers without a builder, so their setup records a
  failure, and it answers SPU server and client requests with
  `InvalidRequestError`.

## Tests

The test suite uses pytest and responses, listed in the `test` extra.