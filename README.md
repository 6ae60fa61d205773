# beepserver

beepserver is an HTTP management server for eBPF workloads. It keeps a
registry of clusters and eBPF components (programs and maps) in a SQL
database. It runs components as tasks and records each task's progress
through its steps (init, load, start, stats, metrics, stop). It also exposes
per-program task gauges in the Prometheus text format and reads task metric
history back from a Prometheus server.

## Installation

```
pip install .
```

The server connects to MySQL through SQLAlchemy's `mysql+pymysql` dialect.
The PyMySQL driver is not installed with the package, so install it
yourself:

```
pip install pymysql
```

To run the test suite, install the test extra and run pytest:

```
pip install ".[test]"
pytest
```

## Configuration

The server reads a JSON configuration file:

```json
{
  "http": {"enabled": true, "listen": "0.0.0.0:8080", "backdoor": false},
  "database": {
    "type": "mysql",
    "user": "user",
    "password": "password",
    "host": "localhost:3306",
    "name": "beepf",
    "maxIdle": 10,
    "maxOpen": 100,
    "logMode": "info"
  },
  "logMode": "info",
  "env": "dev",
  "metrics": {"prometheusHost": "http://localhost:9090"}
}
```

- `http.listen` is the address the server binds to, as `host:port` or
  `:port`. An empty host binds to all interfaces.
- `database` sets the MySQL connection. `host` may carry a port. `maxIdle`
  sets the pool size and `maxOpen` caps the total number of connections.
  Set `logMode` to `debug` to echo SQL statements.
- `metrics.prometheusHost` is the Prometheus server that task metric
  history is read from.

`beepserver.config.parse_config` loads a file and makes it current.
`get_config` returns the current configuration. `reload_config` reads the
last file again. `reload_forever(interval, stop_event)` repeats that
reload until the event is set. When a reload fails, the error is logged and
the previous configuration stays current.

## Running

```
beepserver --config config.json
```

The command loads the configuration and sets up the database engine. It
then serves until SIGINT or SIGTERM and shuts down cleanly. It exits with
status 1 if the configuration file is missing, unreadable, or lacks an
`http` section.

## HTTP API

Probes and metrics:

- `GET /ping` returns `{"message": "pong"}`.
- `GET /readiness` answers 400 until the server has started listening.
- `GET /liveness`
- `GET /metrics` is the Prometheus exposition of the running tasks' gauges:
  - `beepf_task_cpu_usage`
  - `beepf_task_events_per_second`
  - `beepf_task_avg_run_time_ns`
  - `beepf_task_total_avg_run_time_ns`
  - `beepf_task_period_ns`

  Each gauge is labelled with `task_id`, `component_id`, `program_id` and
  `node_name`. `node_name` is the host name.

Everything else is under `/api/v1`:

| Method | Path | Purpose |
| ------ | ---- | ------- |
| GET | `/ping` | liveness check |
| GET | `/cluster` | list clusters (`pageSize`, `pageNum`); kubeconfig is blanked |
| GET | `/cluster/<clusterId>` | get one cluster |
| POST | `/cluster` | create a cluster |
| PUT | `/cluster/<clusterId>` | update a cluster |
| DELETE | `/cluster/<clusterId>` | soft-delete a cluster |
| GET | `/clusterList` | filter clusters by `clusterName` / `clusterId` |
| GET | `/component` | list components |
| GET | `/component/<componentId>` | get a component with its programs and maps |
| POST | `/component` | create a component |
| POST | `/component/upload` | upload an eBPF object (`binary` file) with component JSON (`data` field) |
| DELETE | `/component/<componentId>` | soft-delete a component with its programs and maps |
| GET | `/task` | list tasks, newest first |
| GET | `/task/<taskId>` | get one task |
| POST | `/task/component/<componentId>` | create a task for a component and run it in the background |
| GET | `/task/running` | list running tasks |
| POST | `/task/<taskId>/stop` | stop a running task |
| GET | `/task/<taskId>/metrics` | last ten minutes of a task's metrics from Prometheus |

An upload is checked to be an eBPF ELF object. It is saved under
`./binary/` with a random name, and the component is stored with that path.

Every JSON reply has this envelope:

```json
{"success": true, "errorCode": 0, "errorMsg": "", "data": {}}
```

On failure, `success` is `false`, `errorCode` is `500` and `errorMsg`
describes the error. Such replies are still sent with HTTP 200. A request
body that cannot be decoded is answered with HTTP 400.

## Using it as a library

```python
from beepserver.config import parse_config
from beepserver.database import setup
from beepserver.server import Server, create_app

config = parse_config("config.json", False)
setup(config.database)          # or setup(url="sqlite:///beepf.db")
app = create_app()              # a Flask application
server = Server(config.http.listen)
server.start()                  # serve in a background thread
server.shutdown()
```

Other parts of the package:

- `beepserver.services.Services` takes the stores, the running-task
  registry, a loader factory, the Prometheus host and the upload directory.
  Pass it to `create_app` or `create_blueprint`.
- `beepserver.cluster_store.ClusterStore`,
  `beepserver.component_store.ComponentStore` and
  `beepserver.task_store.TaskStore` persist the models of
  `beepserver.models`. Their tables are defined in `beepserver.records`.
- `beepserver.prom.PromClient` runs range and instant queries, label-value
  and series lookups, and target listings against Prometheus.
- `beepserver.task_metrics.TaskMetricsExporter` renders the task gauges.
- `beepserver.task_operator.TaskOperator` creates, runs and stops tasks.

## What it does not do

- The built-in `BPFLoader` does not load or attach anything in the kernel.
  `init()` checks that the object file is an eBPF ELF. The later stages only
  record their progress: each program of the component is marked as running
  with a sequential attach id, and statistics stay empty. The `/metrics`
  gauges therefore report zeros for tasks run this way. To do real loading
  and statistics, pass a different `loader_factory` to `Services` or
  `TaskOperator`.
- An upload does not read the programs and maps out of the object. The
  component is stored with the programs and maps given in its JSON.
- There are no endpoints for node-wide eBPF program metrics or for the
  program and map topology of the host.
- Deleting a task has no effect. Tasks are kept in the database.