import struct
import time

import pytest
import responses

from beepserver.cache import RunningTaskStore
from beepserver.component_store import ComponentStore
from beepserver.database import setup
from beepserver.models import (
    ComProgStatus,
    Component,
    Program,
    ProgramSpec,
    ServiceError,
    Task,
    TaskStatus,
    TaskStep,
)
from beepserver.prom import PromError
from beepserver.records import Base
from beepserver.task_operator import (
    EM_BPF,
    BPFLoader,
    TaskOperator,
    query_program_metrics,
)
from beepserver.task_store import TaskStore

PROM = "http://prom.example.com"


@pytest.fixture(autouse=True)
def database(tmp_path):
    engine = setup(url=f"sqlite:///{tmp_path / 'tasks.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def mocked():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


def _elf(machine=EM_BPF):
    header = _ELF_HEAD + bytes(8) + struct.pack("<HHI", 1, machine, 1)
    return header + bytes(64 - len(header))


_ELF_HEAD = b"\x7fELF" + bytes([2, 1, 1, 0])


@pytest.fixture
def bpf_object(tmp_path):
    path = tmp_path / "prog.o"
    path.write_bytes(_elf())
    return path


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def _stored_component(binary_path):
    ComponentStore().create(
        Component(
            name="sched",
            binary_path=str(binary_path),
            programs=[
                Program(name="handle_exec", spec=ProgramSpec(name="handle_exec")),
                Program(name="handle_exit", spec=ProgramSpec(name="handle_exit")),
            ],
        )
    )
    return ComponentStore().list()[1][0]


def test_loader_runs_stages_in_order(bpf_object):
    loader = BPFLoader(str(bpf_object), ["a", "b"])
    loader.init()
    loader.load()
    loader.start()
    loader.stats()
    loader.metrics()
    loader.stop()
    assert set(loader.prog_attach_status) == {"a", "b"}
    ids = [s.attach_id for s in loader.prog_attach_status.values()]
    assert len(set(ids)) == 2
    assert set(loader.stats_by_attach_id) == set(ids)
    assert loader.stopped and not loader.started


def test_loader_refuses_out_of_order_stage(bpf_object):
    loader = BPFLoader(str(bpf_object), ["a"])
    with pytest.raises(ServiceError):
        loader.load()
    loader.init()
    with pytest.raises(ServiceError):
        loader.start()


def test_loader_rejects_non_elf_and_foreign_machine(tmp_path):
    text = tmp_path / "text.o"
    text.write_bytes(b"hello world, not an object file")
    with pytest.raises(ServiceError, match="not an ELF"):
        BPFLoader(str(text)).init()
    foreign = tmp_path / "x86.o"
    foreign.write_bytes(_elf(machine=62))
    with pytest.raises(ServiceError, match="not eBPF"):
        BPFLoader(str(foreign)).init()
    with pytest.raises(ServiceError):
        BPFLoader(str(tmp_path / "missing.o")).init()


def test_task_runs_until_stopped(bpf_object):
    component = _stored_component(bpf_object)
    loaders = []

    def factory(comp, logger):
        loader = BPFLoader(comp.binary_path, [p.name for p in comp.programs], logger)
        loaders.append(loader)
        return loader

    operator = TaskOperator(running=RunningTaskStore(), loader_factory=factory)
    task = operator.create_and_run_task(component)
    assert task.name.startswith("sched-")
    assert len(task.name.split("-")[-1]) == 8
    assert task.description == "运行组件 sched"

    assert _wait_for(lambda: [t.id for t in operator.get_running_tasks()] == [task.id])
    operator.stop_task(task.id)
    assert _wait_for(lambda: operator.get_task(task.id).status == TaskStatus(2))
    assert _wait_for(lambda: operator.get_running_tasks() == [])

    final = operator.get_task(task.id)
    assert final.step == TaskStep(5)
    reported = loaders[0].prog_attach_status
    assert {p.program_name: p.status for p in final.prog_status} == {
        name: status.status for name, status in reported.items()
    }
    assert loaders[0].stopped


def test_task_with_invalid_object_fails(tmp_path):
    broken = tmp_path / "broken.o"
    broken.write_bytes(b"garbage")
    component = _stored_component(broken)
    operator = TaskOperator(running=RunningTaskStore())
    task = operator.create_and_run_task(component)
    assert _wait_for(lambda: operator.get_task(task.id).status == TaskStatus(3))
    failed = operator.get_task(task.id)
    assert failed.error.startswith("初始化 BPF 加载器失败")
    assert _wait_for(lambda: operator.get_running_tasks() == [])


def test_stop_unknown_task_fails():
    with pytest.raises(ServiceError, match="任务不存在或已停止"):
        TaskOperator(running=RunningTaskStore()).stop_task(12345)


def test_get_unknown_task_is_wrapped():
    with pytest.raises(ServiceError, match="获取任务失败"):
        TaskOperator().get_task(12345)


def test_list_tasks_returns_newest_first():
    store = TaskStore()
    first = store.create_task(Task(name="one", component_id=1, component_name="c"))
    second = store.create_task(Task(name="two", component_id=1, component_name="c"))
    total, tasks = TaskOperator().list_tasks()
    assert total == 2
    assert [t.id for t in tasks] == [second.id, first.id]


_MATRIX = {
    "status": "success",
    "data": {
        "resultType": "matrix",
        "result": [{"metric": {}, "values": [[1700000000, "1.5"], [1700000060, "2.5"]]}],
    },
}


def test_get_task_metrics_collects_every_series(mocked):
    mocked.add(responses.GET, f"{PROM}/api/v1/query_range", json=_MATRIX)
    created = TaskStore().create_task(
        Task(
            name="t",
            component_id=1,
            component_name="c",
            prog_status=[ComProgStatus(component_id=1, program_id=7, program_name="probe")],
        )
    )
    metrics = TaskOperator(prom_host=PROM).get_task_metrics(created.id)
    for series in (
        metrics.cpu_usage,
        metrics.period_ns,
        metrics.avg_run_time_ns,
        metrics.events_per_second,
        metrics.total_avg_run_time_ns,
    ):
        assert [p.value for p in series] == [1.5, 2.5]
        assert {p.program_name for p in series} == {"probe"}
    assert len(mocked.calls) == 5
    assert 'program_id="7"' in mocked.calls[0].request.url.replace("%22", '"').replace(
        "%3D", "="
    )


def test_query_program_metrics_propagates_prometheus_errors(mocked):
    mocked.add(
        responses.GET,
        f"{PROM}/api/v1/query_range",
        json={"status": "error", "errorType": "bad_data", "error": "parse error"},
        status=400,
    )
    with pytest.raises(PromError, match="范围查询失败"):
        query_program_metrics(1, 2, "probe", PROM)