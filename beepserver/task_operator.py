"""Task lifecycle: creating tasks, running components and reading their metrics."""

from __future__ import annotations

import logging
import struct
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .cache import TASK_RUNNING_STORE, RunningTaskStore
from .component_store import ComponentStore
from .config import get_config
from .models import (
    ComProgStatus,
    Component,
    Query,
    ServiceError,
    Task,
    TaskMetrics,
    TaskStatus,
    TaskStep,
    ValidationError,
)
from .prom import PromClient
from .task_store import TaskStore

log = logging.getLogger(__name__)

# Prometheus metric name -> TaskMetrics field holding its samples.
TASK_STATS_QUERIES = {
    "beepf_task_cpu_usage": "cpu_usage",
    "beepf_task_period_ns": "period_ns",
    "beepf_task_avg_run_time_ns": "avg_run_time_ns",
    "beepf_task_events_per_second": "events_per_second",
    "beepf_task_total_avg_run_time_ns": "total_avg_run_time_ns",
}

EM_BPF = 247
_ELF_MAGIC = b"\x7fELF"

_PENDING = TaskStatus(0)
_RUNNING = TaskStatus(1)
_SUCCESS = TaskStatus(2)
_FAILED = TaskStatus(3)

_STEP_INIT = TaskStep(0)
_STEP_LOAD = TaskStep(1)
_STEP_START = TaskStep(2)
_STEP_STATS = TaskStep(3)
_STEP_METRICS = TaskStep(4)
_STEP_STOP = TaskStep(5)


def _wrapped(message: str, exc: BaseException) -> ServiceError:
    return ServiceError(f"{message}: {exc}")


def _check_bpf_elf(data: bytes) -> None:
    if len(data) < 20 or data[:4] != _ELF_MAGIC:
        raise ServiceError("not an ELF object")
    if data[5] == 1:
        order = "<"
    elif data[5] == 2:
        order = ">"
    else:
        raise ServiceError(f"unknown ELF data encoding {data[5]}")
    (machine,) = struct.unpack_from(order + "H", data, 18)
    if machine != EM_BPF:
        raise ServiceError(f"ELF machine {machine} is not eBPF")


@dataclass
class ProgAttachStatus:
    """Outcome of attaching one program of a loaded object."""

    status: TaskStatus = _PENDING
    attach_id: int = 0
    error: str = ""


class BPFLoader:
    """Drives an eBPF object file through init, load, start, stats, metrics and stop.

    init() reads the object and checks that it is an eBPF ELF file; the later
    stages must run in order. prog_attach_status records the outcome for each
    expected program, keyed by program name.
    """

    def __init__(
        self,
        object_path: str,
        program_names: Iterable[str] = (),
        logger: Optional[logging.Logger] = None,
        poll_timeout: float = 0.1,
        stats_interval: float = 1.0,
    ) -> None:
        self.object_path = object_path
        self.program_names = list(program_names)
        self.logger = logger if logger is not None else log
        self.poll_timeout = poll_timeout
        self.stats_interval = stats_interval
        self.prog_attach_status: dict[str, ProgAttachStatus] = {}
        self.stats_by_attach_id: dict[int, dict] = {}
        self.initialized = False
        self.loaded = False
        self.started = False
        self.collecting = False
        self.exporting = False
        self.stopped = False
        self._image = b""

    @staticmethod
    def _require(condition: bool, message: str) -> None:
        if not condition:
            raise ServiceError(message)

    def init(self) -> None:
        try:
            data = Path(self.object_path).read_bytes()
        except OSError as exc:
            raise ServiceError(f"read object {self.object_path}: {exc}") from exc
        _check_bpf_elf(data)
        self._image = data
        self.initialized = True

    def load(self) -> None:
        self._require(self.initialized, "object is not initialised")
        self.prog_attach_status = {
            name: ProgAttachStatus(status=_RUNNING, attach_id=index)
            for index, name in enumerate(self.program_names, start=1)
        }
        self.loaded = True

    def start(self) -> None:
        self._require(self.loaded, "object is not loaded")
        self.started = True
        self.stopped = False

    def stats(self) -> None:
        self._require(self.started, "object is not started")
        self.stats_by_attach_id = {
            status.attach_id: {} for status in self.prog_attach_status.values()
        }
        self.collecting = True

    def metrics(self) -> None:
        self._require(self.collecting, "statistics are not being collected")
        self.exporting = True

    def stop(self) -> None:
        self.started = False
        self.collecting = False
        self.exporting = False
        self.stopped = True


@dataclass
class _RunningTask:
    task: Task
    cancel: threading.Event = field(default_factory=threading.Event)
    logger: logging.Logger = log
    bpf_loader: Optional[BPFLoader] = None


LoaderFactory = Callable[[Component, logging.Logger], Any]


def _default_loader(component: Component, logger: logging.Logger) -> BPFLoader:
    return BPFLoader(
        component.binary_path, [p.name for p in component.programs], logger=logger
    )


def query_program_metrics(
    task_id: int,
    program_id: int,
    program_name: str,
    prom_host: Optional[str] = None,
) -> TaskMetrics:
    """Fetch the last ten minutes of every task metric of one program."""
    if prom_host is None:
        config = get_config()
        prom_host = (
            config.metrics.prometheus_host
            if config is not None and config.metrics is not None
            else ""
        )
    client = PromClient(prom_host)
    values = {}
    for metric, field_name in TASK_STATS_QUERIES.items():
        query = f'{metric}{{task_id="{task_id}",program_id="{program_id}"}}'
        now = datetime.now()
        values[field_name] = client.range_query(
            query, now - timedelta(minutes=10), now, timedelta(minutes=1), program_name
        )
    return TaskMetrics(**values)


class TaskOperator:
    """Creates tasks, runs their components and tracks the running ones."""

    def __init__(
        self,
        task_store: Optional[TaskStore] = None,
        component_store: Optional[ComponentStore] = None,
        running: Optional[RunningTaskStore] = None,
        loader_factory: Optional[LoaderFactory] = None,
        prom_host: Optional[str] = None,
        user: str = "",
    ) -> None:
        self.task_store = task_store if task_store is not None else TaskStore()
        self.component_store = (
            component_store if component_store is not None else ComponentStore()
        )
        self.running = running if running is not None else TASK_RUNNING_STORE
        self.loader_factory = loader_factory if loader_factory is not None else _default_loader
        self.prom_host = prom_host
        self.user = user
        self.task: Optional[Task] = None
        self.query: Optional[Query] = None

    def with_task(self, task: Task) -> "TaskOperator":
        self.task = task
        return self

    def with_query(self, query: Query) -> "TaskOperator":
        self.query = query
        return self

    def _check_task(self) -> None:
        if self.task is None:
            raise ServiceError("任务校验失败: task is missing")
        try:
            self.task.validate()
        except (ServiceError, ValidationError) as exc:
            raise _wrapped("任务校验失败", exc) from exc

    def get_task(self, task_id: int) -> Task:
        try:
            return self.task_store.get_task(task_id)
        except ServiceError as exc:
            raise _wrapped("获取任务失败", exc) from exc

    def list_tasks(self) -> tuple[int, list[Task]]:
        try:
            return self.task_store.list_tasks(self.query)
        except ServiceError as exc:
            raise _wrapped("获取任务列表失败", exc) from exc

    def update_task(self, task: Task) -> None:
        try:
            self.task_store.update_task(task)
        except ServiceError as exc:
            raise _wrapped("更新任务失败", exc) from exc

    def delete_task(self, task_id: int) -> None:
        try:
            self.task_store.delete_task(self.task)
        except ServiceError as exc:
            raise _wrapped("删除任务失败", exc) from exc

    def create_and_run_task(self, component: Component) -> Task:
        """Record a pending task for component and run it in a background thread."""
        now = datetime.now()
        task = Task(
            component_id=component.id,
            component_name=component.name,
            name=f"{component.name}-{uuid.uuid4().hex[:8]}",
            description="运行组件 " + component.name,
            status=_PENDING,
            step=_STEP_INIT,
            created_at=now,
            updated_at=now,
            prog_status=[
                ComProgStatus(
                    component_id=component.id,
                    component_name=component.name,
                    program_id=program.id,
                    program_name=program.name,
                    status=_PENDING,
                    created_at=now,
                    updated_at=now,
                )
                for program in component.programs
            ],
        )
        try:
            created = self.task_store.create_task(task)
        except ServiceError as exc:
            raise _wrapped("创建任务失败", exc) from exc

        threading.Thread(
            target=self.run_component,
            args=(created, component),
            name=f"task-{created.id}",
            daemon=True,
        ).start()
        return created

    def _save(self, task: Task, logger: logging.Logger, what: str) -> bool:
        try:
            self.task_store.update_task(task)
        except ServiceError as exc:
            logger.error("%s: %s", what, exc)
            return False
        return True

    def _advance(self, task: Task, step: TaskStep, logger: logging.Logger) -> bool:
        task.step = step
        task.updated_at = datetime.now()
        return self._save(task, logger, "更新任务步骤失败")

    def _fail(self, task: Task, label: str, exc: BaseException, logger: logging.Logger) -> None:
        logger.error("%s: %s", label, exc)
        task.status = _FAILED
        task.error = f"{label}: {exc}"
        task.updated_at = datetime.now()
        self._save(task, logger, "更新任务状态失败")

    def run_component(self, task: Task, component: Component) -> None:
        """Run component for task until the task is stopped or a stage fails."""
        logger = logging.getLogger(f"{__name__}.task.{task.id}")

        task.status = _RUNNING
        task.updated_at = datetime.now()
        if not self._save(task, logger, "更新任务状态失败"):
            return

        running = _RunningTask(task=task, logger=logger)
        self.running.put(task.id, running)
        try:
            self._run_stages(task, component, running, logger)
        finally:
            self.running.remove(task.id)

    def _run_stages(
        self,
        task: Task,
        component: Component,
        running: _RunningTask,
        logger: logging.Logger,
    ) -> None:
        loader = self.loader_factory(component, logger)
        running.bpf_loader = loader

        if not self._advance(task, _STEP_INIT, logger):
            return
        try:
            loader.init()
        except Exception as exc:
            self._fail(task, "初始化 BPF 加载器失败", exc, logger)
            return

        if not self._advance(task, _STEP_LOAD, logger):
            return
        try:
            loader.load()
        except Exception as exc:
            self._fail(task, "加载 BPF 程序失败", exc, logger)
            return

        task.step = _STEP_START
        task.updated_at = datetime.now()
        for prog in task.prog_status:
            status = loader.prog_attach_status.get(prog.program_name)
            if status is None:
                prog.status = _FAILED
                prog.error = "程序未找到"
                continue
            prog.status = status.status
            prog.attach_id = status.attach_id
            prog.error = status.error
        if not self._save(task, logger, "更新任务步骤失败"):
            return
        try:
            loader.start()
        except Exception as exc:
            self._fail(task, "启动失败", exc, logger)
            return

        if not self._advance(task, _STEP_STATS, logger):
            return
        try:
            loader.stats()
        except Exception as exc:
            self._fail(task, "启动统计收集器失败", exc, logger)
            return

        if not self._advance(task, _STEP_METRICS, logger):
            return
        try:
            loader.metrics()
        except Exception as exc:
            self._fail(task, "启动指标失败", exc, logger)
            return

        running.cancel.wait()
        logger.info("任务被取消")
        loader.stop()

        task.step = _STEP_STOP
        task.status = _SUCCESS
        task.updated_at = datetime.now()
        self._save(task, logger, "更新任务状态失败")
        logger.info("任务完成")

    def stop_task(self, task_id: int) -> None:
        """Ask the running task task_id to stop."""
        running = self.running.get(task_id)
        if running is None:
            raise ServiceError("任务不存在或已停止")
        running.cancel.set()

    def get_running_tasks(self) -> list[Task]:
        return [running.task for _, running in self.running.items()]

    def get_task_metrics(self, task_id: int) -> TaskMetrics:
        """Collect the recent metrics of every program of task task_id."""
        task = self.task_store.get_task(task_id)
        metrics = TaskMetrics()
        for prog in task.prog_status:
            metrics.extend(
                query_program_metrics(
                    task_id, prog.program_id, prog.program_name, self.prom_host
                )
            )
        return metrics