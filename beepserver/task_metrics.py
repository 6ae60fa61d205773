"""Prometheus gauges describing the programs of running tasks."""

from __future__ import annotations

import logging
import math
import socket
import threading
from collections.abc import Mapping
from decimal import Decimal
from typing import Any, Iterable, Optional

from .cache import TASK_RUNNING_STORE, RunningTaskStore

log = logging.getLogger(__name__)

TASK_CPU_USAGE = "beepf_task_cpu_usage"
TASK_EVENTS_PER_SECOND = "beepf_task_events_per_second"
TASK_AVG_RUN_TIME_NS = "beepf_task_avg_run_time_ns"
TASK_TOTAL_AVG_RUN_TIME_NS = "beepf_task_total_avg_run_time_ns"
TASK_PERIOD_NS = "beepf_task_period_ns"

TASK_METRICS_LABELS = ("task_id", "component_id", "program_id", "node_name")

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
DEFAULT_NODE_NAME = "default_node"


def default_node_name() -> str:
    """Return the host name, or a fixed name when it cannot be determined."""
    try:
        return socket.gethostname() or DEFAULT_NODE_NAME
    except OSError:
        return DEFAULT_NODE_NAME


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    sign = "-" if value < 0 else ""
    magnitude = abs(value)
    _, digits, exponent = Decimal(repr(magnitude)).normalize().as_tuple()
    count = len(digits)
    point = count + exponent
    exp10 = point - 1
    if exp10 < -4 or exp10 >= 6:
        return sign + format(magnitude, f".{max(count - 1, 0)}e")
    return sign + format(magnitude, f".{max(count - point, 0)}f")


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


class GaugeVec:
    """A gauge with one value per combination of label values."""

    def __init__(self, name: str, help: str, label_names: Iterable[str]) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._values: dict[tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def set(self, label_values: Iterable[Any], value: float) -> None:
        key = tuple(str(v) for v in label_values)
        if len(key) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(key)}"
            )
        with self._lock:
            self._values[key] = float(value)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()

    def samples(self) -> dict[tuple[str, ...], float]:
        """Return a copy of the current values keyed by label values."""
        with self._lock:
            return dict(self._values)

    def render(self) -> str:
        """Return the gauge in the text exposition format; empty without samples."""
        samples = self.samples()
        if not samples:
            return ""
        lines = [
            f"# HELP {self.name} {_escape_help(self.help)}",
            f"# TYPE {self.name} gauge",
        ]
        for key in sorted(samples):
            labels = ",".join(
                f'{name}="{_escape_label(value)}"'
                for name, value in zip(self.label_names, key)
            )
            lines.append(f"{self.name}{{{labels}}} {_format_value(samples[key])}")
        return "\n".join(lines) + "\n"


def _stat(stats: Any, key: str) -> float:
    if isinstance(stats, Mapping):
        value = stats.get(key, 0)
    else:
        value = getattr(stats, key, 0)
    return float(value or 0)


class TaskMetricsExporter:
    """Fills the task gauges from the running-task registry and renders them."""

    def __init__(self, store: Optional[RunningTaskStore] = None) -> None:
        self.store = store if store is not None else TASK_RUNNING_STORE
        self.cpu_usage = GaugeVec(
            TASK_CPU_USAGE, "ebpf program task cpu usage", TASK_METRICS_LABELS
        )
        self.events_per_second = GaugeVec(
            TASK_EVENTS_PER_SECOND, "ebpf program task events per second", TASK_METRICS_LABELS
        )
        self.avg_run_time_ns = GaugeVec(
            TASK_AVG_RUN_TIME_NS, "ebpf program task avg run time ns", TASK_METRICS_LABELS
        )
        self.total_avg_run_time_ns = GaugeVec(
            TASK_TOTAL_AVG_RUN_TIME_NS,
            "ebpf program task total avg run time ns",
            TASK_METRICS_LABELS,
        )
        self.period_ns = GaugeVec(
            TASK_PERIOD_NS, "ebpf program task period ns", TASK_METRICS_LABELS
        )
        self._lock = threading.Lock()

    @property
    def gauges(self) -> tuple[GaugeVec, ...]:
        return tuple(
            sorted(
                (
                    self.cpu_usage,
                    self.events_per_second,
                    self.avg_run_time_ns,
                    self.total_avg_run_time_ns,
                    self.period_ns,
                ),
                key=lambda gauge: gauge.name,
            )
        )

    def reset(self) -> None:
        for gauge in self.gauges:
            gauge.reset()

    def update_from_cache(self, node_name: str) -> None:
        """Replace all gauge values with the statistics of the running tasks."""
        self.reset()
        for _, running in self.store.items():
            self._record(running, node_name)

    def _record(self, running: Any, node_name: str) -> None:
        task = running.task
        loader = getattr(running, "bpf_loader", None)
        stats_by_id = getattr(loader, "stats_by_attach_id", None)
        if stats_by_id is None:
            return
        for prog in task.prog_status:
            stats = stats_by_id.get(prog.attach_id)
            if stats is None:
                log.debug("get program stats failed: attach id %s", prog.attach_id)
                return
            labels = (
                str(task.id),
                str(task.component_id),
                str(prog.program_id),
                node_name,
            )
            self.cpu_usage.set(labels, _stat(stats, "cpu_time_percent"))
            self.events_per_second.set(labels, _stat(stats, "events_per_second"))
            self.avg_run_time_ns.set(labels, _stat(stats, "avg_run_time_ns"))
            self.total_avg_run_time_ns.set(labels, _stat(stats, "total_avg_run_time_ns"))
            self.period_ns.set(labels, _stat(stats, "period_ns"))

    def exposition(self, node_name: Optional[str] = None) -> str:
        """Refresh the gauges and return them in the text exposition format."""
        name = node_name or default_node_name()
        with self._lock:
            self.update_from_cache(name)
            return "".join(gauge.render() for gauge in self.gauges)