from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any

import pytest

from beepserver.cache import RunningTaskStore
from beepserver.models import ComProgStatus, Task
from beepserver.task_metrics import (
    TASK_CPU_USAGE,
    TASK_METRICS_LABELS,
    GaugeVec,
    TaskMetricsExporter,
)


@dataclass
class _Running:
    task: Any
    bpf_loader: Any = None


def _running(task_id, component_id, progs, stats):
    task = Task(
        id=task_id,
        component_id=component_id,
        prog_status=[
            ComProgStatus(program_id=program_id, attach_id=attach_id)
            for program_id, attach_id in progs
        ],
    )
    return _Running(task=task, bpf_loader=SimpleNamespace(stats_by_attach_id=stats))


def test_gauge_set_and_render():
    gauge = GaugeVec("demo_gauge", "a demo", ("a", "b"))
    gauge.set(("x", "y"), 2.5)
    text = gauge.render()
    assert text.splitlines() == [
        "# HELP demo_gauge a demo",
        "# TYPE demo_gauge gauge",
        'demo_gauge{a="x",b="y"} 2.5',
    ]


def test_gauge_rejects_wrong_label_count():
    gauge = GaugeVec("demo_gauge", "a demo", ("a", "b"))
    with pytest.raises(ValueError):
        gauge.set(("x",), 1.0)


def test_gauge_reset_clears_samples():
    gauge = GaugeVec("demo_gauge", "a demo", ("a",))
    gauge.set(("x",), 1.0)
    gauge.reset()
    assert gauge.samples() == {}
    assert gauge.render() == ""


def test_gauge_escapes_label_values():
    gauge = GaugeVec("demo_gauge", "a demo", ("a",))
    gauge.set(('q"b\\',), 1.0)
    assert 'demo_gauge{a="q\\"b\\\\"}' in gauge.render()


def test_gauge_overwrites_same_labels():
    gauge = GaugeVec("demo_gauge", "a demo", ("a",))
    gauge.set(("x",), 1.0)
    gauge.set(("x",), 3.0)
    assert gauge.samples() == {("x",): 3.0}


def test_exposition_reports_running_program():
    store = RunningTaskStore()
    store.put(
        7,
        _running(7, 3, [(11, 1)], {1: {"cpu_time_percent": 2.5, "events_per_second": 4}}),
    )
    text = TaskMetricsExporter(store).exposition("node-a")
    assert (
        'beepf_task_cpu_usage{task_id="7",component_id="3",program_id="11",node_name="node-a"} 2.5'
        in text.splitlines()
    )
    assert (
        'beepf_task_events_per_second{task_id="7",component_id="3",program_id="11",node_name="node-a"} 4'
        in text.splitlines()
    )


def test_exporter_labels_follow_declared_order():
    store = RunningTaskStore()
    store.put(7, _running(7, 3, [(11, 1)], {1: {}}))
    exporter = TaskMetricsExporter(store)
    exporter.update_from_cache("node-a")
    assert exporter.cpu_usage.label_names == TASK_METRICS_LABELS
    assert exporter.cpu_usage.samples() == {("7", "3", "11", "node-a"): 0.0}


def test_missing_stats_skip_rest_of_task():
    store = RunningTaskStore()
    store.put(1, _running(1, 2, [(10, 99), (20, 1)], {1: {"period_ns": 5}}))
    exporter = TaskMetricsExporter(store)
    exporter.update_from_cache("n")
    assert exporter.period_ns.samples() == {}


def test_update_resets_previous_values():
    store = RunningTaskStore()
    store.put(1, _running(1, 2, [(10, 1)], {1: {"cpu_time_percent": 1.0}}))
    exporter = TaskMetricsExporter(store)
    exporter.update_from_cache("n")
    assert len(exporter.cpu_usage.samples()) == 1
    store.remove(1)
    exporter.update_from_cache("n")
    assert exporter.cpu_usage.samples() == {}
    assert TASK_CPU_USAGE not in exporter.exposition("n")


def test_task_without_loader_is_ignored():
    store = RunningTaskStore()
    store.put(1, _Running(task=Task(id=1, component_id=2)))
    assert TaskMetricsExporter(store).exposition("n") == ""