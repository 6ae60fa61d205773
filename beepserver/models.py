"""Business models: clusters, components, tasks and their metrics."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Optional


class ServiceError(Exception):
    """Base class for errors reported by the service layer."""


class ValidationError(ServiceError):
    """Raised when a model fails validation."""


class EnvironmentType(str, Enum):
    TEST = "test"
    DEV = "dev"
    SIT = "sit"
    PROD = "prod"


class ClusterStatus(IntEnum):
    DOWN = 0
    UP = 1


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _require_mapping(data: Any, what: str) -> dict:
    if not isinstance(data, dict):
        raise ValidationError(f"{what} must be a JSON object")
    return data


_CLUSTER_KEYS = {
    "name": "name",
    "cn_name": "cnname",
    "master": "master",
    "kube_config": "kubeconfig",
    "status": "status",
    "desc": "desc",
    "creator": "creator",
    "environment": "environment",
}


@dataclass
class ClusterBasic:
    name: str = ""
    cn_name: str = ""
    master: str = ""
    kube_config: str = ""
    status: int = ClusterStatus.DOWN
    desc: str = ""
    creator: str = ""
    environment: str = ""

    def validate(self) -> None:
        if not (self.name and self.cn_name and self.master and self.environment):
            raise ValidationError(" 集群信息填写有误，请校验！")

    @classmethod
    def from_dict(cls, data: Any) -> "ClusterBasic":
        data = _require_mapping(data, "cluster")
        return cls(
            **{
                attr: data[key]
                for attr, key in _CLUSTER_KEYS.items()
                if data.get(key) is not None
            }
        )


@dataclass
class Cluster(ClusterBasic):
    id: int = 0
    deleted: bool = False
    created_at: Optional[datetime] = None
    update_at: Optional[datetime] = None

    def with_creator(self, user: str) -> "Cluster":
        self.creator = user
        self.update_at = datetime.now()
        return self

    def apply_to(self, current: "Cluster") -> "Cluster":
        """Copy the editable fields of this cluster onto current and return it."""
        current.master = self.master
        current.cn_name = self.cn_name
        current.kube_config = self.kube_config
        current.desc = self.desc
        current.status = self.status
        current.environment = self.environment
        current.update_at = datetime.now()
        return current

    def to_dict(self) -> dict:
        data = {key: getattr(self, attr) for attr, key in _CLUSTER_KEYS.items()}
        data["status"] = int(self.status)
        data.update(
            id=self.id,
            deleted=self.deleted,
            createdat=_iso(self.created_at),
            updateat=_iso(self.update_at),
        )
        return data


_PROGRAM_SPEC_KEYS = {
    "name": "Name",
    "type": "Type",
    "attach_type": "AttachType",
    "attach_to": "AttachTo",
    "section_name": "SectionName",
    "flags": "Flags",
    "license": "License",
    "kernel_version": "KernelVersion",
}

_MAP_SPEC_KEYS = {
    "name": "Name",
    "type": "Type",
    "key_size": "KeySize",
    "value_size": "ValueSize",
    "max_entries": "MaxEntries",
    "flags": "Flags",
    "pinning": "Pinning",
}


@dataclass
class ProgramSpec:
    name: str = ""
    type: int = 0
    attach_type: int = 0
    attach_to: str = ""
    section_name: str = ""
    flags: int = 0
    license: str = ""
    kernel_version: int = 0


@dataclass
class Program:
    id: int = 0
    name: str = ""
    description: str = ""
    spec: ProgramSpec = field(default_factory=ProgramSpec)
    properties: dict = field(default_factory=dict)


@dataclass
class MapSpec:
    name: str = ""
    type: int = 0
    key_size: int = 0
    value_size: int = 0
    max_entries: int = 0
    flags: int = 0
    pinning: int = 0


@dataclass
class Map:
    id: int = 0
    name: str = ""
    description: str = ""
    spec: MapSpec = field(default_factory=MapSpec)
    properties: dict = field(default_factory=dict)


def _spec_from_dict(spec_cls: type, keys: dict, data: Any) -> Any:
    if data is None:
        return spec_cls()
    data = _require_mapping(data, "spec")
    return spec_cls(
        **{attr: data[key] for attr, key in keys.items() if data.get(key) is not None}
    )


def _spec_to_dict(spec: Any, keys: dict) -> dict:
    return {key: getattr(spec, attr) for attr, key in keys.items()}


def _program_from_dict(data: Any) -> Program:
    data = _require_mapping(data, "program")
    return Program(
        id=data.get("id") or 0,
        name=data.get("name") or "",
        description=data.get("description") or "",
        spec=_spec_from_dict(ProgramSpec, _PROGRAM_SPEC_KEYS, data.get("spec")),
        properties=dict(data.get("properties") or {}),
    )


def _map_from_dict(data: Any) -> Map:
    data = _require_mapping(data, "map")
    return Map(
        id=data.get("id") or 0,
        name=data.get("name") or "",
        description=data.get("description") or "",
        spec=_spec_from_dict(MapSpec, _MAP_SPEC_KEYS, data.get("spec")),
        properties=dict(data.get("properties") or {}),
    )


@dataclass
class Component:
    id: int = 0
    name: str = ""
    cluster_id: int = 0
    binary_path: str = ""
    programs: list[Program] = field(default_factory=list)
    maps: list[Map] = field(default_factory=list)

    def validate(self) -> None:
        if not self.name:
            raise ValidationError("组件名称不能为空")

    @classmethod
    def from_dict(cls, data: Any) -> "Component":
        data = _require_mapping(data, "component")
        return cls(
            id=data.get("id") or 0,
            name=data.get("name") or "",
            cluster_id=data.get("cluster_id") or 0,
            binary_path=data.get("binary_path") or "",
            programs=[_program_from_dict(p) for p in data.get("programs") or []],
            maps=[_map_from_dict(m) for m in data.get("maps") or []],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "cluster_id": self.cluster_id,
            "binary_path": self.binary_path,
            "programs": [
                {
                    "id": p.id,
                    "name": p.name,
                    "description": p.description,
                    "spec": _spec_to_dict(p.spec, _PROGRAM_SPEC_KEYS),
                    "properties": dict(p.properties),
                }
                for p in self.programs
            ],
            "maps": [
                {
                    "id": m.id,
                    "name": m.name,
                    "description": m.description,
                    "spec": _spec_to_dict(m.spec, _MAP_SPEC_KEYS),
                    "properties": dict(m.properties),
                }
                for m in self.maps
            ],
        }


@dataclass
class MetricPoint:
    timestamp: datetime
    value: float
    program_name: str = ""


def _point_to_dict(point: MetricPoint) -> dict:
    return {
        "timestamp": _iso(point.timestamp),
        "value": point.value,
        "program_name": point.program_name,
    }


_METRIC_SERIES = (
    "avg_run_time_ns",
    "cpu_usage",
    "events_per_second",
    "period_ns",
    "total_avg_run_time_ns",
)


@dataclass
class TaskMetrics:
    avg_run_time_ns: list[MetricPoint] = field(default_factory=list)
    cpu_usage: list[MetricPoint] = field(default_factory=list)
    events_per_second: list[MetricPoint] = field(default_factory=list)
    period_ns: list[MetricPoint] = field(default_factory=list)
    total_avg_run_time_ns: list[MetricPoint] = field(default_factory=list)

    def extend(self, other: "TaskMetrics") -> "TaskMetrics":
        """Append every series of other to the matching series here."""
        for name in _METRIC_SERIES:
            getattr(self, name).extend(getattr(other, name))
        return self

    def to_dict(self) -> dict:
        return {
            name: [_point_to_dict(p) for p in getattr(self, name)]
            for name in _METRIC_SERIES
        }


class TaskStep(IntEnum):
    INIT = 0
    LOAD = 1
    START = 2
    STATS = 3
    METRICS = 4
    STOP = 5


class TaskStatus(IntEnum):
    PENDING = 0
    RUNNING = 1
    SUCCESS = 2
    FAILED = 3


@dataclass
class ComProgStatus:
    id: int = 0
    task_id: int = 0
    component_id: int = 0
    component_name: str = ""
    program_id: int = 0
    program_name: str = ""
    attach_id: int = 0
    status: TaskStatus = TaskStatus.PENDING
    error: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def _prog_status_to_dict(ps: ComProgStatus) -> dict:
    return {
        "id": ps.id,
        "task_id": ps.task_id,
        "component_id": ps.component_id,
        "component_name": ps.component_name,
        "program_id": ps.program_id,
        "program_name": ps.program_name,
        "attach_id": ps.attach_id,
        "status": int(ps.status),
        "error": ps.error,
        "created_at": _iso(ps.created_at),
        "updated_at": _iso(ps.updated_at),
    }


@dataclass
class Task:
    id: int = 0
    name: str = ""
    description: str = ""
    component_id: int = 0
    component_name: str = ""
    step: TaskStep = TaskStep.INIT
    status: TaskStatus = TaskStatus.PENDING
    error: str = ""
    prog_status: list[ComProgStatus] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def validate(self) -> None:
        if self.component_id == 0:
            raise ValidationError("component_id is required")
        if not self.component_name:
            raise ValidationError("name is required")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "component_id": self.component_id,
            "component_name": self.component_name,
            "step": int(self.step),
            "status": int(self.status),
            "error": self.error,
            "prog_status": [_prog_status_to_dict(ps) for ps in self.prog_status],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class RunningTask:
    """A task being executed, with the event that asks it to stop."""

    task: Task
    stop_event: threading.Event = field(default_factory=threading.Event)
    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger("beepserver.task")
    )
    loader: Any = None


@dataclass
class Query:
    page_size: int = 0
    page_num: int = 0