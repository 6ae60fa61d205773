"""Database records and their conversion to business models."""

from __future__ import annotations

import json
from datetime import datetime
from enum import IntEnum
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    SmallInteger,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from .database import SCHEMA
from .models import (
    Cluster,
    ComProgStatus,
    Component,
    Map,
    MapSpec,
    Program,
    ProgramSpec,
    Task,
    TaskStatus,
    TaskStep,
)

_ID = BigInteger().with_variant(Integer(), "sqlite")
_SCHEMA_ARGS = {"schema": SCHEMA}


def _fk(table: str) -> str:
    return f"{SCHEMA}.{table}.id"


def _coerce(enum: type[IntEnum], value: Optional[int]) -> Any:
    raw = value or 0
    try:
        return enum(raw)
    except ValueError:
        return raw


class JSONText(TypeDecorator):
    """A dict stored as JSON text."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Optional[str]:
        return json.dumps(value if value is not None else {}, ensure_ascii=False)

    def process_result_value(self, value: Any, dialect: Any) -> dict:
        if value is None:
            return {}
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8")
        return json.loads(value)


class Base(DeclarativeBase):
    pass


class ClusterRecord(Base):
    __tablename__ = "cluster"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[Optional[str]] = mapped_column("cluster_name", String(255), default="")
    cn_name: Mapped[Optional[str]] = mapped_column("cn_name", String(255), default="")
    master: Mapped[Optional[str]] = mapped_column("cluster_master", String(255), default="")
    kube_config: Mapped[Optional[str]] = mapped_column("kube_config", Text, default="")
    status: Mapped[Optional[int]] = mapped_column("cluster_status", Integer, default=0)
    desc: Mapped[Optional[str]] = mapped_column("cluster_desc", String(255), default="")
    creator: Mapped[Optional[str]] = mapped_column(String(255), default="")
    environment: Mapped[Optional[str]] = mapped_column(String(64), default="")
    deleted: Mapped[Optional[bool]] = mapped_column(Boolean, default=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(
        "created_time", DateTime, default=datetime.now
    )
    update_at: Mapped[Optional[datetime]] = mapped_column("last_update_time", DateTime)

    def to_cluster(self) -> Cluster:
        return Cluster(
            name=self.name or "",
            cn_name=self.cn_name or "",
            master=self.master or "",
            kube_config=self.kube_config or "",
            status=int(self.status or 0),
            desc=self.desc or "",
            creator=self.creator or "",
            environment=self.environment or "",
            id=self.id or 0,
            deleted=bool(self.deleted),
            created_at=self.created_at,
            update_at=self.update_at,
        )


class ProgramSpecRecord(Base):
    __tablename__ = "program_spec"
    __table_args__ = _SCHEMA_ARGS

    id: Mapped[int] = mapped_column(_ID, primary_key=True, autoincrement=True)
    program_id: Mapped[Optional[int]] = mapped_column(
        _ID, ForeignKey(_fk("program")), unique=True
    )
    name: Mapped[Optional[str]] = mapped_column(String(255), default="")
    type: Mapped[Optional[int]] = mapped_column(Integer, default=0)
    attach_type: Mapped[Optional[int]] = mapped_column(Integer, default=0)
    attach_to: Mapped[Optional[str]] = mapped_column(String(255), default="")
    section_name: Mapped[Optional[str]] = mapped_column(String(255), default="")
    flags: Mapped[Optional[int]] = mapped_column(BigInteger, default=0)
    license: Mapped[Optional[str]] = mapped_column(String(255), default="")
    kernel_version: Mapped[Optional[int]] = mapped_column(BigInteger, default=0)
    deleted: Mapped[Optional[int]] = mapped_column(SmallInteger, default=0)
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, default=datetime.now)
    last_update_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now
    )

    def to_program_spec(self) -> ProgramSpec:
        return ProgramSpec(
            name=self.name or "",
            type=self.type or 0,
            attach_type=self.attach_type or 0,
            attach_to=self.attach_to or "",
            section_name=self.section_name or "",
            flags=self.flags or 0,
            license=self.license or "",
            kernel_version=self.kernel_version or 0,
        )


class ProgramPropertiesRecord(Base):
    __tablename__ = "program_properties"
    __table_args__ = _SCHEMA_ARGS

    id: Mapped[int] = mapped_column(_ID, primary_key=True, autoincrement=True)
    program_id: Mapped[Optional[int]] = mapped_column(
        _ID, ForeignKey(_fk("program")), unique=True
    )
    properties_json: Mapped[Optional[dict]] = mapped_column(JSONText)
    deleted: Mapped[Optional[int]] = mapped_column(SmallInteger, default=0)
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, default=datetime.now)
    last_update_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now
    )


class ProgramRecord(Base):
    __tablename__ = "program"
    __table_args__ = _SCHEMA_ARGS

    id: Mapped[int] = mapped_column(_ID, primary_key=True, autoincrement=True)
    component_id: Mapped[Optional[int]] = mapped_column(
        _ID, ForeignKey(_fk("component")), index=True
    )
    name: Mapped[Optional[str]] = mapped_column(String(255), default="")
    description: Mapped[Optional[str]] = mapped_column(String(1024), default="")
    deleted: Mapped[Optional[int]] = mapped_column(SmallInteger, default=0)
    creator: Mapped[Optional[str]] = mapped_column(String(255), default="")
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, default=datetime.now)
    last_update_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now
    )

    spec: Mapped[Optional[ProgramSpecRecord]] = relationship(uselist=False)
    properties: Mapped[Optional[ProgramPropertiesRecord]] = relationship(uselist=False)

    def to_program(self) -> Program:
        spec = self.spec.to_program_spec() if self.spec is not None else ProgramSpec()
        props = self.properties.properties_json if self.properties is not None else None
        return Program(
            id=self.id or 0,
            name=self.name or "",
            description=self.description or "",
            spec=spec,
            properties=dict(props or {}),
        )


class MapSpecRecord(Base):
    __tablename__ = "map_spec"
    __table_args__ = _SCHEMA_ARGS

    id: Mapped[int] = mapped_column(_ID, primary_key=True, autoincrement=True)
    map_id: Mapped[Optional[int]] = mapped_column(_ID, ForeignKey(_fk("map")), unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), default="")
    type: Mapped[Optional[int]] = mapped_column(Integer, default=0)
    key_size: Mapped[Optional[int]] = mapped_column(BigInteger, default=0)
    value_size: Mapped[Optional[int]] = mapped_column(BigInteger, default=0)
    max_entries: Mapped[Optional[int]] = mapped_column(BigInteger, default=0)
    flags: Mapped[Optional[int]] = mapped_column(BigInteger, default=0)
    pinning: Mapped[Optional[str]] = mapped_column(String(64), default="")
    deleted: Mapped[Optional[int]] = mapped_column(SmallInteger, default=0)
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, default=datetime.now)
    last_update_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now
    )

    def to_map_spec(self) -> MapSpec:
        # The stored pin type name is not mapped back; pinning stays at its default.
        return MapSpec(
            name=self.name or "",
            type=self.type or 0,
            key_size=self.key_size or 0,
            value_size=self.value_size or 0,
            max_entries=self.max_entries or 0,
            flags=self.flags or 0,
            pinning=0,
        )


class MapPropertiesRecord(Base):
    __tablename__ = "map_properties"
    __table_args__ = _SCHEMA_ARGS

    id: Mapped[int] = mapped_column(_ID, primary_key=True, autoincrement=True)
    map_id: Mapped[Optional[int]] = mapped_column(_ID, ForeignKey(_fk("map")), unique=True)
    properties_json: Mapped[Optional[dict]] = mapped_column(JSONText)
    deleted: Mapped[Optional[int]] = mapped_column(SmallInteger, default=0)
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, default=datetime.now)
    last_update_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now
    )


class MapRecord(Base):
    __tablename__ = "map"
    __table_args__ = _SCHEMA_ARGS

    id: Mapped[int] = mapped_column(_ID, primary_key=True, autoincrement=True)
    component_id: Mapped[Optional[int]] = mapped_column(
        _ID, ForeignKey(_fk("component")), index=True
    )
    name: Mapped[Optional[str]] = mapped_column(String(255), default="")
    description: Mapped[Optional[str]] = mapped_column(String(1024), default="")
    deleted: Mapped[Optional[int]] = mapped_column(SmallInteger, default=0)
    creator: Mapped[Optional[str]] = mapped_column(String(255), default="")
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, default=datetime.now)
    last_update_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now
    )

    spec: Mapped[Optional[MapSpecRecord]] = relationship(uselist=False)
    properties: Mapped[Optional[MapPropertiesRecord]] = relationship(uselist=False)

    def to_map(self) -> Map:
        spec = self.spec.to_map_spec() if self.spec is not None else MapSpec()
        props = self.properties.properties_json if self.properties is not None else None
        return Map(
            id=self.id or 0,
            name=self.name or "",
            description=self.description or "",
            spec=spec,
            properties=dict(props or {}),
        )


class ComponentRecord(Base):
    __tablename__ = "component"
    __table_args__ = _SCHEMA_ARGS

    id: Mapped[int] = mapped_column(_ID, primary_key=True, autoincrement=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    binary_path: Mapped[Optional[str]] = mapped_column(String(1024), default="")
    deleted: Mapped[Optional[int]] = mapped_column(SmallInteger, default=0)
    creator: Mapped[Optional[str]] = mapped_column(String(255), default="")
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, default=datetime.now)
    last_update_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now
    )
    cluster_id: Mapped[Optional[int]] = mapped_column(_ID, default=0)

    programs: Mapped[list[ProgramRecord]] = relationship(order_by=ProgramRecord.id)
    maps: Mapped[list[MapRecord]] = relationship(order_by=MapRecord.id)

    def to_component(self) -> Component:
        return Component(
            id=self.id or 0,
            name=self.name or "",
            cluster_id=self.cluster_id or 0,
            binary_path=self.binary_path or "",
            programs=[p.to_program() for p in self.programs],
            maps=[m.to_map() for m in self.maps],
        )


class TaskProgStatusRecord(Base):
    __tablename__ = "task_program_status"
    __table_args__ = _SCHEMA_ARGS

    id: Mapped[int] = mapped_column(_ID, primary_key=True, autoincrement=True)
    task_id: Mapped[Optional[int]] = mapped_column(_ID, ForeignKey(_fk("task")), index=True)
    component_id: Mapped[Optional[int]] = mapped_column(_ID, index=True, default=0)
    component_name: Mapped[Optional[str]] = mapped_column(String(255), default="")
    program_id: Mapped[Optional[int]] = mapped_column(_ID, index=True, default=0)
    program_name: Mapped[Optional[str]] = mapped_column(String(255), default="")
    status: Mapped[Optional[int]] = mapped_column(Integer, default=0, comment="状态")
    error: Mapped[Optional[str]] = mapped_column(Text, default="")
    deleted: Mapped[Optional[int]] = mapped_column(SmallInteger, default=0)
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, default=datetime.now)
    last_update_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now
    )

    def to_prog_status(self) -> ComProgStatus:
        return ComProgStatus(
            id=self.id or 0,
            task_id=self.task_id or 0,
            component_id=self.component_id or 0,
            component_name=self.component_name or "",
            program_id=self.program_id or 0,
            program_name=self.program_name or "",
            status=_coerce(TaskStatus, self.status),
            error=self.error or "",
            created_at=self.created_time,
            updated_at=self.last_update_time,
        )


class TaskRecord(Base):
    __tablename__ = "task"
    __table_args__ = _SCHEMA_ARGS

    id: Mapped[int] = mapped_column(_ID, primary_key=True, autoincrement=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), default="")
    description: Mapped[Optional[str]] = mapped_column(Text, default="")
    component_id: Mapped[Optional[int]] = mapped_column(_ID, index=True, default=0)
    component_name: Mapped[Optional[str]] = mapped_column(String(255), default="")
    step: Mapped[Optional[int]] = mapped_column(Integer, default=0, comment="任务步骤")
    status: Mapped[Optional[int]] = mapped_column(Integer, default=0, comment="任务状态")
    error: Mapped[Optional[str]] = mapped_column(Text, default="")
    deleted: Mapped[Optional[int]] = mapped_column(SmallInteger, default=0)
    creator: Mapped[Optional[str]] = mapped_column(String(255), default="")
    created_time: Mapped[Optional[datetime]] = mapped_column(DateTime, default=datetime.now)
    last_update_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now
    )

    prog_statuses: Mapped[list[TaskProgStatusRecord]] = relationship(
        order_by=TaskProgStatusRecord.id
    )

    def to_task(self) -> Task:
        return Task(
            id=self.id or 0,
            name=self.name or "",
            description=self.description or "",
            component_id=self.component_id or 0,
            component_name=self.component_name or "",
            step=_coerce(TaskStep, self.step),
            status=_coerce(TaskStatus, self.status),
            error=self.error or "",
            prog_status=[ps.to_prog_status() for ps in self.prog_statuses],
            created_at=self.created_time,
            updated_at=self.last_update_time,
        )

    @classmethod
    def from_task(cls, task: Task) -> "TaskRecord":
        """Build a record, with its program statuses, from a task."""
        return cls(
            id=task.id or None,
            name=task.name,
            description=task.description,
            component_id=task.component_id,
            component_name=task.component_name,
            step=int(task.step),
            status=int(task.status),
            error=task.error,
            created_time=task.created_at,
            last_update_time=task.updated_at,
            prog_statuses=[
                TaskProgStatusRecord(
                    id=ps.id or None,
                    task_id=ps.task_id or None,
                    component_id=ps.component_id,
                    component_name=ps.component_name,
                    program_id=ps.program_id,
                    program_name=ps.program_name,
                    status=int(ps.status),
                    error=ps.error,
                    created_time=ps.created_at,
                    last_update_time=ps.updated_at,
                )
                for ps in task.prog_status
            ],
        )