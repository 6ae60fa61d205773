"""Persistence of components with their programs and maps."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from .database import NotFoundError, session_scope
from .models import Component, Query, ServiceError
from .records import (
    ComponentRecord,
    MapPropertiesRecord,
    MapRecord,
    MapSpecRecord,
    ProgramPropertiesRecord,
    ProgramRecord,
    ProgramSpecRecord,
)

_PIN_NAMES = {0: "PinNone", 1: "PinByName"}


def _pin_type_name(value: int) -> str:
    return _PIN_NAMES.get(value, f"PinType({value})")


def _load_options() -> tuple:
    return (
        selectinload(ComponentRecord.programs).selectinload(ProgramRecord.spec),
        selectinload(ComponentRecord.programs).selectinload(ProgramRecord.properties),
        selectinload(ComponentRecord.maps).selectinload(MapRecord.spec),
        selectinload(ComponentRecord.maps).selectinload(MapRecord.properties),
    )


class ComponentStore:
    """Reads and writes components; deletion is a soft delete."""

    def get(self, component_id: int) -> Component:
        try:
            with session_scope() as session:
                record = session.scalars(
                    select(ComponentRecord)
                    .options(*_load_options())
                    .where(ComponentRecord.deleted == 0, ComponentRecord.id == component_id)
                ).first()
                if record is None:
                    raise NotFoundError("record not found")
                return record.to_component()
        except SQLAlchemyError as exc:
            raise ServiceError(str(exc)) from exc

    def list(self, query: Optional[Query] = None) -> tuple[int, list[Component]]:
        """Return the number of live components and the requested page of them."""
        try:
            with session_scope() as session:
                total = session.scalar(
                    select(func.count())
                    .select_from(ComponentRecord)
                    .where(ComponentRecord.deleted == 0)
                )
                stmt = (
                    select(ComponentRecord.id)
                    .where(ComponentRecord.deleted == 0)
                    .order_by(ComponentRecord.id)
                )
                if query is not None and query.page_size > 0:
                    offset = max((query.page_num - 1) * query.page_size, 0)
                    stmt = stmt.offset(offset).limit(query.page_size)
                ids = list(session.scalars(stmt))
        except SQLAlchemyError as exc:
            raise ServiceError(str(exc)) from exc

        components = []
        for component_id in ids:
            try:
                components.append(self.get(component_id))
            except ServiceError as exc:
                raise ServiceError(f"获取组件 {component_id} 失败: {exc}") from exc
        return int(total or 0), components

    def create(self, component: Component) -> Component:
        """Store component with all its programs and maps in one transaction."""
        try:
            with session_scope() as session:
                record = ComponentRecord(
                    name=component.name,
                    cluster_id=component.cluster_id,
                    binary_path=component.binary_path,
                )
                session.add(record)
                session.flush()

                for program in component.programs:
                    program_record = ProgramRecord(
                        component_id=record.id,
                        name=program.name,
                        description=program.description,
                    )
                    session.add(program_record)
                    session.flush()
                    spec = program.spec
                    session.add(
                        ProgramSpecRecord(
                            program_id=program_record.id,
                            name=spec.name,
                            type=spec.type,
                            attach_type=spec.attach_type,
                            attach_to=spec.attach_to,
                            section_name=spec.section_name,
                            flags=spec.flags,
                            license=spec.license,
                            kernel_version=spec.kernel_version,
                        )
                    )
                    session.add(
                        ProgramPropertiesRecord(
                            program_id=program_record.id,
                            properties_json=dict(program.properties),
                        )
                    )
                    session.flush()

                for bpf_map in component.maps:
                    map_record = MapRecord(
                        component_id=record.id,
                        name=bpf_map.name,
                        description=bpf_map.description,
                    )
                    session.add(map_record)
                    session.flush()
                    spec = bpf_map.spec
                    session.add(
                        MapSpecRecord(
                            map_id=map_record.id,
                            name=spec.name,
                            type=spec.type,
                            key_size=spec.key_size,
                            value_size=spec.value_size,
                            max_entries=spec.max_entries,
                            flags=spec.flags,
                            pinning=_pin_type_name(spec.pinning),
                        )
                    )
                    session.add(
                        MapPropertiesRecord(
                            map_id=map_record.id,
                            properties_json=dict(bpf_map.properties),
                        )
                    )
                    session.flush()
        except SQLAlchemyError as exc:
            raise ServiceError(str(exc)) from exc
        return component

    def delete(self, component: Component) -> None:
        """Mark the component, its programs and maps and their details as deleted."""
        try:
            with session_scope() as session:
                program_ids = list(
                    session.scalars(
                        select(ProgramRecord.id).where(
                            ProgramRecord.component_id == component.id,
                            ProgramRecord.deleted == 0,
                        )
                    )
                )
                map_ids = list(
                    session.scalars(
                        select(MapRecord.id).where(
                            MapRecord.component_id == component.id,
                            MapRecord.deleted == 0,
                        )
                    )
                )
                if program_ids:
                    session.execute(
                        update(ProgramRecord)
                        .where(ProgramRecord.id.in_(program_ids))
                        .values(deleted=1)
                    )
                    session.execute(
                        update(ProgramSpecRecord)
                        .where(ProgramSpecRecord.program_id.in_(program_ids))
                        .values(deleted=1)
                    )
                    session.execute(
                        update(ProgramPropertiesRecord)
                        .where(ProgramPropertiesRecord.program_id.in_(program_ids))
                        .values(deleted=1)
                    )
                if map_ids:
                    session.execute(
                        update(MapRecord).where(MapRecord.id.in_(map_ids)).values(deleted=1)
                    )
                    session.execute(
                        update(MapSpecRecord)
                        .where(MapSpecRecord.map_id.in_(map_ids))
                        .values(deleted=1)
                    )
                    session.execute(
                        update(MapPropertiesRecord)
                        .where(MapPropertiesRecord.map_id.in_(map_ids))
                        .values(deleted=1)
                    )
                session.execute(
                    update(ComponentRecord)
                    .where(ComponentRecord.id == component.id)
                    .values(deleted=1)
                )
        except SQLAlchemyError as exc:
            raise ServiceError(str(exc)) from exc