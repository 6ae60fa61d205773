from dataclasses import replace

import pytest
from sqlalchemy import select

from beepserver import database
from beepserver.component_store import ComponentStore
from beepserver.database import NotFoundError, session_scope
from beepserver.models import (
    Component,
    Map,
    MapSpec,
    Program,
    ProgramSpec,
    Query,
    ServiceError,
)
from beepserver.records import Base, MapSpecRecord, ProgramRecord


@pytest.fixture
def store():
    engine = database.setup(url="sqlite://")
    Base.metadata.create_all(engine)
    yield ComponentStore()
    engine.dispose()


def _component(name="sched"):
    return Component(
        name=name,
        cluster_id=3,
        binary_path="./binary/sched.o",
        programs=[
            Program(
                name="handle_switch",
                description="Program handle_switch",
                spec=ProgramSpec(
                    name="handle_switch",
                    type=26,
                    attach_type=24,
                    attach_to="sched_switch",
                    section_name="tp_btf/sched_switch",
                    flags=0,
                    license="GPL",
                    kernel_version=0,
                ),
                properties={"pin_path": "/sys/fs/bpf/sched"},
            )
        ],
        maps=[
            Map(
                name="sched_events",
                description="Map sched_events",
                spec=MapSpec(
                    name="sched_events",
                    type=27,
                    key_size=0,
                    value_size=0,
                    max_entries=4096,
                    flags=0,
                    pinning=1,
                ),
                properties={"pin_path": ""},
            )
        ],
    )


def _only_id(store):
    _, components = store.list(None)
    return components[0].id


def test_create_round_trips_through_get(store):
    original = _component()
    returned = store.create(original)
    assert returned is original
    got = store.get(_only_id(store))
    assert got.name == original.name
    assert got.cluster_id == original.cluster_id
    assert got.binary_path == original.binary_path
    assert got.programs[0].name == original.programs[0].name
    assert got.programs[0].spec == original.programs[0].spec
    assert got.programs[0].properties == original.programs[0].properties
    assert got.maps[0].properties == original.maps[0].properties


def test_map_pinning_stored_by_name_and_read_back_as_default(store):
    original = _component()
    store.create(original)
    with session_scope() as session:
        stored = session.scalar(select(MapSpecRecord.pinning))
    assert stored == "PinByName"
    got = store.get(_only_id(store))
    assert got.maps[0].spec == replace(original.maps[0].spec, pinning=0)


def test_get_missing_raises(store):
    with pytest.raises(NotFoundError):
        store.get(7)


def test_duplicate_name_raises(store):
    store.create(_component("same"))
    with pytest.raises(ServiceError):
        store.create(_component("same"))
    total, _ = store.list(None)
    assert total == 1


def test_list_pages(store):
    for name in ("a", "b", "c"):
        store.create(_component(name))
    total, everything = store.list(None)
    assert total == 3
    assert [c.name for c in everything] == ["a", "b", "c"]
    total, page = store.list(Query(page_size=2, page_num=2))
    assert total == 3
    assert [c.name for c in page] == ["c"]
    total, first = store.list(Query(page_size=2, page_num=0))
    assert [c.name for c in first] == ["a", "b"]


def test_delete_marks_everything_deleted(store):
    store.create(_component())
    component = store.get(_only_id(store))
    store.delete(component)
    with pytest.raises(NotFoundError):
        store.get(component.id)
    assert store.list(None) == (0, [])
    with session_scope() as session:
        flags = list(session.scalars(select(ProgramRecord.deleted)))
    assert flags == [1]