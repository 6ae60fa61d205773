from datetime import datetime

import pytest

from beepserver import database
from beepserver.cluster_store import (
    ClusterStore,
    build_delete_fields,
    build_update_fields,
)
from beepserver.database import NotFoundError
from beepserver.models import Cluster, ClusterBasic, ServiceError
from beepserver.records import Base


@pytest.fixture
def store():
    engine = database.setup(url="sqlite://")
    Base.metadata.create_all(engine)
    yield ClusterStore()
    engine.dispose()


def _cluster(name="alpha", **overrides):
    values = dict(
        name=name,
        cn_name="阿尔法",
        master="https://10.0.0.1:6443",
        kube_config="apiVersion: v1",
        desc="first",
        creator="admin",
        environment="dev",
        status=1,
    )
    values.update(overrides)
    return Cluster(**values)


def test_create_assigns_id_and_get_round_trips(store):
    cluster = _cluster()
    store.create(cluster)
    assert cluster.id > 0
    got = store.get(cluster.id)
    assert got.name == cluster.name
    assert got.cn_name == cluster.cn_name
    assert got.master == cluster.master
    assert got.kube_config == cluster.kube_config
    assert got.environment == cluster.environment
    assert got.status == 1
    assert got.deleted is False


def test_get_missing_raises(store):
    with pytest.raises(NotFoundError):
        store.get(42)


def test_list_filters_and_pages(store):
    for name in ("a", "b", "c"):
        store.create(_cluster(name=name))
    total, clusters = store.list(0, 0, None)
    assert total == 3
    assert [c.name for c in clusters] == ["a", "b", "c"]

    total, page = store.list(2, 2, None)
    assert total == 3
    assert [c.name for c in page] == ["c"]

    total, only = store.list(0, 0, {"cluster_name": "b"})
    assert total == 1
    assert only[0].name == "b"


def test_list_by_id_filter(store):
    first = _cluster(name="x")
    second = _cluster(name="y")
    store.create(first)
    store.create(second)
    total, found = store.list(0, 0, {"id": second.id})
    assert total == 1
    assert found[0].id == second.id


def test_list_unknown_filter_raises(store):
    with pytest.raises(ServiceError):
        store.list(0, 0, {"no_such_column": 1})


def test_update_writes_only_editable_columns(store):
    original = _cluster()
    store.create(original)
    stamp = datetime(2024, 1, 2, 3, 4, 5)
    edited = _cluster(
        master="https://10.0.0.2:6443",
        cn_name="changed",
        desc="second",
        status=0,
        environment="prod",
        update_at=stamp,
    )
    edited.id = original.id
    store.update(edited)
    got = store.get(original.id)
    assert got.master == edited.master
    assert got.desc == edited.desc
    assert got.status == 0
    assert got.environment == "prod"
    assert got.update_at == stamp
    assert got.cn_name == original.cn_name


def test_delete_is_soft(store):
    cluster = _cluster()
    store.create(cluster)
    assert store.count() == 1
    store.delete(cluster.id)
    assert store.count() == 0
    with pytest.raises(NotFoundError):
        store.get(cluster.id)
    total, clusters = store.list(0, 0, None)
    assert (total, clusters) == (0, [])


def test_find_by_name(store):
    store.create(_cluster(name="one"))
    store.create(_cluster(name="two"))
    clusters, count = store.find(ClusterBasic(name="two"))
    assert count == 1
    assert clusters[0].name == "two"
    clusters, count = store.find(ClusterBasic())
    assert count == 2
    assert len(clusters) == 2


def test_build_update_fields_columns():
    cluster = _cluster(update_at=datetime(2024, 5, 6))
    fields = build_update_fields(cluster)
    assert set(fields) == {
        "cluster_master",
        "kube_config",
        "cluster_desc",
        "cluster_status",
        "environment",
        "last_update_time",
    }
    assert fields["cluster_master"] == cluster.master
    assert fields["last_update_time"] == cluster.update_at


def test_build_delete_fields():
    assert build_delete_fields() == {"deleted": True}