import pytest

from beepserver.cluster_operator import ClusterOperator
from beepserver.database import NotFoundError, setup
from beepserver.models import Cluster, Query, ServiceError
from beepserver.records import Base


@pytest.fixture(autouse=True)
def database(tmp_path):
    engine = setup(url=f"sqlite:///{tmp_path / 'clusters.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


def _cluster(name="alpha", master="10.0.0.1"):
    return Cluster(name=name, cn_name="集群", master=master, environment="test")


def _create(name="alpha", master="10.0.0.1", user="admin"):
    return ClusterOperator(user=user).with_cluster(_cluster(name, master)).create()


def test_create_stores_cluster_with_creator():
    created = _create(user="operator")
    total, clusters = ClusterOperator().list()
    assert total == 1
    assert clusters[0].name == "alpha"
    assert clusters[0].creator == "operator"
    assert clusters[0].id == created.id


def test_create_rejects_incomplete_cluster():
    broken = Cluster(name="", cn_name="x", master="m", environment="test")
    with pytest.raises(ServiceError, match="检查真实集群参数失败"):
        ClusterOperator().with_cluster(broken).create()
    assert ClusterOperator().list()[0] == 0


def test_update_changes_editable_fields():
    created = _create()
    ClusterOperator().with_cluster(_cluster(master="10.0.0.2")).update(created.id)
    fetched = ClusterOperator().get(created.id)
    assert fetched.master == "10.0.0.2"
    assert fetched.name == "alpha"


def test_update_unknown_cluster_fails():
    with pytest.raises(ServiceError, match="获取虚拟集群信息失败"):
        ClusterOperator().with_cluster(_cluster()).update(404)


def test_delete_hides_cluster():
    created = _create()
    ClusterOperator().delete(created.id)
    with pytest.raises(NotFoundError):
        ClusterOperator().get(created.id)
    assert ClusterOperator().list()[0] == 0


def test_delete_unknown_cluster_fails():
    with pytest.raises(ServiceError, match="获取真实集群信息失败"):
        ClusterOperator().delete(404)


def test_list_uses_query_pages():
    for name in ("a", "b", "c"):
        _create(name=name)
    total, page = ClusterOperator().with_query(Query(page_size=2, page_num=2)).list()
    assert total == 3
    assert [c.name for c in page] == ["c"]


def test_get_by_name_finds_single_match():
    _create(name="alpha")
    _create(name="beta")
    cluster, found = ClusterOperator().get_by_name("beta")
    assert found is True
    assert cluster.name == "beta"


def test_get_by_name_requires_unique_result():
    with pytest.raises(ServiceError, match="查询结果不唯一"):
        ClusterOperator().get_by_name("missing")