"""Business operations on clusters."""

from __future__ import annotations

from typing import Optional

from .cluster_store import ClusterStore
from .models import Cluster, ClusterBasic, Query, ServiceError, ValidationError

_ERRORS = (ServiceError, ValidationError)


def _wrapped(message: str, exc: BaseException) -> ServiceError:
    return ServiceError(f"{message}: {exc}")


class ClusterOperator:
    """Validates clusters and passes them to the cluster store."""

    def __init__(self, store: Optional[ClusterStore] = None, user: str = "") -> None:
        self.store = store if store is not None else ClusterStore()
        self.user = user
        self.cluster: Optional[Cluster] = None
        self.query: Optional[Query] = None

    def with_cluster(self, cluster: Cluster) -> "ClusterOperator":
        self.cluster = cluster
        return self

    def with_query(self, query: Query) -> "ClusterOperator":
        self.query = query
        return self

    def _check_cluster(self) -> None:
        if self.cluster is None:
            raise ServiceError("真实集群校验失败: cluster is missing")
        try:
            ClusterBasic.validate(self.cluster)
        except _ERRORS as exc:
            raise _wrapped("真实集群校验失败", exc) from exc

    def create(self) -> Cluster:
        """Validate and store the cluster, recording the operator's user as creator."""
        try:
            self._check_cluster()
        except ServiceError as exc:
            raise _wrapped("检查真实集群参数失败", exc) from exc
        cluster = self.cluster.with_creator(self.user)
        try:
            self.store.create(cluster)
        except ServiceError as exc:
            raise _wrapped(f"新增真实集群 {cluster.name} 失败", exc) from exc
        return cluster

    def update(self, cluster_id: int) -> None:
        """Copy the editable fields of the operator's cluster onto cluster_id."""
        try:
            self._check_cluster()
        except ServiceError as exc:
            raise _wrapped("检查真实集群参数失败", exc) from exc
        try:
            current = self.store.get(cluster_id)
        except ServiceError as exc:
            raise _wrapped("获取虚拟集群信息失败", exc) from exc
        try:
            self.store.update(self.cluster.apply_to(current))
        except ServiceError as exc:
            raise _wrapped(f"更新真实集群 {current.name} 失败", exc) from exc

    def delete(self, cluster_id: int) -> None:
        try:
            current = self.store.get(cluster_id)
        except ServiceError as exc:
            raise _wrapped("获取真实集群信息失败", exc) from exc
        try:
            self.store.delete(cluster_id)
        except ServiceError as exc:
            raise _wrapped(f"删除虚拟集群 {current.name} 失败", exc) from exc

    def get(self, cluster_id: int) -> Cluster:
        return self.store.get(cluster_id)

    def list(self, filters: Optional[dict] = None) -> tuple[int, list[Cluster]]:
        """Return the total and the page selected by the operator's query."""
        page_size = self.query.page_size if self.query is not None else 0
        page_num = self.query.page_num if self.query is not None else 0
        try:
            return self.store.list(page_size, page_num, filters)
        except ServiceError as exc:
            raise _wrapped("获取真实集群失败", exc) from exc

    def get_by_name(self, name: str) -> tuple[Optional[Cluster], bool]:
        """Return the only cluster called name and whether it was found."""
        total, clusters = self.list({"cluster_name": name})
        if total != 1:
            raise ServiceError(f"真实集群 {name} 查询结果不唯一，请联系管理员")
        for cluster in clusters:
            if cluster.name == name:
                return cluster, True
        return None, False