"""Persistence of clusters in the cluster table."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import false, func, select, true, update
from sqlalchemy.exc import SQLAlchemyError

from .database import NotFoundError, session_scope
from .models import Cluster, ClusterBasic, ServiceError
from .records import ClusterRecord

_TABLE = ClusterRecord.__table__
_COLUMNS = _TABLE.c

CLUSTER_MASTER = "cluster_master"
CLUSTER_KUBE_CONFIG = "kube_config"
CLUSTER_DESC = "cluster_desc"
CLUSTER_STATUS = "cluster_status"
CLUSTER_ENV = "environment"
CLUSTER_DELETED = "deleted"
CLUSTER_UPDATE_AT = "last_update_time"


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def build_update_fields(cluster: Cluster) -> dict:
    """Return the column values written when a cluster is updated."""
    return {
        CLUSTER_MASTER: cluster.master,
        CLUSTER_KUBE_CONFIG: cluster.kube_config,
        CLUSTER_DESC: cluster.desc,
        CLUSTER_STATUS: int(cluster.status),
        CLUSTER_ENV: _plain(cluster.environment),
        CLUSTER_UPDATE_AT: cluster.update_at,
    }


def build_delete_fields() -> dict:
    """Return the column values that mark a cluster as deleted."""
    return {CLUSTER_DELETED: True}


def _record_from_cluster(cluster: Cluster) -> ClusterRecord:
    values: dict[str, Any] = {
        "name": cluster.name,
        "cn_name": cluster.cn_name,
        "master": cluster.master,
        "kube_config": cluster.kube_config,
        "status": int(cluster.status),
        "desc": cluster.desc,
        "creator": cluster.creator,
        "environment": _plain(cluster.environment),
        "deleted": bool(cluster.deleted),
        "update_at": cluster.update_at,
    }
    if cluster.created_at is not None:
        values["created_at"] = cluster.created_at
    if cluster.id:
        values["id"] = cluster.id
    return ClusterRecord(**values)


class ClusterStore:
    """Reads and writes clusters; deletion is a soft delete."""

    def create(self, cluster: Cluster) -> None:
        try:
            with session_scope() as session:
                record = _record_from_cluster(cluster)
                session.add(record)
                session.flush()
                cluster.id = record.id
        except SQLAlchemyError as exc:
            raise ServiceError(f"写入数据库失败: {exc}") from exc

    def list(
        self,
        page_size: int = 0,
        page_num: int = 0,
        filters: Optional[dict] = None,
    ) -> tuple[int, list[Cluster]]:
        """Return the total number of matching clusters and the requested page."""
        criteria: dict[str, Any] = {CLUSTER_DELETED: False}
        criteria.update(filters or {})
        conditions = []
        for key, value in criteria.items():
            if key not in _COLUMNS:
                raise ServiceError(f"读取数据库失败: unknown column {key!r}")
            conditions.append(_COLUMNS[key] == value)

        try:
            with session_scope() as session:
                try:
                    total = session.scalar(
                        select(func.count()).select_from(_TABLE).where(*conditions)
                    )
                except SQLAlchemyError as exc:
                    raise ServiceError(f"获取真实集群总数失败: {exc}") from exc
                stmt = select(ClusterRecord).where(*conditions).order_by(ClusterRecord.id)
                if page_size > 0 and page_num > 0:
                    stmt = stmt.offset((page_num - 1) * page_size).limit(page_size)
                clusters = [r.to_cluster() for r in session.scalars(stmt)]
        except SQLAlchemyError as exc:
            raise ServiceError(f"读取数据库失败: {exc}") from exc
        return int(total or 0), clusters

    def get(self, cluster_id: int) -> Cluster:
        try:
            with session_scope() as session:
                record = session.scalars(
                    select(ClusterRecord).where(
                        _COLUMNS.deleted == false(), _COLUMNS.id == cluster_id
                    )
                ).first()
                if record is None:
                    raise NotFoundError("读取数据库失败: record not found")
                return record.to_cluster()
        except SQLAlchemyError as exc:
            raise ServiceError(f"读取数据库失败: {exc}") from exc

    def count(self) -> int:
        try:
            with session_scope() as session:
                total = session.scalar(
                    select(func.count()).select_from(_TABLE).where(_COLUMNS.deleted == false())
                )
        except SQLAlchemyError as exc:
            raise ServiceError(f"获取真实集群总数失败: {exc}") from exc
        return int(total or 0)

    def update(self, cluster: Cluster) -> None:
        self._update_columns(cluster.id, build_update_fields(cluster))

    def delete(self, cluster_id: int) -> None:
        self._update_columns(cluster_id, build_delete_fields())

    def find(self, basic: ClusterBasic) -> tuple[list[Cluster], int]:
        """Return clusters matching the name of basic (all when it is empty)."""
        conditions = [_COLUMNS.deleted == false()]
        if basic.name:
            conditions.append(_COLUMNS.cluster_name == basic.name)
        try:
            with session_scope() as session:
                total = session.scalar(
                    select(func.count()).select_from(_TABLE).where(*conditions)
                )
                clusters = [
                    r.to_cluster()
                    for r in session.scalars(
                        select(ClusterRecord).where(*conditions).order_by(ClusterRecord.id)
                    )
                ]
        except SQLAlchemyError as exc:
            raise ServiceError(f"读取数据库失败: {exc}") from exc
        return clusters, int(total or 0)

    @staticmethod
    def _update_columns(cluster_id: int, values: dict) -> None:
        try:
            with session_scope() as session:
                session.execute(
                    update(_TABLE)
                    .where(_COLUMNS.deleted == false(), _COLUMNS.id == cluster_id)
                    .values(values)
                )
        except SQLAlchemyError as exc:
            raise ServiceError(f"写入数据库失败: {exc}") from exc


__all__ = [
    "ClusterStore",
    "build_update_fields",
    "build_delete_fields",
    "true",
    "datetime",
]