"""HTTP handlers for clusters, components and tasks."""

from __future__ import annotations

import functools
import json
import logging
import struct
import uuid
from dataclasses import fields
from pathlib import Path
from typing import Any, Callable, Optional, Union

from flask import Blueprint, request

from .cache import TASK_RUNNING_STORE, RunningTaskStore
from .cluster_operator import ClusterOperator
from .cluster_store import ClusterStore
from .component_operator import ComponentOperator
from .component_store import ComponentStore
from .models import (
    Cluster,
    ClusterBasic,
    Component,
    Query,
    ServiceError,
    ValidationError,
)
from .responses import (
    HTTP_BAD_REQUEST,
    handle_error,
    handle_result,
    page_info,
    param_int,
    query_int,
)
from .task_operator import EM_BPF, TaskOperator
from .task_store import TaskStore

log = logging.getLogger(__name__)

_ERRORS = (ServiceError, ValidationError)
_UINT64_MAX = 2**64 - 1
_ELF_MAGIC = b"\x7fELF"


class _BadRequest(Exception):
    """The request body could not be decoded."""


class Services:
    """Stores and settings shared by the HTTP handlers."""

    def __init__(
        self,
        cluster_store: Any = None,
        component_store: Any = None,
        task_store: Any = None,
        running: Optional[RunningTaskStore] = None,
        loader_factory: Optional[Callable] = None,
        prom_host: Optional[str] = None,
        binary_dir: Union[str, Path] = "./binary",
    ) -> None:
        self.cluster_store = cluster_store if cluster_store is not None else ClusterStore()
        self.component_store = (
            component_store if component_store is not None else ComponentStore()
        )
        self.task_store = task_store if task_store is not None else TaskStore()
        self.running = running if running is not None else TASK_RUNNING_STORE
        self.loader_factory = loader_factory
        self.prom_host = prom_host
        self.binary_dir = Path(binary_dir)

    def cluster_operator(self) -> ClusterOperator:
        return ClusterOperator(self.cluster_store)

    def component_operator(self) -> ComponentOperator:
        return ComponentOperator(self.component_store)

    def task_operator(self) -> TaskOperator:
        return TaskOperator(
            task_store=self.task_store,
            component_store=self.component_store,
            running=self.running,
            loader_factory=self.loader_factory,
            prom_host=self.prom_host,
        )


def _handled(view: Callable) -> Callable:
    @functools.wraps(view)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return view(*args, **kwargs)
        except _BadRequest as exc:
            body, _ = handle_error(str(exc))
            return body, HTTP_BAD_REQUEST
        except _ERRORS as exc:
            return handle_error(str(exc))

    return wrapper


def _bind_json(build: Callable[[Any], Any]) -> Any:
    try:
        return build(json.loads(request.get_data(cache=True)))
    except (ValueError, TypeError, KeyError, AttributeError) + _ERRORS as exc:
        raise _BadRequest(str(exc) or type(exc).__name__) from exc


def _parse_uint(raw: str) -> int:
    if not raw or not raw.isascii() or not raw.isdigit():
        raise ServiceError(f"invalid id {raw!r}")
    value = int(raw)
    if value > _UINT64_MAX:
        raise ServiceError(f"id {raw!r} out of range")
    return value


def _cluster_from_basic(basic: ClusterBasic) -> Cluster:
    if isinstance(basic, Cluster):
        return basic
    return Cluster(**{f.name: getattr(basic, f.name) for f in fields(basic)})


def _check_bpf_object(data: bytes) -> None:
    if len(data) < 20 or data[:4] != _ELF_MAGIC:
        raise ServiceError("加载 ELF 文件失败: not an ELF object")
    if data[5] not in (1, 2):
        raise ServiceError(f"加载 ELF 文件失败: unknown ELF data encoding {data[5]}")
    order = "<" if data[5] == 1 else ">"
    (machine,) = struct.unpack_from(order + "H", data, 18)
    if machine != EM_BPF:
        raise ServiceError(f"加载 ELF 文件失败: ELF machine {machine} is not eBPF")


def _store_binary(services: Services, component: Component, binary: bytes) -> None:
    if not binary:
        raise ServiceError("二进制文件为空")
    _check_bpf_object(binary)
    path = services.binary_dir / f"{uuid.uuid4()}.o"
    try:
        services.binary_dir.mkdir(parents=True, exist_ok=True)
        path.write_bytes(binary)
    except OSError as exc:
        raise ServiceError(f"写入二进制文件失败: {exc}") from exc
    component.binary_path = str(path)
    try:
        services.component_operator().with_component(component).create()
    except ServiceError as exc:
        raise ServiceError(f"创建组件失败: {exc}") from exc


def create_blueprint(services: Optional[Services] = None) -> Blueprint:
    """Return the /api/v1 blueprint with the cluster, component and task routes."""
    svc = services if services is not None else Services()
    bp = Blueprint("api_v1", __name__, url_prefix="/api/v1")

    # Clusters

    @bp.get("/cluster")
    @_handled
    def list_clusters():
        page_size, page_num = page_info(request.args)
        operator = svc.cluster_operator().with_query(Query(page_size=page_size, page_num=page_num))
        total, clusters = operator.list(None)
        for cluster in clusters:
            cluster.kube_config = ""
        return handle_result({"list": [c.to_dict() for c in clusters], "total": total})

    @bp.get("/cluster/<cluster_id>")
    @_handled
    def get_cluster(cluster_id: str):
        number = param_int(cluster_id)
        if number == 0:
            return handle_error("真实集群编号不合法")
        cluster = svc.cluster_operator().get(number)
        return handle_result({"cluster": cluster.to_dict()})

    @bp.post("/cluster")
    @_handled
    def create_cluster():
        basic = _bind_json(ClusterBasic.from_dict)
        svc.cluster_operator().with_cluster(_cluster_from_basic(basic)).create()
        return handle_result({})

    @bp.put("/cluster/<cluster_id>")
    @_handled
    def update_cluster(cluster_id: str):
        basic = _bind_json(ClusterBasic.from_dict)
        number = param_int(cluster_id)
        if number == 0:
            return handle_error("真实集群编号不合法")
        svc.cluster_operator().with_cluster(_cluster_from_basic(basic)).update(number)
        return handle_result({})

    @bp.delete("/cluster/<cluster_id>")
    @_handled
    def delete_cluster(cluster_id: str):
        number = param_int(cluster_id)
        if number == 0:
            return handle_error("真实集群编号不合法")
        svc.cluster_operator().delete(number)
        return handle_result({})

    @bp.get("/clusterList")
    @_handled
    def clusters_by_params():
        cluster_name = request.args.get("clusterName", "")
        cluster_id = query_int(request.args, "clusterId", "-1")
        page_size, page_num = page_info(request.args)
        operator = svc.cluster_operator().with_query(Query(page_size=page_size, page_num=page_num))
        filters: dict[str, Any] = {}
        if cluster_name:
            filters["cluster_name"] = cluster_name
        if cluster_id > 0:
            filters["id"] = cluster_id
        total, clusters = operator.list(filters)
        return handle_result({"list": [c.to_dict() for c in clusters], "total": total})

    # Components

    @bp.get("/component")
    @_handled
    def list_components():
        page_size, page_num = page_info(request.args)
        operator = svc.component_operator().with_query(
            Query(page_size=page_size, page_num=page_num)
        )
        total, components = operator.list()
        return handle_result({"list": [c.to_dict() for c in components], "total": total})

    @bp.get("/component/<component_id>")
    @_handled
    def get_component(component_id: str):
        number = param_int(component_id)
        if number == 0:
            return handle_error("组件编号不合法")
        component = svc.component_operator().get(number)
        return handle_result({"component": component.to_dict()})

    @bp.post("/component")
    @_handled
    def create_component():
        component = _bind_json(Component.from_dict)
        svc.component_operator().with_component(component).create()
        return handle_result({})

    @bp.post("/component/upload")
    @_handled
    def upload_component():
        upload = request.files.get("binary")
        if upload is None:
            return handle_error("http: no such file")
        raw = request.form.get("data", "")
        if not raw:
            return handle_error("missing component data")
        try:
            component = Component.from_dict(json.loads(raw))
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            return handle_error(str(exc))
        _store_binary(svc, component, upload.read())
        return handle_result(None)

    @bp.delete("/component/<component_id>")
    @_handled
    def delete_component(component_id: str):
        number = _parse_uint(component_id)
        operator = svc.component_operator()
        component = operator.get(number)
        operator.with_component(component).delete()
        return handle_result(None)

    # Tasks

    @bp.get("/task")
    @_handled
    def list_tasks():
        page_size, page_num = page_info(request.args)
        query = Query(page_size=page_size, page_num=page_num)
        operator = svc.task_operator().with_query(query)
        total, tasks = operator.task_store.list_tasks(query)
        return handle_result({"list": [t.to_dict() for t in tasks], "total": total})

    @bp.get("/task/<task_id>")
    @_handled
    def get_task(task_id: str):
        number = _parse_uint(task_id)
        task = svc.task_operator().task_store.get_task(number)
        return handle_result(task.to_dict())

    @bp.post("/task/component/<component_id>")
    @_handled
    def create_task(component_id: str):
        number = _parse_uint(component_id)
        component = svc.component_operator().get(number)
        created = svc.task_operator().create_and_run_task(component)
        return handle_result(created.to_dict())

    @bp.get("/task/running")
    @_handled
    def running_tasks():
        tasks = svc.task_operator().get_running_tasks()
        return handle_result({"list": [t.to_dict() for t in tasks], "total": len(tasks)})

    @bp.post("/task/<task_id>/stop")
    @_handled
    def stop_task(task_id: str):
        number = _parse_uint(task_id)
        svc.task_operator().stop_task(number)
        return handle_result(None)

    @bp.get("/task/<task_id>/metrics")
    @_handled
    def task_metrics(task_id: str):
        number = _parse_uint(task_id)
        metrics = svc.task_operator().get_task_metrics(number)
        return handle_result(metrics.to_dict())

    return bp