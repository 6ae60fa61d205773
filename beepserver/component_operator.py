"""Business operations on components."""

from __future__ import annotations

from typing import Optional

from .component_store import ComponentStore
from .models import Component, Query, ServiceError, ValidationError

_ERRORS = (ServiceError, ValidationError)


def _wrapped(message: str, exc: BaseException) -> ServiceError:
    return ServiceError(f"{message}: {exc}")


class ComponentOperator:
    """Validates components and passes them to the component store."""

    def __init__(self, store: Optional[ComponentStore] = None, user: str = "") -> None:
        self.store = store if store is not None else ComponentStore()
        self.user = user
        self.component: Optional[Component] = None
        self.query: Optional[Query] = None

    def with_component(self, component: Optional[Component]) -> "ComponentOperator":
        self.component = component
        return self

    def with_query(self, query: Query) -> "ComponentOperator":
        self.query = query
        return self

    def _check_component(self) -> None:
        if self.component is None:
            raise ServiceError("组件校验失败: 组件不能为空")
        try:
            self.component.validate()
        except _ERRORS as exc:
            raise _wrapped("组件校验失败", exc) from exc

    def create(self) -> Component:
        """Validate and store the component with its programs and maps."""
        try:
            self._check_component()
        except ServiceError as exc:
            raise _wrapped("检查组件参数失败", exc) from exc
        try:
            return self.store.create(self.component)
        except ServiceError as exc:
            raise _wrapped(f"新增组件 {self.component.name} 失败", exc) from exc

    def get(self, component_id: int) -> Component:
        try:
            return self.store.get(component_id)
        except ServiceError as exc:
            raise _wrapped(f"获取组件 {component_id} 失败", exc) from exc

    def list(self) -> tuple[int, list[Component]]:
        """Return the total and the page selected by the operator's query."""
        try:
            return self.store.list(self.query)
        except ServiceError as exc:
            raise _wrapped("获取组件列表失败", exc) from exc

    def delete(self) -> None:
        """Soft-delete the operator's component with its programs and maps."""
        if self.component is None:
            raise ServiceError("组件不能为空")
        try:
            self.store.delete(self.component)
        except ServiceError as exc:
            raise _wrapped(f"删除组件 {self.component.id} 失败", exc) from exc