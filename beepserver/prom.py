"""A small client for the Prometheus HTTP query API."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Union
from urllib.parse import quote, urlsplit

import requests

from .models import MetricPoint, ServiceError

log = logging.getLogger(__name__)


class PromError(ServiceError):
    """Raised when a Prometheus request fails or returns an unexpected result."""


def _timestamp(moment: datetime) -> float:
    return moment.timestamp()


def _seconds(step: Union[timedelta, float, int]) -> float:
    return step.total_seconds() if isinstance(step, timedelta) else float(step)


class PromClient:
    """Queries a Prometheus server over HTTP."""

    def __init__(
        self,
        address: str,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ) -> None:
        parts = urlsplit(address or "")
        if not parts.scheme or not parts.netloc:
            raise PromError(f"创建 Prometheus 客户端失败: invalid address {address!r}")
        self.address = address.rstrip("/")
        self._session = session if session is not None else requests.Session()
        self._timeout = timeout

    def _get(self, path: str, params: Any) -> Any:
        try:
            response = self._session.get(
                self.address + path, params=params, timeout=self._timeout
            )
        except requests.RequestException as exc:
            raise PromError(str(exc)) from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise PromError(
                f"unexpected response (HTTP {response.status_code})"
            ) from exc
        if not isinstance(body, dict):
            raise PromError(f"unexpected response (HTTP {response.status_code})")
        if body.get("status") != "success":
            error_type = body.get("errorType") or f"HTTP {response.status_code}"
            raise PromError(f"{error_type}: {body.get('error', '')}")
        warnings = body.get("warnings") or []
        if warnings:
            log.warning("查询警告: %s", warnings)
        return body.get("data")

    def range_query(
        self,
        query: str,
        start: datetime,
        end: datetime,
        step: Union[timedelta, float, int],
        program_name: str = "",
    ) -> list[MetricPoint]:
        """Return the samples of the first series matched by query."""
        params = {
            "query": query,
            "start": _timestamp(start),
            "end": _timestamp(end),
            "step": _seconds(step),
        }
        try:
            data = self._get("/api/v1/query_range", params)
        except PromError as exc:
            raise PromError(f"范围查询失败: {exc}") from exc
        data = data if isinstance(data, dict) else {}
        result_type = data.get("resultType")
        result = data.get("result") or []
        if result_type != "matrix" or not result:
            raise PromError(f"查询结果类型错误，期望 Matrix，得到 {result_type}")
        return [
            MetricPoint(
                timestamp=datetime.fromtimestamp(float(ts)),
                value=float(value),
                program_name=program_name,
            )
            for ts, value in result[0].get("values") or []
        ]

    def instant_query(self, query: str) -> dict:
        """Evaluate query now and return the result with its type."""
        try:
            return self._get(
                "/api/v1/query", {"query": query, "time": _timestamp(datetime.now())}
            )
        except PromError as exc:
            raise PromError(f"即时查询失败: {exc}") from exc

    def query_label_values(self, label: str) -> list[str]:
        """Return the values label took during the last hour."""
        now = datetime.now()
        params = {
            "start": _timestamp(now - timedelta(hours=1)),
            "end": _timestamp(now),
        }
        try:
            data = self._get(f"/api/v1/label/{quote(label, safe='')}/values", params)
        except PromError as exc:
            raise PromError(f"查询标签值失败: {exc}") from exc
        return list(data or [])

    def query_series(self, query: str, start: datetime, end: datetime) -> list[dict]:
        """Return the label sets of the series matched by query."""
        params = {
            "match[]": query,
            "start": _timestamp(start),
            "end": _timestamp(end),
        }
        try:
            data = self._get("/api/v1/series", params)
        except PromError as exc:
            raise PromError(f"查询时间序列失败: {exc}") from exc
        return list(data or [])

    def get_targets(self) -> dict:
        """Return the active and dropped scrape targets."""
        try:
            return self._get("/api/v1/targets", None)
        except PromError as exc:
            raise PromError(f"获取监控目标失败: {exc}") from exc