"""JSON envelopes returned by the HTTP API and helpers for request parameters."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

HTTP_OK = 200
HTTP_BAD_REQUEST = 400

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


@dataclass
class ApiResponse:
    """The envelope every API answer is wrapped in."""

    success: bool
    error_code: int
    error_msg: str = ""
    data: Any = None

    def to_dict(self) -> dict:
        """Return the JSON body; data is left out when it is None."""
        body = {
            "success": self.success,
            "errorCode": self.error_code,
            "errorMsg": self.error_msg,
        }
        if self.data is not None:
            body["data"] = self.data
        return body


def response_ok(data: Any = None) -> tuple[dict, int]:
    """A successful answer whose error code mirrors the HTTP status."""
    return ApiResponse(True, HTTP_OK, "", data).to_dict(), HTTP_OK


def response_error_code(
    err_code: int, err_msg: str, http_code: int = HTTP_OK
) -> tuple[dict, int]:
    """A failed answer with an explicit error code, sent with http_code."""
    return ApiResponse(False, err_code, err_msg, None).to_dict(), http_code


def handle_result(data: Any = None) -> tuple[dict, int]:
    """A successful answer carrying data."""
    return ApiResponse(True, 0, "", data).to_dict(), HTTP_OK


def handle_error(message: str) -> tuple[dict, int]:
    """A failed answer for an internal error."""
    return ApiResponse(False, 500, message, "").to_dict(), HTTP_OK


def handle_error_code(code: int, message: str) -> tuple[dict, int]:
    """A failed answer with a caller-chosen error code."""
    return ApiResponse(False, code, message, "").to_dict(), HTTP_OK


def probe_error(message: str) -> tuple[dict, int]:
    """A failed health-probe answer, sent with HTTP 400."""
    return ApiResponse(False, 0, message, "").to_dict(), HTTP_BAD_REQUEST


def param_int(raw: Optional[str]) -> int:
    """Parse a decimal integer; anything unparsable yields 0."""
    if raw is None or not _INT_PATTERN.fullmatch(raw):
        return 0
    return max(_INT64_MIN, min(_INT64_MAX, int(raw)))


def query_int(args: Mapping[str, str], key: str, default: str) -> int:
    """Parse the query parameter key, using default when it is absent."""
    return param_int(args.get(key, default))


def page_info(args: Mapping[str, str]) -> tuple[int, int]:
    """Return (page size, page number) from the query parameters."""
    return query_int(args, "pageSize", "0"), query_int(args, "pageNum", "1")