from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Request

from seasonpool.api.errors import ApiError
from seasonpool.runtime.control import ControlService

Json = Dict[str, Any]


def _service(request: Request) -> ControlService:
    svc = getattr(request.app.state, "service", None)
    if svc is None:
        raise ApiError.internal("not_ready", "service not attached to app.state", {})
    return svc


def _season_param(v: Any) -> int:
    try:
        n = int(v)
    except (TypeError, ValueError):
        raise ApiError.bad_request("bad_request", "season must be an integer", {"season": v})
    if n < 1:
        raise ApiError.bad_request("bad_request", "season must be >= 1", {"season": n})
    return n


def _int_param(v: Any, default: Optional[int], *, name: str, minimum: int = 1) -> Optional[int]:
    """Parse an optional positive int query param."""
    if v is None or str(v).strip() == "":
        return default
    try:
        n = int(str(v).strip())
    except ValueError:
        raise ApiError.bad_request("bad_request", f"{name} must be an integer", {name: v})
    if n < minimum:
        raise ApiError.bad_request("bad_request", f"{name} must be >= {minimum}", {name: n})
    return n
