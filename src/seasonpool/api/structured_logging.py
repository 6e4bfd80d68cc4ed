from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from seasonpool.runtime.log_events import log_event
from seasonpool.runtime.metrics import inc_counter

# Health checks arrive every few seconds; only failures are worth a line.
_QUIET_PATHS = frozenset({"/v1/health"})
_SEASON_IN_PATH = re.compile(r"/seasons/(\d+)(?:/|$)")


def configure_structured_logging(level_name: Optional[str] = None) -> None:
    """Route stdlib logging to stdout as bare JSONL messages.

    Calling again only changes the level.
    """
    level = getattr(logging, str(level_name or "INFO").strip().upper(), logging.INFO)
    root = logging.getLogger()
    if getattr(root, "_seasonpool_configured", False):
        root.setLevel(level)
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(level)
    setattr(root, "_seasonpool_configured", True)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One http_request event per request, tagged with a request id.

    Operator calls under /v1/admin that change state are logged at WARNING
    with the season they target, so payouts and forced transitions leave an
    audit trail in the same stream as the runtime events.
    """

    def __init__(self, app) -> None:
        super().__init__(app)
        self._logger = logging.getLogger("seasonpool.http")

    async def dispatch(self, request: Request, call_next):
        started = time.monotonic()
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        path = str(request.url.path or "")
        admin = path.startswith("/v1/admin/")

        status = 500
        try:
            response = await call_next(request)
            status = int(response.status_code)
            response.headers.setdefault("x-request-id", request_id)
            return response
        finally:
            inc_counter("http_requests_total", 1)
            if admin:
                inc_counter("http_admin_requests_total", 1)
            if status >= 500:
                inc_counter("http_errors_total", 1)

            if status >= 500 or path not in _QUIET_PATHS:
                mutating = admin and request.method != "GET"
                m = _SEASON_IN_PATH.search(path)
                log_event(
                    self._logger,
                    "http_request",
                    level=logging.WARNING if mutating or status >= 500 else logging.INFO,
                    request_id=request_id,
                    method=request.method,
                    path=path,
                    status=status,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    admin=admin,
                    season=int(m.group(1)) if m else None,
                )
