from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from seasonpool.api.errors import ApiError, api_error_handler, service_error_handler
from seasonpool.api.routes_public import public_router
from seasonpool.api.structured_logging import RequestLogMiddleware, configure_structured_logging
from seasonpool.runtime.boot import build_service as _build_service
from seasonpool.runtime.control import ControlService
from seasonpool.runtime.errors import ServiceError

log = logging.getLogger("seasonpool.api")


def build_service() -> ControlService:
    """Build the ControlService for the API runtime.

    This wrapper exists so tests can monkeypatch `seasonpool.api.app.build_service`
    without reaching into runtime modules.
    """
    return _build_service()


def _truthy(v: str | None) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def create_app(*, boot_runtime: bool = True) -> FastAPI:
    """Create the FastAPI application.

    boot_runtime:
      - True (default): load config, open the DB and attach app.state.service
      - False: keep lightweight for unit tests / import-time validation

    Run with: python -m seasonpool.api, or
    uvicorn seasonpool.api.app:create_app --factory
    """
    configure_structured_logging(os.environ.get("SEASONPOOL_LOG_LEVEL"))
    mode = os.environ.get("SEASONPOOL_MODE", "prod").strip().lower()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        """Start/stop the sync loop.

        Autostart via SEASONPOOL_SYNC_LOOP_AUTOSTART. A loop that cannot take
        its file lock (another worker owns it) stays stopped; /v1/health
        reports it.
        """
        svc = getattr(app.state, "service", None)
        loop = getattr(svc, "sync_loop", None) if svc is not None else None
        if loop is not None and _truthy(os.environ.get("SEASONPOOL_SYNC_LOOP_AUTOSTART")):
            try:
                loop.start()
            except OSError:
                log.exception("sync loop failed to start")
        yield
        if svc is not None and hasattr(svc, "close"):
            svc.close()

    # Disable docs in production.
    if mode == "prod":
        app = FastAPI(
            title="seasonpool",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
            lifespan=_lifespan,
        )
    else:
        app = FastAPI(title="seasonpool", lifespan=_lifespan)

    if boot_runtime:
        app.state.service = build_service()
        configure_structured_logging(app.state.service.cfg.log_level)
    else:
        app.state.service = None

    app.add_middleware(RequestLogMiddleware)

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(ServiceError, service_error_handler)

    app.include_router(public_router)
    return app
