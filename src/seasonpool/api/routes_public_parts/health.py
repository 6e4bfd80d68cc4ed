from __future__ import annotations

import time
from typing import Any, Dict

from fastapi import APIRouter, Request

from seasonpool.runtime.errors import LedgerUnavailableError

router = APIRouter()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _health_payload(request: Request) -> Dict[str, Any]:
    # Health must never crash; missing pieces report as None.
    svc = getattr(request.app.state, "service", None)
    if svc is None:
        return {"ok": False, "service": "seasonpool", "version": "v1", "ts_ms": _now_ms(), "ready": False}

    loop = getattr(svc, "sync_loop", None)
    loop_status = loop.status() if loop is not None else None

    head = None
    ledger_ok = True
    ledger_error = None
    try:
        head = int(svc.gateway.get_head_block())
    except LedgerUnavailableError as e:
        ledger_ok = False
        ledger_error = f"{e.code}:{e.reason}"

    active = svc.seasons.active_season()
    ok = ledger_ok and not (loop_status or {}).get("unhealthy", False)
    return {
        "ok": bool(ok),
        "service": "seasonpool",
        "version": "v1",
        "ts_ms": _now_ms(),
        "ready": True,
        "mode": svc.cfg.mode,
        "ledger": {"ok": ledger_ok, "head": head, "error": ledger_error},
        "active_season": active.number if active is not None else None,
        "sync_loop": loop_status,
    }


@router.get("/health")
def v1_health(request: Request) -> Dict[str, Any]:
    return _health_payload(request)
