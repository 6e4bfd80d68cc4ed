# src/seasonpool/api/routes_public.py
from __future__ import annotations

from fastapi import APIRouter

from seasonpool.api.routes_public_parts.admin import router as admin_router
from seasonpool.api.routes_public_parts.delegations import router as delegations_router
from seasonpool.api.routes_public_parts.health import router as health_router
from seasonpool.api.routes_public_parts.metrics import router as metrics_router
from seasonpool.api.routes_public_parts.seasons import router as seasons_router

public_router = APIRouter()

# Versioned API surface
public_router.include_router(health_router, prefix="/v1", tags=["health"])
public_router.include_router(seasons_router, prefix="/v1", tags=["seasons"])
public_router.include_router(delegations_router, prefix="/v1", tags=["delegations"])

# Operator control surface
public_router.include_router(admin_router, prefix="/v1/admin", tags=["admin"])

# Ops
public_router.include_router(metrics_router, prefix="/v1", tags=["metrics"])
