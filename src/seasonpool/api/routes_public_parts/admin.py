from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request

from seasonpool.api.routes_public_parts.common import _int_param, _season_param, _service
from seasonpool.api.schemas import (
    ApproveRewardsRequest,
    CalculateRewardsRequest,
    ForceTransitionRequest,
    StartDistributionRequest,
    SyncRequest,
)

router = APIRouter()


@router.get("/seasons/{season}/validate")
def validate_season(season: int, request: Request) -> Dict[str, Any]:
    svc = _service(request)
    return {"ok": True, **svc.validate_season(_season_param(season))}


@router.get("/seasons/{season}/winners")
def top_winners(season: int, request: Request, top_n: Optional[str] = None) -> Dict[str, Any]:
    svc = _service(request)
    return {"ok": True, **svc.get_top_winners(_season_param(season), _int_param(top_n, None, name="top_n"))}


@router.post("/seasons/{season}/rewards/calculate")
def calculate_rewards(season: int, request: Request, req: Optional[CalculateRewardsRequest] = None) -> Dict[str, Any]:
    svc = _service(request)
    req = req or CalculateRewardsRequest()
    calc = svc.calculate_rewards(
        _season_param(season),
        req.pool_size,
        top_n=req.top_n,
        allow_partial=req.allow_partial,
    )
    return {"ok": True, "calculation": calc.to_json()}


@router.post("/seasons/{season}/rewards/approve")
def approve_rewards(season: int, req: ApproveRewardsRequest, request: Request) -> Dict[str, Any]:
    svc = _service(request)
    return svc.approve_rewards(
        _season_param(season),
        digest=req.digest,
        pool_size=req.pool_size,
        top_n=req.top_n,
        allow_partial=req.allow_partial,
    )


@router.post("/seasons/{season}/distribution/start", status_code=202)
def start_distribution(season: int, request: Request, req: Optional[StartDistributionRequest] = None) -> Dict[str, Any]:
    svc = _service(request)
    req = req or StartDistributionRequest()
    return svc.start_distribution(_season_param(season), background=req.background)


@router.get("/seasons/{season}/distribution/progress")
def distribution_progress(season: int, request: Request) -> Dict[str, Any]:
    svc = _service(request)
    return {"ok": True, "progress": svc.get_progress(_season_param(season)).to_json()}


@router.get("/seasons/{season}/distribution/rows")
def distribution_rows(season: int, request: Request, status: Optional[str] = None) -> Dict[str, Any]:
    svc = _service(request)
    return {"ok": True, **svc.list_distributions(_season_param(season), status=status)}


@router.post("/seasons/{season}/force-transition")
def force_transition(season: int, req: ForceTransitionRequest, request: Request) -> Dict[str, Any]:
    svc = _service(request)
    return svc.force_transition(_season_param(season), reason=req.reason, actor=req.actor)


@router.post("/seasons/{season}/sync")
def sync_season(season: int, request: Request, req: Optional[SyncRequest] = None) -> Dict[str, Any]:
    svc = _service(request)
    req = req or SyncRequest()
    return svc.sync_now(_season_param(season), rebuild=req.rebuild)
