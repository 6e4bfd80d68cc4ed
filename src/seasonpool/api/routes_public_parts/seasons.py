from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request

from seasonpool.api.errors import ApiError
from seasonpool.api.routes_public_parts.common import _int_param, _season_param, _service

router = APIRouter()


@router.get("/seasons/current")
def current_season(request: Request) -> Dict[str, Any]:
    svc = _service(request)
    return {"ok": True, **svc.get_season_state()}


@router.get("/seasons/{season}")
def season_detail(season: int, request: Request) -> Dict[str, Any]:
    svc = _service(request)
    s = svc.seasons.get_season(_season_param(season))
    if s is None:
        raise ApiError.not_found("season_not_found", "unknown season", {"season": season})
    return {"ok": True, "season": s.to_json(), "freshness": svc.sync.freshness(s.number)}


@router.get("/seasons/{season}/leaderboard")
def leaderboard(season: int, request: Request, limit: Optional[str] = None) -> Dict[str, Any]:
    svc = _service(request)
    board = svc.get_leaderboard(_season_param(season), _int_param(limit, None, name="limit"))
    return {"ok": True, **board.to_json()}


@router.get("/users/{user}/power")
def user_power(user: str, request: Request, season: Optional[str] = None) -> Dict[str, Any]:
    svc = _service(request)
    return {"ok": True, **svc.power(user, _int_param(season, None, name="season"))}
