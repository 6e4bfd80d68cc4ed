from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from seasonpool.api.routes_public_parts.common import _service
from seasonpool.api.schemas import DelegationCheckRequest

router = APIRouter()


@router.post("/delegations/check")
def check_delegation(req: DelegationCheckRequest, request: Request) -> Dict[str, Any]:
    """Dry-run a delegate/undelegate request against the cache.

    Rejections come back as errors (insufficient_power, self_delegation,
    bad_amount); nothing is written.
    """
    svc = _service(request)
    return svc.check_delegation(
        kind=req.kind,
        user=req.user,
        target=req.target,
        amount=req.amount,
        season=req.season,
    )
