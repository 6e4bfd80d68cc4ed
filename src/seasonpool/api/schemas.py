"""Pydantic request schemas for the HTTP API.

Amounts travel as decimal strings (18-decimal base units overflow JSON
numbers in most clients); integers are accepted too.
"""

from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _amount(v: Union[int, str, None]) -> Optional[int]:
    if v is None:
        return None
    if isinstance(v, bool):
        raise ValueError("amount must be an integer")
    if isinstance(v, int):
        return v
    s = str(v).strip()
    if not s.isdigit():
        raise ValueError("amount must be a non-negative decimal integer string")
    return int(s)


class CalculateRewardsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pool_size: Optional[Union[int, str]] = Field(default=None, description="Pool in base units; default from config")
    top_n: Optional[int] = Field(default=None, ge=1)
    allow_partial: bool = False

    @field_validator("pool_size")
    @classmethod
    def _pool(cls, v: Union[int, str, None]) -> Optional[int]:
        return _amount(v)


class ApproveRewardsRequest(CalculateRewardsRequest):
    digest: str = Field(..., min_length=64, max_length=64, description="sha256 of the reviewed calculation")


class StartDistributionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    background: bool = True


class ForceTransitionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = Field(..., min_length=1, max_length=500)
    actor: str = Field(default="", max_length=200)


class SyncRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rebuild: bool = False


class DelegationCheckRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["delegate", "undelegate"]
    user: str = Field(..., min_length=1, max_length=200)
    target: str = Field(..., min_length=1, max_length=200)
    amount: Union[int, str]
    season: Optional[int] = Field(default=None, ge=1)

    @field_validator("amount")
    @classmethod
    def _amt(cls, v: Union[int, str]) -> int:
        return int(_amount(v) or 0)
