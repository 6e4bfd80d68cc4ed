# src/seasonpool/runtime/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from seasonpool.ledger.constants import (
    BPS_DENOM,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONFIRM_TIMEOUT_S,
    DEFAULT_CREATOR_SHARE_BPS,
    DEFAULT_FRESHNESS_THRESHOLD_S,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELEGATION,
    DEFAULT_MIN_DELEGATION,
    DEFAULT_POOL_SIZE,
    DEFAULT_SEASON_EPOCH_S,
    DEFAULT_SEASON_LENGTH_S,
    DEFAULT_STALE_TOLERANCE_BLOCKS,
    DEFAULT_TOP_N,
    DEFAULT_WEIGHTS_BPS,
    TIE_BREAK_POLICIES,
)

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except Exception:
        return int(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _as_weights(v: Any, default: Tuple[int, ...]) -> Tuple[int, ...]:
    if v is None:
        return tuple(default)
    if isinstance(v, str):
        v = [p for p in v.split(",") if p.strip()]
    if not isinstance(v, (list, tuple)):
        return tuple(default)
    try:
        return tuple(int(x) for x in v)
    except Exception:
        return tuple(default)


@dataclass(frozen=True)
class ServiceConfig:
    mode: str  # "dev" | "testnet" | "prod"

    db_path: str
    ledger_url: str  # empty -> in-memory ledger (dev only)
    ledger_timeout_s: int

    # Season clock
    season_epoch_s: int
    season_length_s: int

    # Delegation rules
    min_delegation: int
    max_delegation: int

    # Cache freshness
    stale_tolerance_blocks: int
    freshness_threshold_s: int
    sync_interval_ms: int
    sync_lock_path: str

    # Ranking / rewards
    tie_break: str
    exclude_representative: bool
    default_pool_size: int
    top_n: int
    weights_bps: Tuple[int, ...]
    creator_share_bps: int

    # Payout execution
    batch_size: int
    max_attempts: int
    confirm_timeout_s: int
    retry_backoff_ms: int
    retry_backoff_cap_ms: int
    lock_ttl_ms: int

    api_host: str
    api_port: int
    log_level: str


_ALLOWED_MODES = {"dev", "testnet", "prod"}


def validate_service_config(cfg: ServiceConfig) -> None:
    """Fail-fast validation for operator config.

    Refuse to boot with a reward table or payout setting that could pay out
    the wrong amounts.
    """
    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    if not isinstance(cfg.db_path, str) or not cfg.db_path.strip():
        raise ValueError("db_path must be a non-empty string")

    if mode == "prod" and not str(cfg.ledger_url or "").strip():
        raise ValueError("ledger_url is required in prod mode")

    if int(cfg.season_length_s) <= 0:
        raise ValueError(f"season_length_s must be > 0; got: {cfg.season_length_s}")
    if int(cfg.season_epoch_s) < 0:
        raise ValueError(f"season_epoch_s must be >= 0; got: {cfg.season_epoch_s}")

    if int(cfg.min_delegation) <= 0:
        raise ValueError(f"min_delegation must be > 0; got: {cfg.min_delegation}")
    if int(cfg.max_delegation) < int(cfg.min_delegation):
        raise ValueError("max_delegation must be >= min_delegation")

    if int(cfg.stale_tolerance_blocks) < 0:
        raise ValueError(f"stale_tolerance_blocks must be >= 0; got: {cfg.stale_tolerance_blocks}")
    if int(cfg.freshness_threshold_s) < 0:
        raise ValueError(f"freshness_threshold_s must be >= 0; got: {cfg.freshness_threshold_s}")
    if int(cfg.sync_interval_ms) < 250:
        raise ValueError(f"sync_interval_ms must be >= 250; got: {cfg.sync_interval_ms}")

    if cfg.tie_break not in TIE_BREAK_POLICIES:
        raise ValueError(f"tie_break must be one of {TIE_BREAK_POLICIES}; got: {cfg.tie_break!r}")

    weights = tuple(cfg.weights_bps)
    if not weights or any(int(w) <= 0 for w in weights):
        raise ValueError(f"weights_bps must be positive integers; got: {weights}")
    if sum(int(w) for w in weights) != BPS_DENOM:
        raise ValueError(f"weights_bps must sum to {BPS_DENOM}; got: {sum(weights)}")
    if int(cfg.top_n) <= 0 or int(cfg.top_n) > len(weights):
        raise ValueError(f"top_n must be 1..{len(weights)}; got: {cfg.top_n}")

    if not (0 <= int(cfg.creator_share_bps) <= BPS_DENOM):
        raise ValueError(f"creator_share_bps must be 0..{BPS_DENOM}; got: {cfg.creator_share_bps}")
    if int(cfg.default_pool_size) <= 0:
        raise ValueError(f"default_pool_size must be > 0; got: {cfg.default_pool_size}")

    if int(cfg.batch_size) <= 0:
        raise ValueError(f"batch_size must be > 0; got: {cfg.batch_size}")
    if int(cfg.max_attempts) <= 0:
        raise ValueError(f"max_attempts must be > 0; got: {cfg.max_attempts}")
    if int(cfg.confirm_timeout_s) <= 0:
        raise ValueError(f"confirm_timeout_s must be > 0; got: {cfg.confirm_timeout_s}")
    if int(cfg.lock_ttl_ms) < 1_000:
        raise ValueError(f"lock_ttl_ms must be >= 1000; got: {cfg.lock_ttl_ms}")

    if int(cfg.api_port) <= 0 or int(cfg.api_port) > 65535:
        raise ValueError(f"api_port must be 1..65535; got: {cfg.api_port}")


def default_service_config() -> ServiceConfig:
    return ServiceConfig(
        # Production-safe default: without an explicit config the service
        # refuses to boot against an in-memory ledger.
        mode="prod",
        db_path="./data/seasonpool.db",
        ledger_url="",
        ledger_timeout_s=10,
        season_epoch_s=DEFAULT_SEASON_EPOCH_S,
        season_length_s=DEFAULT_SEASON_LENGTH_S,
        min_delegation=DEFAULT_MIN_DELEGATION,
        max_delegation=DEFAULT_MAX_DELEGATION,
        stale_tolerance_blocks=DEFAULT_STALE_TOLERANCE_BLOCKS,
        freshness_threshold_s=DEFAULT_FRESHNESS_THRESHOLD_S,
        sync_interval_ms=15_000,
        sync_lock_path="./data/sync_loop.lock",
        tie_break="first_delegation",
        exclude_representative=False,
        default_pool_size=DEFAULT_POOL_SIZE,
        top_n=DEFAULT_TOP_N,
        weights_bps=tuple(DEFAULT_WEIGHTS_BPS),
        creator_share_bps=DEFAULT_CREATOR_SHARE_BPS,
        batch_size=DEFAULT_BATCH_SIZE,
        max_attempts=DEFAULT_MAX_ATTEMPTS,
        confirm_timeout_s=DEFAULT_CONFIRM_TIMEOUT_S,
        retry_backoff_ms=1_000,
        retry_backoff_cap_ms=60_000,
        lock_ttl_ms=5 * 60_000,
        api_host="127.0.0.1",
        api_port=8080,
        log_level="INFO",
    )


def _coerce(raw: Json, base: ServiceConfig) -> ServiceConfig:
    kw: Dict[str, Any] = {}
    for f in fields(ServiceConfig):
        cur = getattr(base, f.name)
        v = raw.get(f.name)
        if f.name == "weights_bps":
            kw[f.name] = _as_weights(v, cur)
        elif isinstance(cur, bool):
            kw[f.name] = _as_bool(v, cur)
        elif isinstance(cur, int):
            kw[f.name] = _as_int(v, cur)
        else:
            kw[f.name] = _as_str(v, cur).strip()
    return ServiceConfig(**kw)


def _env_overrides() -> Json:
    out: Json = {}
    for f in fields(ServiceConfig):
        v = os.environ.get(f"SEASONPOOL_{f.name.upper()}")
        if v is not None and str(v).strip() != "":
            out[f.name] = v
    return out


def read_service_config_file(path: str) -> ServiceConfig:
    p = Path(path)
    raw = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("service config must be a JSON object")

    cfg = _coerce(raw, default_service_config())
    validate_service_config(cfg)
    return cfg


def load_service_config(*, config_path: Optional[str] = None, use_env: bool = True) -> ServiceConfig:
    """Defaults, then the JSON file (SEASONPOOL_CONFIG_PATH), then SEASONPOOL_* env vars."""
    p = config_path or os.environ.get("SEASONPOOL_CONFIG_PATH")
    cfg = read_service_config_file(p) if p else default_service_config()
    if use_env:
        env = _env_overrides()
        if env:
            cfg = _coerce(env, cfg)
    validate_service_config(cfg)
    return cfg


def with_overrides(cfg: ServiceConfig, **kw: Any) -> ServiceConfig:
    out = replace(cfg, **kw)
    validate_service_config(out)
    return out
