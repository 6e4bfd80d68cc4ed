from __future__ import annotations

import logging
from typing import Optional

from seasonpool.ledger.gateway import LedgerGateway
from seasonpool.ledger.http_gateway import HttpLedgerGateway
from seasonpool.ledger.memory import MemoryLedger
from seasonpool.runtime.cache_sync import CacheSynchronizer
from seasonpool.runtime.config import ServiceConfig, load_service_config
from seasonpool.runtime.control import ControlService
from seasonpool.runtime.delegation import DelegationCache
from seasonpool.runtime.distribution import DistributionConfig, DistributionExecutor
from seasonpool.runtime.log_events import log_event
from seasonpool.runtime.ranking import RankingAggregator
from seasonpool.runtime.rewards import RewardCalculator
from seasonpool.runtime.season_manager import SeasonManager
from seasonpool.runtime.sqlite_db import SqliteDB
from seasonpool.runtime.sync_loop import SyncLoop, sync_loop_config_from_env

log = logging.getLogger("seasonpool.boot")


def build_gateway(cfg: ServiceConfig) -> LedgerGateway:
    url = str(cfg.ledger_url or "").strip()
    if url:
        return HttpLedgerGateway(base_url=url, timeout_s=float(cfg.ledger_timeout_s))
    if cfg.mode == "prod":
        raise ValueError("ledger_url is required in prod mode")
    log_event(log, "memory_ledger_selected", level=logging.WARNING, mode=cfg.mode)
    return MemoryLedger(epoch_s=cfg.season_epoch_s, season_length_s=cfg.season_length_s)


def build_service(cfg: Optional[ServiceConfig] = None, *, gateway: Optional[LedgerGateway] = None) -> ControlService:
    """Wire every component against one SQLite file and one ledger gateway."""
    cfg = cfg or load_service_config()
    gw = gateway if gateway is not None else build_gateway(cfg)

    db = SqliteDB(path=cfg.db_path)
    db.init_schema()

    seasons = SeasonManager(
        db=db,
        epoch_s=cfg.season_epoch_s,
        length_s=cfg.season_length_s,
        lock_ttl_ms=cfg.lock_ttl_ms,
    )
    cache = DelegationCache(
        db=db,
        gateway=gw,
        min_delegation=cfg.min_delegation,
        max_delegation=cfg.max_delegation,
    )
    sync = CacheSynchronizer(
        db=db,
        gateway=gw,
        seasons=seasons,
        cache=cache,
        stale_tolerance_blocks=cfg.stale_tolerance_blocks,
    )
    ranking = RankingAggregator(
        cache=cache,
        sync=sync,
        tie_break=cfg.tie_break,
        exclude_representative=cfg.exclude_representative,
    )
    rewards = RewardCalculator(
        db=db,
        gateway=gw,
        seasons=seasons,
        cache=cache,
        sync=sync,
        weights_bps=cfg.weights_bps,
        creator_share_bps=cfg.creator_share_bps,
        default_pool_size=cfg.default_pool_size,
        default_top_n=cfg.top_n,
        freshness_threshold_s=cfg.freshness_threshold_s,
        tie_break=cfg.tie_break,
        exclude_representative=cfg.exclude_representative,
    )
    distribution = DistributionExecutor(
        db=db,
        gateway=gw,
        seasons=seasons,
        rewards=rewards,
        cfg=DistributionConfig(
            batch_size=cfg.batch_size,
            max_attempts=cfg.max_attempts,
            confirm_timeout_s=cfg.confirm_timeout_s,
            retry_backoff_ms=cfg.retry_backoff_ms,
            retry_backoff_cap_ms=cfg.retry_backoff_cap_ms,
            lock_ttl_ms=cfg.lock_ttl_ms,
        ),
    )
    loop = SyncLoop(
        seasons=seasons,
        sync=sync,
        cfg=sync_loop_config_from_env(interval_ms=cfg.sync_interval_ms, lock_path=cfg.sync_lock_path),
    )

    log_event(log, "service_built", mode=cfg.mode, db_path=cfg.db_path, ledger=type(gw).__name__)
    return ControlService(
        cfg=cfg,
        db=db,
        gateway=gw,
        seasons=seasons,
        cache=cache,
        sync=sync,
        ranking=ranking,
        rewards=rewards,
        distribution=distribution,
        sync_loop=loop,
    )
