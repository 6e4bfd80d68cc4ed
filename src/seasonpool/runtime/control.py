from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from seasonpool.ledger.gateway import LedgerGateway
from seasonpool.ledger.types import ExecutionProgress, Leaderboard, RewardCalculation
from seasonpool.runtime.cache_sync import CacheSynchronizer
from seasonpool.runtime.config import ServiceConfig
from seasonpool.runtime.delegation import DelegationCache
from seasonpool.runtime.distribution import DistributionExecutor
from seasonpool.runtime.errors import (
    LedgerUnavailableError,
    MalformedEventError,
    StaleCacheError,
    ValidationError,
)
from seasonpool.runtime.log_events import log_event
from seasonpool.runtime.metrics import inc_counter
from seasonpool.runtime.ranking import RankingAggregator
from seasonpool.runtime.rewards import RewardCalculator
from seasonpool.runtime.season_manager import SeasonManager
from seasonpool.runtime.sqlite_db import SqliteDB
from seasonpool.runtime.sync_loop import SyncLoop

Json = Dict[str, Any]

log = logging.getLogger("seasonpool.control")


class ControlService:
    """Operator facade shared by the HTTP admin routes and the CLI."""

    def __init__(
        self,
        *,
        cfg: ServiceConfig,
        db: SqliteDB,
        gateway: LedgerGateway,
        seasons: SeasonManager,
        cache: DelegationCache,
        sync: CacheSynchronizer,
        ranking: RankingAggregator,
        rewards: RewardCalculator,
        distribution: DistributionExecutor,
        sync_loop: Optional[SyncLoop] = None,
    ) -> None:
        self.cfg = cfg
        self.db = db
        self.gateway = gateway
        self.seasons = seasons
        self.cache = cache
        self.sync = sync
        self.ranking = ranking
        self.rewards = rewards
        self.distribution = distribution
        self.sync_loop = sync_loop

    def close(self) -> None:
        if self.sync_loop is not None and self.sync_loop.started:
            self.sync_loop.stop()
        self.distribution.stop()

    # ----------------------------
    # Seasons
    # ----------------------------

    def get_season_state(self, now_s: Optional[int] = None) -> Json:
        return self.seasons.get_state(now_s)

    def _season_or_current(self, season: Optional[int]) -> int:
        if season is None:
            return self.seasons.get_current_season().number
        return int(season)

    def force_transition(self, season: int, *, reason: str = "", actor: str = "") -> Json:
        """Emergency close. Queued sync/transition work is dropped first."""
        dropped = self.sync_loop.cancel_pending() if self.sync_loop is not None else 0
        closed = self.seasons.force_transition(season, reason=reason, actor=actor)
        try:
            reconciliation = self.sync.final_reconciliation(closed.number)
        except (LedgerUnavailableError, MalformedEventError) as e:
            reconciliation = {"ok": False, "season": closed.number, "error": f"{e.code}:{e.reason}"}
        return {
            "ok": True,
            "season": closed.to_json(),
            "active": self.seasons.get_current_season().to_json(),
            "cancelled_pending": dropped,
            "reconciliation": reconciliation,
        }

    # ----------------------------
    # Cache
    # ----------------------------

    def sync_now(self, season: Optional[int] = None, *, rebuild: bool = False) -> Json:
        s = self._season_or_current(season)
        if rebuild:
            return self.sync.rebuild_season(s)
        return self.sync.sync_season(s)

    def validate_season(self, season: int) -> Json:
        return self.sync.validate_season(season)

    def get_leaderboard(self, season: Optional[int] = None, limit: Optional[int] = None) -> Leaderboard:
        return self.ranking.get_leaderboard(self._season_or_current(season), limit)

    def get_top_winners(self, season: int, top_n: Optional[int] = None) -> Json:
        n = int(self.cfg.top_n if top_n is None else top_n)
        if n <= 0:
            raise ValidationError("bad_request", "top_n_must_be_positive", {"top_n": n})
        board = self.ranking.get_leaderboard(season, n)
        winners = []
        for e in board.entries:
            row = e.to_json()
            row["owner"] = str(self.gateway.get_target_owner(e.target) or "") or None
            winners.append(row)
        return {
            "season": int(season),
            "top_n": n,
            "as_of_block": board.as_of_block,
            "stale": board.stale,
            "winners": winners,
        }

    def check_delegation(self, *, kind: str, user: str, target: str, amount: Any, season: Optional[int] = None) -> Json:
        s = self._season_or_current(season)
        if kind == "delegate":
            out = self.cache.check_delegate(user, target, amount, s)
        elif kind == "undelegate":
            out = self.cache.check_undelegate(user, target, amount, s)
        else:
            raise ValidationError("bad_request", "unknown_kind", {"kind": kind})
        return {**out, "kind": kind, "season": s}

    def power(self, user: str, season: Optional[int] = None) -> Json:
        return self.cache.power_summary(user, self._season_or_current(season))

    # ----------------------------
    # Rewards
    # ----------------------------

    def calculate_rewards(
        self,
        season: int,
        pool_size: Optional[int] = None,
        *,
        top_n: Optional[int] = None,
        allow_partial: bool = False,
    ) -> RewardCalculation:
        try:
            return self.rewards.calculate(season, pool_size, top_n=top_n, allow_partial=allow_partial)
        except StaleCacheError as e:
            # One forced resync, then a single retry; a second StaleCacheError propagates.
            inc_counter("stale_cache_resyncs_total", 1)
            log_event(log, "stale_cache_resync", level=logging.WARNING, season=int(season), reason=e.reason)
            self.sync.sync_season(season)
            return self.rewards.calculate(season, pool_size, top_n=top_n, allow_partial=allow_partial)

    def approve_rewards(
        self,
        season: int,
        *,
        digest: str,
        pool_size: Optional[int] = None,
        top_n: Optional[int] = None,
        allow_partial: bool = False,
    ) -> Json:
        """Recompute and persist the calculation the operator reviewed (matched by digest)."""
        calc = self.calculate_rewards(season, pool_size, top_n=top_n, allow_partial=allow_partial)
        return self.rewards.approve(calc, expected_digest=digest)

    # ----------------------------
    # Distribution
    # ----------------------------

    def start_distribution(self, season: int, *, background: bool = True) -> Json:
        return self.distribution.start_distribution(season, background=background)

    def get_progress(self, season: int) -> ExecutionProgress:
        return self.distribution.get_progress(season)

    def list_distributions(self, season: int, *, status: Optional[str] = None) -> Json:
        rows = self.distribution.list_distributions(season, status=status)
        return {"season": int(season), "count": len(rows), "distributions": [r.to_json() for r in rows]}
