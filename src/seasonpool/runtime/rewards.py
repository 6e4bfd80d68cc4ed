from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from seasonpool.ledger.constants import (
    BPS_DENOM,
    DEFAULT_CREATOR_SHARE_BPS,
    DEFAULT_FRESHNESS_THRESHOLD_S,
    DEFAULT_POOL_SIZE,
    DEFAULT_TOP_N,
    DEFAULT_WEIGHTS_BPS,
)
from seasonpool.ledger.gateway import LedgerGateway
from seasonpool.ledger.types import RankReward, RewardCalculation, SupporterReward, UserDelegation
from seasonpool.runtime.cache_sync import CacheSynchronizer
from seasonpool.runtime.delegation import DelegationCache
from seasonpool.runtime.errors import (
    InsufficientDataError,
    NotFoundError,
    StaleCacheError,
    ValidationError,
)
from seasonpool.runtime.log_events import log_event
from seasonpool.runtime.metrics import inc_counter
from seasonpool.runtime.ranking import rank_aggregates
from seasonpool.runtime.season_manager import SeasonManager
from seasonpool.runtime.sqlite_db import SqliteDB, _canon_json, _now_ms

Json = Dict[str, Any]

log = logging.getLogger("seasonpool.rewards")


def normalize_weights(weights: Sequence[int]) -> Tuple[int, ...]:
    """Scale weights to sum to BPS_DENOM; rounding remainder goes to rank 1."""
    ws = [int(w) for w in weights]
    total = sum(ws)
    if not ws or total <= 0:
        raise ValidationError("bad_weights", "empty_or_zero", {"weights": ws})
    if total == BPS_DENOM:
        return tuple(ws)
    scaled = [w * BPS_DENOM // total for w in ws]
    scaled[0] += BPS_DENOM - sum(scaled)
    return tuple(scaled)


def split_pool(pool: int, weights_bps: Sequence[int]) -> List[int]:
    """Per-rank totals. Sums to exactly `pool`; remainder to rank 1."""
    parts = [int(pool) * int(w) // BPS_DENOM for w in weights_bps]
    if parts:
        parts[0] += int(pool) - sum(parts)
    return parts


def split_supporters(pool: int, supporters: Sequence[UserDelegation]) -> List[SupporterReward]:
    """Proportional split by delegated amount.

    Remainder goes to the largest supporter; equal amounts resolve to the
    smallest user id.
    """
    rows = sorted((s for s in supporters if int(s.amount) > 0), key=lambda s: s.user)
    if not rows or pool <= 0:
        return []
    denom = sum(int(s.amount) for s in rows)
    shares = [int(pool) * int(s.amount) // denom for s in rows]
    remainder = int(pool) - sum(shares)
    if remainder:
        top = min(range(len(rows)), key=lambda i: (-int(rows[i].amount), rows[i].user))
        shares[top] += remainder
    return [
        SupporterReward(
            user=s.user,
            delegated=int(s.amount),
            amount=shares[i],
            representative=(s.source == "representative"),
        )
        for i, s in enumerate(rows)
    ]


def compute_digest(calc: RewardCalculation) -> str:
    return hashlib.sha256(_canon_json(calc.body_json()).encode("utf-8")).hexdigest()


def calculation_from_json(obj: Json) -> RewardCalculation:
    ranks: List[RankReward] = []
    for r in obj.get("ranks") or []:
        ranks.append(
            RankReward(
                rank=int(r["rank"]),
                target=str(r["target"]),
                owner=str(r["owner"]),
                total_votes=int(r["total_votes"]),
                weight_bps=int(r["weight_bps"]),
                total=int(r["total"]),
                creator_reward=int(r["creator_reward"]),
                supporter_pool=int(r["supporter_pool"]),
                supporters=[
                    SupporterReward(
                        user=str(s["user"]),
                        delegated=int(s["delegated"]),
                        amount=int(s["amount"]),
                        representative=bool(s.get("representative", False)),
                    )
                    for s in r.get("supporters") or []
                ],
            )
        )
    return RewardCalculation(
        season=int(obj["season"]),
        pool_size=int(obj["pool_size"]),
        creator_share_bps=int(obj["creator_share_bps"]),
        supporter_share_bps=int(obj["supporter_share_bps"]),
        weights_bps=tuple(int(w) for w in obj["weights_bps"]),
        as_of_block=int(obj["as_of_block"]),
        ranks=ranks,
        digest=str(obj.get("digest") or ""),
    )


class RewardCalculator:
    """Turns the top-N leaderboard into a per-recipient reward plan.

    Integer basis-point arithmetic only. Identical cache state yields an
    identical calculation body and digest.
    """

    def __init__(
        self,
        *,
        db: SqliteDB,
        gateway: LedgerGateway,
        seasons: SeasonManager,
        cache: DelegationCache,
        sync: CacheSynchronizer,
        weights_bps: Sequence[int] = DEFAULT_WEIGHTS_BPS,
        creator_share_bps: int = DEFAULT_CREATOR_SHARE_BPS,
        default_pool_size: int = DEFAULT_POOL_SIZE,
        default_top_n: int = DEFAULT_TOP_N,
        freshness_threshold_s: int = DEFAULT_FRESHNESS_THRESHOLD_S,
        tie_break: str = "first_delegation",
        exclude_representative: bool = False,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.seasons = seasons
        self.cache = cache
        self.sync = sync
        self.weights_bps = tuple(int(w) for w in weights_bps)
        self.creator_share_bps = int(creator_share_bps)
        self.default_pool_size = int(default_pool_size)
        self.default_top_n = int(default_top_n)
        self.freshness_threshold_s = int(freshness_threshold_s)
        self.tie_break = tie_break
        self.exclude_representative = bool(exclude_representative)

    def _check_fresh(self, season: int) -> int:
        s = self.seasons.require_season(season)
        fresh = self.sync.freshness(season)
        if s.finalized:
            return int(fresh["last_synced_block"])
        if fresh["stale"]:
            raise StaleCacheError(
                "stale_cache",
                "cache_behind_ledger",
                {"season": int(season), "lag": fresh.get("lag"), "last_error": fresh.get("last_error")},
            )
        if s.phase != "active":
            # A closed season needs a successful sync from after it ended.
            cutoff_ms = (s.end_time - self.freshness_threshold_s) * 1000
            if int(fresh["last_success_ms"]) < cutoff_ms:
                raise StaleCacheError(
                    "stale_cache",
                    "not_synced_since_season_end",
                    {"season": int(season), "last_success_ms": fresh["last_success_ms"], "cutoff_ms": cutoff_ms},
                )
        return int(fresh["last_synced_block"])

    def calculate(
        self,
        season: int,
        pool_size: Optional[int] = None,
        *,
        top_n: Optional[int] = None,
        allow_partial: bool = False,
    ) -> RewardCalculation:
        pool = int(self.default_pool_size if pool_size is None else pool_size)
        if pool <= 0:
            raise ValidationError("bad_request", "pool_size_must_be_positive", {"pool_size": str(pool)})
        n = int(self.default_top_n if top_n is None else top_n)
        if n <= 0 or n > len(self.weights_bps):
            raise ValidationError("bad_request", "bad_top_n", {"top_n": n, "max": len(self.weights_bps)})

        as_of_block = self._check_fresh(season)

        entries = rank_aggregates(
            self.cache.list_aggregates(season),
            tie_break=self.tie_break,
            exclude_representative=self.exclude_representative,
            limit=n,
        )
        if not entries or (len(entries) < n and not allow_partial):
            raise InsufficientDataError(
                "insufficient_data",
                "not_enough_ranked_targets",
                {"season": int(season), "top_n": n, "found": len(entries)},
            )

        weights = normalize_weights(self.weights_bps[: len(entries)])
        totals = split_pool(pool, weights)

        ranks: List[RankReward] = []
        for entry, weight, total in zip(entries, weights, totals):
            owner = str(self.gateway.get_target_owner(entry.target) or "")
            if not owner:
                raise InsufficientDataError("insufficient_data", "missing_target_owner", {"target": entry.target})

            creator = total * self.creator_share_bps // BPS_DENOM
            supporter_pool = total - creator
            supporters = split_supporters(
                supporter_pool,
                self.cache.list_supporters(
                    entry.target,
                    season,
                    include_representative=not self.exclude_representative,
                ),
            )
            if not supporters:
                creator += supporter_pool
                supporter_pool = 0

            ranks.append(
                RankReward(
                    rank=entry.rank,
                    target=entry.target,
                    owner=owner,
                    total_votes=entry.total_votes,
                    weight_bps=weight,
                    total=total,
                    creator_reward=creator,
                    supporter_pool=supporter_pool,
                    supporters=supporters,
                )
            )

        calc = RewardCalculation(
            season=int(season),
            pool_size=pool,
            creator_share_bps=self.creator_share_bps,
            supporter_share_bps=BPS_DENOM - self.creator_share_bps,
            weights_bps=weights,
            as_of_block=as_of_block,
            ranks=ranks,
        )
        calc = replace(calc, digest=compute_digest(calc))

        inc_counter("reward_calculations_total", 1)
        log_event(log, "rewards_calculated", season=int(season), pool_size=str(pool), winners=len(ranks), digest=calc.digest)
        return calc

    # ----------------------------
    # Approval
    # ----------------------------

    def approve(self, calc: RewardCalculation, *, expected_digest: Optional[str] = None) -> Json:
        """Persist an approved calculation; payout rows are created from it.

        Re-approving the same digest is a no-op. A different digest is
        rejected once payout rows exist for the season.
        """
        digest = compute_digest(calc)
        if calc.digest and calc.digest != digest:
            raise ValidationError("digest_mismatch", "calculation_tampered", {"season": calc.season})
        if expected_digest is not None and str(expected_digest) != digest:
            raise ValidationError(
                "digest_mismatch",
                "cache_changed_since_review",
                {"season": calc.season, "expected": str(expected_digest), "actual": digest},
            )
        if self.seasons.is_finalized(calc.season):
            raise ValidationError("season_finalized", "cannot_approve_finalized_season", {"season": calc.season})

        body = calc.to_json()
        body["digest"] = digest
        with self.db.write_tx() as con:
            row = con.execute("SELECT digest FROM reward_calculations WHERE season=? LIMIT 1;", (calc.season,)).fetchone()
            if row is not None and str(row["digest"]) == digest:
                return {"ok": True, "season": calc.season, "digest": digest, "status": "already_approved"}
            if row is not None:
                started = con.execute("SELECT 1 FROM distributions WHERE season=? LIMIT 1;", (calc.season,)).fetchone()
                if started is not None:
                    raise ValidationError(
                        "calculation_locked",
                        "distribution_already_prepared",
                        {"season": calc.season, "approved_digest": str(row["digest"])},
                    )
            con.execute(
                """
                INSERT INTO reward_calculations(season, digest, calc_json, approved_ts_ms)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(season) DO UPDATE SET
                  digest=excluded.digest,
                  calc_json=excluded.calc_json,
                  approved_ts_ms=excluded.approved_ts_ms;
                """,
                (calc.season, digest, _canon_json(body), _now_ms()),
            )

        log_event(log, "rewards_approved", season=calc.season, digest=digest, recipients=len(calc.recipients()))
        return {"ok": True, "season": calc.season, "digest": digest, "status": "approved"}

    def get_approved(self, season: int) -> RewardCalculation:
        with self.db.connection() as con:
            row = con.execute("SELECT calc_json FROM reward_calculations WHERE season=? LIMIT 1;", (int(season),)).fetchone()
        if row is None:
            raise NotFoundError("not_approved", "no_approved_calculation", {"season": int(season)})
        return calculation_from_json(json.loads(str(row["calc_json"])))

