from __future__ import annotations

from typing import List, Optional, Tuple

from seasonpool.ledger.types import CacheAggregate, Leaderboard, LeaderboardEntry
from seasonpool.runtime.cache_sync import CacheSynchronizer
from seasonpool.runtime.delegation import DelegationCache
from seasonpool.runtime.errors import ValidationError

# Sorts after any real first delegation.
_NO_FIRST = (2**63, 2**63, 2**63)


def rank_key(agg: CacheAggregate, tie_break: str) -> Tuple:
    """Sort key: total votes desc, then the tie-break policy, then target id."""
    if tie_break == "first_delegation":
        first = agg.first_delegation or _NO_FIRST
        return (-int(agg.total_votes), first, agg.target)
    return (-int(agg.total_votes), agg.target)


def rank_aggregates(
    aggregates: List[CacheAggregate],
    *,
    tie_break: str = "first_delegation",
    exclude_representative: bool = False,
    limit: Optional[int] = None,
) -> List[LeaderboardEntry]:
    rows = [a for a in aggregates if int(a.total_votes) > 0]
    if exclude_representative:
        rows = [a for a in rows if not a.representative]
    rows.sort(key=lambda a: rank_key(a, tie_break))
    if limit is not None:
        rows = rows[: max(0, int(limit))]
    return [
        LeaderboardEntry(
            rank=i + 1,
            target=a.target,
            total_votes=int(a.total_votes),
            voter_count=int(a.voter_count),
            first_delegation=a.first_delegation,
            representative=a.representative,
        )
        for i, a in enumerate(rows)
    ]


class RankingAggregator:
    """Leaderboard over the cache.

    Ties on total votes are broken by the earliest first delegation
    (timestamp, block, log index) and then by ascending target id, or by
    target id alone with tie_break="target_id".
    """

    def __init__(
        self,
        *,
        cache: DelegationCache,
        sync: CacheSynchronizer,
        tie_break: str = "first_delegation",
        exclude_representative: bool = False,
    ) -> None:
        if tie_break not in {"first_delegation", "target_id"}:
            raise ValueError(f"unknown tie_break policy: {tie_break!r}")
        self.cache = cache
        self.sync = sync
        self.tie_break = tie_break
        self.exclude_representative = bool(exclude_representative)

    def get_leaderboard(self, season: int, limit: Optional[int] = None) -> Leaderboard:
        if limit is not None and int(limit) <= 0:
            raise ValidationError("bad_request", "limit_must_be_positive", {"limit": limit})
        fresh = self.sync.freshness(season)
        entries = rank_aggregates(
            self.cache.list_aggregates(season),
            tie_break=self.tie_break,
            exclude_representative=self.exclude_representative,
            limit=limit,
        )
        return Leaderboard(
            season=int(season),
            entries=entries,
            as_of_block=int(fresh["last_synced_block"]),
            stale=bool(fresh["stale"]),
        )
