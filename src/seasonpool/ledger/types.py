from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

Json = Dict[str, Any]

# (block timestamp, block height, log index) of a target's first delegation in a season.
FirstDelegation = Tuple[int, int, int]


def amount_str(v: int) -> str:
    """Amounts leave the process as decimal strings; they exceed 2^53."""
    return str(int(v))


@dataclass(frozen=True, slots=True)
class Season:
    number: int
    start_time: int
    end_time: int  # exclusive
    phase: str
    is_active: bool
    finalized: bool

    def contains(self, ts: int) -> bool:
        return self.start_time <= int(ts) < self.end_time

    def to_json(self) -> Json:
        return {
            "number": self.number,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "phase": self.phase,
            "is_active": self.is_active,
            "finalized": self.finalized,
        }


@dataclass(frozen=True, slots=True)
class Transfer:
    recipient: str
    amount: int


@dataclass(frozen=True, slots=True)
class ConfirmationResult:
    status: str  # "confirmed" | "failed"
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status == "confirmed"


@dataclass(frozen=True, slots=True)
class CacheAggregate:
    target: str
    season: int
    total_votes: int
    voter_count: int
    last_synced_block: int
    last_updated_ms: int
    first_delegation: Optional[FirstDelegation] = None
    representative: bool = False

    def to_json(self) -> Json:
        return {
            "target": self.target,
            "season": self.season,
            "total_votes": amount_str(self.total_votes),
            "voter_count": self.voter_count,
            "last_synced_block": self.last_synced_block,
            "last_updated_ms": self.last_updated_ms,
            "first_delegation": list(self.first_delegation) if self.first_delegation else None,
            "representative": self.representative,
        }


@dataclass(frozen=True, slots=True)
class UserDelegation:
    user: str
    target: str
    season: int
    amount: int
    source: str = "ledger"

    def to_json(self) -> Json:
        return {
            "user": self.user,
            "target": self.target,
            "season": self.season,
            "amount": amount_str(self.amount),
            "source": self.source,
        }


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    rank: int
    target: str
    total_votes: int
    voter_count: int
    first_delegation: Optional[FirstDelegation]
    representative: bool = False

    def to_json(self) -> Json:
        return {
            "rank": self.rank,
            "target": self.target,
            "total_votes": amount_str(self.total_votes),
            "voter_count": self.voter_count,
            "first_delegation": list(self.first_delegation) if self.first_delegation else None,
            "representative": self.representative,
        }


@dataclass(frozen=True, slots=True)
class Leaderboard:
    season: int
    entries: List[LeaderboardEntry]
    as_of_block: int
    stale: bool

    def to_json(self) -> Json:
        return {
            "season": self.season,
            "as_of_block": self.as_of_block,
            "stale": self.stale,
            "entries": [e.to_json() for e in self.entries],
        }


@dataclass(frozen=True, slots=True)
class SupporterReward:
    user: str
    delegated: int
    amount: int
    representative: bool = False

    def to_json(self) -> Json:
        return {
            "user": self.user,
            "delegated": amount_str(self.delegated),
            "amount": amount_str(self.amount),
            "representative": self.representative,
        }


@dataclass(frozen=True, slots=True)
class RankReward:
    rank: int
    target: str
    owner: str
    total_votes: int
    weight_bps: int
    total: int
    creator_reward: int
    supporter_pool: int
    supporters: List[SupporterReward] = field(default_factory=list)

    def to_json(self) -> Json:
        return {
            "rank": self.rank,
            "target": self.target,
            "owner": self.owner,
            "total_votes": amount_str(self.total_votes),
            "weight_bps": self.weight_bps,
            "total": amount_str(self.total),
            "creator_reward": amount_str(self.creator_reward),
            "supporter_pool": amount_str(self.supporter_pool),
            "supporters": [s.to_json() for s in self.supporters],
        }


@dataclass(frozen=True, slots=True)
class RewardCalculation:
    season: int
    pool_size: int
    creator_share_bps: int
    supporter_share_bps: int
    weights_bps: Tuple[int, ...]
    as_of_block: int
    ranks: List[RankReward]
    digest: str = ""

    def body_json(self) -> Json:
        """Deterministic part of the calculation (digest input)."""
        return {
            "season": self.season,
            "pool_size": amount_str(self.pool_size),
            "creator_share_bps": self.creator_share_bps,
            "supporter_share_bps": self.supporter_share_bps,
            "weights_bps": list(self.weights_bps),
            "as_of_block": self.as_of_block,
            "ranks": [r.to_json() for r in self.ranks],
        }

    def to_json(self) -> Json:
        out = self.body_json()
        out["digest"] = self.digest
        return out

    def recipients(self) -> Dict[str, int]:
        """Total payout per recipient across creator and supporter rewards."""
        out: Dict[str, int] = {}
        for r in self.ranks:
            if r.creator_reward > 0:
                out[r.owner] = out.get(r.owner, 0) + int(r.creator_reward)
            for s in r.supporters:
                if s.amount > 0:
                    out[s.user] = out.get(s.user, 0) + int(s.amount)
        return out


@dataclass(frozen=True, slots=True)
class Distribution:
    season: int
    recipient: str
    amount: int
    status: str
    tx_handle: Optional[str]
    error: Optional[str]
    attempts: int
    updated_ts_ms: int

    def to_json(self) -> Json:
        return {
            "season": self.season,
            "recipient": self.recipient,
            "amount": amount_str(self.amount),
            "status": self.status,
            "tx_handle": self.tx_handle,
            "error": self.error,
            "attempts": self.attempts,
            "updated_ts_ms": self.updated_ts_ms,
        }


@dataclass(frozen=True, slots=True)
class ExecutionProgress:
    season: int
    total_recipients: int
    processed: int
    successful: int
    failed: int
    current_batch: int
    total_batches: int
    status: str
    started_ms: int = 0
    finished_ms: int = 0
    tx_handles: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_json(self) -> Json:
        return {
            "season": self.season,
            "total_recipients": self.total_recipients,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
            "status": self.status,
            "started_ms": self.started_ms,
            "finished_ms": self.finished_ms,
            "tx_handles": list(self.tx_handles),
            "error": self.error,
        }
