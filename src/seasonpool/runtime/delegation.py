from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Optional

from seasonpool.ledger.constants import DEFAULT_MAX_DELEGATION, DEFAULT_MIN_DELEGATION
from seasonpool.ledger.gateway import LedgerGateway
from seasonpool.ledger.types import CacheAggregate, UserDelegation
from seasonpool.runtime.errors import InsufficientPowerError, SelfDelegationError, ValidationError
from seasonpool.runtime.sqlite_db import SqliteDB

Json = Dict[str, Any]


def _row_to_aggregate(row: sqlite3.Row) -> CacheAggregate:
    first = None
    if row["first_block"] is not None:
        first = (int(row["first_ts"] or 0), int(row["first_block"]), int(row["first_log"] or 0))
    return CacheAggregate(
        target=str(row["target"]),
        season=int(row["season"]),
        total_votes=int(str(row["total_votes"])),
        voter_count=int(row["voter_count"]),
        last_synced_block=int(row["last_synced_block"]),
        last_updated_ms=int(row["updated_ts_ms"]),
        first_delegation=first,
        representative=bool(row["representative"]),
    )


def _row_to_delegation(row: sqlite3.Row) -> UserDelegation:
    return UserDelegation(
        user=str(row["user"]),
        target=str(row["target"]),
        season=int(row["season"]),
        amount=int(str(row["amount"])),
        source=str(row["source"]),
    )


def _clean_id(v: Any, what: str) -> str:
    s = str(v or "").strip()
    if not s:
        raise ValidationError("bad_request", f"missing_{what}", {})
    return s


class DelegationCache:
    """Read side of the delegation ledger cache.

    Rows are written only by the CacheSynchronizer from ledger events.
    Everything here is read-only, including the request checks: a rejected
    request leaves the cache untouched.
    """

    def __init__(
        self,
        *,
        db: SqliteDB,
        gateway: LedgerGateway,
        min_delegation: int = DEFAULT_MIN_DELEGATION,
        max_delegation: int = DEFAULT_MAX_DELEGATION,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.min_delegation = int(min_delegation)
        self.max_delegation = int(max_delegation)

    # ----------------------------
    # Aggregates
    # ----------------------------

    def get_aggregate(self, target: str, season: int) -> Optional[CacheAggregate]:
        with self.db.connection() as con:
            row = con.execute(
                "SELECT * FROM cache_aggregates WHERE target=? AND season=? LIMIT 1;",
                (str(target), int(season)),
            ).fetchone()
        return _row_to_aggregate(row) if row is not None else None

    def list_aggregates(self, season: int) -> List[CacheAggregate]:
        with self.db.connection() as con:
            rows = con.execute(
                "SELECT * FROM cache_aggregates WHERE season=? ORDER BY target ASC;",
                (int(season),),
            ).fetchall()
        return [_row_to_aggregate(r) for r in rows]

    # ----------------------------
    # Per-user rows
    # ----------------------------

    def list_supporters(self, target: str, season: int, *, include_representative: bool = True) -> List[UserDelegation]:
        q = "SELECT * FROM user_delegations WHERE target=? AND season=?"
        if not include_representative:
            q += " AND source='ledger'"
        with self.db.connection() as con:
            rows = con.execute(q + " ORDER BY user ASC;", (str(target), int(season))).fetchall()
        return [d for d in (_row_to_delegation(r) for r in rows) if d.amount > 0]

    def user_delegations(self, user: str, season: int) -> List[UserDelegation]:
        with self.db.connection() as con:
            rows = con.execute(
                "SELECT * FROM user_delegations WHERE user=? AND season=? ORDER BY target ASC;",
                (str(user), int(season)),
            ).fetchall()
        return [d for d in (_row_to_delegation(r) for r in rows) if d.amount > 0]

    def delegated_to(self, user: str, target: str, season: int) -> int:
        with self.db.connection() as con:
            row = con.execute(
                "SELECT amount FROM user_delegations WHERE user=? AND target=? AND season=? LIMIT 1;",
                (str(user), str(target), int(season)),
            ).fetchone()
        return int(str(row["amount"])) if row is not None else 0

    def delegated_total(self, user: str, season: int) -> int:
        return sum(d.amount for d in self.user_delegations(user, season))

    def available_power(self, user: str, season: int) -> int:
        total = int(self.gateway.get_voting_power(str(user)))
        # Clamped: a power decrease on the ledger must not surface as negative power.
        return max(0, total - self.delegated_total(user, season))

    def power_summary(self, user: str, season: int) -> Json:
        total = int(self.gateway.get_voting_power(str(user)))
        delegated = self.delegated_total(user, season)
        return {
            "user": str(user),
            "season": int(season),
            "total_power": str(total),
            "delegated": str(delegated),
            "available": str(max(0, total - delegated)),
            "delegations": [d.to_json() for d in self.user_delegations(user, season)],
        }

    # ----------------------------
    # Request checks
    # ----------------------------

    def _check_amount(self, amount: Any) -> int:
        if isinstance(amount, bool):
            raise ValidationError("bad_amount", "not_an_integer", {"amount": amount})
        try:
            a = int(amount)
        except Exception:
            raise ValidationError("bad_amount", "not_an_integer", {"amount": amount})
        if a < self.min_delegation:
            raise ValidationError("bad_amount", "below_minimum", {"amount": str(a), "min": str(self.min_delegation)})
        if a > self.max_delegation:
            raise ValidationError("bad_amount", "above_maximum", {"amount": str(a), "max": str(self.max_delegation)})
        return a

    def check_delegate(self, user: str, target: str, amount: Any, season: int) -> Json:
        """Validate a delegate request against the cache. Raises on rejection."""
        u = _clean_id(user, "user")
        t = _clean_id(target, "target")
        a = self._check_amount(amount)

        owner = str(self.gateway.get_target_owner(t) or "")
        if owner and owner == u:
            raise SelfDelegationError("self_delegation", "owner_cannot_delegate_to_own_target", {"user": u, "target": t})

        available = self.available_power(u, season)
        if a > available:
            raise InsufficientPowerError(
                "insufficient_power",
                "amount_exceeds_available_power",
                {"user": u, "amount": str(a), "available": str(available)},
            )
        return {"ok": True, "user": u, "target": t, "amount": str(a), "available_after": str(available - a)}

    def check_undelegate(self, user: str, target: str, amount: Any, season: int) -> Json:
        u = _clean_id(user, "user")
        t = _clean_id(target, "target")
        a = self._check_amount(amount)

        current = self.delegated_to(u, t, season)
        if a > current:
            raise ValidationError(
                "bad_amount",
                "exceeds_current_delegation",
                {"user": u, "target": t, "amount": str(a), "delegated": str(current)},
            )
        return {"ok": True, "user": u, "target": t, "amount": str(a), "delegated_after": str(current - a)}
