from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional, Set, Tuple

from seasonpool.ledger.constants import DEFAULT_STALE_TOLERANCE_BLOCKS
from seasonpool.ledger.events import DelegateEvent, DelegationEvent, event_sort_key
from seasonpool.ledger.gateway import LedgerGateway
from seasonpool.ledger.types import CacheAggregate, Season
from seasonpool.runtime.delegation import DelegationCache
from seasonpool.runtime.errors import (
    LedgerUnavailableError,
    MalformedEventError,
    NotFoundError,
    SeasonFinalizedError,
)
from seasonpool.runtime.log_events import log_event
from seasonpool.runtime.metrics import inc_counter, set_gauge
from seasonpool.runtime.season_manager import SeasonManager
from seasonpool.runtime.sqlite_db import SqliteDB, _canon_json, _now_ms

Json = Dict[str, Any]

log = logging.getLogger("seasonpool.cache_sync")


def _payload_text(raw: Any) -> str:
    try:
        return _canon_json(raw)
    except (TypeError, ValueError):
        return json.dumps(repr(raw))


class CacheSynchronizer:
    """Keeps cache_aggregates / user_delegations reconciled with the ledger.

    Each season has its own cursor in sync_state. A tick fetches the events
    in (last_synced_block, head], keeps that season's events only, and
    applies them together with the cursor advance in one write transaction.
    Any failure leaves the cursor and the cache untouched and marks the
    season stale; malformed payloads are written to quarantined_events.
    """

    def __init__(
        self,
        *,
        db: SqliteDB,
        gateway: LedgerGateway,
        seasons: SeasonManager,
        cache: DelegationCache,
        stale_tolerance_blocks: int = DEFAULT_STALE_TOLERANCE_BLOCKS,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.seasons = seasons
        self.cache = cache
        self.stale_tolerance_blocks = max(0, int(stale_tolerance_blocks))

    # ----------------------------
    # Cursor state
    # ----------------------------

    def sync_state(self, season: int) -> Json:
        with self.db.connection() as con:
            row = con.execute("SELECT * FROM sync_state WHERE season=? LIMIT 1;", (int(season),)).fetchone()
        if row is None:
            return {
                "season": int(season),
                "last_synced_block": 0,
                "stale": True,
                "last_error": None,
                "last_attempt_ms": 0,
                "last_success_ms": 0,
            }
        return {
            "season": int(row["season"]),
            "last_synced_block": int(row["last_synced_block"]),
            "stale": bool(row["stale"]),
            "last_error": row["last_error"],
            "last_attempt_ms": int(row["last_attempt_ms"]),
            "last_success_ms": int(row["last_success_ms"]),
        }

    @staticmethod
    def _read_cursor(con: sqlite3.Connection, season: int) -> int:
        row = con.execute("SELECT last_synced_block FROM sync_state WHERE season=? LIMIT 1;", (int(season),)).fetchone()
        return int(row["last_synced_block"]) if row is not None else 0

    @staticmethod
    def _write_success(con: sqlite3.Connection, season: int, block: int, note: Optional[str] = None) -> None:
        now = _now_ms()
        con.execute(
            """
            INSERT INTO sync_state(season, last_synced_block, stale, last_error, last_attempt_ms, last_success_ms)
            VALUES(?, ?, 0, ?, ?, ?)
            ON CONFLICT(season) DO UPDATE SET
              last_synced_block=excluded.last_synced_block,
              stale=0,
              last_error=excluded.last_error,
              last_attempt_ms=excluded.last_attempt_ms,
              last_success_ms=excluded.last_success_ms;
            """,
            (int(season), int(block), note, now, now),
        )

    def _mark_failed(self, season: int, err: Exception) -> None:
        msg = f"{type(err).__name__}:{err}"[:2000]
        with self.db.write_tx() as con:
            con.execute(
                """
                INSERT INTO sync_state(season, last_synced_block, stale, last_error, last_attempt_ms, last_success_ms)
                VALUES(?, 0, 1, ?, ?, 0)
                ON CONFLICT(season) DO UPDATE SET
                  stale=1,
                  last_error=excluded.last_error,
                  last_attempt_ms=excluded.last_attempt_ms;
                """,
                (int(season), msg, _now_ms()),
            )
        inc_counter("cache_sync_errors_total", 1)
        log_event(log, "cache_sync_failed", level=logging.WARNING, season=int(season), error=msg)

    def _quarantine(self, season: int, from_block: int, to_block: int, err: MalformedEventError) -> None:
        details = err.details if isinstance(err.details, dict) else {}
        raw = details.get("raw")
        with self.db.write_tx() as con:
            con.execute(
                """
                INSERT INTO quarantined_events(season, from_block, to_block, reason, payload_json, created_ts_ms)
                VALUES(?, ?, ?, ?, ?, ?);
                """,
                (int(season), int(from_block), int(to_block), f"{err.code}:{err.reason}", _payload_text(raw), _now_ms()),
            )
        inc_counter("cache_sync_quarantined_total", 1)

    def list_quarantined(self, season: int) -> List[Json]:
        with self.db.connection() as con:
            rows = con.execute(
                "SELECT * FROM quarantined_events WHERE season=? ORDER BY id ASC;",
                (int(season),),
            ).fetchall()
        return [
            {
                "id": int(r["id"]),
                "season": int(r["season"]),
                "from_block": int(r["from_block"]),
                "to_block": int(r["to_block"]),
                "reason": str(r["reason"]),
                "payload": json.loads(str(r["payload_json"])),
                "created_ts_ms": int(r["created_ts_ms"]),
            }
            for r in rows
        ]

    # ----------------------------
    # Fold
    # ----------------------------

    def _require_open(self, season: int) -> Season:
        s = self.seasons.get_season(season)
        if s is None:
            raise NotFoundError("season_not_found", "unknown_season", {"season": int(season)})
        if s.finalized:
            raise SeasonFinalizedError("season_finalized", "cache_is_immutable", {"season": int(season)})
        return s

    @staticmethod
    def _season_events(events: List[DelegationEvent], season: int) -> List[DelegationEvent]:
        own = [ev for ev in events if int(ev.season) == int(season)]
        own.sort(key=event_sort_key)
        seen: Set[Tuple[str, int]] = set()
        out: List[DelegationEvent] = []
        for ev in own:
            if ev.event_id in seen:
                continue
            seen.add(ev.event_id)
            out.append(ev)
        return out

    def _apply(self, con: sqlite3.Connection, season: int, events: List[DelegationEvent], head: int) -> int:
        """Fold events into the cache rows. Must run inside write_tx()."""
        applied = 0
        balances: Dict[Tuple[str, str], int] = {}
        firsts: Dict[str, Tuple[int, int, int]] = {}
        touched: Set[str] = set()

        for ev in events:
            done = con.execute(
                "SELECT 1 FROM applied_events WHERE tx_hash=? AND log_index=? LIMIT 1;",
                (ev.tx_hash, int(ev.log_index)),
            ).fetchone()
            if done is not None:
                continue

            key = (ev.user, ev.target)
            if key not in balances:
                row = con.execute(
                    "SELECT amount FROM user_delegations WHERE user=? AND target=? AND season=? LIMIT 1;",
                    (ev.user, ev.target, int(season)),
                ).fetchone()
                balances[key] = int(str(row["amount"])) if row is not None else 0

            new_amount = balances[key] + ev.signed_amount
            if new_amount < 0:
                raise MalformedEventError(
                    "inconsistent_event",
                    "negative_delegation",
                    {"raw": ev.to_json(), "balance": str(balances[key])},
                )
            balances[key] = new_amount

            if isinstance(ev, DelegateEvent) and ev.target not in firsts:
                firsts[ev.target] = (int(ev.timestamp), int(ev.block_height), int(ev.log_index))
            touched.add(ev.target)

            con.execute(
                "INSERT INTO applied_events(tx_hash, log_index, season, block_height) VALUES(?, ?, ?, ?);",
                (ev.tx_hash, int(ev.log_index), int(season), int(ev.block_height)),
            )
            applied += 1

        now = _now_ms()
        for (user, target), amount in balances.items():
            if amount == 0:
                con.execute(
                    "DELETE FROM user_delegations WHERE user=? AND target=? AND season=?;",
                    (user, target, int(season)),
                )
                continue
            con.execute(
                """
                INSERT INTO user_delegations(user, target, season, amount, source, updated_ts_ms)
                VALUES(?, ?, ?, ?, 'ledger', ?)
                ON CONFLICT(user, target, season) DO UPDATE SET
                  amount=excluded.amount,
                  source='ledger',
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (user, target, int(season), str(amount), now),
            )

        for target in sorted(touched):
            rows = con.execute(
                "SELECT amount FROM user_delegations WHERE target=? AND season=?;",
                (target, int(season)),
            ).fetchall()
            amounts = [int(str(r["amount"])) for r in rows]
            total = sum(amounts)
            voters = sum(1 for a in amounts if a > 0)
            first = firsts.get(target)
            con.execute(
                """
                INSERT INTO cache_aggregates(
                  target, season, total_votes, voter_count, last_synced_block,
                  first_ts, first_block, first_log, representative, updated_ts_ms
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                ON CONFLICT(target, season) DO UPDATE SET
                  total_votes=excluded.total_votes,
                  voter_count=excluded.voter_count,
                  last_synced_block=excluded.last_synced_block,
                  first_ts=COALESCE(cache_aggregates.first_ts, excluded.first_ts),
                  first_block=COALESCE(cache_aggregates.first_block, excluded.first_block),
                  first_log=COALESCE(cache_aggregates.first_log, excluded.first_log),
                  representative=0,
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (
                    target,
                    int(season),
                    str(total),
                    voters,
                    int(head),
                    first[0] if first else None,
                    first[1] if first else None,
                    first[2] if first else None,
                    now,
                ),
            )

        con.execute(
            "UPDATE cache_aggregates SET last_synced_block=? WHERE season=?;",
            (int(head), int(season)),
        )
        return applied

    @staticmethod
    def _has_representative(con: sqlite3.Connection, season: int) -> bool:
        row = con.execute(
            "SELECT 1 FROM cache_aggregates WHERE season=? AND representative=1 LIMIT 1;",
            (int(season),),
        ).fetchone()
        return row is not None

    @staticmethod
    def _clear_season(con: sqlite3.Connection, season: int) -> None:
        con.execute("DELETE FROM user_delegations WHERE season=?;", (int(season),))
        con.execute("DELETE FROM cache_aggregates WHERE season=?;", (int(season),))
        con.execute("DELETE FROM applied_events WHERE season=?;", (int(season),))

    # ----------------------------
    # Sync ticks
    # ----------------------------

    def _fetch(self, season: int, from_block: int) -> Tuple[int, List[DelegationEvent]]:
        try:
            head = int(self.gateway.get_head_block())
            if head <= from_block:
                return head, []
            return head, self._season_events(self.gateway.get_events(from_block, head), season)
        except MalformedEventError as e:
            self._quarantine(season, from_block, -1, e)
            self._mark_failed(season, e)
            raise
        except LedgerUnavailableError as e:
            self._mark_failed(season, e)
            raise

    def sync_season(self, season: int) -> Json:
        """One sync tick for `season`. Raises on abort; the cursor is unchanged then."""
        self._require_open(season)

        with self.db.connection() as con:
            representative = self._has_representative(con, season)
        if representative:
            # The event log is back; replace the reconstruction with real rows.
            return self.rebuild_season(season)

        from_block = self.sync_state(season)["last_synced_block"]
        head, events = self._fetch(season, from_block)

        try:
            with self.db.write_tx() as con:
                if self._read_cursor(con, season) != from_block:
                    # Another writer advanced the cursor; the next tick re-reads it.
                    inc_counter("cache_sync_raced_total", 1)
                    return {"ok": True, "season": int(season), "applied": 0, "raced": True}
                applied = self._apply(con, season, events, max(head, from_block))
                self._write_success(con, season, max(head, from_block))
        except MalformedEventError as e:
            self._quarantine(season, from_block, head, e)
            self._mark_failed(season, e)
            raise

        inc_counter("cache_sync_ticks_total", 1)
        inc_counter("cache_sync_events_applied_total", applied)
        set_gauge(f"cache_sync_last_block_s{int(season)}", max(head, from_block))
        if applied:
            log_event(log, "cache_sync_applied", season=int(season), from_block=from_block, to_block=head, applied=applied)
        return {
            "ok": True,
            "season": int(season),
            "from_block": int(from_block),
            "to_block": int(max(head, from_block)),
            "applied": int(applied),
        }

    def sync_open_seasons(self) -> List[Json]:
        """Tick every season that is not finalized. Failures are reported per season."""
        out: List[Json] = []
        for s in self.seasons.list_seasons(include_finalized=False):
            try:
                out.append(self.sync_season(s.number))
            except (LedgerUnavailableError, MalformedEventError) as e:
                out.append({"ok": False, "season": s.number, "error": f"{e.code}:{e.reason}"})
        return out

    def rebuild_season(self, season: int) -> Json:
        """Drop the season's cache rows and refold from block 0 atomically."""
        self._require_open(season)
        head, events = self._fetch(season, 0)
        try:
            with self.db.write_tx() as con:
                self._clear_season(con, season)
                applied = self._apply(con, season, events, head)
                self._write_success(con, season, head)
        except MalformedEventError as e:
            self._quarantine(season, 0, head, e)
            self._mark_failed(season, e)
            raise

        inc_counter("cache_rebuilds_total", 1)
        log_event(log, "cache_rebuilt", season=int(season), to_block=head, applied=applied)
        return {"ok": True, "season": int(season), "from_block": 0, "to_block": int(head), "applied": int(applied), "rebuilt": True}

    def final_reconciliation(self, season: int) -> Json:
        """Forced pass at season end, before ranking reads the cache."""
        res = self.sync_season(season)
        log_event(log, "cache_final_reconciliation", season=int(season), to_block=res.get("to_block"))
        return res

    def reconstruct_representative(self, season: int) -> Json:
        """Fallback when per-user events are unavailable.

        One row per target from the ledger's known totals, with the target's
        current owner as the single voter. Rows are tagged 'representative'
        and replaced by a rebuild on the next successful sync.
        """
        self._require_open(season)
        totals = {t: int(v) for t, v in self.gateway.get_target_totals(season).items() if int(v) > 0}
        owners = {t: str(self.gateway.get_target_owner(t) or "") for t in totals}

        now = _now_ms()
        with self.db.write_tx() as con:
            cursor = self._read_cursor(con, season)
            self._clear_season(con, season)
            for target in sorted(totals):
                owner = owners[target] or target
                con.execute(
                    """
                    INSERT INTO user_delegations(user, target, season, amount, source, updated_ts_ms)
                    VALUES(?, ?, ?, ?, 'representative', ?);
                    """,
                    (owner, target, int(season), str(totals[target]), now),
                )
                con.execute(
                    """
                    INSERT INTO cache_aggregates(
                      target, season, total_votes, voter_count, last_synced_block,
                      first_ts, first_block, first_log, representative, updated_ts_ms
                    )
                    VALUES(?, ?, ?, 1, ?, NULL, NULL, NULL, 1, ?);
                    """,
                    (target, int(season), str(totals[target]), cursor, now),
                )
            self._write_success(con, season, cursor, note="representative_reconstruction")

        inc_counter("cache_representative_reconstructions_total", 1)
        log_event(
            log,
            "cache_representative_reconstruction",
            level=logging.WARNING,
            season=int(season),
            targets=len(totals),
        )
        return {"ok": True, "season": int(season), "targets": len(totals), "representative": True}

    # ----------------------------
    # Freshness
    # ----------------------------

    def freshness(self, season: int, *, head: Optional[int] = None) -> Json:
        st = self.sync_state(season)
        s = self.seasons.get_season(season)
        if s is not None and s.finalized:
            return {**st, "head": head, "lag": 0, "stale": False, "finalized": True}

        ledger_error = None
        if head is None:
            try:
                head = int(self.gateway.get_head_block())
            except LedgerUnavailableError as e:
                ledger_error = f"{e.code}:{e.reason}"

        lag = None if head is None else max(0, int(head) - int(st["last_synced_block"]))
        stale = bool(st["stale"]) or lag is None or lag > self.stale_tolerance_blocks
        out = {**st, "head": head, "lag": lag, "stale": stale, "finalized": False}
        if ledger_error:
            out["ledger_error"] = ledger_error
        return out

    def is_stale(self, season: int) -> bool:
        return bool(self.freshness(season)["stale"])

    def get_aggregate(self, target: str, season: int, *, resync_if_stale: bool = False) -> Tuple[Optional[CacheAggregate], bool]:
        stale = self.is_stale(season)
        if stale and resync_if_stale:
            self.sync_season(season)
            stale = self.is_stale(season)
        return self.cache.get_aggregate(target, season), stale

    # ----------------------------
    # Operator validation
    # ----------------------------

    def validate_season(self, season: int) -> Json:
        """Pre-distribution checks. Read-only apart from the ledger queries."""
        issues: List[Json] = []

        def add(code: str, message: str, *, blocking: bool = True, **extra: Any) -> None:
            issues.append({"code": code, "message": message, "blocking": blocking, **extra})

        s = self.seasons.get_season(season)
        if s is None:
            add("season_not_found", f"season {int(season)} is unknown")
            return {"season": int(season), "can_proceed": False, "discrepancies": issues}

        ended = s.phase in {"finalizing", "completed"}
        if not ended:
            add("season_not_ended", f"season {s.number} is still {s.phase}")
        if s.finalized:
            add("season_finalized", f"season {s.number} is already finalized")

        fresh = self.freshness(season)
        if fresh["stale"] and not s.finalized:
            add("cache_stale", "cache is behind the ledger", lag=fresh.get("lag"), last_error=fresh.get("last_error"))

        quarantined = self.list_quarantined(season)
        if quarantined:
            add("quarantined_events", f"{len(quarantined)} malformed event(s) quarantined", count=len(quarantined))

        aggs = self.cache.list_aggregates(season)
        if any(a.representative for a in aggs):
            add(
                "representative_data",
                "per-user rows were reconstructed from target totals",
                blocking=False,
            )

        cache_totals = {a.target: a.total_votes for a in aggs if a.total_votes != 0}
        ledger_total: Optional[int] = None
        try:
            ledger_totals = {t: int(v) for t, v in self.gateway.get_target_totals(season).items() if int(v) != 0}
            ledger_total = sum(ledger_totals.values())
            for t in sorted(set(cache_totals) | set(ledger_totals)):
                c = cache_totals.get(t, 0)
                l_ = ledger_totals.get(t, 0)
                if c != l_:
                    add("vote_mismatch", f"vote count mismatch for {t}", target=t, cache=str(c), ledger=str(l_))

            start, end = self.gateway.get_season_window(season)
            if (int(start), int(end)) != (s.start_time, s.end_time):
                add(
                    "window_mismatch",
                    "ledger season window differs from the local clock",
                    blocking=False,
                    ledger=[int(start), int(end)],
                    local=[s.start_time, s.end_time],
                )
        except (LedgerUnavailableError, MalformedEventError) as e:
            add("ledger_unavailable", f"{e.code}:{e.reason}")

        can_proceed = not any(i["blocking"] for i in issues)
        return {
            "season": int(season),
            "phase": s.phase,
            "ended": ended,
            "finalized": s.finalized,
            "can_proceed": can_proceed,
            "discrepancies": issues,
            "cache_total_votes": str(sum(cache_totals.values())),
            "ledger_total_votes": None if ledger_total is None else str(ledger_total),
            "targets": len(cache_totals),
            "freshness": fresh,
        }
