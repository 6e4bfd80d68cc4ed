from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Dict, List, Optional, Tuple

from seasonpool.ledger.constants import DEFAULT_SEASON_EPOCH_S, DEFAULT_SEASON_LENGTH_S, SEASON_PHASES
from seasonpool.ledger.types import Season
from seasonpool.runtime.errors import (
    DistributionInProgressError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from seasonpool.runtime.log_events import log_event
from seasonpool.runtime.metrics import inc_counter, set_gauge
from seasonpool.runtime.sqlite_db import SqliteDB, _now_ms

Json = Dict[str, Any]

log = logging.getLogger("seasonpool.season")

_PHASE_RANK = {p: i for i, p in enumerate(SEASON_PHASES)}


def _now_s() -> int:
    return int(time.time())


def compute_season_for(timestamp: int, *, epoch_s: int, length_s: int) -> int:
    """Season number containing `timestamp`.

    Pure function of (epoch, length, timestamp); timestamps before the epoch
    map to season 1.
    """
    if int(length_s) <= 0:
        raise ValueError("length_s must be > 0")
    return max(1, (int(timestamp) - int(epoch_s)) // int(length_s) + 1)


def season_boundaries(n: int, *, epoch_s: int, length_s: int) -> Tuple[int, int]:
    """[start, end) of season n."""
    if int(n) < 1:
        raise ValidationError("bad_season", "season_must_be_positive", {"season": n})
    start = int(epoch_s) + (int(n) - 1) * int(length_s)
    return start, start + int(length_s)


def _row_to_season(row: sqlite3.Row) -> Season:
    return Season(
        number=int(row["number"]),
        start_time=int(row["start_time"]),
        end_time=int(row["end_time"]),
        phase=str(row["phase"]),
        is_active=bool(row["is_active"]),
        finalized=bool(row["finalized"]),
    )


def _check_phase_move(season: int, current: str, new: str) -> None:
    if _PHASE_RANK.get(new, -1) <= _PHASE_RANK.get(current, -1):
        raise InvalidTransitionError(
            "invalid_transition",
            f"{current}->{new}",
            {"season": int(season), "from": current, "to": new},
        )


class SeasonManager:
    """Season lifecycle: preparing -> active -> finalizing -> completed.

    Exactly one season row is active at a time (enforced by a partial unique
    index). Phases only move forward; a completed season is finalized and
    never re-activated.
    """

    def __init__(
        self,
        *,
        db: SqliteDB,
        epoch_s: int = DEFAULT_SEASON_EPOCH_S,
        length_s: int = DEFAULT_SEASON_LENGTH_S,
        lock_ttl_ms: int = 5 * 60_000,
    ) -> None:
        if int(length_s) <= 0:
            raise ValueError("length_s must be > 0")
        self.db = db
        self.epoch_s = int(epoch_s)
        self.length_s = int(length_s)
        self.lock_ttl_ms = int(lock_ttl_ms)

    # ----------------------------
    # Pure clock
    # ----------------------------

    def compute_season_for(self, timestamp: int) -> int:
        return compute_season_for(timestamp, epoch_s=self.epoch_s, length_s=self.length_s)

    def get_boundaries(self, n: int) -> Tuple[int, int]:
        return season_boundaries(n, epoch_s=self.epoch_s, length_s=self.length_s)

    # ----------------------------
    # Reads
    # ----------------------------

    def get_season(self, n: int) -> Optional[Season]:
        with self.db.connection() as con:
            row = con.execute("SELECT * FROM seasons WHERE number=? LIMIT 1;", (int(n),)).fetchone()
        return _row_to_season(row) if row is not None else None

    def require_season(self, n: int) -> Season:
        s = self.get_season(n)
        if s is None:
            raise NotFoundError("season_not_found", "unknown_season", {"season": int(n)})
        return s

    def list_seasons(self, *, include_finalized: bool = True) -> List[Season]:
        q = "SELECT * FROM seasons"
        if not include_finalized:
            q += " WHERE finalized=0"
        with self.db.connection() as con:
            rows = con.execute(q + " ORDER BY number ASC;").fetchall()
        return [_row_to_season(r) for r in rows]

    def active_season(self) -> Optional[Season]:
        with self.db.connection() as con:
            row = con.execute("SELECT * FROM seasons WHERE is_active=1 LIMIT 1;").fetchone()
        return _row_to_season(row) if row is not None else None

    def get_current_season(self, now_s: Optional[int] = None) -> Season:
        """Return the active season, bootstrapping it from the clock on first use."""
        cur = self.active_season()
        if cur is not None:
            return cur

        n = self.compute_season_for(_now_s() if now_s is None else int(now_s))
        with self.db.write_tx() as con:
            row = con.execute("SELECT * FROM seasons WHERE is_active=1 LIMIT 1;").fetchone()
            if row is not None:
                return _row_to_season(row)
            existing = con.execute("SELECT * FROM seasons WHERE number=? LIMIT 1;", (n,)).fetchone()
            if existing is not None and str(existing["phase"]) != "preparing":
                # Clock points at a season that already closed; open the next one.
                n = int(con.execute("SELECT MAX(number) AS m FROM seasons;").fetchone()["m"]) + 1
            self._activate(con, n)
            row = con.execute("SELECT * FROM seasons WHERE number=? LIMIT 1;", (n,)).fetchone()

        season = _row_to_season(row)
        log_event(log, "season_bootstrap", season=season.number, start=season.start_time, end=season.end_time)
        return season

    def get_state(self, now_s: Optional[int] = None) -> Json:
        """Current/previous/next season view for operators."""
        now = _now_s() if now_s is None else int(now_s)
        cur = self.get_current_season(now)

        prev: Optional[Json] = None
        if cur.number > 1:
            p = self.get_season(cur.number - 1)
            if p is not None:
                prev = p.to_json()
            else:
                start, end = self.get_boundaries(cur.number - 1)
                prev = {"number": cur.number - 1, "start_time": start, "end_time": end, "phase": None}

        n_start, n_end = self.get_boundaries(cur.number + 1)
        nxt = {"number": cur.number + 1, "start_time": n_start, "end_time": n_end, "phase": "preparing"}

        return {
            "now": now,
            "current": cur.to_json(),
            "previous": prev,
            "next": nxt,
            "should_transition": cur.end_time <= now,
            "clock_season": self.compute_season_for(now),
        }

    def should_transition(self, now_s: Optional[int] = None) -> bool:
        cur = self.active_season()
        if cur is None:
            return False
        now = _now_s() if now_s is None else int(now_s)
        return cur.end_time <= now

    # ----------------------------
    # Writes
    # ----------------------------

    def _activate(self, con: sqlite3.Connection, n: int) -> None:
        start, end = self.get_boundaries(n)
        row = con.execute("SELECT phase FROM seasons WHERE number=? LIMIT 1;", (int(n),)).fetchone()
        if row is None:
            con.execute(
                """
                INSERT INTO seasons(number, start_time, end_time, phase, is_active, finalized, updated_ts_ms)
                VALUES(?, ?, ?, 'active', 1, 0, ?);
                """,
                (int(n), start, end, _now_ms()),
            )
        else:
            _check_phase_move(n, str(row["phase"]), "active")
            con.execute(
                "UPDATE seasons SET phase='active', is_active=1, updated_ts_ms=? WHERE number=?;",
                (_now_ms(), int(n)),
            )
        set_gauge("season_active", int(n))

    def _advance(self, con: sqlite3.Connection, cur: Season) -> None:
        _check_phase_move(cur.number, cur.phase, "finalizing")
        # Deactivate first; the one-active index rejects two active rows.
        con.execute(
            "UPDATE seasons SET phase='finalizing', is_active=0, updated_ts_ms=? WHERE number=?;",
            (_now_ms(), cur.number),
        )
        self._activate(con, cur.number + 1)

    def _seasons_paying_out(self, con: sqlite3.Connection) -> List[int]:
        rows = con.execute(
            """
            SELECT ep.season AS season FROM execution_progress ep
            JOIN seasons s ON s.number = ep.season
            WHERE s.finalized = 0 AND ep.status = 'in_progress'
            UNION
            SELECT dl.season AS season FROM distribution_locks dl
            JOIN seasons s ON s.number = dl.season
            WHERE s.finalized = 0 AND dl.heartbeat_ms > ?
            ORDER BY season ASC;
            """,
            (_now_ms() - self.lock_ttl_ms,),
        ).fetchall()
        return [int(r["season"]) for r in rows]

    def transition(self, now_s: Optional[int] = None) -> Optional[Season]:
        """Move the active season to finalizing and activate the next one.

        Returns the season that entered finalizing, or None when the active
        season has not ended yet. One season per call; a long outage is
        caught up over consecutive ticks.
        """
        now = _now_s() if now_s is None else int(now_s)
        self.get_current_season(now)

        with self.db.write_tx() as con:
            row = con.execute("SELECT * FROM seasons WHERE is_active=1 LIMIT 1;").fetchone()
            if row is None:
                return None
            cur = _row_to_season(row)
            if cur.end_time > now:
                return None
            self._advance(con, cur)

        inc_counter("season_transitions_total", 1)
        log_event(log, "season_transition", season=cur.number, next_season=cur.number + 1, now=now)
        return self.get_season(cur.number)

    def force_transition(self, season: int, *, reason: str = "", actor: str = "") -> Season:
        """Emergency close of the active season regardless of the clock.

        Refuses while any unfinalized season has a payout run in progress or
        a live distribution lock.
        """
        with self.db.write_tx() as con:
            row = con.execute("SELECT * FROM seasons WHERE number=? LIMIT 1;", (int(season),)).fetchone()
            if row is None:
                raise NotFoundError("season_not_found", "unknown_season", {"season": int(season)})
            cur = _row_to_season(row)
            if not cur.is_active:
                raise InvalidTransitionError(
                    "invalid_transition",
                    "season_not_active",
                    {"season": cur.number, "phase": cur.phase},
                )
            busy = self._seasons_paying_out(con)
            if busy:
                raise DistributionInProgressError(
                    "distribution_in_progress",
                    "force_transition_refused",
                    {"season": cur.number, "paying_out": busy},
                )
            self._advance(con, cur)

        inc_counter("season_force_transitions_total", 1)
        log_event(
            log,
            "season_force_transition",
            level=logging.WARNING,
            emergency=True,
            season=cur.number,
            next_season=cur.number + 1,
            reason=str(reason or ""),
            actor=str(actor or ""),
        )
        return self.require_season(cur.number)

    def complete_season(self, n: int) -> Season:
        """finalizing -> completed; the season becomes immutable."""
        with self.db.write_tx() as con:
            row = con.execute("SELECT * FROM seasons WHERE number=? LIMIT 1;", (int(n),)).fetchone()
            if row is None:
                raise NotFoundError("season_not_found", "unknown_season", {"season": int(n)})
            cur = _row_to_season(row)
            if cur.finalized:
                return cur
            _check_phase_move(cur.number, cur.phase, "completed")
            if cur.phase != "finalizing":
                raise InvalidTransitionError(
                    "invalid_transition",
                    f"{cur.phase}->completed",
                    {"season": cur.number},
                )
            con.execute(
                "UPDATE seasons SET phase='completed', finalized=1, is_active=0, updated_ts_ms=? WHERE number=?;",
                (_now_ms(), cur.number),
            )

        log_event(log, "season_completed", season=int(n))
        return self.require_season(n)

    def is_finalized(self, n: int) -> bool:
        s = self.get_season(n)
        return bool(s and s.finalized)
