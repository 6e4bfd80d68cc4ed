from __future__ import annotations

import json
import logging
import math
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from seasonpool.ledger.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONFIRM_TIMEOUT_S,
    DEFAULT_MAX_ATTEMPTS,
)
from seasonpool.ledger.gateway import LedgerGateway
from seasonpool.ledger.types import ConfirmationResult, Distribution, ExecutionProgress, Transfer
from seasonpool.runtime.errors import (
    InvalidTransitionError,
    LedgerUnavailableError,
    LockLostError,
    NotFoundError,
    PartialDistributionFailure,
    SeasonFinalizedError,
    ValidationError,
)
from seasonpool.runtime.log_events import log_event
from seasonpool.runtime.metrics import inc_counter, set_gauge
from seasonpool.runtime.rewards import RewardCalculator
from seasonpool.runtime.season_manager import SeasonManager
from seasonpool.runtime.sqlite_db import SqliteDB, _now_ms

Json = Dict[str, Any]

log = logging.getLogger("seasonpool.distribution")


@dataclass
class DistributionConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    confirm_timeout_s: int = DEFAULT_CONFIRM_TIMEOUT_S

    # Retry / backoff for failed rows
    retry_backoff_ms: int = 1_000
    retry_backoff_cap_ms: int = 60_000

    # Advisory lock; a holder that stops heartbeating loses it after this long.
    lock_ttl_ms: int = 5 * 60_000


def _row_to_distribution(row: sqlite3.Row) -> Distribution:
    return Distribution(
        season=int(row["season"]),
        recipient=str(row["recipient"]),
        amount=int(str(row["amount"])),
        status=str(row["status"]),
        tx_handle=row["tx_handle"],
        error=row["error"],
        attempts=int(row["attempts"]),
        updated_ts_ms=int(row["updated_ts_ms"]),
    )


class DistributionExecutor:
    """Batched, resumable payout of an approved reward calculation.

    Tables:
      distributions(season, recipient) one row per recipient
      execution_progress(season)       run status and batch counters
      distribution_locks(season)       advisory single-runner lock

    Guarantees:
      - a confirmed row is never submitted again
      - batches run strictly in order; batch k+1 starts after every row of
        batch k is confirmed or failed
      - a crashed run resumes from the rows; rows left 'sent' are resolved
        by re-checking their transaction before anything else runs
      - failed rows are retried up to max_attempts with exponential backoff,
        then stay failed for operator follow-up
    """

    def __init__(
        self,
        *,
        db: SqliteDB,
        gateway: LedgerGateway,
        seasons: SeasonManager,
        rewards: RewardCalculator,
        cfg: Optional[DistributionConfig] = None,
        owner: Optional[str] = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.seasons = seasons
        self.rewards = rewards
        self.cfg = cfg or DistributionConfig()
        self.owner = owner or uuid.uuid4().hex

        self._threads: Dict[int, threading.Thread] = {}
        self._cancel: Dict[int, threading.Event] = {}
        self._threads_lock = threading.Lock()

    # ----------------------------
    # Advisory lock
    # ----------------------------

    def _try_acquire(self, con: sqlite3.Connection, season: int, now: int) -> bool:
        row = con.execute("SELECT owner, heartbeat_ms FROM distribution_locks WHERE season=? LIMIT 1;", (int(season),)).fetchone()
        if row is not None and str(row["owner"]) != self.owner:
            if now - int(row["heartbeat_ms"]) < int(self.cfg.lock_ttl_ms):
                return False
            log_event(log, "distribution_lock_expired", level=logging.WARNING, season=int(season), previous_owner=str(row["owner"]))
        con.execute(
            """
            INSERT INTO distribution_locks(season, owner, heartbeat_ms) VALUES(?, ?, ?)
            ON CONFLICT(season) DO UPDATE SET owner=excluded.owner, heartbeat_ms=excluded.heartbeat_ms;
            """,
            (int(season), self.owner, now),
        )
        return True

    def acquire_lock(self, season: int) -> bool:
        with self.db.write_tx() as con:
            return self._try_acquire(con, season, _now_ms())

    def _heartbeat(self, season: int) -> None:
        """Refresh our lock, taking it if free; LockLostError if someone else holds it."""
        with self.db.write_tx() as con:
            if not self._try_acquire(con, season, _now_ms()):
                raise LockLostError("lock_lost", "distribution_lock_held_by_other_owner", {"season": int(season)})

    def release_lock(self, season: int) -> None:
        with self.db.write_tx() as con:
            con.execute("DELETE FROM distribution_locks WHERE season=? AND owner=?;", (int(season), self.owner))

    def lock_holder(self, season: int) -> Optional[Json]:
        with self.db.connection() as con:
            row = con.execute("SELECT owner, heartbeat_ms FROM distribution_locks WHERE season=? LIMIT 1;", (int(season),)).fetchone()
        if row is None:
            return None
        return {"owner": str(row["owner"]), "heartbeat_ms": int(row["heartbeat_ms"])}

    # ----------------------------
    # Progress
    # ----------------------------

    @staticmethod
    def _counts(con: sqlite3.Connection, season: int, now: int) -> Json:
        row = con.execute(
            """
            SELECT
              COUNT(*) AS total,
              SUM(CASE WHEN attempts >= 1 THEN 1 ELSE 0 END) AS processed,
              SUM(CASE WHEN status='confirmed' THEN 1 ELSE 0 END) AS confirmed,
              SUM(CASE WHEN status='failed' THEN 1 ELSE 0 END) AS failed,
              SUM(CASE WHEN status='pending' THEN 1 ELSE 0 END) AS pending,
              SUM(CASE WHEN status='sent' THEN 1 ELSE 0 END) AS sent,
              SUM(CASE WHEN status='failed' AND attempts < attempt_limit THEN 1 ELSE 0 END) AS retryable
            FROM distributions WHERE season=?;
            """,
            (int(season),),
        ).fetchone()
        return {k: int(row[k] or 0) for k in ("total", "processed", "confirmed", "failed", "pending", "sent", "retryable")}

    def _set_progress(self, con: sqlite3.Connection, season: int, **fields: Any) -> None:
        sets = ", ".join(f"{k}=?" for k in fields)
        con.execute(f"UPDATE execution_progress SET {sets} WHERE season=?;", (*fields.values(), int(season)))

    def get_progress(self, season: int) -> ExecutionProgress:
        with self.db.connection() as con:
            row = con.execute("SELECT * FROM execution_progress WHERE season=? LIMIT 1;", (int(season),)).fetchone()
            if row is None:
                raise NotFoundError("progress_not_found", "distribution_not_prepared", {"season": int(season)})
            c = self._counts(con, season, _now_ms())

        status = str(row["status"])
        current = int(row["current_batch"])
        bs = max(1, int(self.cfg.batch_size))
        if status == "completed":
            total_batches = current
        else:
            remaining = math.ceil((c["pending"] + c["sent"]) / bs) + math.ceil(c["retryable"] / bs)
            total_batches = max(int(row["total_batches"]), current + remaining)

        return ExecutionProgress(
            season=int(season),
            total_recipients=c["total"],
            processed=c["processed"],
            successful=c["confirmed"],
            failed=c["failed"],
            current_batch=current,
            total_batches=total_batches,
            status=status,
            started_ms=int(row["started_ms"]),
            finished_ms=int(row["finished_ms"]),
            tx_handles=list(json.loads(str(row["tx_handles_json"]) or "[]")),
            error=row["error"],
        )

    def list_distributions(self, season: int, *, status: Optional[str] = None) -> List[Distribution]:
        q = "SELECT * FROM distributions WHERE season=?"
        args: List[Any] = [int(season)]
        if status:
            q += " AND status=?"
            args.append(str(status))
        with self.db.connection() as con:
            rows = con.execute(q + " ORDER BY recipient ASC;", tuple(args)).fetchall()
        return [_row_to_distribution(r) for r in rows]

    # ----------------------------
    # Preparation
    # ----------------------------

    def prepare(self, season: int) -> ExecutionProgress:
        """Create payout rows from the approved calculation.

        Database only; rows left 'sent' by a crashed run are resolved when
        the next run starts. Idempotent. Re-running after a partial failure
        gives exhausted rows a fresh retry budget.
        """
        s = self.seasons.require_season(season)
        if s.finalized:
            raise SeasonFinalizedError("season_finalized", "distribution_already_final", {"season": int(season)})
        if s.phase != "finalizing":
            raise InvalidTransitionError("season_not_ended", f"season_is_{s.phase}", {"season": int(season)})

        calc = self.rewards.get_approved(season)
        recipients = calc.recipients()
        if not recipients:
            raise ValidationError("bad_calculation", "no_recipients", {"season": int(season)})

        now = _now_ms()
        limit = max(1, int(self.cfg.max_attempts))
        with self.db.write_tx() as con:
            for recipient in sorted(recipients):
                con.execute(
                    """
                    INSERT OR IGNORE INTO distributions(
                      season, recipient, amount, status, tx_handle, error,
                      attempts, attempt_limit, next_attempt_ms, updated_ts_ms
                    )
                    VALUES(?, ?, ?, 'pending', NULL, NULL, 0, ?, 0, ?);
                    """,
                    (int(season), recipient, str(recipients[recipient]), limit, now),
                )
            con.execute(
                """
                UPDATE distributions
                SET attempt_limit=attempts + ?, next_attempt_ms=0, updated_ts_ms=?
                WHERE season=? AND status='failed' AND attempts >= attempt_limit;
                """,
                (limit, now, int(season)),
            )
            total = int(con.execute("SELECT COUNT(*) AS n FROM distributions WHERE season=?;", (int(season),)).fetchone()["n"])
            con.execute(
                """
                INSERT INTO execution_progress(
                  season, status, total_recipients, current_batch, total_batches,
                  started_ms, finished_ms, tx_handles_json, error
                )
                VALUES(?, 'pending', ?, 0, ?, 0, 0, '[]', NULL)
                ON CONFLICT(season) DO UPDATE SET
                  status=CASE WHEN execution_progress.status='in_progress' THEN 'in_progress' ELSE 'pending' END,
                  total_recipients=excluded.total_recipients,
                  finished_ms=0,
                  error=NULL;
                """,
                (int(season), total, math.ceil(total / max(1, int(self.cfg.batch_size)))),
            )

        return self.get_progress(season)

    def _reconcile_sent(self, season: int) -> None:
        rows = self.list_distributions(season, status="sent")
        by_handle: Dict[str, List[Distribution]] = {}
        for r in rows:
            by_handle.setdefault(str(r.tx_handle or ""), []).append(r)
        for handle, group in sorted(by_handle.items()):
            if not handle:
                res = ConfirmationResult(status="failed", error="missing_tx_handle")
            else:
                res = self.gateway.await_confirmation(handle, float(self.cfg.confirm_timeout_s))
            self._resolve(season, [g.recipient for g in group], res)
            log_event(log, "distribution_sent_reconciled", season=int(season), tx_handle=handle, status=res.status, rows=len(group))

    # ----------------------------
    # Batch execution
    # ----------------------------

    def _compute_backoff_ms(self, attempts: int) -> int:
        a = max(1, int(attempts))
        base = max(0, int(self.cfg.retry_backoff_ms))
        cap = max(base, int(self.cfg.retry_backoff_cap_ms))
        return int(min(cap, base * (2 ** min(a - 1, 20))))

    def _resolve(self, season: int, recipients: List[str], res: ConfirmationResult) -> None:
        now = _now_ms()
        with self.db.write_tx() as con:
            for r in recipients:
                if res.confirmed:
                    con.execute(
                        """
                        UPDATE distributions SET status='confirmed', error=NULL, attempts=attempts + 1, updated_ts_ms=?
                        WHERE season=? AND recipient=? AND status!='confirmed';
                        """,
                        (now, int(season), r),
                    )
                    continue
                row = con.execute(
                    "SELECT attempts FROM distributions WHERE season=? AND recipient=? LIMIT 1;",
                    (int(season), r),
                ).fetchone()
                attempts = int(row["attempts"]) + 1 if row is not None else 1
                con.execute(
                    """
                    UPDATE distributions
                    SET status='failed', error=?, attempts=?, next_attempt_ms=?, updated_ts_ms=?
                    WHERE season=? AND recipient=? AND status!='confirmed';
                    """,
                    (str(res.error or "failed")[:2000], attempts, now + self._compute_backoff_ms(attempts), now, int(season), r),
                )

    def _select_batch(self, season: int, now: int) -> Json:
        bs = max(1, int(self.cfg.batch_size))
        with self.db.connection() as con:
            rows = con.execute(
                "SELECT * FROM distributions WHERE season=? AND status='pending' ORDER BY recipient ASC LIMIT ?;",
                (int(season), bs),
            ).fetchall()
            if rows:
                return {"rows": [_row_to_distribution(r) for r in rows], "retry": False}

            retry = con.execute(
                """
                SELECT * FROM distributions
                WHERE season=? AND status='failed' AND attempts < attempt_limit
                ORDER BY recipient ASC;
                """,
                (int(season),),
            ).fetchall()
        if not retry:
            return {"rows": [], "retry": False}
        ready = [_row_to_distribution(r) for r in retry if int(r["next_attempt_ms"]) <= now][:bs]
        if not ready:
            wait = min(int(r["next_attempt_ms"]) for r in retry) - now
            return {"rows": [], "retry": True, "wait_ms": max(1, wait)}
        return {"rows": ready, "retry": True}

    def _recheck_timed_out(self, season: int, rows: List[Distribution]) -> List[Distribution]:
        """Before resubmitting, ask the ledger whether a timed-out transfer landed after all."""
        out: List[Distribution] = []
        for r in rows:
            if r.tx_handle and r.error == "confirmation_timeout":
                res = self.gateway.await_confirmation(r.tx_handle, 0.0)
                if res.confirmed:
                    self._resolve(season, [r.recipient], res)
                    log_event(log, "distribution_late_confirmation", season=int(season), recipient=r.recipient, tx_handle=r.tx_handle)
                    continue
            out.append(r)
        return out

    def _start_progress(self, season: int) -> None:
        with self.db.write_tx() as con:
            row = con.execute("SELECT status FROM execution_progress WHERE season=? LIMIT 1;", (int(season),)).fetchone()
            if row is None:
                raise NotFoundError("progress_not_found", "distribution_not_prepared", {"season": int(season)})
            if str(row["status"]) != "in_progress":
                self._set_progress(con, season, status="in_progress", started_ms=_now_ms(), finished_ms=0, error=None)

    def step(self, season: int) -> Json:
        """Run one batch. Returns {"done": True} when nothing is left to run."""
        self._heartbeat(season)
        self._start_progress(season)

        now = _now_ms()
        sel = self._select_batch(season, now)
        rows: List[Distribution] = sel["rows"]
        if sel["retry"] and rows:
            rows = self._recheck_timed_out(season, rows)
        if not rows:
            if sel.get("wait_ms"):
                return {"done": False, "wait_ms": int(sel["wait_ms"])}
            if sel["retry"]:
                # Every retry candidate confirmed on recheck.
                return {"done": False, "batch": None}
            return {"done": True}

        recipients = [r.recipient for r in rows]
        transfers = [Transfer(recipient=r.recipient, amount=r.amount) for r in rows]

        with self.db.write_tx() as con:
            cur = con.execute("SELECT current_batch FROM execution_progress WHERE season=? LIMIT 1;", (int(season),)).fetchone()
            batch_no = int(cur["current_batch"]) + 1 if cur is not None else 1
            self._set_progress(con, season, current_batch=batch_no)

        try:
            handle = self.gateway.submit_batch_transfer(transfers)
        except LedgerUnavailableError as e:
            self._resolve(season, recipients, ConfirmationResult(status="failed", error=f"submit_failed:{e.reason}"))
            inc_counter("distribution_batch_failures_total", 1)
            log_event(log, "distribution_batch_failed", level=logging.WARNING, season=int(season), batch=batch_no, rows=len(rows), error=f"{e.code}:{e.reason}")
            return {"done": False, "batch": batch_no, "rows": len(rows), "status": "failed", "tx_handle": None, "retry": sel["retry"]}

        now = _now_ms()
        with self.db.write_tx() as con:
            for r in recipients:
                con.execute(
                    """
                    UPDATE distributions SET status='sent', tx_handle=?, error=NULL, updated_ts_ms=?
                    WHERE season=? AND recipient=? AND status!='confirmed';
                    """,
                    (handle, now, int(season), r),
                )
            prow = con.execute("SELECT tx_handles_json FROM execution_progress WHERE season=? LIMIT 1;", (int(season),)).fetchone()
            handles = list(json.loads(str(prow["tx_handles_json"]) or "[]")) if prow is not None else []
            handles.append(handle)
            self._set_progress(con, season, tx_handles_json=json.dumps(handles))

        try:
            res = self.gateway.await_confirmation(handle, float(self.cfg.confirm_timeout_s))
        except LedgerUnavailableError:
            # Outcome unknown; the retry round re-checks this handle before resubmitting.
            res = ConfirmationResult(status="failed", error="confirmation_timeout")

        self._resolve(season, recipients, res)
        inc_counter("distribution_batches_total", 1)
        if res.confirmed:
            inc_counter("distribution_rows_confirmed_total", len(rows))
        else:
            inc_counter("distribution_batch_failures_total", 1)
        log_event(
            log,
            "distribution_batch",
            level=logging.INFO if res.confirmed else logging.WARNING,
            season=int(season),
            batch=batch_no,
            rows=len(rows),
            tx_handle=handle,
            status=res.status,
            error=res.error,
            retry=sel["retry"],
        )
        return {"done": False, "batch": batch_no, "rows": len(rows), "status": res.status, "tx_handle": handle, "retry": sel["retry"]}

    def _finish(self, season: int) -> ExecutionProgress:
        with self.db.write_tx() as con:
            c = self._counts(con, season, _now_ms())
            error = None
            if c["failed"]:
                error = f"partial_failure:{c['failed']}"
            cur = con.execute("SELECT current_batch FROM execution_progress WHERE season=? LIMIT 1;", (int(season),)).fetchone()
            self._set_progress(
                con,
                season,
                status="completed",
                finished_ms=_now_ms(),
                error=error,
                total_batches=int(cur["current_batch"]) if cur is not None else 0,
            )

        set_gauge("distribution_failed_rows", c["failed"])
        if c["failed"]:
            err = PartialDistributionFailure(
                "partial_distribution_failure",
                "rows_exhausted_retries",
                {"season": int(season), "failed": c["failed"], "confirmed": c["confirmed"]},
            )
            inc_counter("distribution_partial_failures_total", 1)
            log_event(log, "distribution_partial_failure", level=logging.ERROR, season=int(season), error=str(err))
        else:
            self.seasons.complete_season(season)
            inc_counter("distribution_completed_total", 1)
            log_event(log, "distribution_completed", season=int(season), recipients=c["total"])
        return self.get_progress(season)

    def _mark_run_failed(self, season: int, err: BaseException) -> None:
        with self.db.write_tx() as con:
            self._set_progress(con, season, status="failed", finished_ms=_now_ms(), error=f"{type(err).__name__}:{err}"[:2000])

    def run(self, season: int, *, cancel: Optional[threading.Event] = None) -> ExecutionProgress:
        """Drive steps until done. The caller must hold (or be able to take) the lock."""
        cancel = cancel or threading.Event()
        try:
            self._heartbeat(season)
            self._reconcile_sent(season)
            while True:
                if cancel.is_set():
                    self._mark_run_failed(season, RuntimeError("aborted"))
                    log_event(log, "distribution_aborted", level=logging.WARNING, season=int(season))
                    return self.get_progress(season)
                res = self.step(season)
                if res.get("done"):
                    return self._finish(season)
                wait_ms = int(res.get("wait_ms") or 0)
                if wait_ms:
                    cancel.wait(min(wait_ms, int(self.cfg.retry_backoff_cap_ms)) / 1000.0)
        except LockLostError:
            # Another runner owns the season now; do not touch its state.
            log_event(log, "distribution_lock_lost", level=logging.ERROR, season=int(season))
            raise
        except Exception as e:
            self._mark_run_failed(season, e)
            log.exception("distribution run failed season=%s", season)
            raise

    # ----------------------------
    # Entry point
    # ----------------------------

    def start_distribution(self, season: int, *, background: bool = True) -> Json:
        """Start (or resume) the payout run for `season`.

        A second call while a run holds the lock is a no-op that reports the
        existing progress.
        """
        if self.seasons.is_finalized(season):
            try:
                done = self.get_progress(season)
            except NotFoundError:
                raise SeasonFinalizedError("season_finalized", "season_closed_without_distribution", {"season": int(season)})
            return {"ok": True, "season": int(season), "status": "completed", "progress": done.to_json()}

        with self._threads_lock:
            t = self._threads.get(int(season))
            if t is not None and t.is_alive():
                return {"ok": True, "season": int(season), "status": "already_running", "progress": self.get_progress(season).to_json()}

            if not self.acquire_lock(season):
                progress: Optional[Json] = None
                try:
                    progress = self.get_progress(season).to_json()
                except NotFoundError:
                    progress = None
                return {"ok": True, "season": int(season), "status": "already_running", "progress": progress}

            try:
                prog = self.prepare(season)
            except Exception:
                self.release_lock(season)
                raise

            if prog.successful == prog.total_recipients:
                # Every row already confirmed; only the season close is left.
                try:
                    done = self._finish(season)
                finally:
                    self.release_lock(season)
                return {"ok": True, "season": int(season), "status": "completed", "progress": done.to_json()}

            self._start_progress(season)
            cancel = threading.Event()
            self._cancel[int(season)] = cancel

            if background:
                t = threading.Thread(
                    target=self._run_and_release,
                    args=(int(season), cancel),
                    name=f"seasonpool-distribution-{int(season)}",
                    daemon=True,
                )
                self._threads[int(season)] = t
                t.start()
                inc_counter("distribution_runs_started_total", 1)
                log_event(log, "distribution_started", season=int(season), recipients=prog.total_recipients, background=True)
                return {"ok": True, "season": int(season), "status": "accepted", "progress": self.get_progress(season).to_json()}

        inc_counter("distribution_runs_started_total", 1)
        log_event(log, "distribution_started", season=int(season), recipients=prog.total_recipients, background=False)
        final = self._run_and_release(int(season), cancel)
        return {"ok": True, "season": int(season), "status": final.status if final else "failed", "progress": self.get_progress(season).to_json()}

    def _run_and_release(self, season: int, cancel: threading.Event) -> Optional[ExecutionProgress]:
        try:
            return self.run(season, cancel=cancel)
        except Exception:
            # Already logged; the outcome is on execution_progress unless the lock was lost.
            return None
        finally:
            try:
                self.release_lock(season)
            except Exception:
                log.exception("distribution lock release failed season=%s", season)

    def abort(self, season: int) -> bool:
        ev = self._cancel.get(int(season))
        if ev is None:
            return False
        ev.set()
        return True

    def wait(self, season: int, timeout_s: float = 10.0) -> bool:
        t = self._threads.get(int(season))
        if t is None:
            return True
        t.join(timeout=timeout_s)
        return not t.is_alive()

    def stop(self, timeout_s: float = 2.0) -> None:
        for ev in list(self._cancel.values()):
            ev.set()
        deadline = time.monotonic() + float(timeout_s)
        for t in list(self._threads.values()):
            t.join(timeout=max(0.0, deadline - time.monotonic()))
