from __future__ import annotations

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from seasonpool.runtime.cache_sync import CacheSynchronizer
from seasonpool.runtime.errors import LedgerUnavailableError, MalformedEventError
from seasonpool.runtime.log_events import log_event
from seasonpool.runtime.metrics import inc_counter, set_gauge
from seasonpool.runtime.season_manager import SeasonManager

Json = Dict[str, Any]

log = logging.getLogger("seasonpool.sync_loop")


@dataclass(frozen=True, slots=True)
class SyncLoopConfig:
    interval_ms: int
    enabled: bool
    lock_path: str
    queue_max: int

    # Reliability knobs
    fail_fast_after: int
    error_backoff_min_ms: int
    error_backoff_max_ms: int


def _env_bool(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return bool(default)
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except Exception:
        return int(default)


def sync_loop_config_from_env(*, interval_ms: int = 5_000, lock_path: str = "./data/sync_loop.lock") -> SyncLoopConfig:
    enabled = _env_bool("SEASONPOOL_SYNC_LOOP_ENABLED", True)
    interval_ms = max(250, _env_int("SEASONPOOL_SYNC_INTERVAL_MS", interval_ms))
    lock_path = os.environ.get("SEASONPOOL_SYNC_LOOP_LOCK_PATH", lock_path)
    queue_max = max(2, _env_int("SEASONPOOL_SYNC_QUEUE_MAX", 16))

    fail_fast_after = max(3, _env_int("SEASONPOOL_SYNC_LOOP_FAIL_FAST_AFTER", 10))
    error_backoff_min_ms = max(50, _env_int("SEASONPOOL_SYNC_LOOP_ERROR_BACKOFF_MIN_MS", 250))
    error_backoff_max_ms = max(error_backoff_min_ms, _env_int("SEASONPOOL_SYNC_LOOP_ERROR_BACKOFF_MAX_MS", 10_000))

    return SyncLoopConfig(
        interval_ms=int(interval_ms),
        enabled=bool(enabled),
        lock_path=str(lock_path),
        queue_max=int(queue_max),
        fail_fast_after=int(fail_fast_after),
        error_backoff_min_ms=int(error_backoff_min_ms),
        error_backoff_max_ms=int(error_backoff_max_ms),
    )


class _FileLock:
    """Best-effort single-process lock for the sync loop.

    Prevent multiple web workers from each writing the cache.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._fh = None

    def acquire(self) -> bool:
        os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
        try:
            fh = open(self._path, "a+", encoding="utf-8")
        except OSError:
            return False

        try:
            import fcntl

            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            fh.close()
            return False

        self._fh = fh
        try:
            fh.seek(0)
            fh.truncate()
            fh.write(f"pid={os.getpid()}\n")
            fh.flush()
        except OSError:
            pass
        return True

    def release(self) -> None:
        fh = self._fh
        self._fh = None
        if fh is None:
            return
        try:
            import fcntl

            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        except OSError:
            pass
        fh.close()


@dataclass(frozen=True, slots=True)
class _Msg:
    kind: str  # "transition" | "sync"
    season: Optional[int] = None
    posted_ms: int = 0


class SyncLoop:
    """Background cache sync and season clock.

    A scheduler thread posts "transition" and "sync" messages every
    interval; a worker thread consumes them in order. Messages are coalesced
    so a slow ledger does not build a backlog. force_transition drains
    whatever is still queued via cancel_pending().
    """

    def __init__(
        self,
        *,
        seasons: SeasonManager,
        sync: CacheSynchronizer,
        cfg: Optional[SyncLoopConfig] = None,
    ) -> None:
        self._seasons = seasons
        self._sync = sync
        self._cfg = cfg or sync_loop_config_from_env()

        self._lock = _FileLock(self._cfg.lock_path)
        self._queue: "queue.Queue[_Msg]" = queue.Queue(maxsize=int(self._cfg.queue_max))
        self._queued: set = set()
        self._queued_lock = threading.Lock()

        self._scheduler: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._started = False

        self._consecutive_failures = 0
        self._last_error: str = ""
        self._unhealthy = False
        self._last_tick_ms = 0

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> bool:
        if self._started:
            return True
        if not self._cfg.enabled:
            return False
        if not self._lock.acquire():
            log_event(log, "sync_loop_lock_busy", level=logging.WARNING, lock_path=self._cfg.lock_path)
            return False
        self._stop.clear()
        self._scheduler = threading.Thread(target=self._schedule, name="seasonpool-sync-scheduler", daemon=True)
        self._worker = threading.Thread(target=self._work, name="seasonpool-sync-worker", daemon=True)
        self._worker.start()
        self._scheduler.start()
        self._started = True
        inc_counter("sync_loop_start_total", 1)
        return True

    def stop(self) -> None:
        self._stop.set()
        for t in (self._scheduler, self._worker):
            if t is not None:
                t.join(timeout=2.0)
        self._lock.release()
        self._started = False
        inc_counter("sync_loop_stop_total", 1)

    def status(self) -> Json:
        return {
            "running": bool(self._started and not self._stop.is_set()),
            "unhealthy": bool(self._unhealthy),
            "last_error": self._last_error,
            "consecutive_failures": int(self._consecutive_failures),
            "pending": int(self._queue.qsize()),
            "last_tick_ms": int(self._last_tick_ms),
        }

    # ----------------------------
    # Channel
    # ----------------------------

    def post(self, kind: str, season: Optional[int] = None) -> bool:
        """Queue a message; False if an identical one is already waiting or the queue is full."""
        if kind not in {"transition", "sync"}:
            raise ValueError(f"unknown sync loop message: {kind!r}")
        key = (kind, season)
        with self._queued_lock:
            if key in self._queued:
                inc_counter("sync_loop_coalesced_total", 1)
                return False
            try:
                self._queue.put_nowait(_Msg(kind=kind, season=season, posted_ms=int(time.time() * 1000)))
            except queue.Full:
                inc_counter("sync_loop_dropped_total", 1)
                return False
            self._queued.add(key)
        set_gauge("sync_loop_pending", self._queue.qsize())
        return True

    def cancel_pending(self) -> int:
        """Drop queued messages. An in-flight message still completes."""
        n = 0
        with self._queued_lock:
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break
                self._queue.task_done()
                n += 1
            self._queued.clear()
        set_gauge("sync_loop_pending", 0)
        if n:
            inc_counter("sync_loop_cancelled_total", n)
            log_event(log, "sync_loop_cancelled", level=logging.WARNING, dropped=n)
        return n

    # ----------------------------
    # Work
    # ----------------------------

    def handle(self, msg: _Msg) -> Json:
        if msg.kind == "transition":
            closed = self._seasons.transition()
            if closed is None:
                return {"kind": "transition", "transitioned": False}
            try:
                res = self._sync.final_reconciliation(closed.number)
            except (LedgerUnavailableError, MalformedEventError) as e:
                # Season stays stale; validate-season reports it until a later tick succeeds.
                res = {"ok": False, "season": closed.number, "error": f"{e.code}:{e.reason}"}
            return {"kind": "transition", "transitioned": True, "season": closed.number, "reconciliation": res}

        if msg.season is not None:
            results: List[Json] = [self._sync.sync_season(int(msg.season))]
        else:
            results = self._sync.sync_open_seasons()
        failed = [r for r in results if not r.get("ok")]
        if failed:
            inc_counter("sync_loop_season_failures_total", len(failed))
        return {"kind": "sync", "results": results}

    def tick_once(self) -> Json:
        """One scheduler round executed inline (transition check, then sync)."""
        out = {
            "transition": self.handle(_Msg(kind="transition")),
            "sync": self.handle(_Msg(kind="sync")),
        }
        self._last_tick_ms = int(time.time() * 1000)
        return out

    def _mark_error(self, *, where: str, err: Exception) -> None:
        self._consecutive_failures += 1
        self._last_error = f"{where}:{type(err).__name__}:{err}"

        inc_counter("sync_loop_errors_total", 1)
        set_gauge("sync_loop_consecutive_failures", self._consecutive_failures)

        log.exception("sync loop error (%s) failures=%s", where, self._consecutive_failures)

    def _clear_error(self) -> None:
        if self._consecutive_failures == 0 and not self._last_error:
            return
        self._consecutive_failures = 0
        self._last_error = ""
        set_gauge("sync_loop_consecutive_failures", 0)

    def _sleep_backoff(self) -> None:
        n = max(1, int(self._consecutive_failures))
        base = int(self._cfg.error_backoff_min_ms)
        cap = int(self._cfg.error_backoff_max_ms)
        ms = min(cap, base * (2 ** min(10, n - 1)))
        self._stop.wait(max(0.0, float(ms) / 1000.0))

    def _trip_unhealthy_and_stop(self) -> None:
        self._unhealthy = True
        set_gauge("sync_loop_unhealthy", 1)
        inc_counter("sync_loop_failfast_total", 1)
        log.error(
            "sync loop fail-fast tripped: failures=%s last_error=%s",
            self._consecutive_failures,
            self._last_error,
        )
        self._stop.set()

    def _schedule(self) -> None:
        interval_s = float(self._cfg.interval_ms) / 1000.0
        while not self._stop.is_set():
            inc_counter("sync_loop_ticks_total", 1)
            self.post("transition")
            self.post("sync")
            self._stop.wait(interval_s)

    def _work(self) -> None:
        while not self._stop.is_set():
            try:
                msg = self._queue.get(timeout=0.25)
            except queue.Empty:
                continue
            with self._queued_lock:
                self._queued.discard((msg.kind, msg.season))
            try:
                self.handle(msg)
                self._last_tick_ms = int(time.time() * 1000)
                self._clear_error()
            except Exception as err:
                self._mark_error(where=msg.kind, err=err)
                if self._consecutive_failures >= int(self._cfg.fail_fast_after):
                    self._trip_unhealthy_and_stop()
                    break
                self._sleep_backoff()
            finally:
                self._queue.task_done()
