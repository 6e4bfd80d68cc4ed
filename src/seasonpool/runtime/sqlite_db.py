# src/seasonpool/runtime/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    """Canonical JSON encoding.

    Used for digests and fingerprints; keep it stable across releases.
    """
    # Do not silently coerce unknown types (e.g. default=str): a digest over
    # a lossy encoding would not be reproducible.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except Exception:
        return int(default)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS meta (
      key TEXT PRIMARY KEY,
      value TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS seasons (
      number INTEGER PRIMARY KEY,
      start_time INTEGER NOT NULL,
      end_time INTEGER NOT NULL,
      phase TEXT NOT NULL,
      is_active INTEGER NOT NULL,
      finalized INTEGER NOT NULL,
      updated_ts_ms INTEGER NOT NULL
    );
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_seasons_one_active ON seasons(is_active) WHERE is_active=1;",
    """
    CREATE TABLE IF NOT EXISTS sync_state (
      season INTEGER PRIMARY KEY,
      last_synced_block INTEGER NOT NULL,
      stale INTEGER NOT NULL,
      last_error TEXT,
      last_attempt_ms INTEGER NOT NULL,
      last_success_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS cache_aggregates (
      target TEXT NOT NULL,
      season INTEGER NOT NULL,
      total_votes TEXT NOT NULL,
      voter_count INTEGER NOT NULL,
      last_synced_block INTEGER NOT NULL,
      first_ts INTEGER,
      first_block INTEGER,
      first_log INTEGER,
      representative INTEGER NOT NULL,
      updated_ts_ms INTEGER NOT NULL,
      PRIMARY KEY (target, season)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_cache_aggregates_season ON cache_aggregates(season);",
    """
    CREATE TABLE IF NOT EXISTS user_delegations (
      user TEXT NOT NULL,
      target TEXT NOT NULL,
      season INTEGER NOT NULL,
      amount TEXT NOT NULL,
      source TEXT NOT NULL,
      updated_ts_ms INTEGER NOT NULL,
      PRIMARY KEY (user, target, season)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_user_delegations_target ON user_delegations(target, season);",
    """
    CREATE TABLE IF NOT EXISTS applied_events (
      tx_hash TEXT NOT NULL,
      log_index INTEGER NOT NULL,
      season INTEGER NOT NULL,
      block_height INTEGER NOT NULL,
      PRIMARY KEY (tx_hash, log_index)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_applied_events_season ON applied_events(season);",
    """
    CREATE TABLE IF NOT EXISTS quarantined_events (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      season INTEGER NOT NULL,
      from_block INTEGER NOT NULL,
      to_block INTEGER NOT NULL,
      reason TEXT NOT NULL,
      payload_json TEXT NOT NULL,
      created_ts_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS reward_calculations (
      season INTEGER PRIMARY KEY,
      digest TEXT NOT NULL,
      calc_json TEXT NOT NULL,
      approved_ts_ms INTEGER NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS distributions (
      season INTEGER NOT NULL,
      recipient TEXT NOT NULL,
      amount TEXT NOT NULL,
      status TEXT NOT NULL,
      tx_handle TEXT,
      error TEXT,
      attempts INTEGER NOT NULL,
      attempt_limit INTEGER NOT NULL,
      next_attempt_ms INTEGER NOT NULL,
      updated_ts_ms INTEGER NOT NULL,
      PRIMARY KEY (season, recipient)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_distributions_status ON distributions(season, status);",
    """
    CREATE TABLE IF NOT EXISTS execution_progress (
      season INTEGER PRIMARY KEY,
      status TEXT NOT NULL,
      total_recipients INTEGER NOT NULL,
      current_batch INTEGER NOT NULL,
      total_batches INTEGER NOT NULL,
      started_ms INTEGER NOT NULL,
      finished_ms INTEGER NOT NULL,
      tx_handles_json TEXT NOT NULL,
      error TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS distribution_locks (
      season INTEGER PRIMARY KEY,
      owner TEXT NOT NULL,
      heartbeat_ms INTEGER NOT NULL
    );
    """,
)


class SqliteDB:
    """SQLite manager for the seasonpool service.

    Design goals:
      - single durable DB file for cache, calculations and payout state
      - cross-process safe (SQLite locks)
      - cross-thread safe by never sharing connections

    SQLite allows only one writer at a time. Under multi-process workloads,
    BEGIN IMMEDIATE can transiently fail with "database is locked", so
    write_tx() retries with a bounded deadline.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    @staticmethod
    def _sqlite_synchronous_pragma() -> str:
        """Return a safe PRAGMA synchronous value.

        Defaults:
          - prod        -> FULL
          - dev/testnet -> NORMAL

        Override with SEASONPOOL_SQLITE_SYNCHRONOUS in {OFF,NORMAL,FULL,EXTRA}.
        """
        mode = (os.environ.get("SEASONPOOL_MODE") or "prod").strip().lower()
        default = "FULL" if mode == "prod" else "NORMAL"
        raw = (os.environ.get("SEASONPOOL_SQLITE_SYNCHRONOUS") or default).strip().upper()
        if raw not in {"OFF", "NORMAL", "FULL", "EXTRA"}:
            raw = default
        return raw

    def ensure_parent_dir(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()

        connect_timeout_s = float(_env_int("SEASONPOOL_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        # WAL keeps readers (API, progress polling) off the writer's back.
        allow_non_wal = (os.environ.get("SEASONPOOL_SQLITE_ALLOW_NON_WAL") or "").strip() in {"1", "true", "TRUE"}
        try:
            row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
            mode = str(row[0]).strip().lower() if row is not None else ""
            if mode and mode != "wal" and not allow_non_wal:
                raise RuntimeError(f"sqlite journal_mode is '{mode}', expected 'wal'")
        except Exception:
            if not allow_non_wal:
                con.close()
                raise

        con.execute(f"PRAGMA synchronous={self._sqlite_synchronous_pragma()};")
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute("PRAGMA temp_store=MEMORY;")

        busy_ms = _env_int("SEASONPOOL_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000))
        con.execute(f"PRAGMA busy_timeout={max(0, int(busy_ms))};")
        return con

    def init_schema(self) -> None:
        # Schema creation takes write locks; reuse the write_tx() retry policy.
        with self.write_tx() as con:
            for stmt in _SCHEMA:
                con.execute(stmt)

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except Exception:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"sqlite schema_version mismatch: have={v} want={self.SCHEMA_VERSION}. "
                        "Refuse to start to avoid corrupting data."
                    )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            try:
                con.close()
            except Exception:
                pass

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg) or ("locked" in msg and "database" in msg)

    def _backoff(self, attempt: int) -> None:
        base_sleep = max(0.001, float(_env_int("SEASONPOOL_SQLITE_WRITE_BACKOFF_BASE_MS", 5)) / 1000.0)
        max_sleep = max(base_sleep, float(_env_int("SEASONPOOL_SQLITE_WRITE_BACKOFF_MAX_MS", 250)) / 1000.0)
        sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
        time.sleep(sleep_s * (0.5 + random.random()))

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction with bounded retry on writer-lock contention.

        Policy:
          - retry BEGIN IMMEDIATE (and COMMIT) until a deadline
          - exponential backoff with jitter
          - then raise; on any error inside the block, ROLLBACK
        """
        deadline_ms = max(250, _env_int("SEASONPOOL_SQLITE_WRITE_DEADLINE_MS", 30_000))
        deadline_ts = _now_ms() + deadline_ms

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                        raise
                    self._backoff(attempt)
                    attempt += 1

            try:
                yield con

                c_attempt = 0
                while True:
                    try:
                        con.execute("COMMIT;")
                        break
                    except sqlite3.OperationalError as e:
                        if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                            raise
                        self._backoff(c_attempt)
                        c_attempt += 1
            except BaseException:
                try:
                    con.execute("ROLLBACK;")
                except Exception:
                    pass
                raise
