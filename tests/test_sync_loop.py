from __future__ import annotations

import time
from pathlib import Path

from seasonpool.ledger.memory import MemoryLedger
from seasonpool.runtime.control import ControlService
from seasonpool.runtime.sync_loop import SyncLoop, SyncLoopConfig, _FileLock, _Msg, sync_loop_config_from_env

def _cfg(tmp_path: Path, **kw) -> SyncLoopConfig:
    base = dict(
        interval_ms=250,
        enabled=True,
        lock_path=str(tmp_path / "loop.lock"),
        queue_max=4,
        fail_fast_after=3,
        error_backoff_min_ms=50,
        error_backoff_max_ms=100,
    )
    base.update(kw)
    return SyncLoopConfig(**base)

def test_config_from_env(monkeypatch) -> None:
    monkeypatch.setenv("SEASONPOOL_SYNC_INTERVAL_MS", "10")
    monkeypatch.setenv("SEASONPOOL_SYNC_LOOP_ENABLED", "no")
    monkeypatch.setenv("SEASONPOOL_SYNC_QUEUE_MAX", "not-a-number")
    cfg = sync_loop_config_from_env(interval_ms=1000)
    assert cfg.interval_ms == 250
    assert cfg.enabled is False
    assert cfg.queue_max == 16

def test_tick_catches_up_one_season_per_tick(svc: ControlService, ledger: MemoryLedger, tmp_path: Path) -> None:
    ledger.delegate("u1", "A", 10)
    loop = SyncLoop(seasons=svc.seasons, sync=svc.sync, cfg=_cfg(tmp_path))

    first = loop.tick_once()
    assert first["transition"]["transitioned"] is True
    assert first["transition"]["season"] == 1
    assert first["transition"]["reconciliation"]["ok"] is True
    assert svc.cache.get_aggregate("A", 1).total_votes == 10

    second = loop.tick_once()
    assert second["transition"]["season"] == 2
    assert svc.seasons.active_season().number == 3
    assert loop.status()["last_tick_ms"] > 0

def test_sync_reports_per_season_failures(svc: ControlService, ledger: MemoryLedger, tmp_path: Path) -> None:
    loop = SyncLoop(seasons=svc.seasons, sync=svc.sync, cfg=_cfg(tmp_path))
    ledger.unavailable = True
    out = loop.handle(_Msg(kind="sync"))
    assert out["results"][0]["ok"] is False


def test_post_coalesces_and_bounds_queue(svc: ControlService, tmp_path: Path) -> None:
    loop = SyncLoop(seasons=svc.seasons, sync=svc.sync, cfg=_cfg(tmp_path, queue_max=2))
    assert loop.post("sync", 1) is True
    assert loop.post("sync", 1) is False
    assert loop.post("sync", 2) is True
    assert loop.post("transition") is False
    assert loop.cancel_pending() == 2
    assert loop.post("transition") is True

def test_file_lock_is_exclusive(tmp_path: Path) -> None:
    path = str(tmp_path / "nested" / "loop.lock")
    a = _FileLock(path)
    b = _FileLock(path)
    assert a.acquire() is True
    assert b.acquire() is False
    a.release()
    assert b.acquire() is True
    b.release()

def test_disabled_loop_does_not_start(svc: ControlService, tmp_path: Path) -> None:
    loop = SyncLoop(seasons=svc.seasons, sync=svc.sync, cfg=_cfg(tmp_path, enabled=False))
    assert loop.start() is False
    assert loop.status()["running"] is False

def test_running_loop_syncs_in_background(svc: ControlService, ledger: MemoryLedger, tmp_path: Path) -> None:
    ledger.delegate("u1", "A", 10)
    loop = SyncLoop(seasons=svc.seasons, sync=svc.sync, cfg=_cfg(tmp_path))
    assert loop.start() is True
    try:
        deadline = time.monotonic() + 10.0
        while time.monotonic() < deadline and loop.status()["last_tick_ms"] == 0:
            time.sleep(0.05)
        assert loop.status()["running"] is True
        assert loop.status()["last_tick_ms"] > 0
    finally:
        loop.stop()
    assert loop.status()["running"] is False
