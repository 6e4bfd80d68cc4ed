from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Iterator, List

import pytest

# Ensure local "src/" takes precedence over any globally-installed "seasonpool" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from seasonpool.ledger.constants import DEFAULT_SEASON_EPOCH_S, DEFAULT_SEASON_LENGTH_S  # noqa: E402
from seasonpool.ledger.memory import MemoryLedger  # noqa: E402
from seasonpool.runtime.boot import build_service  # noqa: E402
from seasonpool.runtime.config import default_service_config, with_overrides  # noqa: E402
from seasonpool.runtime.control import ControlService  # noqa: E402

EPOCH = DEFAULT_SEASON_EPOCH_S
WEEK = DEFAULT_SEASON_LENGTH_S


@pytest.fixture
def ledger() -> MemoryLedger:
    return MemoryLedger(epoch_s=EPOCH, season_length_s=WEEK)


@pytest.fixture
def make_service(tmp_path: Path, ledger: MemoryLedger) -> Iterator[Callable[..., ControlService]]:
    """Factory for a dev-mode service on a temp DB, with season 1 active.

    Retry backoff is zero so failed payout rows are immediately retryable.
    """
    built: List[ControlService] = []

    def _make(**overrides) -> ControlService:
        kw = dict(
            mode="dev",
            db_path=str(tmp_path / "seasonpool.db"),
            sync_lock_path=str(tmp_path / "sync_loop.lock"),
            retry_backoff_ms=0,
            confirm_timeout_s=1,
        )
        kw.update(overrides)
        cfg = with_overrides(default_service_config(), **kw)
        svc = build_service(cfg, gateway=ledger)
        svc.seasons.get_current_season(now_s=EPOCH + 10)
        built.append(svc)
        return svc

    yield _make

    for svc in built:
        svc.close()


@pytest.fixture
def svc(make_service: Callable[..., ControlService]) -> ControlService:
    return make_service()
