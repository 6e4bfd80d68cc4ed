from __future__ import annotations

import threading
import time
from typing import Dict

import pytest

from conftest import EPOCH, WEEK
from seasonpool.ledger.memory import MemoryLedger
from seasonpool.ledger.types import Transfer
from seasonpool.runtime.control import ControlService
from seasonpool.runtime.distribution import DistributionExecutor
from seasonpool.runtime.errors import (
    DistributionInProgressError,
    InvalidTransitionError,
    LockLostError,
    NotFoundError,
    SeasonFinalizedError,
)


def _close_season_one(svc: ControlService) -> None:
    svc.sync.sync_season(1)
    svc.seasons.transition(now_s=EPOCH + WEEK)
    svc.sync.final_reconciliation(1)


def _approve(svc: ControlService) -> Dict[str, int]:
    calc = svc.calculate_rewards(1)
    svc.rewards.approve(calc)
    return calc.recipients()


def _seed_small(ledger: MemoryLedger) -> None:
    for i, target in enumerate(("A", "B", "C")):
        ledger.set_owner(target, f"o-{target}")
        ledger.delegate(f"s-{target}", target, 30 - i * 10, timestamp=EPOCH + i)


def _seed_large(ledger: MemoryLedger) -> None:
    """42 supporters over three targets plus three owners: 45 recipients."""
    targets = (("A", "o1", 30), ("B", "o2", 20), ("C", "o3", 10))
    for target, owner, _ in targets:
        ledger.set_owner(target, owner)
    for i in range(42):
        target, _, amount = targets[i // 14]
        ledger.delegate(f"u{i:02d}", target, amount, timestamp=EPOCH + i)


def test_batched_payout_with_failed_batch_then_retry(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_large(ledger)
    _close_season_one(svc)
    expected = _approve(svc)
    assert len(expected) == 45

    ledger.fail_confirm_calls = {2}
    prog = svc.distribution.prepare(1)
    assert prog.total_recipients == 45
    assert prog.status == "pending"
    assert prog.total_batches == 3

    first = svc.distribution.step(1)
    assert (first["batch"], first["rows"], first["status"]) == (1, 20, "confirmed")
    second = svc.distribution.step(1)
    assert (second["batch"], second["rows"], second["status"]) == (2, 20, "failed")

    prog = svc.get_progress(1)
    assert prog.status == "in_progress"
    assert (prog.processed, prog.successful, prog.failed) == (40, 20, 20)
    assert prog.current_batch == 2
    assert prog.total_batches == 4

    batch_one = {r.recipient for r in svc.distribution.list_distributions(1, status="confirmed")}
    assert batch_one == {"o1", "o2", "o3"} | {f"u{i:02d}" for i in range(17)}

    done = svc.distribution.run(1)
    assert done.status == "completed"
    assert done.error is None
    assert (done.processed, done.successful, done.failed) == (45, 45, 0)
    assert done.current_batch == done.total_batches == 4
    assert len(done.tx_handles) == 4

    # Each recipient is credited exactly once.
    assert ledger.balances == expected
    assert svc.seasons.is_finalized(1)


def test_start_is_idempotent_once_completed(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_small(ledger)
    _close_season_one(svc)
    expected = _approve(svc)

    res = svc.start_distribution(1, background=False)
    assert res["status"] == "completed"
    assert res["progress"]["successful"] == len(expected)

    again = svc.start_distribution(1, background=False)
    assert again["status"] == "completed"
    assert ledger.submit_calls == 1
    assert ledger.balances == expected


def test_background_run_completes(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_small(ledger)
    _close_season_one(svc)
    expected = _approve(svc)

    res = svc.start_distribution(1)
    assert res["status"] in {"accepted", "completed"}
    assert svc.distribution.wait(1, timeout_s=10.0)
    assert svc.get_progress(1).status == "completed"
    assert ledger.balances == expected
    assert svc.distribution.lock_holder(1) is None


def test_lock_held_by_another_runner(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_small(ledger)
    _close_season_one(svc)
    expected = _approve(svc)

    other = DistributionExecutor(db=svc.db, gateway=ledger, seasons=svc.seasons, rewards=svc.rewards, owner="other")
    assert other.acquire_lock(1) is True

    res = svc.start_distribution(1, background=False)
    assert res["status"] == "already_running"
    assert ledger.submit_calls == 0
    with pytest.raises(LockLostError):
        svc.distribution.step(1)

    other.release_lock(1)
    assert svc.start_distribution(1, background=False)["status"] == "completed"
    assert ledger.balances == expected


def test_expired_lock_is_taken_over(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_small(ledger)
    _close_season_one(svc)
    _approve(svc)

    other = DistributionExecutor(db=svc.db, gateway=ledger, seasons=svc.seasons, rewards=svc.rewards, owner="crashed")
    other.acquire_lock(1)
    with svc.db.write_tx() as con:
        con.execute("UPDATE distribution_locks SET heartbeat_ms=0 WHERE season=1;")

    assert svc.distribution.acquire_lock(1) is True
    assert svc.distribution.lock_holder(1)["owner"] == svc.distribution.owner
    with pytest.raises(LockLostError):
        other.step(1)

    assert svc.start_distribution(1, background=False)["status"] == "completed"


def test_timed_out_transfer_is_rechecked_before_resubmit(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_small(ledger)
    _close_season_one(svc)
    expected = _approve(svc)

    ledger.timeout_confirm_calls = {1}
    svc.distribution.prepare(1)
    res = svc.distribution.step(1)
    assert res["status"] == "failed"
    rows = svc.distribution.list_distributions(1)
    assert {r.error for r in rows} == {"confirmation_timeout"}

    # The transfer landed after the confirmation wait gave up.
    ledger.settle(res["tx_handle"], confirmed=True)

    done = svc.distribution.run(1)
    assert done.status == "completed"
    assert ledger.submit_calls == 1
    assert ledger.balances == expected


def test_exhausted_rows_leave_season_open_until_rerun(make_service, ledger: MemoryLedger) -> None:
    svc = make_service(max_attempts=2)
    _seed_small(ledger)
    _close_season_one(svc)
    expected = _approve(svc)

    ledger.fail_confirm_calls = {1, 2}
    svc.distribution.prepare(1)
    done = svc.distribution.run(1)
    assert done.status == "completed"
    assert done.error == f"partial_failure:{len(expected)}"
    assert done.failed == len(expected)
    assert not svc.seasons.is_finalized(1)
    assert ledger.balances == {}
    assert all(r.attempts == 2 for r in svc.distribution.list_distributions(1))

    # Operator re-run: exhausted rows get a fresh retry budget.
    res = svc.start_distribution(1, background=False)
    assert res["status"] == "completed"
    assert res["progress"]["error"] is None
    assert ledger.balances == expected
    assert svc.seasons.is_finalized(1)


def test_submit_failure_marks_rows_failed_and_retries(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_small(ledger)
    _close_season_one(svc)
    expected = _approve(svc)

    ledger.fail_submit_calls = {1}
    svc.distribution.prepare(1)
    res = svc.distribution.step(1)
    assert res["status"] == "failed"
    assert res["tx_handle"] is None
    errors = {r.error for r in svc.distribution.list_distributions(1)}
    assert errors == {"submit_failed:submit_rejected"}

    assert svc.distribution.run(1).status == "completed"
    assert ledger.balances == expected


def test_crash_between_send_and_confirm_is_reconciled(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_small(ledger)
    _close_season_one(svc)
    expected = _approve(svc)
    svc.distribution.prepare(1)

    # Simulate a process that submitted and marked rows sent, then died.
    recipients = sorted(expected)
    handle = ledger.submit_batch_transfer([Transfer(recipient=r, amount=expected[r]) for r in recipients])
    with svc.db.write_tx() as con:
        con.execute("UPDATE distributions SET status='sent', tx_handle=? WHERE season=1;", (handle,))

    # prepare only touches the database; the next run resolves the sent rows.
    svc.distribution.prepare(1)
    assert {r.status for r in svc.distribution.list_distributions(1)} == {"sent"}
    assert svc.start_distribution(1, background=False)["status"] == "completed"
    assert ledger.submit_calls == 1
    assert ledger.balances == expected


def test_prepare_requirements(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_small(ledger)
    svc.sync.sync_season(1)

    with pytest.raises(InvalidTransitionError) as ei:
        svc.distribution.prepare(1)
    assert ei.value.code == "season_not_ended"

    svc.seasons.transition(now_s=EPOCH + WEEK)
    with pytest.raises(NotFoundError):
        svc.distribution.prepare(1)
    with pytest.raises(NotFoundError):
        svc.get_progress(1)

    svc.seasons.complete_season(1)
    with pytest.raises(SeasonFinalizedError):
        svc.distribution.prepare(1)
    with pytest.raises(SeasonFinalizedError):
        svc.start_distribution(1, background=False)




def test_force_transition_refused_while_a_closed_season_pays_out(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_small(ledger)
    _close_season_one(svc)
    _approve(svc)

    ledger.fail_confirm_calls = {1}
    svc.distribution.prepare(1)
    assert svc.distribution.step(1)["status"] == "failed"
    assert svc.get_progress(1).status == "in_progress"

    with pytest.raises(DistributionInProgressError) as ei:
        svc.force_transition(2, reason="test", actor="ops")
    assert ei.value.details["paying_out"] == [1]
    assert svc.seasons.require_season(2).is_active

    assert svc.distribution.run(1).status == "completed"
    assert svc.seasons.is_finalized(1)
    res = svc.force_transition(2, reason="test", actor="ops")
    assert res["season"]["phase"] == "finalizing"


def test_live_lock_alone_blocks_force_transition(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_small(ledger)
    _close_season_one(svc)
    _approve(svc)
    svc.distribution.prepare(1)

    other = DistributionExecutor(db=svc.db, gateway=ledger, seasons=svc.seasons, rewards=svc.rewards, owner="other")
    other.acquire_lock(1)
    with pytest.raises(DistributionInProgressError):
        svc.force_transition(2, reason="test", actor="ops")

    # A crashed holder's lock stops counting once its heartbeat expires.
    with svc.db.write_tx() as con:
        con.execute("UPDATE distribution_locks SET heartbeat_ms=0 WHERE season=1;")
    assert svc.force_transition(2, reason="test", actor="ops")["ok"] is True


def test_start_returns_before_reconciling_sent_rows(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_small(ledger)
    _close_season_one(svc)
    expected = _approve(svc)
    svc.distribution.prepare(1)

    recipients = sorted(expected)
    handle = ledger.submit_batch_transfer([Transfer(recipient=r, amount=expected[r]) for r in recipients])
    with svc.db.write_tx() as con:
        con.execute("UPDATE distributions SET status='sent', tx_handle=? WHERE season=1;", (handle,))

    entered = threading.Event()
    gate = threading.Event()
    confirm = ledger.await_confirmation

    def _slow_confirmation(tx_handle: str, timeout_s: float):
        entered.set()
        gate.wait(10.0)
        return confirm(tx_handle, timeout_s)

    ledger.await_confirmation = _slow_confirmation

    t0 = time.monotonic()
    res = svc.start_distribution(1)
    assert res["status"] == "accepted"
    assert time.monotonic() - t0 < 5.0

    assert entered.wait(5.0)
    gate.set()
    assert svc.distribution.wait(1, timeout_s=10.0)
    assert svc.get_progress(1).status == "completed"
    assert ledger.submit_calls == 1
    assert ledger.balances == expected
