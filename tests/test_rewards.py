from __future__ import annotations

import json

import pytest

from conftest import EPOCH, WEEK
from seasonpool.ledger.constants import ONE_TOKEN
from seasonpool.ledger.memory import MemoryLedger
from seasonpool.ledger.types import UserDelegation
from seasonpool.runtime.control import ControlService
from seasonpool.runtime.errors import (
    InsufficientDataError,
    LedgerUnavailableError,
    NotFoundError,
    StaleCacheError,
    ValidationError,
)
from seasonpool.runtime.rewards import compute_digest, normalize_weights, split_pool, split_supporters


def _seed_three(ledger: MemoryLedger) -> None:
    for target, owner in (("A", "oa"), ("B", "ob"), ("C", "oc")):
        ledger.set_owner(target, owner)
    ledger.delegate("u1", "A", 60, timestamp=EPOCH + 1)
    ledger.delegate("u2", "A", 40, timestamp=EPOCH + 2)
    ledger.delegate("u3", "B", 80, timestamp=EPOCH + 3)
    ledger.delegate("u4", "C", 30, timestamp=EPOCH + 4)
    ledger.delegate("u5", "C", 30, timestamp=EPOCH + 5)


def test_pool_split_and_creator_supporter_shares(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_three(ledger)
    svc.sync.sync_season(1)

    calc = svc.calculate_rewards(1)
    t = ONE_TOKEN
    assert [(r.rank, r.target) for r in calc.ranks] == [(1, "A"), (2, "B"), (3, "C")]
    assert [r.total for r in calc.ranks] == [1050 * t, 630 * t, 420 * t]
    assert [r.creator_reward for r in calc.ranks] == [630 * t, 378 * t, 252 * t]
    assert [r.supporter_pool for r in calc.ranks] == [420 * t, 252 * t, 168 * t]

    a = {s.user: s.amount for s in calc.ranks[0].supporters}
    assert a == {"u1": 252 * t, "u2": 168 * t}
    c = {s.user: s.amount for s in calc.ranks[2].supporters}
    assert c == {"u4": 84 * t, "u5": 84 * t}

    recipients = calc.recipients()
    assert sum(recipients.values()) == 2100 * t
    assert recipients["oa"] == 630 * t


def test_calculation_is_deterministic(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_three(ledger)
    svc.sync.sync_season(1)

    first = svc.calculate_rewards(1)
    second = svc.calculate_rewards(1)
    assert first.digest == second.digest
    assert first.to_json() == second.to_json()
    assert json.dumps(first.to_json(), sort_keys=True) == json.dumps(second.to_json(), sort_keys=True)
    assert compute_digest(first) == first.digest
    assert len(first.digest) == 64


def test_supporter_remainder_goes_to_largest_then_smallest_id() -> None:
    rows = [
        UserDelegation(user="b", target="T", season=1, amount=1),
        UserDelegation(user="a", target="T", season=1, amount=1),
        UserDelegation(user="c", target="T", season=1, amount=1),
    ]
    out = {s.user: s.amount for s in split_supporters(10, rows)}
    assert out == {"a": 4, "b": 3, "c": 3}

    rows.append(UserDelegation(user="z", target="T", season=1, amount=7))
    out = {s.user: s.amount for s in split_supporters(11, rows)}
    assert sum(out.values()) == 11
    assert out["z"] == 8


def test_pool_split_sums_exactly() -> None:
    parts = split_pool(1001, (5_000, 3_000, 2_000))
    assert parts == [501, 300, 200]
    assert normalize_weights((5_000, 3_000)) == (6_250, 3_750)
    with pytest.raises(ValidationError):
        normalize_weights(())


def test_insufficient_targets(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_owner("A", "oa")
    ledger.set_owner("B", "ob")
    ledger.delegate("u1", "A", 10)
    ledger.delegate("u2", "B", 5)
    svc.sync.sync_season(1)

    with pytest.raises(InsufficientDataError):
        svc.calculate_rewards(1)

    calc = svc.calculate_rewards(1, 1000, allow_partial=True)
    assert [r.weight_bps for r in calc.ranks] == [6_250, 3_750]
    assert sum(r.total for r in calc.ranks) == 1000


def test_empty_season_has_nothing_to_reward(svc: ControlService) -> None:
    svc.sync.sync_season(1)
    with pytest.raises(InsufficientDataError):
        svc.calculate_rewards(1, allow_partial=True)


def test_missing_owner_is_insufficient_data(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.delegate("u1", "A", 10)
    svc.sync.sync_season(1)
    with pytest.raises(InsufficientDataError) as ei:
        svc.calculate_rewards(1, top_n=1)
    assert ei.value.reason == "missing_target_owner"


def test_bad_request_parameters(svc: ControlService) -> None:
    with pytest.raises(ValidationError):
        svc.calculate_rewards(1, 0)
    with pytest.raises(ValidationError):
        svc.calculate_rewards(1, top_n=4)


def test_stale_cache_is_refused_by_calculator(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_owner("A", "oa")
    ledger.delegate("u1", "A", 10)
    with pytest.raises(StaleCacheError):
        svc.rewards.calculate(1, top_n=1)

    # The facade resyncs once and retries.
    calc = svc.calculate_rewards(1, top_n=1)
    assert calc.ranks[0].target == "A"


def test_stale_cache_after_failed_resync_propagates(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_owner("A", "oa")
    ledger.delegate("u1", "A", 10)
    ledger.unavailable = True
    with pytest.raises(LedgerUnavailableError):
        svc.calculate_rewards(1, top_n=1)


def test_approval_flow(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_three(ledger)
    svc.sync.sync_season(1)
    calc = svc.calculate_rewards(1)

    with pytest.raises(NotFoundError):
        svc.rewards.get_approved(1)

    with pytest.raises(ValidationError) as ei:
        svc.approve_rewards(1, digest="0" * 64)
    assert ei.value.code == "digest_mismatch"

    res = svc.approve_rewards(1, digest=calc.digest)
    assert res["status"] == "approved"
    assert svc.approve_rewards(1, digest=calc.digest)["status"] == "already_approved"

    stored = svc.rewards.get_approved(1)
    assert stored.digest == calc.digest
    assert stored.recipients() == calc.recipients()


def test_new_digest_rejected_once_payout_prepared(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed_three(ledger)
    svc.sync.sync_season(1)
    svc.seasons.transition(now_s=EPOCH + WEEK)
    svc.sync.final_reconciliation(1)

    calc = svc.calculate_rewards(1)
    svc.rewards.approve(calc)
    svc.distribution.prepare(1)

    other = svc.calculate_rewards(1, 999 * ONE_TOKEN)
    with pytest.raises(ValidationError) as ei:
        svc.rewards.approve(other)
    assert ei.value.code == "calculation_locked"
