from __future__ import annotations

import pytest

from seasonpool.ledger.constants import DEFAULT_MAX_DELEGATION, ONE_TOKEN
from seasonpool.ledger.memory import MemoryLedger
from seasonpool.runtime.control import ControlService
from seasonpool.runtime.errors import InsufficientPowerError, SelfDelegationError, ValidationError


def test_rejected_delegate_leaves_cache_and_power_unchanged(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_power("alice", 130)
    ledger.delegate("alice", "T", 100)
    svc.sync.sync_season(1)

    assert svc.cache.available_power("alice", 1) == 30
    before = svc.cache.get_aggregate("T", 1)

    with pytest.raises(InsufficientPowerError) as e:
        svc.cache.check_delegate("alice", "T", 50, 1)
    assert e.value.code == "insufficient_power"
    assert e.value.details["available"] == "30"

    assert svc.cache.get_aggregate("T", 1) == before
    assert svc.cache.available_power("alice", 1) == 30


def test_delegate_then_undelegate_restores_available_power(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_power("bob", 500)
    svc.sync.sync_season(1)
    start = svc.cache.available_power("bob", 1)

    ledger.delegate("bob", "T", 200)
    svc.sync.sync_season(1)
    assert svc.cache.available_power("bob", 1) == start - 200

    ledger.undelegate("bob", "T", 200)
    svc.sync.sync_season(1)
    assert svc.cache.available_power("bob", 1) == start
    # Zero rows are dropped rather than kept at 0.
    assert svc.cache.user_delegations("bob", 1) == []


def test_available_power_never_negative_after_power_drop(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_power("carol", 100)
    ledger.delegate("carol", "T", 100)
    svc.sync.sync_season(1)

    ledger.set_power("carol", 40)
    assert svc.cache.available_power("carol", 1) == 0
    summary = svc.cache.power_summary("carol", 1)
    assert summary["available"] == "0"
    assert summary["delegated"] == "100"


def test_amount_boundaries(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_power("dave", DEFAULT_MAX_DELEGATION * 2)

    with pytest.raises(ValidationError) as e:
        svc.cache.check_delegate("dave", "T", 0, 1)
    assert e.value.reason == "below_minimum"

    assert svc.cache.check_delegate("dave", "T", 1, 1)["ok"] is True
    assert svc.cache.check_delegate("dave", "T", DEFAULT_MAX_DELEGATION, 1)["ok"] is True

    with pytest.raises(ValidationError) as e:
        svc.cache.check_delegate("dave", "T", DEFAULT_MAX_DELEGATION + 1, 1)
    assert e.value.reason == "above_maximum"
    assert DEFAULT_MAX_DELEGATION == 1_000_000 * ONE_TOKEN


def test_owner_cannot_delegate_to_own_target(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_power("erin", 1000)
    ledger.set_owner("T-erin", "erin")

    with pytest.raises(SelfDelegationError) as e:
        svc.cache.check_delegate("erin", "T-erin", 10, 1)
    assert e.value.code == "self_delegation"


def test_undelegate_more_than_delegated_is_rejected(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_power("frank", 100)
    ledger.delegate("frank", "T", 60)
    svc.sync.sync_season(1)

    assert svc.cache.check_undelegate("frank", "T", 60, 1)["delegated_after"] == "0"
    with pytest.raises(ValidationError) as e:
        svc.cache.check_undelegate("frank", "T", 61, 1)
    assert e.value.reason == "exceeds_current_delegation"


def test_total_votes_equals_signed_sum_of_events(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.delegate("u1", "T", 70)
    ledger.delegate("u2", "T", 30)
    ledger.undelegate("u1", "T", 20)
    ledger.delegate("u3", "T", 5)
    ledger.undelegate("u3", "T", 5)
    svc.sync.sync_season(1)

    agg = svc.cache.get_aggregate("T", 1)
    assert agg is not None
    assert agg.total_votes == 70 + 30 - 20 + 5 - 5
    assert agg.voter_count == 2
    assert agg.total_votes == sum(d.amount for d in svc.cache.list_supporters("T", 1))
