from __future__ import annotations

import pytest

from conftest import EPOCH
from seasonpool.ledger.memory import MemoryLedger
from seasonpool.runtime.control import ControlService
from seasonpool.runtime.errors import InvalidTransitionError, ValidationError


def test_force_transition_drops_queued_work(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.delegate("u1", "A", 10, timestamp=EPOCH + 20)
    loop = svc.sync_loop
    assert loop is not None
    assert loop.post("sync") is True
    assert loop.post("sync") is False
    assert loop.post("transition") is True

    res = svc.force_transition(1, reason="ledger fork", actor="ops")
    assert res["ok"] is True
    assert res["cancelled_pending"] == 2
    assert res["season"]["phase"] == "finalizing"
    assert res["active"]["number"] == 2
    assert res["reconciliation"]["ok"] is True
    assert loop.status()["pending"] == 0

    assert svc.cache.get_aggregate("A", 1).total_votes == 10

    with pytest.raises(InvalidTransitionError):
        svc.force_transition(1, reason="again")


def test_force_transition_survives_ledger_outage(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.unavailable = True
    res = svc.force_transition(1, reason="outage", actor="ops")
    assert res["reconciliation"]["ok"] is False
    assert res["reconciliation"]["error"].startswith("ledger_unavailable:")
    assert svc.seasons.require_season(1).phase == "finalizing"


def test_top_winners_include_owner(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_owner("A", "alice")
    ledger.delegate("u1", "A", 10)
    ledger.delegate("u2", "B", 5)
    svc.sync_now()

    res = svc.get_top_winners(1, 2)
    assert res["top_n"] == 2
    assert [(w["target"], w["owner"]) for w in res["winners"]] == [("A", "alice"), ("B", None)]
    assert res["winners"][0]["total_votes"] == "10"

    with pytest.raises(ValidationError):
        svc.get_top_winners(1, 0)


def test_delegation_checks_and_power(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_power("u1", 100)
    ledger.delegate("u1", "A", 40)
    svc.sync_now(1)

    ok = svc.check_delegation(kind="delegate", user="u1", target="B", amount="60")
    assert ok["available_after"] == "0"
    assert ok["season"] == 1

    out = svc.check_delegation(kind="undelegate", user="u1", target="A", amount=40)
    assert out["delegated_after"] == "0"

    with pytest.raises(ValidationError):
        svc.check_delegation(kind="stake", user="u1", target="A", amount=1)

    p = svc.power("u1")
    assert (p["total_power"], p["delegated"], p["available"]) == ("100", "40", "60")


def test_sync_now_rebuild(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.delegate("u1", "A", 10)
    assert svc.sync_now()["applied"] == 1
    res = svc.sync_now(1, rebuild=True)
    assert res["rebuilt"] is True
    assert res["applied"] == 1
    assert svc.cache.get_aggregate("A", 1).total_votes == 10


def test_season_state_view(svc: ControlService) -> None:
    st = svc.get_season_state(now_s=EPOCH + 10)
    assert st["current"]["number"] == 1
    assert st["previous"] is None
    assert st["next"]["number"] == 2
    assert st["should_transition"] is False
