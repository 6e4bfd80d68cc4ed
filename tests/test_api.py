from __future__ import annotations

import json
import logging

import pytest
from fastapi.testclient import TestClient

from conftest import EPOCH, WEEK
from seasonpool.api.app import create_app
from seasonpool.ledger.memory import MemoryLedger
from seasonpool.runtime.control import ControlService


def _client(svc: ControlService) -> TestClient:
    app = create_app(boot_runtime=False)
    app.state.service = svc
    return TestClient(app)


def _seed(ledger: MemoryLedger) -> None:
    for i, target in enumerate(("A", "B", "C")):
        ledger.set_owner(target, f"o-{target}")
        ledger.delegate(f"s-{target}", target, 30 - i * 10, timestamp=EPOCH + i)


def test_create_app_boot_runtime_false_does_not_attach_service() -> None:
    app = create_app(boot_runtime=False)
    assert getattr(app.state, "service", None) is None

    with TestClient(app) as c:
        r = c.get("/v1/health")
    assert r.status_code == 200
    assert r.json()["ready"] is False


def test_create_app_boot_runtime_true_attaches_service(monkeypatch: pytest.MonkeyPatch, svc: ControlService) -> None:
    from seasonpool.api import app as api_app

    monkeypatch.setattr(api_app, "build_service", lambda: svc)

    app = api_app.create_app(boot_runtime=True)
    assert app.state.service is svc

    with TestClient(app) as c:
        body = c.get("/v1/health").json()
    assert body["ok"] is True
    assert body["active_season"] == 1
    assert body["mode"] == "dev"


def test_health_reports_ledger_outage(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.unavailable = True
    body = _client(svc).get("/v1/health").json()
    assert body["ok"] is False
    assert body["ledger"]["ok"] is False


def test_public_reads(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed(ledger)
    ledger.set_power("s-A", 100)
    c = _client(svc)
    assert c.post("/v1/admin/seasons/1/sync").json()["applied"] == 3

    assert c.get("/v1/seasons/current").json()["current"]["number"] == 1

    board = c.get("/v1/seasons/1/leaderboard", params={"limit": "2"}).json()
    assert [e["target"] for e in board["entries"]] == ["A", "B"]
    assert board["entries"][0]["total_votes"] == "30"

    winners = c.get("/v1/admin/seasons/1/winners").json()
    assert [w["owner"] for w in winners["winners"]] == ["o-A", "o-B", "o-C"]

    power = c.get("/v1/users/s-A/power").json()
    assert (power["total_power"], power["delegated"], power["available"]) == ("100", "30", "70")

    detail = c.get("/v1/seasons/1").json()
    assert detail["season"]["phase"] == "active"
    assert detail["freshness"]["stale"] is False


def test_reward_and_payout_flow(svc: ControlService, ledger: MemoryLedger) -> None:
    _seed(ledger)
    c = _client(svc)
    c.post("/v1/admin/seasons/1/sync")
    svc.seasons.transition(now_s=EPOCH + WEEK)
    c.post("/v1/admin/seasons/1/sync", json={"rebuild": False})

    v = c.get("/v1/admin/seasons/1/validate").json()
    assert v["can_proceed"] is True

    calc = c.post("/v1/admin/seasons/1/rewards/calculate", json={"pool_size": "2100"}).json()["calculation"]
    assert calc["pool_size"] == "2100"
    assert [r["total"] for r in calc["ranks"]] == ["1050", "630", "420"]

    approved = c.post(
        "/v1/admin/seasons/1/rewards/approve",
        json={"pool_size": "2100", "digest": calc["digest"]},
    ).json()
    assert approved["status"] == "approved"

    r = c.post("/v1/admin/seasons/1/distribution/start", json={"background": False})
    assert r.status_code == 202
    assert r.json()["status"] == "completed"

    prog = c.get("/v1/admin/seasons/1/distribution/progress").json()["progress"]
    assert prog["status"] == "completed"
    assert prog["successful"] == prog["total_recipients"] == 6

    rows = c.get("/v1/admin/seasons/1/distribution/rows", params={"status": "confirmed"}).json()
    assert rows["count"] == 6
    assert sum(ledger.balances.values()) == 2100


def test_error_mapping(svc: ControlService, ledger: MemoryLedger) -> None:
    ledger.set_owner("A", "alice")
    ledger.set_power("u1", 10)
    c = _client(svc)

    r = c.get("/v1/admin/seasons/1/distribution/progress")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "progress_not_found"

    assert c.get("/v1/seasons/99").status_code == 404
    assert c.get("/v1/admin/seasons/1/winners", params={"top_n": "0"}).status_code == 400

    r = c.post("/v1/delegations/check", json={"kind": "delegate", "user": "u1", "target": "B", "amount": "11"})
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "insufficient_power"

    r = c.post("/v1/delegations/check", json={"kind": "delegate", "user": "alice", "target": "A", "amount": 1})
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "self_delegation"

    r = c.post("/v1/delegations/check", json={"kind": "delegate", "user": "u1", "target": "B", "amount": "5"})
    assert r.status_code == 200
    assert r.json()["available_after"] == "5"

    ledger.unavailable = True
    r = c.post("/v1/admin/seasons/1/rewards/calculate")
    assert r.status_code == 503
    assert r.json()["ok"] is False
    ledger.unavailable = False

    r = c.post("/v1/admin/seasons/1/force-transition", json={"reason": "fork", "actor": "ops"})
    assert r.status_code == 200
    assert r.json()["active"]["number"] == 2

    r = c.post("/v1/admin/seasons/1/force-transition", json={"reason": "again"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_transition"


def test_metrics_disabled_by_default(monkeypatch, svc: ControlService) -> None:
    monkeypatch.delenv("SEASONPOOL_METRICS_ENABLED", raising=False)
    c = _client(svc)
    assert c.get("/v1/metrics").status_code == 404

    monkeypatch.setenv("SEASONPOOL_METRICS_ENABLED", "1")
    r = c.get("/v1/metrics")
    assert r.status_code == 200
    assert "seasonpool_uptime_ms" in r.text


def test_request_log_tags_admin_calls(svc: ControlService, caplog: pytest.LogCaptureFixture) -> None:
    c = _client(svc)
    caplog.set_level(logging.INFO, logger="seasonpool.http")

    r = c.get("/v1/health")
    assert r.headers["x-request-id"]
    r = c.post("/v1/admin/seasons/1/sync", json={"rebuild": False}, headers={"x-request-id": "req-1"})
    assert r.status_code == 200
    assert r.headers["x-request-id"] == "req-1"

    http = [rec for rec in caplog.records if rec.name == "seasonpool.http"]
    events = [json.loads(rec.getMessage()) for rec in http]
    # Health checks stay out of the log unless they fail.
    assert [e["path"] for e in events] == ["/v1/admin/seasons/1/sync"]
    assert events[0]["admin"] is True
    assert events[0]["season"] == 1
    assert events[0]["request_id"] == "req-1"
    assert http[0].levelno == logging.WARNING
