from __future__ import annotations

import json

from conftest import EPOCH, WEEK
from seasonpool.cli import main
from seasonpool.ledger.memory import MemoryLedger
from seasonpool.runtime.control import ControlService


def _seed(ledger: MemoryLedger) -> None:
    for i, target in enumerate(("A", "B", "C")):
        ledger.set_owner(target, f"o-{target}")
        ledger.delegate(f"s-{target}", target, 30 - i * 10, timestamp=EPOCH + i)


def _run(capsys, svc: ControlService, *argv: str) -> tuple:
    rc = main(list(argv), service=svc)
    out = capsys.readouterr().out
    return rc, json.loads(out)


def test_operator_flow(capsys, svc: ControlService, ledger: MemoryLedger) -> None:
    _seed(ledger)

    rc, out = _run(capsys, svc, "sync")
    assert rc == 0 and out["applied"] == 3

    rc, out = _run(capsys, svc, "validate-season", "1")
    assert rc == 3
    assert out["can_proceed"] is False

    svc.seasons.transition(now_s=EPOCH + WEEK)
    _run(capsys, svc, "sync", "1")

    rc, out = _run(capsys, svc, "validate-season", "1")
    assert rc == 0 and out["can_proceed"] is True

    rc, out = _run(capsys, svc, "top-winners", "1", "--top-n", "2")
    assert [w["target"] for w in out["winners"]] == ["A", "B"]

    rc, out = _run(capsys, svc, "calculate-rewards", "1", "--pool-size", "1000")
    digest = out["calculation"]["digest"]

    rc, out = _run(capsys, svc, "approve-rewards", "1", "--pool-size", "1000", "--digest", digest)
    assert rc == 0 and out["status"] == "approved"

    rc, out = _run(capsys, svc, "start-distribution", "1")
    assert rc == 0 and out["status"] == "completed"

    rc, out = _run(capsys, svc, "progress", "1")
    assert out["progress"]["status"] == "completed"
    assert sum(ledger.balances.values()) == 1000


def test_service_errors_exit_one(capsys, svc: ControlService) -> None:
    rc, out = _run(capsys, svc, "progress", "1")
    assert rc == 1
    assert out["ok"] is False
    assert out["error"]["code"] == "progress_not_found"


def test_force_transition(capsys, svc: ControlService) -> None:
    rc, out = _run(capsys, svc, "force-transition", "1", "--reason", "fork", "--actor", "ops")
    assert rc == 0
    assert out["season"]["phase"] == "finalizing"

    rc, out = _run(capsys, svc, "season")
    assert out["current"]["number"] == 2


def test_bad_config_exits_two(tmp_path, capsys) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"mode": "nope", "db_path": str(tmp_path / "x.db")}), encoding="utf-8")
    assert main(["--config", str(bad), "season"]) == 2
    assert "bad config" in capsys.readouterr().err
