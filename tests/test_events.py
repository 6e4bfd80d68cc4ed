from __future__ import annotations

import pytest

from seasonpool.ledger.events import DelegateEvent, UndelegateEvent, parse_event, parse_events
from seasonpool.runtime.errors import MalformedEventError


def _payload(**kw):
    base = {
        "kind": "delegate",
        "user": "alice",
        "target": "T1",
        "season": 1,
        "amount": "100",
        "tx_hash": "0xabc",
        "block_height": 7,
        "log_index": 0,
        "timestamp": 1704067300,
    }
    base.update(kw)
    return base


def test_parse_delegate_and_undelegate_variants() -> None:
    d = parse_event(_payload())
    assert isinstance(d, DelegateEvent)
    assert d.amount == 100
    assert d.signed_amount == 100
    assert d.event_id == ("0xabc", 0)

    u = parse_event(_payload(kind="undelegate", amount=40))
    assert isinstance(u, UndelegateEvent)
    assert u.signed_amount == -40


def test_amounts_beyond_float_precision_survive() -> None:
    big = 10**24 + 1
    ev = parse_event(_payload(amount=str(big)))
    assert ev.amount == big
    assert ev.to_json()["amount"] == str(big)


@pytest.mark.parametrize(
    "raw,reason",
    [
        ("not-a-dict", "not_an_object"),
        (_payload(kind="stake"), "unknown_kind"),
        ({"kind": "delegate", "user": "a"}, "missing_fields"),
        (_payload(user=""), "bad_user"),
        (_payload(amount=0), "non_positive_amount"),
        (_payload(amount=True), "bad_amount"),
        (_payload(amount="1.5"), "bad_amount"),
        (_payload(amount="--5"), "bad_amount"),
        (_payload(amount="²"), "bad_amount"),
        (_payload(amount="٣"), "bad_amount"),
        (_payload(log_index="-"), "bad_log_index"),
        (_payload(season=0), "bad_season"),
        (_payload(block_height=-1), "negative_position"),
    ],
)
def test_malformed_payloads_are_rejected(raw, reason: str) -> None:
    with pytest.raises(MalformedEventError) as e:
        parse_event(raw)
    assert e.value.code == "malformed_event"
    assert e.value.reason == reason


def test_parse_events_attaches_raw_payload_of_first_bad_entry() -> None:
    bad = _payload(kind="mystery")
    with pytest.raises(MalformedEventError) as e:
        parse_events([_payload(), bad, _payload(kind="nope")])
    assert e.value.details["raw"] == bad
