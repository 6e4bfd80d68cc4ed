from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Tuple, Union

from seasonpool.runtime.errors import MalformedEventError

Json = Dict[str, Any]

_REQUIRED_STR = ("user", "target", "tx_hash")
_REQUIRED_INT = ("season", "amount", "block_height", "log_index")

_INT_RE = re.compile(r"-?[0-9]+")


@dataclass(frozen=True, slots=True)
class DelegateEvent:
    kind: ClassVar[str] = "delegate"

    user: str
    target: str
    season: int
    amount: int
    tx_hash: str
    block_height: int
    log_index: int
    timestamp: int = 0

    @property
    def signed_amount(self) -> int:
        return int(self.amount)

    @property
    def event_id(self) -> Tuple[str, int]:
        return (self.tx_hash, self.log_index)

    def to_json(self) -> Json:
        return _event_json(self)


@dataclass(frozen=True, slots=True)
class UndelegateEvent:
    kind: ClassVar[str] = "undelegate"

    user: str
    target: str
    season: int
    amount: int
    tx_hash: str
    block_height: int
    log_index: int
    timestamp: int = 0

    @property
    def signed_amount(self) -> int:
        return -int(self.amount)

    @property
    def event_id(self) -> Tuple[str, int]:
        return (self.tx_hash, self.log_index)

    def to_json(self) -> Json:
        return _event_json(self)


DelegationEvent = Union[DelegateEvent, UndelegateEvent]

_KINDS = {
    DelegateEvent.kind: DelegateEvent,
    UndelegateEvent.kind: UndelegateEvent,
}


def _event_json(ev: DelegationEvent) -> Json:
    return {
        "kind": ev.kind,
        "user": ev.user,
        "target": ev.target,
        "season": ev.season,
        "amount": str(ev.amount),
        "tx_hash": ev.tx_hash,
        "block_height": ev.block_height,
        "log_index": ev.log_index,
        "timestamp": ev.timestamp,
    }


def _strict_int(raw: Json, key: str) -> int:
    v = raw.get(key)
    # bool is an int subclass; reject it explicitly.
    if isinstance(v, bool):
        raise MalformedEventError("malformed_event", f"bad_{key}", {"value": v})
    if isinstance(v, int):
        return v
    # ASCII digits only; str.isdigit() also admits superscripts and other scripts.
    if isinstance(v, str) and _INT_RE.fullmatch(v.strip()):
        return int(v.strip())
    raise MalformedEventError("malformed_event", f"bad_{key}", {"value": v})


def parse_event(raw: Any) -> DelegationEvent:
    """Parse a wire payload into a tagged delegation event.

    Payloads are JSON objects discriminated by "kind". Every field is required
    except "timestamp". Amounts may be JSON integers or decimal strings.
    """
    if not isinstance(raw, dict):
        raise MalformedEventError("malformed_event", "not_an_object", {"type": type(raw).__name__})

    kind = raw.get("kind")
    cls = _KINDS.get(kind) if isinstance(kind, str) else None
    if cls is None:
        raise MalformedEventError("malformed_event", "unknown_kind", {"kind": kind})

    missing = [k for k in _REQUIRED_STR + _REQUIRED_INT if k not in raw]
    if missing:
        raise MalformedEventError("malformed_event", "missing_fields", {"missing": missing})

    strs: Dict[str, str] = {}
    for k in _REQUIRED_STR:
        v = raw.get(k)
        if not isinstance(v, str) or not v.strip():
            raise MalformedEventError("malformed_event", f"bad_{k}", {"value": v})
        strs[k] = v.strip()

    ints = {k: _strict_int(raw, k) for k in _REQUIRED_INT}
    if ints["amount"] <= 0:
        raise MalformedEventError("malformed_event", "non_positive_amount", {"amount": ints["amount"]})
    if ints["season"] < 1:
        raise MalformedEventError("malformed_event", "bad_season", {"season": ints["season"]})
    if ints["block_height"] < 0 or ints["log_index"] < 0:
        raise MalformedEventError(
            "malformed_event",
            "negative_position",
            {"block_height": ints["block_height"], "log_index": ints["log_index"]},
        )

    ts = 0
    if raw.get("timestamp") is not None:
        ts = _strict_int(raw, "timestamp")

    return cls(
        user=strs["user"],
        target=strs["target"],
        season=ints["season"],
        amount=ints["amount"],
        tx_hash=strs["tx_hash"],
        block_height=ints["block_height"],
        log_index=ints["log_index"],
        timestamp=ts,
    )


def event_sort_key(ev: DelegationEvent) -> Tuple[int, int]:
    return (int(ev.block_height), int(ev.log_index))


def parse_events(payloads: Any) -> list[DelegationEvent]:
    """Parse a batch; the first malformed payload aborts with the raw payload attached."""
    if not isinstance(payloads, list):
        raise MalformedEventError("malformed_event", "events_not_a_list", {"raw": payloads})
    out: list[DelegationEvent] = []
    for raw in payloads:
        try:
            out.append(parse_event(raw))
        except MalformedEventError as e:
            details = dict(e.details or {})
            details["raw"] = raw
            raise MalformedEventError(e.code, e.reason, details) from e
    return out
