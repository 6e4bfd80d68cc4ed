from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from seasonpool.ledger.constants import DEFAULT_SEASON_EPOCH_S, DEFAULT_SEASON_LENGTH_S
from seasonpool.ledger.events import DelegationEvent, parse_events
from seasonpool.ledger.types import ConfirmationResult, Transfer
from seasonpool.runtime.errors import LedgerUnavailableError

Json = Dict[str, Any]


@dataclass(slots=True)
class _Tx:
    handle: str
    transfers: List[Transfer]
    status: str
    error: Optional[str] = None


class MemoryLedger:
    """
    In-process ledger used for dev mode and unit tests.

    - Stores raw event payloads so tests can inject malformed ones
    - Applies transfers to `balances` only when the transaction confirms
    - Failure injection is keyed by the 1-based submit call number:
        fail_submit_calls     -> submit raises LedgerUnavailableError
        fail_confirm_calls    -> await_confirmation reports failed (reverted)
        timeout_confirm_calls -> await_confirmation reports confirmation_timeout
    """

    def __init__(
        self,
        *,
        epoch_s: int = DEFAULT_SEASON_EPOCH_S,
        season_length_s: int = DEFAULT_SEASON_LENGTH_S,
        current_season: int = 1,
    ) -> None:
        self._lock = threading.RLock()
        self.epoch_s = int(epoch_s)
        self.season_length_s = int(season_length_s)
        self.current_season = int(current_season)

        self._payloads: List[Json] = []
        self._head = 0
        self._next_log: Dict[int, int] = {}
        self._tx_seq = 0

        self.power: Dict[str, int] = {}
        self.owners: Dict[str, str] = {}
        self.balances: Dict[str, int] = {}
        self.txs: Dict[str, _Tx] = {}
        self.submit_calls = 0

        self.unavailable = False
        self.fail_submit_calls: Set[int] = set()
        self.fail_confirm_calls: Set[int] = set()
        self.timeout_confirm_calls: Set[int] = set()

    # ----------------------------
    # Test/dev setup helpers
    # ----------------------------

    def set_power(self, user: str, amount: int) -> None:
        with self._lock:
            self.power[str(user)] = int(amount)

    def set_owner(self, target: str, owner: str) -> None:
        with self._lock:
            self.owners[str(target)] = str(owner)

    def append_raw(self, payload: Any, *, block_height: Optional[int] = None) -> None:
        with self._lock:
            self._payloads.append(payload)
            if block_height is not None:
                self._head = max(self._head, int(block_height))

    def _record(
        self,
        kind: str,
        user: str,
        target: str,
        amount: int,
        season: Optional[int],
        block_height: Optional[int],
        timestamp: int,
    ) -> Json:
        with self._lock:
            block = int(block_height) if block_height is not None else self._head + 1
            log_index = self._next_log.get(block, 0)
            self._next_log[block] = log_index + 1
            payload: Json = {
                "kind": kind,
                "user": str(user),
                "target": str(target),
                "season": int(season if season is not None else self.current_season),
                "amount": str(int(amount)),
                "tx_hash": f"0x{block:08x}{log_index:04x}",
                "block_height": block,
                "log_index": log_index,
                "timestamp": int(timestamp),
            }
            self._payloads.append(payload)
            self._head = max(self._head, block)
            return payload

    def delegate(
        self,
        user: str,
        target: str,
        amount: int,
        *,
        season: Optional[int] = None,
        block_height: Optional[int] = None,
        timestamp: int = 0,
    ) -> Json:
        return self._record("delegate", user, target, amount, season, block_height, timestamp)

    def undelegate(
        self,
        user: str,
        target: str,
        amount: int,
        *,
        season: Optional[int] = None,
        block_height: Optional[int] = None,
        timestamp: int = 0,
    ) -> Json:
        return self._record("undelegate", user, target, amount, season, block_height, timestamp)

    def settle(self, tx_handle: str, *, confirmed: bool = True) -> None:
        """Resolve a transaction left 'unknown' by timeout_confirm_calls."""
        with self._lock:
            tx = self.txs[str(tx_handle)]
            if tx.status != "unknown":
                return
            if confirmed:
                tx.status = "confirmed"
                for t in tx.transfers:
                    self.balances[t.recipient] = self.balances.get(t.recipient, 0) + int(t.amount)
            else:
                tx.status = "failed"
                tx.error = "reverted"

    def advance_head(self, blocks: int = 1) -> int:
        with self._lock:
            self._head += max(0, int(blocks))
            return self._head

    # ----------------------------
    # LedgerGateway
    # ----------------------------

    def _check_available(self, op: str) -> None:
        if self.unavailable:
            raise LedgerUnavailableError("ledger_unavailable", op, {"backend": "memory"})

    def get_current_season_number(self) -> int:
        self._check_available("get_current_season_number")
        return int(self.current_season)

    def get_season_window(self, season: int) -> Tuple[int, int]:
        self._check_available("get_season_window")
        start = self.epoch_s + (int(season) - 1) * self.season_length_s
        return start, start + self.season_length_s

    def get_voting_power(self, user: str) -> int:
        self._check_available("get_voting_power")
        with self._lock:
            return int(self.power.get(str(user), 0))

    def get_head_block(self) -> int:
        self._check_available("get_head_block")
        with self._lock:
            return int(self._head)

    def get_events(self, from_block: int, to_block: int) -> List[DelegationEvent]:
        self._check_available("get_events")
        with self._lock:
            in_range: List[Any] = []
            for p in self._payloads:
                b = p.get("block_height") if isinstance(p, dict) else None
                # Malformed payloads without a usable height are always returned.
                if isinstance(b, int) and not isinstance(b, bool):
                    if b <= int(from_block) or b > int(to_block):
                        continue
                in_range.append(p)
        return parse_events(in_range)

    def get_target_owner(self, target: str) -> str:
        self._check_available("get_target_owner")
        with self._lock:
            return self.owners.get(str(target), "")

    def get_target_totals(self, season: int) -> Dict[str, int]:
        self._check_available("get_target_totals")
        with self._lock:
            events = parse_events([p for p in self._payloads if isinstance(p, dict)])
        totals: Dict[str, int] = {}
        for ev in events:
            if ev.season != int(season):
                continue
            totals[ev.target] = totals.get(ev.target, 0) + ev.signed_amount
        return {t: v for t, v in totals.items() if v != 0}

    def _submit(self, transfers: List[Transfer]) -> str:
        self._check_available("submit")
        with self._lock:
            self.submit_calls += 1
            call = self.submit_calls
            if call in self.fail_submit_calls:
                raise LedgerUnavailableError("ledger_unavailable", "submit_rejected", {"call": call})
            self._tx_seq += 1
            handle = f"tx-{self._tx_seq}"
            if call in self.timeout_confirm_calls:
                tx = _Tx(handle=handle, transfers=transfers, status="unknown")
            elif call in self.fail_confirm_calls:
                tx = _Tx(handle=handle, transfers=transfers, status="failed", error="reverted")
            else:
                tx = _Tx(handle=handle, transfers=transfers, status="confirmed")
                for t in transfers:
                    self.balances[t.recipient] = self.balances.get(t.recipient, 0) + int(t.amount)
            self.txs[handle] = tx
            return handle

    def submit_transfer(self, recipient: str, amount: int) -> str:
        return self._submit([Transfer(recipient=str(recipient), amount=int(amount))])

    def submit_batch_transfer(self, transfers: Sequence[Transfer]) -> str:
        return self._submit(list(transfers))

    def await_confirmation(self, tx_handle: str, timeout_s: float) -> ConfirmationResult:
        self._check_available("await_confirmation")
        with self._lock:
            tx = self.txs.get(str(tx_handle))
        if tx is None:
            return ConfirmationResult(status="failed", error="unknown_tx")
        if tx.status == "unknown":
            return ConfirmationResult(status="failed", error="confirmation_timeout")
        return ConfirmationResult(status=tx.status, error=tx.error)
