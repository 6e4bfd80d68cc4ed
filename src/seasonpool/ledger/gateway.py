"""
Ledger Gateway (abstract I/O layer)

The authoritative ledger is an external, append-only, event-sourced system.
Everything in seasonpool reaches it through this interface so the cache,
ranking, reward and payout logic stays testable without a network.

Rules:
  - amounts are integers in the smallest unit; no floats cross this boundary
  - get_events() covers the half-open block range (from_block, to_block]
  - network/RPC failures raise LedgerUnavailableError
  - malformed event payloads raise MalformedEventError with the raw payload
    under details["raw"]
"""

from __future__ import annotations

from typing import Dict, List, Protocol, Sequence, Tuple, runtime_checkable

from seasonpool.ledger.events import DelegationEvent
from seasonpool.ledger.types import ConfirmationResult, Transfer


@runtime_checkable
class LedgerGateway(Protocol):
    def get_current_season_number(self) -> int: ...

    def get_season_window(self, season: int) -> Tuple[int, int]: ...

    def get_voting_power(self, user: str) -> int: ...

    def get_head_block(self) -> int: ...

    def get_events(self, from_block: int, to_block: int) -> List[DelegationEvent]: ...

    def get_target_owner(self, target: str) -> str: ...

    def get_target_totals(self, season: int) -> Dict[str, int]: ...

    def submit_transfer(self, recipient: str, amount: int) -> str: ...

    def submit_batch_transfer(self, transfers: Sequence[Transfer]) -> str: ...

    def await_confirmation(self, tx_handle: str, timeout_s: float) -> ConfirmationResult: ...
