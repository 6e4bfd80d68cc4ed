from __future__ import annotations

import json
import logging
import random
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional, Sequence, Tuple

from seasonpool.ledger.events import DelegationEvent, parse_events
from seasonpool.ledger.types import ConfirmationResult, Transfer
from seasonpool.runtime.errors import LedgerUnavailableError

Json = Dict[str, Any]

log = logging.getLogger("seasonpool.ledger.http")


def _as_int(v: Any, what: str) -> int:
    if isinstance(v, bool):
        raise LedgerUnavailableError("ledger_bad_response", f"bad_{what}", {"value": v})
    try:
        return int(v)
    except Exception:
        raise LedgerUnavailableError("ledger_bad_response", f"bad_{what}", {"value": v})


class HttpLedgerGateway:
    """JSON-over-HTTP client for the ledger indexer/relayer.

    Endpoints (relative to base_url):
      GET  /season/current                  -> {"season": n}
      GET  /season/{n}/window               -> {"start": s, "end": e}
      GET  /season/{n}/totals               -> {"totals": {target: amount}}
      GET  /power/{user}                    -> {"power": amount}
      GET  /head                            -> {"block": n}
      GET  /events?from=a&to=b              -> {"events": [...]}
      GET  /targets/{target}/owner          -> {"owner": id}
      POST /transfers                       -> {"tx_handle": h}
      POST /transfers/batch                 -> {"tx_handle": h}
      GET  /tx/{handle}?timeout_s=t         -> {"status": s, "error": e}

    Reads retry transport errors and 5xx responses with bounded exponential
    backoff plus jitter, then raise LedgerUnavailableError. Submissions are
    never retried here: a retried POST could pay twice.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_s: float = 10.0,
        max_retries: int = 3,
        backoff_base_ms: int = 200,
        backoff_cap_ms: int = 5_000,
    ) -> None:
        self.base_url = str(base_url or "").strip().rstrip("/")
        if not self.base_url:
            raise ValueError("base_url must be a non-empty string")
        self.timeout_s = float(timeout_s)
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_ms = max(1, int(backoff_base_ms))
        self.backoff_cap_ms = max(self.backoff_base_ms, int(backoff_cap_ms))

    def _url(self, path: str, query: Optional[Dict[str, Any]] = None) -> str:
        qs = urllib.parse.urlencode({k: str(v) for k, v in (query or {}).items()})
        return f"{self.base_url}{path}?{qs}" if qs else f"{self.base_url}{path}"

    def _once(self, method: str, url: str, body: Optional[Json], timeout_s: float) -> Json:
        data = None
        if body is not None:
            data = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
        req = urllib.request.Request(url=url, method=method, data=data)
        req.add_header("Accept", "application/json")
        if data is not None:
            req.add_header("Content-Type", "application/json")

        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
        obj = json.loads(raw) if raw.strip() else {}
        if not isinstance(obj, dict):
            raise LedgerUnavailableError("ledger_bad_response", "not_an_object", {"url": url})
        return obj

    def _sleep_backoff(self, attempt: int) -> None:
        ms = min(self.backoff_cap_ms, self.backoff_base_ms * (2 ** min(attempt, 10)))
        ms = ms * (0.5 + random.random())
        time.sleep(ms / 1000.0)

    def _request(
        self,
        method: str,
        path: str,
        *,
        query: Optional[Dict[str, Any]] = None,
        body: Optional[Json] = None,
        retry: bool = True,
        timeout_s: Optional[float] = None,
    ) -> Json:
        url = self._url(path, query)
        tmo = float(timeout_s if timeout_s is not None else self.timeout_s)
        attempts = (self.max_retries + 1) if retry else 1
        last: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                return self._once(method, url, body, tmo)
            except urllib.error.HTTPError as e:
                status = int(getattr(e, "code", 0) or 0)
                last = e
                # 4xx is a definitive answer; do not hammer the ledger.
                if 400 <= status < 500:
                    raise LedgerUnavailableError(
                        "ledger_rejected", f"http_status:{status}", {"url": url, "method": method}
                    )
            except LedgerUnavailableError:
                raise
            except (urllib.error.URLError, OSError, ValueError) as e:
                last = e

            if attempt + 1 < attempts:
                log.warning("ledger request failed (attempt %s/%s): %s %s: %s", attempt + 1, attempts, method, url, last)
                self._sleep_backoff(attempt)

        raise LedgerUnavailableError(
            "ledger_unavailable",
            f"{type(last).__name__}:{last}",
            {"url": url, "method": method, "attempts": attempts},
        )

    # ----------------------------
    # LedgerGateway
    # ----------------------------

    def get_current_season_number(self) -> int:
        return _as_int(self._request("GET", "/season/current").get("season"), "season")

    def get_season_window(self, season: int) -> Tuple[int, int]:
        obj = self._request("GET", f"/season/{int(season)}/window")
        return _as_int(obj.get("start"), "start"), _as_int(obj.get("end"), "end")

    def get_voting_power(self, user: str) -> int:
        path = f"/power/{urllib.parse.quote(str(user), safe='')}"
        return _as_int(self._request("GET", path).get("power"), "power")

    def get_head_block(self) -> int:
        return _as_int(self._request("GET", "/head").get("block"), "block")

    def get_events(self, from_block: int, to_block: int) -> List[DelegationEvent]:
        obj = self._request("GET", "/events", query={"from": int(from_block), "to": int(to_block)})
        return parse_events(obj.get("events"))

    def get_target_owner(self, target: str) -> str:
        path = f"/targets/{urllib.parse.quote(str(target), safe='')}/owner"
        return str(self._request("GET", path).get("owner") or "")

    def get_target_totals(self, season: int) -> Dict[str, int]:
        obj = self._request("GET", f"/season/{int(season)}/totals")
        totals = obj.get("totals")
        if not isinstance(totals, dict):
            raise LedgerUnavailableError("ledger_bad_response", "bad_totals", {"season": int(season)})
        return {str(k): _as_int(v, "total") for k, v in totals.items()}

    def submit_transfer(self, recipient: str, amount: int) -> str:
        obj = self._request(
            "POST",
            "/transfers",
            body={"recipient": str(recipient), "amount": str(int(amount))},
            retry=False,
        )
        return self._handle(obj)

    def submit_batch_transfer(self, transfers: Sequence[Transfer]) -> str:
        body = {"transfers": [{"recipient": t.recipient, "amount": str(int(t.amount))} for t in transfers]}
        obj = self._request("POST", "/transfers/batch", body=body, retry=False)
        return self._handle(obj)

    @staticmethod
    def _handle(obj: Json) -> str:
        h = str(obj.get("tx_handle") or "").strip()
        if not h:
            raise LedgerUnavailableError("ledger_bad_response", "missing_tx_handle", {})
        return h

    def await_confirmation(self, tx_handle: str, timeout_s: float) -> ConfirmationResult:
        path = f"/tx/{urllib.parse.quote(str(tx_handle), safe='')}"
        # Leave headroom over the server-side wait.
        obj = self._request(
            "GET",
            path,
            query={"timeout_s": int(timeout_s)},
            timeout_s=float(timeout_s) + self.timeout_s,
        )
        status = str(obj.get("status") or "").strip().lower()
        if status == "confirmed":
            return ConfirmationResult(status="confirmed")
        if status in {"pending", "unknown", ""}:
            return ConfirmationResult(status="failed", error="confirmation_timeout")
        return ConfirmationResult(status="failed", error=str(obj.get("error") or status))
