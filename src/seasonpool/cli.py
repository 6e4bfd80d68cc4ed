from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional

from seasonpool.env import load_dotenv_if_present
from seasonpool.runtime.boot import build_service
from seasonpool.runtime.config import load_service_config, validate_service_config
from seasonpool.runtime.control import ControlService
from seasonpool.runtime.errors import ServiceError

Json = Dict[str, Any]


def _amount_arg(v: str) -> int:
    s = str(v).strip()
    if not s.isdigit():
        raise argparse.ArgumentTypeError("amount must be a non-negative decimal integer")
    return int(s)


def _parse_args(argv: List[str]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="seasonpool", description="Season delegation rewards: operator control surface")
    ap.add_argument("--config", dest="config_path", default=os.environ.get("SEASONPOOL_CONFIG_PATH", ""))
    ap.add_argument("--db", dest="db_path", default="")
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("season", help="show current/previous/next season")

    p = sub.add_parser("validate-season", help="pre-distribution checks")
    p.add_argument("season", type=int)

    p = sub.add_parser("top-winners", help="top-N targets by delegated votes")
    p.add_argument("season", type=int)
    p.add_argument("--top-n", dest="top_n", type=int, default=None)

    for name in ("calculate-rewards", "approve-rewards"):
        p = sub.add_parser(name)
        p.add_argument("season", type=int)
        p.add_argument("--pool-size", dest="pool_size", type=_amount_arg, default=None)
        p.add_argument("--top-n", dest="top_n", type=int, default=None)
        p.add_argument("--allow-partial", dest="allow_partial", action="store_true")
        if name == "approve-rewards":
            p.add_argument("--digest", dest="digest", required=True)

    p = sub.add_parser("start-distribution", help="run the payout for an approved calculation")
    p.add_argument("season", type=int)

    p = sub.add_parser("progress", help="payout progress")
    p.add_argument("season", type=int)

    p = sub.add_parser("force-transition", help="emergency close of the active season")
    p.add_argument("season", type=int)
    p.add_argument("--reason", dest="reason", required=True)
    p.add_argument("--actor", dest="actor", default=os.environ.get("USER", ""))

    p = sub.add_parser("sync", help="run one cache sync tick")
    p.add_argument("season", type=int, nargs="?", default=None)
    p.add_argument("--rebuild", dest="rebuild", action="store_true")

    return ap.parse_args(argv)


def _dispatch(svc: ControlService, args: argparse.Namespace) -> Json:
    cmd = args.cmd
    if cmd == "season":
        return svc.get_season_state()
    if cmd == "validate-season":
        return svc.validate_season(args.season)
    if cmd == "top-winners":
        return svc.get_top_winners(args.season, args.top_n)
    if cmd == "calculate-rewards":
        calc = svc.calculate_rewards(args.season, args.pool_size, top_n=args.top_n, allow_partial=args.allow_partial)
        return {"ok": True, "calculation": calc.to_json()}
    if cmd == "approve-rewards":
        return svc.approve_rewards(
            args.season,
            digest=args.digest,
            pool_size=args.pool_size,
            top_n=args.top_n,
            allow_partial=args.allow_partial,
        )
    if cmd == "start-distribution":
        # Inline: the process exits when the run ends.
        return svc.start_distribution(args.season, background=False)
    if cmd == "progress":
        return {"ok": True, "progress": svc.get_progress(args.season).to_json()}
    if cmd == "force-transition":
        return svc.force_transition(args.season, reason=args.reason, actor=args.actor)
    if cmd == "sync":
        return svc.sync_now(args.season, rebuild=args.rebuild)
    raise ValueError(f"unknown command: {cmd}")


def main(argv: List[str], *, service: Optional[ControlService] = None) -> int:
    load_dotenv_if_present()
    args = _parse_args(argv)

    svc = service
    if svc is None:
        try:
            cfg = load_service_config(config_path=args.config_path or None)
            if args.db_path:
                cfg = replace(cfg, db_path=str(args.db_path))
                validate_service_config(cfg)
        except (OSError, ValueError) as e:
            print(f"ERROR: bad config: {e}", file=sys.stderr)
            return 2
        svc = build_service(cfg)

    try:
        res = _dispatch(svc, args)
    except ServiceError as e:
        print(json.dumps({"ok": False, "error": {"code": e.code, "reason": e.reason, "details": e.details}}, indent=2))
        return 1
    finally:
        if service is None:
            svc.close()

    print(json.dumps(res, indent=2, sort_keys=True))
    if args.cmd == "validate-season" and not res.get("can_proceed"):
        return 3
    return 0 if res.get("ok", True) else 1


def run() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    run()
