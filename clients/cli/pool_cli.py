#!/usr/bin/env python3
# clients/cli/pool_cli.py
# CLI for the confidential pools API.
# *** LOCALNET / DEV ONLY: weights are encrypted through the API's local relay ***

from __future__ import annotations

import argparse
import json
import os
import sys
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests

API_URL = os.getenv("POOLS_API_URL", "http://127.0.0.1:8000").rstrip("/")
TIMEOUT_SEC = float(os.getenv("POOLS_API_TIMEOUT", "15"))
WEI_PER_ETH = Decimal(10) ** 18


# ======== Color accents (no deps) ========
class C:
    OK   = "\033[92m"
    WARN = "\033[93m"
    ERR  = "\033[91m"
    DIM  = "\033[2m"
    BOLD = "\033[1m"
    RST  = "\033[0m"


class ApiError(RuntimeError):
    def __init__(self, status: int, detail: str, code: Optional[str] = None):
        super().__init__(f"[{status}] {code or 'error'}: {detail}")
        self.status = status
        self.detail = detail
        self.code = code


def eth_to_wei(s: str) -> int:
    try:
        v = Decimal(s)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {s!r}")
    if v < 0:
        raise argparse.ArgumentTypeError("amount must be positive")
    return int(v * WEI_PER_ETH)


def fmt_wei(wei: Any) -> str:
    return f"{Decimal(int(wei)) / WEI_PER_ETH:f} ETH"


# ======== HTTP ========
def _call(method: str, path: str, body: Optional[Dict[str, Any]] = None, params: Optional[dict] = None) -> Any:
    r = requests.request(method, f"{API_URL}{path}", json=body, params=params, timeout=TIMEOUT_SEC)
    if r.status_code >= 400:
        try:
            data = r.json()
            detail = data.get("detail", r.text)
            code = data.get("code")
        except ValueError:
            detail, code = r.text, None
        raise ApiError(r.status_code, str(detail), code)
    return r.json()


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2))


# ======== Commands ========
def cmd_list(a) -> None:
    ids = _call("GET", "/pools")["pool_ids"]
    if not ids:
        print(f"{C.DIM}(no pools){C.RST}")
        return
    for pid in ids:
        p = _call("GET", f"/pools/{pid}")
        winner = p.get("winning_label") or ("push" if p["push_all"] else "-")
        print(
            f"{C.BOLD}{pid:<24}{C.RST} {p['phase']:<15} fee={fmt_wei(p['entry_fee']):<22} "
            f"players={p['player_count']:<4} picks={p['pick_counts']} winner={winner}"
        )


def cmd_show(a) -> None:
    _print(_call("GET", f"/pools/{a.pool_id}"))


def cmd_create(a) -> None:
    res = _call("POST", "/pools", {
        "pool_id": a.pool_id,
        "creator": a.creator,
        "entry_fee": a.entry_fee,
        "duration_seconds": a.duration,
        "fee_percentage": a.fee_percentage,
    })
    print(f"{C.OK}Created {res['pool_id']}; locks at {res['lock_time']}{C.RST}")


def cmd_enter(a) -> None:
    pool = _call("GET", f"/pools/{a.pool_id}")
    enc = _call("POST", "/dev/encrypt", {"pool_id": a.pool_id, "participant": a.participant, "weight": a.weight})
    res = _call("POST", f"/pools/{a.pool_id}/enter", {
        "participant": a.participant,
        "choice": a.choice,
        "ciphertext": enc["ciphertext"],
        "proof": enc["proof"],
        "payment": int(pool["entry_fee"]),
    })
    print(f"{C.OK}{a.participant} entered {a.pool_id} (players={res['player_count']}){C.RST}")


def cmd_settle(a) -> None:
    res = _call("POST", f"/pools/{a.pool_id}/settle")
    if res["resolved"]:
        print(f"{C.WARN}{a.pool_id} had no entrants; settled as push{C.RST}")
        return
    print(f"{C.DIM}decryption requested: {res['request_id']}{C.RST}")
    if a.relay:
        pool = _call("POST", f"/oracle/relay/{res['request_id']}")
        winner = pool.get("winning_label") or "push"
        print(f"{C.OK}{a.pool_id} settled: {winner}{C.RST}")


def cmd_cancel(a) -> None:
    _call("POST", f"/pools/{a.pool_id}/cancel", {"caller": a.caller})
    print(f"{C.OK}{a.pool_id} cancelled{C.RST}")


def cmd_claim(a) -> None:
    path = "claim-refund" if a.refund else "claim-prize"
    res = _call("POST", f"/pools/{a.pool_id}/{path}", {"participant": a.participant})
    print(f"{C.OK}{res['kind']} paid to {a.participant}: {fmt_wei(res['amount'])}{C.RST}")


def cmd_entries(a) -> None:
    _print(_call("GET", f"/participants/{a.participant}/entries"))


def cmd_treasury(a) -> None:
    if a.withdraw:
        body: Dict[str, Any] = {"caller": a.caller}
        if a.amount is not None:
            body["amount"] = a.amount
        res = _call("POST", "/treasury/withdraw", body)
        print(f"{C.OK}withdrew {fmt_wei(res['amount'])}; remaining {fmt_wei(res['remaining'])}{C.RST}")
        return
    t = _call("GET", "/treasury")
    print(f"owner={t['owner']} balance={fmt_wei(t['balance'])}")


def cmd_oracle(a) -> None:
    _print(_call("GET", "/oracle"))


def cmd_events(a) -> None:
    for e in reversed(_call("GET", "/events", params={"limit": a.limit, "pool_id": a.pool_id})["items"]):
        print(f"{C.DIM}{e.get('ts')}{C.RST} {e.get('kind'):<20} {e.get('pool_id', '')}")


def cmd_replay(a) -> None:
    n = _call("POST", "/admin/replay")["replayed"]
    print(f"{C.OK}Replayed {n} events and rebuilt the projection from tx_log.{C.RST}")


def cmd_health(a) -> None:
    _print(_call("GET", "/health"))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pool_cli", description="Confidential prediction pools (local API)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list", help="List pools").set_defaults(func=cmd_list)

    s = sub.add_parser("show", help="Show one pool")
    s.add_argument("pool_id")
    s.set_defaults(func=cmd_show)

    s = sub.add_parser("create", help="Create a pool")
    s.add_argument("pool_id")
    s.add_argument("--creator", required=True)
    s.add_argument("--entry-fee", type=eth_to_wei, required=True, help="Entry fee in ETH (e.g. 0.001)")
    s.add_argument("--duration", type=int, required=True, help="Seconds until lock")
    s.add_argument("--fee-percentage", type=int, default=0, help="Protocol fee on a winner settlement (0-20)")
    s.set_defaults(func=cmd_create)

    s = sub.add_parser("enter", help="Enter a pool with an encrypted weight")
    s.add_argument("pool_id")
    s.add_argument("--participant", required=True)
    s.add_argument("--choice", required=True, help="0/1/2 or Nova/Pulse/Flux")
    s.add_argument("--weight", type=int, required=True, help="Confidence weight, 1-1000")
    s.set_defaults(func=cmd_enter)

    s = sub.add_parser("settle", help="Settle a locked pool")
    s.add_argument("pool_id")
    s.add_argument("--no-relay", dest="relay", action="store_false",
                   help="Only request decryption; do not relay the local coprocessor's answer")
    s.set_defaults(func=cmd_settle)

    s = sub.add_parser("cancel", help="Cancel an open pool with no entrants")
    s.add_argument("pool_id")
    s.add_argument("--caller", required=True)
    s.set_defaults(func=cmd_cancel)

    s = sub.add_parser("claim", help="Claim a prize (or a refund with --refund)")
    s.add_argument("pool_id")
    s.add_argument("--participant", required=True)
    s.add_argument("--refund", action="store_true")
    s.set_defaults(func=cmd_claim)

    s = sub.add_parser("entries", help="List a participant's entries")
    s.add_argument("participant")
    s.set_defaults(func=cmd_entries)

    s = sub.add_parser("treasury", help="Show or withdraw the protocol treasury")
    s.add_argument("--withdraw", action="store_true")
    s.add_argument("--caller", default=None)
    s.add_argument("--amount", type=eth_to_wei, default=None, help="ETH; default is everything")
    s.set_defaults(func=cmd_treasury)

    sub.add_parser("oracle", help="Coprocessor key and unanswered decryption requests").set_defaults(func=cmd_oracle)

    s = sub.add_parser("events", help="Recent events")
    s.add_argument("--pool-id", default=None)
    s.add_argument("--limit", type=int, default=20)
    s.set_defaults(func=cmd_events)

    sub.add_parser("replay", help="Rebuild the event projection").set_defaults(func=cmd_replay)
    sub.add_parser("health", help="API health").set_defaults(func=cmd_health)
    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.cmd == "treasury" and args.withdraw and not args.caller:
        print(f"{C.ERR}--caller is required with --withdraw{C.RST}")
        return 2
    try:
        args.func(args)
    except ApiError as e:
        print(f"{C.ERR}{e}{C.RST}")
        return 1
    except requests.RequestException as e:
        print(f"{C.ERR}API unreachable at {API_URL}: {e}{C.RST}")
        return 1
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user."); sys.exit(130)
