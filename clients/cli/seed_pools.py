#!/usr/bin/env python3
"""
Seed a local pools API with the standard set of pools.

Pools that already exist are skipped, so the script can be re-run.
"""
from __future__ import annotations

import argparse
import sys
from decimal import Decimal
from typing import List, Tuple

from clients.cli.pool_cli import ApiError, C, WEI_PER_ETH, _call

HOUR = 3600
DAY = 24 * HOUR

# (pool id, entry fee in ETH, duration in seconds)
DEFAULT_POOLS: List[Tuple[str, str, int]] = [
    ("QUICK-STRIKE-24H", "0.001", DAY),
    ("WEEKLY-COSMIC-7D", "0.0015", 7 * DAY),
    ("BIWEEKLY-NEBULA-15D", "0.002", 15 * DAY),
    ("MONTHLY-GALAXY-30D", "0.003", 30 * DAY),
    ("RAPID-FIRE-12H", "0.0005", 12 * HOUR),
]


def seed(creator: str, fee_percentage: int = 0) -> List[str]:
    created = []
    for pool_id, fee_eth, duration in DEFAULT_POOLS:
        try:
            _call("POST", "/pools", {
                "pool_id": pool_id,
                "creator": creator,
                "entry_fee": int(Decimal(fee_eth) * WEI_PER_ETH),
                "duration_seconds": duration,
                "fee_percentage": fee_percentage,
            })
        except ApiError as e:
            if e.status == 409:
                print(f"{C.DIM}{pool_id} exists, skipped{C.RST}")
                continue
            raise
        print(f"{C.OK}created {pool_id} ({fee_eth} ETH, {duration // HOUR}h){C.RST}")
        created.append(pool_id)
    return created


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Create the default pools")
    p.add_argument("--creator", default="pool-admin")
    p.add_argument("--fee-percentage", type=int, default=0)
    args = p.parse_args(argv)
    try:
        seed(args.creator, args.fee_percentage)
    except ApiError as e:
        print(f"{C.ERR}{e}{C.RST}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
