# services/pools/distribution.py
# Integer-only payout arithmetic. Truncation losses are never owed to a claimant;
# whatever is left once every winner has claimed goes to the treasury.
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from services.pools.constants import MAX_FEE_PERCENTAGE


@dataclass(frozen=True)
class PayoutPlan:
    shares: Dict[str, int]
    remainder: int


def split_fee(prize_pool: int, fee_percentage: int) -> Tuple[int, int]:
    """Return (distributable, fee)."""
    if not 0 <= fee_percentage <= MAX_FEE_PERCENTAGE:
        raise ValueError(f"fee_percentage must be in [0, {MAX_FEE_PERCENTAGE}]")
    fee = prize_pool * fee_percentage // 100
    return prize_pool - fee, fee


def compute_share(prize_pool: int, weight: int, winning_sum: int) -> int:
    """floor(prize_pool * weight / winning_sum)"""
    if winning_sum <= 0:
        raise ValueError("winning aggregate must be positive")
    if weight < 0 or weight > winning_sum:
        raise ValueError(f"weight {weight} outside [0, {winning_sum}]")
    return prize_pool * weight // winning_sum


def plan_payouts(prize_pool: int, weights: Dict[str, int]) -> PayoutPlan:
    """Shares for every winner at once; `remainder` is what the treasury keeps."""
    total = sum(weights.values())
    shares = {who: compute_share(prize_pool, w, total) for who, w in weights.items()}
    return PayoutPlan(shares=shares, remainder=prize_pool - sum(shares.values()))


def pick_winner(sums: Sequence[int]) -> Tuple[int, ...]:
    """Indexes holding the maximum; a single index means a strict winner."""
    top = max(sums)
    return tuple(i for i, s in enumerate(sums) if s == top)


__all__: List[str] = [
    "PayoutPlan",
    "split_fee",
    "compute_share",
    "plan_payouts",
    "pick_winner",
]
