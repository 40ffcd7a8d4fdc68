# services/pools/ciphertext_store.py
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from services.crypto_core.coprocessor import Coprocessor
from services.pools.constants import CHOICE_COUNT
from services.pools.models import Choice, Ciphertext


def entry_ref(pool_id: str, participant: str) -> str:
    return f"{pool_id}/{participant}"


class CiphertextStore:
    """
    Per-pool, per-choice encrypted weight sums plus the individual weight
    handles kept for claim-time decryption. Holds handles only; all arithmetic
    is delegated to the coprocessor.
    """

    def __init__(self, coprocessor: Coprocessor):
        self._cp = coprocessor
        self._aggregates: Dict[str, List[Ciphertext]] = {}
        self._weights: Dict[str, Ciphertext] = {}

    def open_pool(self, pool_id: str) -> None:
        if pool_id in self._aggregates:
            raise KeyError(f"aggregates already initialised for {pool_id}")
        self._aggregates[pool_id] = [self._cp.trivial_zero() for _ in range(CHOICE_COUNT)]

    def aggregates(self, pool_id: str) -> Tuple[Ciphertext, ...]:
        return tuple(self._aggregates[pool_id])

    def aggregate(self, pool_id: str, choice: Choice) -> Ciphertext:
        return self._aggregates[pool_id][int(choice)]

    def sum_with(self, pool_id: str, choice: Choice, ct: Ciphertext) -> Ciphertext:
        """Homomorphic aggregate + ct, not yet committed."""
        return self._cp.add(self._aggregates[pool_id][int(choice)], ct)

    def commit(self, pool_id: str, choice: Choice, new_sum: Ciphertext, participant: str, ct: Ciphertext) -> str:
        """Install a sum produced by `sum_with` and bind the entrant's weight; returns its ref."""
        slot = self._aggregates[pool_id]
        old = slot[int(choice)]
        slot[int(choice)] = new_sum
        self._cp.discard(old)
        ref = entry_ref(pool_id, participant)
        self._weights[ref] = ct
        return ref

    def weight(self, ref: str) -> Ciphertext:
        return self._weights[ref]

    def release(self, ref: str) -> Optional[Ciphertext]:
        ct = self._weights.pop(ref, None)
        if ct is not None:
            self._cp.discard(ct)
        return ct

    # ---------- persistence ----------
    def export_state(self) -> dict:
        return {
            "aggregates": {pid: [c.hex() for c in cts] for pid, cts in self._aggregates.items()},
            "weights": {ref: c.hex() for ref, c in self._weights.items()},
        }

    def load_state(self, st: dict) -> None:
        self._aggregates = {
            pid: [Ciphertext.from_hex(h) for h in hs] for pid, hs in st.get("aggregates", {}).items()
        }
        self._weights = {ref: Ciphertext.from_hex(h) for ref, h in st.get("weights", {}).items()}
