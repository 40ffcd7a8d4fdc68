# services/pools/registry.py
from __future__ import annotations

import copy
from typing import Dict, List, Optional, Tuple

from services.pools.errors import AlreadyExistsError, NotFoundError
from services.pools.models import Entry, Pool


class PoolRegistry:
    """
    Keyed store of pools and entries, owned by the lifecycle engine.

    `get` / `entry` hand out the live records for the engine to mutate;
    `snapshot` / `entry_snapshot` hand out copies for everyone else.
    """

    def __init__(self) -> None:
        self._pools: Dict[str, Pool] = {}
        self._order: List[str] = []
        self._entries: Dict[str, Dict[str, Entry]] = {}

    # ---------- pools ----------
    def add(self, pool: Pool) -> None:
        if pool.pool_id in self._pools:
            raise AlreadyExistsError(f"pool {pool.pool_id!r} already exists", pool_id=pool.pool_id)
        self._pools[pool.pool_id] = pool
        self._order.append(pool.pool_id)
        self._entries[pool.pool_id] = {}

    def exists(self, pool_id: str) -> bool:
        return pool_id in self._pools

    def get(self, pool_id: str) -> Pool:
        try:
            return self._pools[pool_id]
        except KeyError:
            raise NotFoundError(f"pool {pool_id!r} not found", pool_id=pool_id)

    def snapshot(self, pool_id: str) -> Pool:
        return copy.deepcopy(self.get(pool_id))

    def pool_ids(self) -> List[str]:
        return list(self._order)

    # ---------- entries ----------
    def add_entry(self, pool_id: str, participant: str, entry: Entry) -> None:
        book = self._entries[self.get(pool_id).pool_id]
        if participant in book:
            raise AlreadyExistsError(
                f"{participant} already entered pool {pool_id!r}", pool_id=pool_id
            )
        book[participant] = entry

    def entry(self, pool_id: str, participant: str) -> Optional[Entry]:
        return self._entries[self.get(pool_id).pool_id].get(participant)

    def entry_snapshot(self, pool_id: str, participant: str) -> Entry:
        e = self.entry(pool_id, participant)
        if e is None:
            raise NotFoundError(f"no entry for {participant} in pool {pool_id!r}", pool_id=pool_id)
        return copy.deepcopy(e)

    def participants(self, pool_id: str) -> List[str]:
        return list(self._entries[self.get(pool_id).pool_id])

    def entries_for_participant(self, participant: str) -> List[Tuple[str, Entry]]:
        out = []
        for pid in self._order:
            e = self._entries[pid].get(participant)
            if e is not None:
                out.append((pid, copy.deepcopy(e)))
        return out

    def is_fully_claimed(self, pool_id: str) -> bool:
        """Every entry that is owed something has been paid."""
        pool = self.get(pool_id)
        book = self._entries[pool_id]
        if pool.cancelled or (pool.settled and pool.push_all):
            return all(e.claimed for e in book.values())
        if pool.settled:
            return pool.winners_claimed >= pool.winner_count
        return False

    # ---------- persistence ----------
    def export_state(self) -> dict:
        return {
            "order": list(self._order),
            "pools": {pid: self._pools[pid].to_dict() for pid in self._order},
            "entries": {
                pid: {who: e.to_dict() for who, e in book.items()}
                for pid, book in self._entries.items()
            },
        }

    def load_state(self, st: dict) -> None:
        self._order = list(st.get("order", []))
        self._pools = {pid: Pool.from_dict(d) for pid, d in st.get("pools", {}).items()}
        self._entries = {pid: {} for pid in self._order}
        for pid, book in st.get("entries", {}).items():
            self._entries[pid] = {who: Entry.from_dict(d) for who, d in book.items()}
