"""Tests for the pool registry and ciphertext store."""

from __future__ import annotations

import json

import pytest

from services.pools.ciphertext_store import CiphertextStore
from services.pools.errors import AlreadyExistsError, NotFoundError
from services.pools.models import Choice, Entry, Pool
from services.pools.registry import PoolRegistry

from tests.conftest import CREATOR, FEE, HOUR, T0


def _pool(pool_id: str = "P1") -> Pool:
    return Pool(pool_id=pool_id, creator=CREATOR, entry_fee=FEE, lock_time=T0 + HOUR, created_at=T0)


class TestPoolRegistry:
    def test_add_and_get(self):
        reg = PoolRegistry()
        reg.add(_pool("B"))
        reg.add(_pool("A"))
        assert reg.pool_ids() == ["B", "A"]
        assert reg.exists("A") and not reg.exists("C")
        with pytest.raises(AlreadyExistsError):
            reg.add(_pool("A"))
        with pytest.raises(NotFoundError):
            reg.get("C")

    def test_snapshot_is_detached(self):
        reg = PoolRegistry()
        reg.add(_pool())
        snap = reg.snapshot("P1")
        snap.pick_counts[0] = 99
        assert reg.get("P1").pick_counts == [0, 0, 0]

    def test_entries(self):
        reg = PoolRegistry()
        reg.add(_pool())
        reg.add_entry("P1", "alice", Entry(Choice.PULSE, weight_ref="P1/alice"))
        with pytest.raises(AlreadyExistsError):
            reg.add_entry("P1", "alice", Entry(Choice.NOVA))
        assert reg.entry("P1", "bob") is None
        with pytest.raises(NotFoundError):
            reg.entry_snapshot("P1", "bob")
        assert reg.participants("P1") == ["alice"]
        assert reg.entry_snapshot("P1", "alice").choice is Choice.PULSE

    def test_fully_claimed(self):
        reg = PoolRegistry()
        reg.add(_pool())
        reg.add_entry("P1", "alice", Entry(Choice.NOVA))
        assert not reg.is_fully_claimed("P1")
        p = reg.get("P1")
        p.settled, p.push_all = True, True
        assert not reg.is_fully_claimed("P1")
        reg.entry("P1", "alice").claimed = True
        assert reg.is_fully_claimed("P1")

    def test_state_survives_json(self):
        reg = PoolRegistry()
        reg.add(_pool())
        p = reg.get("P1")
        p.settled, p.winning_choice, p.winner_count = True, Choice.FLUX, 1
        reg.add_entry("P1", "alice", Entry(Choice.FLUX, weight_ref="P1/alice"))

        other = PoolRegistry()
        other.load_state(json.loads(json.dumps(reg.export_state())))
        assert other.get("P1") == reg.get("P1")
        assert other.entry("P1", "alice") == reg.entry("P1", "alice")


class TestCiphertextStore:
    def test_sum_is_uncommitted_until_commit(self, cp):
        store = CiphertextStore(cp)
        store.open_pool("P1")
        with pytest.raises(KeyError):
            store.open_pool("P1")
        before = store.aggregate("P1", Choice.NOVA)
        enc = cp.encrypt_weight("P1", "alice", 30)
        new_sum = store.sum_with("P1", Choice.NOVA, enc.ciphertext)
        assert store.aggregate("P1", Choice.NOVA) == before

        ref = store.commit("P1", Choice.NOVA, new_sum, "alice", enc.ciphertext)
        assert ref == "P1/alice"
        assert store.aggregate("P1", Choice.NOVA) == new_sum
        assert not cp.known(before)
        assert store.weight(ref) == enc.ciphertext

        store.release(ref)
        assert not cp.known(enc.ciphertext)
        assert store.release(ref) is None
