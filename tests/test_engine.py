"""Tests for the pool lifecycle engine (services/pools/engine.py).

Covers:
- Pool creation bounds and uniqueness
- Entry validation order, exclusivity and conservation
- Settlement: no-entrant push, ties, strict winner, protocol fee
- Prize and refund claims, rollback on transfer failure, re-entrancy
- Cancellation and treasury withdrawal
"""

from __future__ import annotations

import pathlib
import warnings

import pytest

from services.pools import engine as engine_module
from services.pools.constants import MAX_DURATION, MIN_DURATION, MIN_ENTRY_FEE
from services.pools.errors import (
    AlreadyClaimedError,
    AlreadyExistsError,
    DecryptionPendingError,
    InvalidProofError,
    NotFoundError,
    NotWinnerError,
    PaymentMismatchError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from services.pools.engine import LifecycleEngine
from services.pools.models import Choice, PoolPhase

from tests.conftest import CREATOR, FEE, HOUR, OWNER, T0


# ── Creation ─────────────────────────────────────────────────────────────


class TestCreatePool:
    def test_fields(self, engine, make_pool):
        make_pool("QUICK-STRIKE-24H", duration=24 * HOUR)
        p = engine.get_pool("QUICK-STRIKE-24H")
        assert p.creator == CREATOR
        assert p.entry_fee == FEE
        assert p.lock_time == T0 + 24 * HOUR
        assert p.prize_pool == 0
        assert p.pick_counts == [0, 0, 0]
        assert engine.pool_phase("QUICK-STRIKE-24H") is PoolPhase.OPEN
        assert engine.list_pools() == ["QUICK-STRIKE-24H"]

    def test_duplicate_id_leaves_first_pool_untouched(self, engine, make_pool):
        make_pool("P1")
        before = engine.get_pool("P1")
        with pytest.raises(AlreadyExistsError):
            engine.create_pool("P1", FEE * 2, 2 * HOUR, creator="someone-else")
        assert engine.get_pool("P1") == before

    @pytest.mark.parametrize(
        "fee,duration",
        [
            (MIN_ENTRY_FEE - 1, HOUR),
            (FEE, MIN_DURATION - 1),
            (FEE, MAX_DURATION + 1),
        ],
    )
    def test_bounds(self, engine, fee, duration):
        with pytest.raises(ValidationError):
            engine.create_pool("P1", fee, duration, creator=CREATOR)
        assert engine.list_pools() == []

    def test_bounds_inclusive(self, engine):
        engine.create_pool("short", MIN_ENTRY_FEE, MIN_DURATION, creator=CREATOR)
        engine.create_pool("long", MIN_ENTRY_FEE, MAX_DURATION, creator=CREATOR)
        assert engine.list_pools() == ["short", "long"]

    @pytest.mark.parametrize("pool_id", ["", "x" * 65, "has space", "-leading"])
    def test_bad_pool_id(self, engine, pool_id):
        with pytest.raises(ValidationError):
            engine.create_pool(pool_id, FEE, HOUR, creator=CREATOR)

    def test_fee_percentage_capped(self, engine):
        with pytest.raises(ValidationError):
            engine.create_pool("P1", FEE, HOUR, creator=CREATOR, fee_percentage=21)

    def test_bool_is_not_an_amount(self, engine):
        with pytest.raises(ValidationError):
            engine.create_pool("P1", True, HOUR, creator=CREATOR)

    def test_unknown_pool(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_pool("nope")


# ── Entry ────────────────────────────────────────────────────────────────


class TestEnterPool:
    def test_conservation(self, engine, populated):
        pid = populated([("alice", 0, 10), ("bob", 1, 20), ("carol", 1, 30), ("dave", 2, 40)])
        p = engine.get_pool(pid)
        assert p.pick_counts == [1, 2, 1]
        assert p.player_count == sum(p.pick_counts) == 4
        assert p.prize_pool == p.player_count * p.entry_fee

    def test_label_choice(self, engine, make_pool, enter):
        make_pool()
        entry = enter("P1", "alice", "Flux", 5)
        assert entry.choice is Choice.FLUX
        assert engine.get_pick_counts("P1") == (0, 0, 1)

    def test_second_entry_rejected(self, engine, make_pool, enter):
        make_pool()
        enter("P1", "alice", 0, 10)
        aggs = engine.ciphertexts.aggregates("P1")
        with pytest.raises(AlreadyExistsError):
            enter("P1", "alice", 1, 10)
        assert engine.get_pick_counts("P1") == (1, 0, 0)
        assert engine.ciphertexts.aggregates("P1") == aggs

    def test_locked_rejects_even_with_correct_payment(self, engine, make_pool, enter, clock):
        make_pool()
        clock.advance(HOUR)
        with pytest.raises(StateError):
            enter("P1", "alice", 0, 10)
        assert engine.get_player_count("P1") == 0
        assert engine.pool_phase("P1") is PoolPhase.LOCKED

    def test_payment_mismatch(self, engine, make_pool, enter):
        make_pool()
        aggs = engine.ciphertexts.aggregates("P1")
        with pytest.raises(PaymentMismatchError):
            enter("P1", "alice", 0, 10, payment=FEE - 1)
        with pytest.raises(PaymentMismatchError):
            enter("P1", "alice", 0, 10, payment=FEE + 1)
        p = engine.get_pool("P1")
        assert (p.player_count, p.prize_pool) == (0, 0)
        assert engine.ciphertexts.aggregates("P1") == aggs

    @pytest.mark.parametrize("choice", [3, -1, "Quasar", True])
    def test_bad_choice(self, engine, make_pool, enter, choice):
        make_pool()
        with pytest.raises(ValidationError):
            enter("P1", "alice", choice, 10)
        assert engine.get_player_count("P1") == 0

    def test_proof_for_other_pool(self, engine, cp, make_pool):
        make_pool("P1")
        make_pool("P2")
        enc = cp.encrypt_weight("P2", "alice", 10)
        with pytest.raises(InvalidProofError):
            engine.enter_pool("P1", 0, enc.ciphertext, enc.proof, participant="alice", payment=FEE)
        assert engine.get_player_count("P1") == 0

    def test_proof_for_other_participant(self, engine, cp, make_pool):
        make_pool()
        enc = cp.encrypt_weight("P1", "alice", 10)
        with pytest.raises(InvalidProofError):
            engine.enter_pool("P1", 0, enc.ciphertext, enc.proof, participant="mallory", payment=FEE)

    def test_entry_does_not_expose_weight(self, engine, make_pool, enter):
        make_pool()
        enter("P1", "alice", 1, 777)
        e = engine.get_entry("P1", "alice")
        assert e.exists and not e.claimed
        assert e.weight_ref is None
        assert "777" not in repr(engine.get_pool("P1"))

    def test_absent_entry_reads_as_not_existing(self, engine, make_pool):
        make_pool()
        assert engine.get_entry("P1", "ghost").exists is False

    def test_entries_for_participant(self, engine, make_pool, enter):
        make_pool("A")
        make_pool("B")
        make_pool("C")
        enter("A", "alice", 0, 1)
        enter("C", "alice", 2, 1)
        assert [(pid, int(e.choice)) for pid, e in engine.entries_for_participant("alice")] == [("A", 0), ("C", 2)]


# ── Settlement ───────────────────────────────────────────────────────────


class TestSettlement:
    def test_no_entrants_push_without_decryption(self, engine, cp, make_pool, clock):
        make_pool()
        clock.advance(HOUR)
        assert engine.settle("P1") is None
        p = engine.get_pool("P1")
        assert p.settled and p.push_all and p.winning_choice is None
        assert cp.pending_requests() == []
        assert engine.pool_phase("P1") is PoolPhase.SETTLED_PUSH

    def test_settle_while_open(self, engine, make_pool, enter):
        make_pool()
        enter("P1", "alice", 0, 10)
        with pytest.raises(StateError):
            engine.settle("P1")

    def test_settle_twice_while_pending(self, engine, make_pool, enter, clock):
        make_pool()
        enter("P1", "alice", 0, 10)
        clock.advance(HOUR)
        engine.settle("P1")
        assert engine.settlement_pending("P1")
        with pytest.raises(DecryptionPendingError):
            engine.settle("P1")

    def test_settle_after_settled(self, engine, populated, settle):
        pid = populated([("alice", 0, 10)])
        settle(pid)
        with pytest.raises(StateError):
            engine.settle(pid)

    def test_tie_is_push(self, engine, populated, settle):
        pid = populated([("a", 0, 100), ("b", 1, 100), ("c", 2, 50)])
        p = settle(pid)
        assert p.push_all and p.winning_choice is None
        assert p.prize_pool == 3 * FEE

    def test_strict_winner(self, engine, populated, settle):
        pid = populated([("a", 0, 100), ("b", 1, 150), ("c", 2, 50)])
        p = settle(pid)
        assert not p.push_all
        assert p.winning_choice is Choice.PULSE
        assert p.winner_count == 1
        assert engine.pool_phase(pid) is PoolPhase.SETTLED_WINNER

    def test_settlement_events(self, engine, populated, settle):
        pid = populated([("a", 0, 5)])
        settle(pid)
        kinds = [k for k, _ in engine.events]
        assert kinds == ["PoolCreated", "EntryPlaced", "SettlementRequested", "PoolSettled"]
        assert engine.events[-1][1] == {"pool_id": pid, "winning_choice": 0, "push": False}


# ── Claims ───────────────────────────────────────────────────────────────


class TestClaims:
    def test_concrete_split(self, monkeypatch, cp, clock):
        monkeypatch.setattr("services.pools.engine.MIN_ENTRY_FEE", 1000)
        eng = LifecycleEngine(cp, owner=OWNER, clock=clock)
        eng.create_pool("P1", 1000, HOUR, creator=CREATOR)
        for who, choice, w in [("a", "Nova", 40), ("b", "Nova", 60), ("c", "Pulse", 50)]:
            enc = cp.encrypt_weight("P1", who, w)
            eng.enter_pool("P1", choice, enc.ciphertext, enc.proof, participant=who, payment=1000)
        assert eng.get_pool("P1").prize_pool == 3000

        clock.advance(HOUR)
        rid = eng.settle("P1")
        result = cp.fulfil(rid)
        assert result.plaintexts == (100, 50, 0)
        p = eng.deliver_settlement(result)
        assert p.winning_choice is Choice.NOVA

        assert eng.claim_prize("P1", participant="a") == 1200
        assert eng.claim_prize("P1", participant="b") == 1800
        assert eng.get_pool("P1").prize_pool == 0
        assert eng.treasury_balance() == 0
        assert eng.is_fully_claimed("P1")

    def test_rounding_remainder_goes_to_treasury(self, engine, populated, settle):
        pid = populated([("a", 0, 1), ("b", 0, 1), ("c", 0, 1), ("d", 1, 2)])
        settle(pid)
        paid = sum(engine.claim_prize(pid, participant=w) for w in ("a", "b", "c"))
        prize = 4 * FEE
        assert paid <= prize
        assert engine.treasury_balance() == prize - paid
        assert engine.get_pool(pid).prize_pool == 0

    def test_protocol_fee(self, engine, populated, settle):
        pid = populated([("a", 0, 10), ("b", 1, 5)], fee_percentage=10)
        p = settle(pid)
        fee = 2 * FEE * 10 // 100
        assert p.prize_pool == 2 * FEE - fee
        assert engine.treasury_balance() == fee
        assert engine.claim_prize(pid, participant="a") == 2 * FEE - fee

    def test_no_fee_on_push(self, engine, populated, settle):
        pid = populated([("a", 0, 10), ("b", 1, 10)], fee_percentage=20)
        settle(pid)
        assert engine.treasury_balance() == 0
        assert engine.claim_refund(pid, participant="a") == FEE

    def test_claim_errors(self, engine, populated, settle):
        pid = populated([("a", 0, 10), ("b", 1, 5)])
        with pytest.raises(StateError):
            engine.claim_prize(pid, participant="a")
        settle(pid)
        with pytest.raises(NotWinnerError):
            engine.claim_prize(pid, participant="b")
        with pytest.raises(NotFoundError):
            engine.claim_prize(pid, participant="ghost")
        with pytest.raises(StateError):
            engine.claim_refund(pid, participant="b")
        engine.claim_prize(pid, participant="a")
        with pytest.raises(AlreadyClaimedError):
            engine.claim_prize(pid, participant="a")

    def test_refund_exactness(self, engine, populated, settle):
        pid = populated([("a", 0, 100), ("b", 1, 100)])
        settle(pid)
        with pytest.raises(StateError):
            engine.claim_prize(pid, participant="a")
        assert engine.claim_refund(pid, participant="a") == FEE
        assert engine.claim_refund(pid, participant="b") == FEE
        with pytest.raises(AlreadyClaimedError):
            engine.claim_refund(pid, participant="a")
        assert engine.get_pool(pid).prize_pool == 0
        assert engine.balances == {"a": FEE, "b": FEE}
        assert engine.is_fully_claimed(pid)

    def test_weight_released_after_claim(self, engine, cp, populated, settle):
        pid = populated([("a", 0, 10)])
        ct = engine.ciphertexts.weight("P1/a")
        settle(pid)
        engine.claim_prize(pid, participant="a")
        assert not cp.known(ct)

    def test_transfer_failure_rolls_back(self, cp, clock):
        fail = {"on": True}
        paid = []

        def transfer(account, amount):
            if fail["on"]:
                raise RuntimeError("transfer reverted")
            paid.append((account, amount))

        eng = LifecycleEngine(cp, owner=OWNER, clock=clock, transfer=transfer)
        eng.create_pool("P1", FEE, HOUR, creator=CREATOR)
        enc = cp.encrypt_weight("P1", "a", 10)
        eng.enter_pool("P1", 0, enc.ciphertext, enc.proof, participant="a", payment=FEE)
        clock.advance(HOUR)
        eng.deliver_settlement(cp.fulfil(eng.settle("P1")))

        with pytest.raises(RuntimeError):
            eng.claim_prize("P1", participant="a")
        p = eng.get_pool("P1")
        assert p.prize_pool == FEE and p.winners_claimed == 0
        assert eng.get_entry("P1", "a").claimed is False
        assert eng.treasury_balance() == 0

        fail["on"] = False
        assert eng.claim_prize("P1", participant="a") == FEE
        assert paid == [("a", FEE)]

    def test_reentrant_claim_rejected(self, cp, clock):
        nested = []

        def transfer(account, amount):
            try:
                eng.claim_prize("P1", participant=account)
            except AlreadyClaimedError as e:
                nested.append(e)

        eng = LifecycleEngine(cp, owner=OWNER, clock=clock, transfer=transfer)
        eng.create_pool("P1", FEE, HOUR, creator=CREATOR)
        enc = cp.encrypt_weight("P1", "a", 10)
        eng.enter_pool("P1", 0, enc.ciphertext, enc.proof, participant="a", payment=FEE)
        clock.advance(HOUR)
        eng.deliver_settlement(cp.fulfil(eng.settle("P1")))

        assert eng.claim_prize("P1", participant="a") == FEE
        assert len(nested) == 1
        assert eng.get_pool("P1").prize_pool == 0


# ── Cancellation ─────────────────────────────────────────────────────────


class TestCancel:
    def test_creator_cancels_empty_pool(self, engine, make_pool, enter, clock):
        make_pool()
        engine.cancel("P1", caller=CREATOR)
        assert engine.pool_phase("P1") is PoolPhase.CANCELLED
        with pytest.raises(StateError):
            enter("P1", "alice", 0, 10)
        clock.advance(HOUR)
        with pytest.raises(StateError):
            engine.settle("P1")
        assert engine.events[-1] == ("PoolCancelled", {"pool_id": "P1"})

    def test_only_creator(self, engine, make_pool):
        make_pool()
        with pytest.raises(UnauthorizedError):
            engine.cancel("P1", caller="mallory")
        assert not engine.get_pool("P1").cancelled

    def test_not_with_entrants(self, engine, make_pool, enter):
        make_pool()
        enter("P1", "alice", 0, 10)
        with pytest.raises(StateError):
            engine.cancel("P1", caller=CREATOR)

    def test_not_after_lock(self, engine, make_pool, clock):
        make_pool()
        clock.advance(HOUR)
        with pytest.raises(StateError):
            engine.cancel("P1", caller=CREATOR)


# ── Treasury ─────────────────────────────────────────────────────────────


class TestTreasury:
    def test_withdraw(self, engine, populated, settle):
        pid = populated([("a", 0, 10)], fee_percentage=20)
        settle(pid)
        fee = FEE * 20 // 100
        with pytest.raises(UnauthorizedError):
            engine.withdraw_treasury(caller="mallory")
        with pytest.raises(ValidationError):
            engine.withdraw_treasury(caller=OWNER, amount=fee + 1)
        assert engine.withdraw_treasury(caller=OWNER, amount=1) == 1
        assert engine.withdraw_treasury(caller=OWNER) == fee - 1
        assert engine.treasury_balance() == 0
        assert engine.balances[OWNER] == fee

    def test_empty_treasury(self, engine):
        with pytest.raises(ValidationError):
            engine.withdraw_treasury(caller=OWNER)


# ── Module source ────────────────────────────────────────────────────────


class TestModuleSource:
    def test_compiles_without_escape_warnings(self):
        path = pathlib.Path(engine_module.__file__)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(path.read_text(encoding="utf-8"), str(path), "exec")
