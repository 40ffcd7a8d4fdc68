r"""
Lifecycle engine for confidential three-way prediction pools.

    Open --(now >= lock_time)--> Locked --settle--> SettledWinner | SettledPush
      \--cancel (creator, no entries)--> Cancelled

"Locked" is never stored; it is `now >= lock_time and not settled and not
cancelled`. Settlement with entrants is asynchronous: `settle` issues one
decryption request for the three aggregate sums, `deliver_settlement`
finalises the pool when the signed answer comes back.

Operations on one pool run one at a time (per-pool re-entrant lock); pools
are independent of each other. Every operation validates completely before
it mutates anything. Payouts mark the entry claimed first and only then call
the transfer hook; if the transfer raises, the mutation is rolled back.

Lock order is pool locks (sorted by id), then registry, then treasury, then
ledger. `export_state` takes all of them so a snapshot never sees an entry
that is only half applied.
"""
from __future__ import annotations

import contextlib
import functools
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from services.api.logging_config import get_logger
from services.crypto_core.coprocessor import Coprocessor
from services.pools.ciphertext_store import CiphertextStore
from services.pools.constants import (
    MAX_DURATION,
    MAX_FEE_PERCENTAGE,
    MIN_DURATION,
    MIN_ENTRY_FEE,
    POOL_ID_MAX_LEN,
)
from services.pools.distribution import compute_share, pick_winner, split_fee
from services.pools.errors import (
    AlreadyClaimedError,
    AlreadyExistsError,
    DecryptionPendingError,
    NotFoundError,
    NotWinnerError,
    PaymentMismatchError,
    PoolError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from services.pools.models import (
    Choice,
    Ciphertext,
    DecryptionResult,
    Entry,
    Pool,
    PoolPhase,
)
from services.pools.oracle import SettlementOracle
from services.pools.proof_verifier import ProofVerifier
from services.pools.registry import PoolRegistry

logger = get_logger("pools.engine")

STATE_VERSION = 1

_POOL_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]*$")
_ACCOUNT_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")

Transfer = Callable[[str, int], None]
EventSink = Callable[[str, Dict[str, Any]], None]


def _uint(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value


def _account(value: Any, name: str) -> str:
    if not isinstance(value, str) or not _ACCOUNT_RE.match(value):
        raise ValidationError(f"{name} must be an account identifier")
    return value


def _rejections_logged(fn):
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except PoolError as e:
            pool_id = args[0] if args and isinstance(args[0], str) else None
            logger.warning(
                "%s rejected: %s", fn.__name__, e.message,
                extra={"pool_id": pool_id, "code": e.code},
            )
            raise
    return wrapper


class LifecycleEngine:
    def __init__(
        self,
        coprocessor: Coprocessor,
        *,
        owner: str = "treasury-owner",
        clock: Optional[Callable[[], int]] = None,
        transfer: Optional[Transfer] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self.coprocessor = coprocessor
        self.owner = owner
        self.registry = PoolRegistry()
        self.ciphertexts = CiphertextStore(coprocessor)
        self.verifier = ProofVerifier(coprocessor.verify_key_bytes)
        self.oracle = SettlementOracle(coprocessor)

        self._clock = clock or (lambda: int(time.time()))
        self._transfer = transfer
        self._sinks: List[EventSink] = [event_sink] if event_sink else []

        # Ledger used when no transfer hook is wired in.
        self.balances: Dict[str, int] = {}
        self.treasury = 0
        self.events: List[Tuple[str, Dict[str, Any]]] = []

        self._registry_lock = threading.RLock()
        self._treasury_lock = threading.RLock()
        self._ledger_lock = threading.RLock()
        self._pool_locks: Dict[str, threading.RLock] = {}

    # =========================
    # Plumbing
    # =========================

    def now(self) -> int:
        return int(self._clock())

    def add_event_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def _lock(self, pool_id: str) -> threading.RLock:
        with self._registry_lock:
            if pool_id not in self._pool_locks:
                self.registry.get(pool_id)
                self._pool_locks[pool_id] = threading.RLock()
            return self._pool_locks[pool_id]

    def _emit(self, kind: str, **payload: Any) -> None:
        self.events.append((kind, payload))
        for sink in self._sinks:
            try:
                sink(kind, payload)
            except Exception:
                logger.exception("event sink failed for %s", kind, extra={"event": kind})

    def _pay(self, account: str, amount: int) -> None:
        if self._transfer is not None:
            self._transfer(account, amount)
        else:
            with self._ledger_lock:
                self.balances[account] = self.balances.get(account, 0) + amount

    def _credit_treasury(self, amount: int) -> None:
        with self._treasury_lock:
            self.treasury += amount

    # =========================
    # Creation / entry
    # =========================

    @_rejections_logged
    def create_pool(
        self,
        pool_id: str,
        entry_fee: int,
        duration: int,
        *,
        creator: str,
        fee_percentage: int = 0,
    ) -> str:
        if not isinstance(pool_id, str) or not (1 <= len(pool_id) <= POOL_ID_MAX_LEN) or not _POOL_ID_RE.match(pool_id):
            raise ValidationError(f"pool id must be 1-{POOL_ID_MAX_LEN} chars of [A-Za-z0-9_.:-]")
        creator = _account(creator, "creator")
        entry_fee = _uint(entry_fee, "entry_fee")
        duration = _uint(duration, "duration")
        fee_percentage = _uint(fee_percentage, "fee_percentage")
        if entry_fee < MIN_ENTRY_FEE:
            raise ValidationError(f"entry fee must be at least {MIN_ENTRY_FEE}")
        if not MIN_DURATION <= duration <= MAX_DURATION:
            raise ValidationError(f"duration must be between {MIN_DURATION} and {MAX_DURATION} seconds")
        if fee_percentage > MAX_FEE_PERCENTAGE:
            raise ValidationError(f"fee percentage must be between 0 and {MAX_FEE_PERCENTAGE}")

        with self._registry_lock:
            if self.registry.exists(pool_id):
                raise AlreadyExistsError(f"pool {pool_id!r} already exists", pool_id=pool_id)
            now = self.now()
            pool = Pool(
                pool_id=pool_id,
                creator=creator,
                entry_fee=entry_fee,
                lock_time=now + duration,
                created_at=now,
                fee_percentage=fee_percentage,
            )
            self.ciphertexts.open_pool(pool_id)
            self.registry.add(pool)
            self._pool_locks[pool_id] = threading.RLock()

        logger.info("pool created (fee=%d, lock_time=%d)", entry_fee, pool.lock_time, extra={"pool_id": pool_id})
        self._emit("PoolCreated", pool_id=pool_id, creator=creator, entry_fee=entry_fee)
        return pool_id

    @_rejections_logged
    def enter_pool(
        self,
        pool_id: str,
        choice: Any,
        ciphertext: Ciphertext,
        proof: bytes,
        *,
        participant: str,
        payment: int,
    ) -> Entry:
        participant = _account(participant, "participant")
        with self._lock(pool_id):
            pool = self.registry.get(pool_id)
            if pool.cancelled:
                raise StateError(f"pool {pool_id!r} is cancelled", pool_id=pool_id)
            if pool.settled or self.now() >= pool.lock_time:
                raise StateError(f"pool {pool_id!r} is locked", pool_id=pool_id)
            if self.registry.entry(pool_id, participant) is not None:
                raise AlreadyExistsError(f"{participant} already entered pool {pool_id!r}", pool_id=pool_id)
            try:
                pick = Choice.parse(choice)
            except ValueError:
                raise ValidationError(f"choice must be 0, 1 or 2, got {choice!r}", pool_id=pool_id)
            if isinstance(payment, bool) or not isinstance(payment, int) or payment != pool.entry_fee:
                raise PaymentMismatchError(
                    f"payment {payment!r} does not match entry fee {pool.entry_fee}", pool_id=pool_id
                )
            self.verifier.verify(pool_id, participant, ciphertext, proof)

            try:
                new_sum = self.ciphertexts.sum_with(pool_id, pick, ciphertext)
            except ValueError as e:
                raise ValidationError(f"coprocessor rejected ciphertext: {e}", pool_id=pool_id)
            try:
                self.coprocessor.allow(ciphertext, participant)
            except ValueError as e:
                self.coprocessor.discard(new_sum)
                raise ValidationError(f"coprocessor rejected ciphertext: {e}", pool_id=pool_id)

            ref = self.ciphertexts.commit(pool_id, pick, new_sum, participant, ciphertext)
            entry = Entry(choice=pick, weight_ref=ref)
            self.registry.add_entry(pool_id, participant, entry)
            pool.pick_counts[int(pick)] += 1
            pool.player_count += 1
            pool.prize_pool += pool.entry_fee

        logger.info("entry placed (players=%d)", pool.player_count, extra={"pool_id": pool_id})
        self._emit("EntryPlaced", pool_id=pool_id, participant=participant, choice=int(pick))
        return Entry(choice=pick)

    # =========================
    # Settlement
    # =========================

    @_rejections_logged
    def settle(self, pool_id: str) -> Optional[str]:
        """
        Close a locked pool. Returns the decryption request id, or None when the
        pool had no entrants and was resolved as a push on the spot.
        """
        with self._lock(pool_id):
            pool = self.registry.get(pool_id)
            if pool.cancelled:
                raise StateError(f"pool {pool_id!r} is cancelled", pool_id=pool_id)
            if pool.settled:
                raise StateError(f"pool {pool_id!r} is already settled", pool_id=pool_id)
            now = self.now()
            if now < pool.lock_time:
                raise StateError(f"pool {pool_id!r} is still open", pool_id=pool_id)
            if self.oracle.is_pending(pool_id):
                raise DecryptionPendingError(f"settlement of {pool_id!r} already in flight", pool_id=pool_id)

            if pool.player_count == 0:
                pool.push_all = True
                pool.settled = True
                request_id = None
            else:
                request_id = self.oracle.request(pool_id, self.ciphertexts.aggregates(pool_id), now)

        if request_id is None:
            logger.info("no entrants, settled as push", extra={"pool_id": pool_id})
            self._emit("PoolSettled", pool_id=pool_id, winning_choice=None, push=True)
        else:
            self._emit("SettlementRequested", pool_id=pool_id, request_id=request_id)
        return request_id

    @_rejections_logged
    def deliver_settlement(self, result: DecryptionResult) -> Pool:
        pool_id = self.oracle.pool_for(result.request_id)
        if pool_id is None:
            # Authenticate anyway so the error carries the precise reason.
            self.oracle.authenticate(result)
        with self._lock(pool_id):
            pending = self.oracle.authenticate(result)
            pool = self.registry.get(pending.pool_id)
            sums = [int(x) for x in result.plaintexts]

            leaders = pick_winner(sums)
            strict = len(leaders) == 1 and sums[leaders[0]] > 0 and pool.pick_counts[leaders[0]] > 0
            fee = 0
            if strict:
                win = Choice(leaders[0])
                distributable, fee = split_fee(pool.prize_pool, pool.fee_percentage)
                pool.prize_pool = distributable
                pool.distributable_prize = distributable
                pool.winning_choice = win
                pool.winner_count = pool.pick_counts[int(win)]
                pool.winning_weight_total = sums[int(win)]
            else:
                pool.push_all = True
            pool.settled = True
            self.oracle.complete(result.request_id)
            if fee:
                self._credit_treasury(fee)
            snapshot = self.registry.snapshot(pool_id)

        logger.info(
            "settled: sums=%s winner=%s", sums,
            snapshot.winning_choice.label if snapshot.winning_choice is not None else "push",
            extra={"pool_id": pool_id, "request_id": result.request_id},
        )
        self._emit(
            "PoolSettled",
            pool_id=pool_id,
            winning_choice=int(snapshot.winning_choice) if snapshot.winning_choice is not None else None,
            push=snapshot.push_all,
        )
        return snapshot

    # =========================
    # Cancellation
    # =========================

    @_rejections_logged
    def cancel(self, pool_id: str, *, caller: str) -> None:
        with self._lock(pool_id):
            pool = self.registry.get(pool_id)
            if caller != pool.creator:
                raise UnauthorizedError("only the creator can cancel a pool", pool_id=pool_id)
            if pool.phase(self.now()) is not PoolPhase.OPEN:
                raise StateError(f"pool {pool_id!r} is no longer open", pool_id=pool_id)
            if pool.player_count:
                raise StateError(f"pool {pool_id!r} already has entrants", pool_id=pool_id)
            pool.cancelled = True
        logger.info("pool cancelled", extra={"pool_id": pool_id})
        self._emit("PoolCancelled", pool_id=pool_id)

    # =========================
    # Claims
    # =========================

    @_rejections_logged
    def claim_prize(self, pool_id: str, *, participant: str) -> int:
        with self._lock(pool_id):
            pool = self.registry.get(pool_id)
            if not pool.settled or pool.cancelled:
                raise StateError(f"pool {pool_id!r} is not settled", pool_id=pool_id)
            if pool.push_all:
                raise StateError(f"pool {pool_id!r} settled as push; claim a refund", pool_id=pool_id)
            entry = self.registry.entry(pool_id, participant)
            if entry is None:
                raise NotFoundError(f"no entry for {participant} in pool {pool_id!r}", pool_id=pool_id)
            if entry.claimed:
                raise AlreadyClaimedError(f"{participant} already claimed from {pool_id!r}", pool_id=pool_id)
            if entry.choice != pool.winning_choice:
                raise NotWinnerError(f"{participant} did not pick the winning choice", pool_id=pool_id)

            weight = self.oracle.reveal_weight(self.ciphertexts.weight(entry.weight_ref), participant)
            share = compute_share(pool.distributable_prize, weight, pool.winning_weight_total)

            entry.claimed = True
            pool.prize_pool -= share
            pool.winners_claimed += 1
            remainder = 0
            if pool.winners_claimed == pool.winner_count:
                remainder = pool.prize_pool
                pool.prize_pool = 0
                self._credit_treasury(remainder)
            try:
                self._pay(participant, share)
            except Exception:
                entry.claimed = False
                pool.winners_claimed -= 1
                pool.prize_pool += share + remainder
                self._credit_treasury(-remainder)
                raise
            self.ciphertexts.release(entry.weight_ref)
            entry.weight_ref = None

        logger.info("prize claimed", extra={"pool_id": pool_id, "amount": share})
        if remainder:
            logger.info("rounding remainder %d moved to treasury", remainder, extra={"pool_id": pool_id})
        self._emit("PrizeClaimed", pool_id=pool_id, participant=participant, amount=share)
        return share

    @_rejections_logged
    def claim_refund(self, pool_id: str, *, participant: str) -> int:
        with self._lock(pool_id):
            pool = self.registry.get(pool_id)
            if not (pool.cancelled or (pool.settled and pool.push_all)):
                raise StateError(f"pool {pool_id!r} is not refundable", pool_id=pool_id)
            entry = self.registry.entry(pool_id, participant)
            if entry is None:
                raise NotFoundError(f"no entry for {participant} in pool {pool_id!r}", pool_id=pool_id)
            if entry.claimed:
                raise AlreadyClaimedError(f"{participant} already refunded from {pool_id!r}", pool_id=pool_id)

            amount = pool.entry_fee
            entry.claimed = True
            pool.prize_pool -= amount
            try:
                self._pay(participant, amount)
            except Exception:
                entry.claimed = False
                pool.prize_pool += amount
                raise
            if entry.weight_ref:
                self.ciphertexts.release(entry.weight_ref)
                entry.weight_ref = None

        logger.info("refund claimed", extra={"pool_id": pool_id, "amount": amount})
        self._emit("RefundClaimed", pool_id=pool_id, participant=participant, amount=amount)
        return amount

    # =========================
    # Treasury
    # =========================

    def treasury_balance(self) -> int:
        with self._treasury_lock:
            return self.treasury

    @_rejections_logged
    def withdraw_treasury(self, *, caller: str, amount: Optional[int] = None) -> int:
        with self._treasury_lock:
            if caller != self.owner:
                raise UnauthorizedError("only the owner can withdraw the treasury")
            amount = self.treasury if amount is None else _uint(amount, "amount")
            if amount <= 0 or amount > self.treasury:
                raise ValidationError(f"amount must be in [1, {self.treasury}]")
            self.treasury -= amount
            try:
                self._pay(caller, amount)
            except Exception:
                self.treasury += amount
                raise
        logger.info("treasury withdrawal", extra={"amount": amount})
        self._emit("TreasuryWithdrawn", owner=caller, amount=amount)
        return amount

    # =========================
    # Views
    # =========================

    def list_pools(self) -> List[str]:
        with self._registry_lock:
            return self.registry.pool_ids()

    def get_pool(self, pool_id: str) -> Pool:
        with self._lock(pool_id):
            return self.registry.snapshot(pool_id)

    def get_pick_counts(self, pool_id: str) -> Tuple[int, int, int]:
        with self._lock(pool_id):
            a, b, c = self.registry.get(pool_id).pick_counts
            return a, b, c

    def get_player_count(self, pool_id: str) -> int:
        with self._lock(pool_id):
            return self.registry.get(pool_id).player_count

    def get_entry(self, pool_id: str, participant: str) -> Entry:
        """An absent entry reads as `exists=False` rather than raising."""
        with self._lock(pool_id):
            e = self.registry.entry(pool_id, participant)
            if e is None:
                return Entry(choice=Choice.NOVA, exists=False)
            return Entry(choice=e.choice, exists=e.exists, claimed=e.claimed)

    def entries_for_participant(self, participant: str) -> List[Tuple[str, Entry]]:
        with self._registry_lock:
            return [
                (pid, Entry(choice=e.choice, exists=e.exists, claimed=e.claimed))
                for pid, e in self.registry.entries_for_participant(participant)
            ]

    def pool_phase(self, pool_id: str) -> PoolPhase:
        with self._lock(pool_id):
            return self.registry.get(pool_id).phase(self.now())

    def settlement_pending(self, pool_id: str) -> bool:
        with self._lock(pool_id):
            self.registry.get(pool_id)
            return self.oracle.is_pending(pool_id)

    def is_fully_claimed(self, pool_id: str) -> bool:
        with self._lock(pool_id):
            return self.registry.is_fully_claimed(pool_id)

    def outstanding_requests(self) -> List[dict]:
        return self.oracle.outstanding(self.now())

    def balance_of(self, account: str) -> int:
        """Ledger balance; always 0 when a transfer hook is wired in."""
        with self._ledger_lock:
            return self.balances.get(account, 0)

    # =========================
    # Snapshot / restore
    # =========================

    @contextlib.contextmanager
    def _quiesced(self):
        """Hold every lock in the engine, pools first in sorted id order."""
        while True:
            with self._registry_lock:
                pool_ids = sorted(self._pool_locks)
            with contextlib.ExitStack() as stack:
                for pid in pool_ids:
                    stack.enter_context(self._pool_locks[pid])
                stack.enter_context(self._registry_lock)
                # a pool created meanwhile may already have a mutation in flight
                if sorted(self._pool_locks) != pool_ids:
                    continue
                stack.enter_context(self._treasury_lock)
                stack.enter_context(self._ledger_lock)
                yield
                return

    def export_state(self) -> dict:
        with self._quiesced():
            return {
                "version": STATE_VERSION,
                "owner": self.owner,
                "treasury": self.treasury,
                "balances": dict(self.balances),
                "registry": self.registry.export_state(),
                "ciphertexts": self.ciphertexts.export_state(),
                "oracle": self.oracle.export_state(),
            }

    @classmethod
    def restore(cls, state: dict, coprocessor: Coprocessor, **kwargs: Any) -> "LifecycleEngine":
        if state.get("version") != STATE_VERSION:
            raise ValueError(f"unsupported engine state version {state.get('version')!r}")
        kwargs.setdefault("owner", state.get("owner", "treasury-owner"))
        eng = cls(coprocessor, **kwargs)
        eng.treasury = int(state.get("treasury", 0))
        eng.balances = {k: int(v) for k, v in state.get("balances", {}).items()}
        eng.registry.load_state(state.get("registry", {}))
        eng.ciphertexts.load_state(state.get("ciphertexts", {}))
        eng.oracle.load_state(state.get("oracle", {}))
        eng._pool_locks = {pid: threading.RLock() for pid in eng.registry.pool_ids()}
        return eng
