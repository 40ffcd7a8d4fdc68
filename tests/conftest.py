"""Shared fixtures for the pool engine test suite."""

from __future__ import annotations

import os
import tempfile

# Module-level config in services.* reads these on import.
_TMP = tempfile.mkdtemp(prefix="pools-tests-")
os.environ["DATA_DIR"] = _TMP
os.environ["POOL_EVENTS_DB"] = os.path.join(_TMP, "pool_events.db")
os.environ["POOL_STATE_PATH"] = os.path.join(_TMP, "pool_state.json")
os.environ["COPROCESSOR_KEYFILE"] = os.path.join(_TMP, "coprocessor_key.json")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from typing import Callable, List, Optional, Tuple  # noqa: E402

import pytest  # noqa: E402

from services.crypto_core.coprocessor import LocalCoprocessor  # noqa: E402
from services.crypto_core.keys import new_master  # noqa: E402
from services.pools.constants import MIN_ENTRY_FEE  # noqa: E402
from services.pools.engine import LifecycleEngine  # noqa: E402
from services.pools.models import Pool  # noqa: E402

T0 = 1_700_000_000
HOUR = 3600
FEE = MIN_ENTRY_FEE
OWNER = "treasury-owner"
CREATOR = "pool-admin"


class FakeClock:
    def __init__(self, t: int = T0):
        self.t = t

    def __call__(self) -> int:
        return self.t

    def advance(self, seconds: int) -> None:
        self.t += seconds


# ── Core fixtures ────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def master() -> bytes:
    return new_master()


@pytest.fixture
def cp(master: bytes) -> LocalCoprocessor:
    return LocalCoprocessor(master)


@pytest.fixture
def engine(cp: LocalCoprocessor, clock: FakeClock) -> LifecycleEngine:
    return LifecycleEngine(cp, owner=OWNER, clock=clock)


# ── Helpers ──────────────────────────────────────────────────────────────────


@pytest.fixture
def make_pool(engine: LifecycleEngine) -> Callable[..., str]:
    """Create a pool locking one hour from now."""

    def _make(pool_id: str = "P1", entry_fee: int = FEE, duration: int = HOUR, fee_percentage: int = 0) -> str:
        return engine.create_pool(pool_id, entry_fee, duration, creator=CREATOR, fee_percentage=fee_percentage)

    return _make


@pytest.fixture
def enter(engine: LifecycleEngine, cp: LocalCoprocessor):
    """Encrypt `weight` for (pool, participant) and enter with the exact fee."""

    def _enter(pool_id: str, participant: str, choice, weight: int, payment: Optional[int] = None):
        enc = cp.encrypt_weight(pool_id, participant, weight)
        pay = engine.get_pool(pool_id).entry_fee if payment is None else payment
        return engine.enter_pool(
            pool_id, choice, enc.ciphertext, enc.proof, participant=participant, payment=pay
        )

    return _enter


@pytest.fixture
def settle(engine: LifecycleEngine, cp: LocalCoprocessor, clock: FakeClock):
    """Lock the pool, request settlement and relay the coprocessor's answer."""

    def _settle(pool_id: str) -> Pool:
        pool = engine.get_pool(pool_id)
        if clock() < pool.lock_time:
            clock.advance(pool.lock_time - clock())
        rid = engine.settle(pool_id)
        if rid is None:
            return engine.get_pool(pool_id)
        return engine.deliver_settlement(cp.fulfil(rid))

    return _settle


@pytest.fixture
def populated(make_pool, enter) -> Callable[[List[Tuple[str, int, int]]], str]:
    """Pool with (participant, choice, weight) entries."""

    def _populate(entries: List[Tuple[str, int, int]], pool_id: str = "P1", **kwargs) -> str:
        make_pool(pool_id, **kwargs)
        for who, choice, weight in entries:
            enter(pool_id, who, choice, weight)
        return pool_id

    return _populate
