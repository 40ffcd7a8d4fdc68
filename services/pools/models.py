# services/pools/models.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple

from services.pools.constants import CHOICE_COUNT


class Choice(IntEnum):
    NOVA = 0
    PULSE = 1
    FLUX = 2

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, raw: Any) -> "Choice":
        """Accept 0/1/2 or a case-insensitive label ("Nova", "pulse", ...)."""
        if isinstance(raw, Choice):
            return raw
        if isinstance(raw, bool):
            raise ValueError(f"invalid choice: {raw!r}")
        if isinstance(raw, int):
            return cls(raw)
        if isinstance(raw, str):
            s = raw.strip()
            if s.isdigit():
                return cls(int(s))
            try:
                return cls[s.upper()]
            except KeyError:
                pass
        raise ValueError(f"invalid choice: {raw!r}")


class PoolPhase(str, Enum):
    OPEN = "open"
    LOCKED = "locked"
    SETTLED_WINNER = "settled_winner"
    SETTLED_PUSH = "settled_push"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Ciphertext:
    """Opaque coprocessor handle. The engine moves it around, never reads it."""

    handle: bytes

    def hex(self) -> str:
        return self.handle.hex()

    @classmethod
    def from_hex(cls, s: str) -> "Ciphertext":
        s = s[2:] if s.startswith("0x") else s
        return cls(bytes.fromhex(s))

    def __repr__(self) -> str:
        return f"Ciphertext({self.handle[:4].hex()}…)"


@dataclass(frozen=True)
class EncryptedInput:
    ciphertext: Ciphertext
    proof: bytes


@dataclass(frozen=True)
class DecryptionResult:
    """Authenticated answer to a decryption request."""

    request_id: str
    plaintexts: Tuple[int, ...]
    signature: bytes


@dataclass
class Pool:
    pool_id: str
    creator: str
    entry_fee: int
    lock_time: int
    created_at: int
    fee_percentage: int = 0
    prize_pool: int = 0
    cancelled: bool = False
    settled: bool = False
    push_all: bool = False
    winning_choice: Optional[Choice] = None
    winner_count: int = 0
    pick_counts: List[int] = field(default_factory=lambda: [0] * CHOICE_COUNT)
    player_count: int = 0
    # Fixed at settlement; shares are computed against these, not the live prize_pool.
    distributable_prize: int = 0
    winning_weight_total: int = 0
    winners_claimed: int = 0

    def phase(self, now: int) -> PoolPhase:
        if self.cancelled:
            return PoolPhase.CANCELLED
        if self.settled:
            return PoolPhase.SETTLED_PUSH if self.push_all else PoolPhase.SETTLED_WINNER
        if now < self.lock_time:
            return PoolPhase.OPEN
        return PoolPhase.LOCKED

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["winning_choice"] = int(self.winning_choice) if self.winning_choice is not None else None
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Pool":
        d = dict(d)
        wc = d.get("winning_choice")
        d["winning_choice"] = Choice(wc) if wc is not None else None
        d["pick_counts"] = [int(x) for x in d.get("pick_counts", [0] * CHOICE_COUNT)]
        return cls(**d)


@dataclass
class Entry:
    choice: Choice
    exists: bool = True
    claimed: bool = False
    # Slot key in the ciphertext store; dropped once the weight has been revealed.
    weight_ref: Optional[str] = None

    def public(self) -> Dict[str, Any]:
        return {"exists": self.exists, "claimed": self.claimed, "choice": int(self.choice)}

    def to_dict(self) -> Dict[str, Any]:
        return {**self.public(), "weight_ref": self.weight_ref}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Entry":
        return cls(
            choice=Choice(int(d["choice"])),
            exists=bool(d.get("exists", True)),
            claimed=bool(d.get("claimed", False)),
            weight_ref=d.get("weight_ref"),
        )


@dataclass(frozen=True)
class PendingDecryption:
    request_id: str
    pool_id: str
    handles: Tuple[Ciphertext, ...]
    requested_at: int


__all__ = [
    "Choice",
    "PoolPhase",
    "Ciphertext",
    "EncryptedInput",
    "DecryptionResult",
    "Pool",
    "Entry",
    "PendingDecryption",
]
