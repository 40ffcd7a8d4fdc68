from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, conint, field_validator


def _is_hex(v: str) -> str:
    s = v[2:] if v.startswith("0x") else v
    if not s or len(s) % 2:
        raise ValueError("expected an even-length hex string")
    bytes.fromhex(s)
    return v


class _AmountsAsStr(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


class Ok(_AmountsAsStr):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


# =========================
# Pools
# =========================

class CreatePoolReq(_AmountsAsStr):
    pool_id: str = Field(..., description="Caller-chosen unique id, e.g. QUICK-STRIKE-24H")
    creator: str = Field(..., description="Account creating the pool")
    entry_fee: conint(ge=0) = Field(..., description="Entry fee in wei")
    duration_seconds: conint(ge=0) = Field(..., description="Seconds until the pool locks")
    fee_percentage: conint(ge=0) = Field(0, description="Protocol fee taken on a winner settlement (0-20)")


class CreatePoolRes(Ok):
    pool_id: str
    lock_time: int


class PoolView(_AmountsAsStr):
    pool_id: str
    creator: str
    entry_fee: str
    lock_time: int
    created_at: int
    fee_percentage: int
    prize_pool: str
    cancelled: bool
    settled: bool
    push_all: bool
    winning_choice: Optional[int] = None
    winning_label: Optional[str] = None
    winner_count: int
    pick_counts: List[int]
    player_count: int
    phase: str
    settlement_pending: bool


class PoolListRes(_AmountsAsStr):
    pool_ids: List[str]


class PickCountsRes(_AmountsAsStr):
    pool_id: str
    pick_counts: List[int]


class PlayerCountRes(_AmountsAsStr):
    pool_id: str
    player_count: int


# =========================
# Entries
# =========================

class EnterPoolReq(_AmountsAsStr):
    participant: str = Field(..., description="Entrant account")
    choice: Union[int, str] = Field(..., description="0/1/2 or Nova/Pulse/Flux")
    ciphertext: str = Field(..., description="Encrypted weight handle (hex)")
    proof: str = Field(..., description="Input proof bound to (pool, participant) (hex)")
    payment: conint(ge=0) = Field(..., description="Value sent with the entry, in wei")

    @field_validator("ciphertext", "proof")
    @classmethod
    def _hex(cls, v: str) -> str:
        return _is_hex(v)


class EntryView(_AmountsAsStr):
    exists: bool
    claimed: bool
    choice: int


class EnterPoolRes(Ok):
    pool_id: str
    participant: str
    choice: int
    player_count: int


class ParticipantEntry(EntryView):
    pool_id: str


class ParticipantEntriesRes(_AmountsAsStr):
    participant: str
    items: List[ParticipantEntry]


# =========================
# Settlement / cancel / claims
# =========================

class SettleRes(Ok):
    pool_id: str
    request_id: Optional[str] = Field(None, description="Outstanding decryption request, if one was issued")
    resolved: bool = Field(..., description="True when the pool settled immediately (no entrants)")


class CancelReq(_AmountsAsStr):
    caller: str


class ClaimReq(_AmountsAsStr):
    participant: str


class ClaimRes(Ok):
    pool_id: str
    participant: str
    kind: Literal["prize", "refund"]
    amount: str


class OracleCallbackReq(_AmountsAsStr):
    request_id: str
    plaintexts: List[conint(ge=0)]
    signature: str = Field(..., description="Coprocessor Ed25519 signature (hex)")

    @field_validator("signature")
    @classmethod
    def _hex(cls, v: str) -> str:
        return _is_hex(v)


class OracleInfo(_AmountsAsStr):
    coprocessor_pub_b58: str
    outstanding: List[Dict[str, Any]]


# =========================
# Treasury
# =========================

class TreasuryRes(_AmountsAsStr):
    owner: str
    balance: str


class TreasuryWithdrawReq(_AmountsAsStr):
    caller: str
    amount: Optional[conint(gt=0)] = None


class TreasuryWithdrawRes(Ok):
    amount: str
    remaining: str


# =========================
# Local coprocessor relay
# =========================

class EncryptReq(_AmountsAsStr):
    pool_id: str
    participant: str
    weight: conint(ge=0)


class EncryptRes(_AmountsAsStr):
    ciphertext: str
    proof: str


# =========================
# Events & metrics
# =========================

class MetricRow(_AmountsAsStr):
    epoch: conint(ge=0) = Field(..., description="Minute-bucket epoch.")
    entries_count: conint(ge=0)
    claims_count: conint(ge=0)
    updated_at: str = Field(..., description="ISO-8601 timestamp (UTC).")


class EventsRes(_AmountsAsStr):
    items: List[Dict[str, Any]]
