# services/api/app.py
from __future__ import annotations

import os
import pathlib
import threading
from typing import List, Optional, Tuple

import base58
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from . import eventlog as ev
from .health_checks import comprehensive_health_check
from .logging_config import get_logger
from .schemas_api import (
    CancelReq,
    ClaimReq, ClaimRes,
    CreatePoolReq, CreatePoolRes,
    EncryptReq, EncryptRes,
    EnterPoolReq, EnterPoolRes,
    EntryView,
    EventsRes,
    MetricRow,
    Ok,
    OracleCallbackReq, OracleInfo,
    ParticipantEntriesRes, ParticipantEntry,
    PickCountsRes, PlayerCountRes,
    PoolListRes, PoolView,
    SettleRes,
    TreasuryRes, TreasuryWithdrawReq, TreasuryWithdrawRes,
)
from services.crypto_core.coprocessor import LocalCoprocessor
from services.crypto_core.keys import load_or_create_master
from services.pools import pool_store
from services.pools.engine import LifecycleEngine
from services.pools.errors import (
    AlreadyClaimedError,
    AlreadyExistsError,
    DecryptionCallbackError,
    DecryptionPendingError,
    InvalidProofError,
    NotFoundError,
    NotWinnerError,
    PoolError,
    StateError,
    UnauthorizedError,
    ValidationError,
)
from services.pools.models import Ciphertext, DecryptionResult, Pool

logger = get_logger("api.app")

# =========================
# Paths & config
# =========================

REPO_ROOT = str(pathlib.Path(__file__).resolve().parents[2])
DATA_DIR = os.getenv("DATA_DIR", os.path.join(REPO_ROOT, "data"))

EVENTS_DB = pathlib.Path(os.getenv("POOL_EVENTS_DB", os.path.join(DATA_DIR, "pool_events.db")))
POOL_STATE_PATH = pathlib.Path(os.getenv("POOL_STATE_PATH", os.path.join(DATA_DIR, "pool_state.json")))
PERSIST_STATE = os.getenv("POOL_STATE_PERSIST", "1") == "1"
COPROCESSOR_KEYFILE = os.getenv("COPROCESSOR_KEYFILE", os.path.join(DATA_DIR, "coprocessor_key.json"))
ENGINE_OWNER = os.getenv("ENGINE_OWNER", "treasury-owner")
LOCAL_RELAY = os.getenv("LOCAL_COPROCESSOR_RELAY", "1") == "1"

# Checked in order; subclasses before their bases.
_ERROR_STATUS: List[Tuple[type, int]] = [
    (NotFoundError, 404),
    (InvalidProofError, 400),
    (ValidationError, 400),
    (AlreadyExistsError, 409),
    (AlreadyClaimedError, 409),
    (DecryptionPendingError, 409),
    (StateError, 409),
    (DecryptionCallbackError, 401),
    (NotWinnerError, 403),
    (UnauthorizedError, 403),
]


def _unhex(s: str) -> bytes:
    return bytes.fromhex(s[2:] if s.startswith("0x") else s)


def _pool_view(eng: LifecycleEngine, p: Pool) -> PoolView:
    return PoolView(
        pool_id=p.pool_id,
        creator=p.creator,
        entry_fee=str(p.entry_fee),
        lock_time=p.lock_time,
        created_at=p.created_at,
        fee_percentage=p.fee_percentage,
        prize_pool=str(p.prize_pool),
        cancelled=p.cancelled,
        settled=p.settled,
        push_all=p.push_all,
        winning_choice=int(p.winning_choice) if p.winning_choice is not None else None,
        winning_label=p.winning_choice.label if p.winning_choice is not None else None,
        winner_count=p.winner_count,
        pick_counts=list(p.pick_counts),
        player_count=p.player_count,
        phase=p.phase(eng.now()).value,
        settlement_pending=eng.settlement_pending(p.pool_id),
    )


def build_engine(
    keyfile: str = COPROCESSOR_KEYFILE,
    state_path: Optional[pathlib.Path] = None,
    events_db: Optional[pathlib.Path] = None,
) -> Tuple[LifecycleEngine, LocalCoprocessor]:
    """Engine + local coprocessor, restored from the last snapshot when one exists."""
    cp = LocalCoprocessor(load_or_create_master(keyfile))
    sink = ev.sink(events_db or EVENTS_DB)
    st = pool_store.pool_state(state_path or POOL_STATE_PATH) if PERSIST_STATE else None
    if st:
        cp.load_state(st.get("coprocessor", {}))
        eng = LifecycleEngine.restore(st["engine"], cp, owner=ENGINE_OWNER, event_sink=sink)
        logger.info(f"restored {len(eng.list_pools())} pools from {state_path or POOL_STATE_PATH}")
    else:
        eng = LifecycleEngine(cp, owner=ENGINE_OWNER, event_sink=sink)
    return eng, cp


def create_app(
    engine: Optional[LifecycleEngine] = None,
    coprocessor: Optional[LocalCoprocessor] = None,
    *,
    events_db: Optional[pathlib.Path] = None,
    state_path: Optional[pathlib.Path] = None,
    persist: bool = PERSIST_STATE,
    local_relay: bool = LOCAL_RELAY,
) -> FastAPI:
    if engine is None:
        engine, coprocessor = build_engine(state_path=state_path, events_db=events_db)
    eng: LifecycleEngine = engine
    cp = coprocessor
    db_path = events_db or EVENTS_DB
    snapshot_path = state_path or POOL_STATE_PATH
    persist_lock = threading.Lock()

    app = FastAPI(title="Confidential Pools API", version="0.1.0")
    app.state.engine = eng
    app.state.coprocessor = cp

    def _persist() -> None:
        if not persist:
            return
        with persist_lock:
            st = {"engine": eng.export_state()}
            if cp is not None:
                st["coprocessor"] = cp.export_state()
            pool_store.pool_save(st, snapshot_path)

    @app.exception_handler(PoolError)
    async def _pool_error(request: Request, exc: PoolError):
        status = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 400)
        return JSONResponse(status_code=status, content={"detail": exc.message, "code": exc.code})

    # ---------- Pools ----------
    @app.get("/pools", response_model=PoolListRes)
    def list_pools():
        return PoolListRes(pool_ids=eng.list_pools())

    @app.post("/pools", response_model=CreatePoolRes)
    def create_pool(req: CreatePoolReq):
        pid = eng.create_pool(
            req.pool_id,
            req.entry_fee,
            req.duration_seconds,
            creator=req.creator,
            fee_percentage=req.fee_percentage,
        )
        _persist()
        return CreatePoolRes(pool_id=pid, lock_time=eng.get_pool(pid).lock_time)

    @app.get("/pools/{pool_id}", response_model=PoolView)
    def get_pool(pool_id: str):
        return _pool_view(eng, eng.get_pool(pool_id))

    @app.get("/pools/{pool_id}/pick-counts", response_model=PickCountsRes)
    def pick_counts(pool_id: str):
        return PickCountsRes(pool_id=pool_id, pick_counts=list(eng.get_pick_counts(pool_id)))

    @app.get("/pools/{pool_id}/player-count", response_model=PlayerCountRes)
    def player_count(pool_id: str):
        return PlayerCountRes(pool_id=pool_id, player_count=eng.get_player_count(pool_id))

    @app.get("/pools/{pool_id}/entries/{participant}", response_model=EntryView)
    def get_entry(pool_id: str, participant: str):
        return EntryView(**eng.get_entry(pool_id, participant).public())

    # ---------- Entry ----------
    @app.post("/pools/{pool_id}/enter", response_model=EnterPoolRes)
    def enter_pool(pool_id: str, req: EnterPoolReq):
        entry = eng.enter_pool(
            pool_id,
            req.choice,
            Ciphertext(_unhex(req.ciphertext)),
            _unhex(req.proof),
            participant=req.participant,
            payment=req.payment,
        )
        _persist()
        return EnterPoolRes(
            pool_id=pool_id,
            participant=req.participant,
            choice=int(entry.choice),
            player_count=eng.get_player_count(pool_id),
        )

    @app.get("/participants/{participant}/entries", response_model=ParticipantEntriesRes)
    def participant_entries(participant: str):
        items = [
            ParticipantEntry(pool_id=pid, **e.public())
            for pid, e in eng.entries_for_participant(participant)
        ]
        return ParticipantEntriesRes(participant=participant, items=items)

    # ---------- Settlement / cancel ----------
    @app.post("/pools/{pool_id}/settle", response_model=SettleRes)
    def settle(pool_id: str):
        rid = eng.settle(pool_id)
        _persist()
        return SettleRes(pool_id=pool_id, request_id=rid, resolved=rid is None)

    @app.post("/pools/{pool_id}/cancel", response_model=Ok)
    def cancel(pool_id: str, req: CancelReq):
        eng.cancel(pool_id, caller=req.caller)
        _persist()
        return Ok()

    @app.post("/oracle/callback", response_model=PoolView)
    def oracle_callback(req: OracleCallbackReq):
        result = DecryptionResult(
            request_id=req.request_id,
            plaintexts=tuple(req.plaintexts),
            signature=_unhex(req.signature),
        )
        pool = eng.deliver_settlement(result)
        _persist()
        return _pool_view(eng, pool)

    @app.get("/oracle", response_model=OracleInfo)
    def oracle_info():
        return OracleInfo(
            coprocessor_pub_b58=base58.b58encode(eng.coprocessor.verify_key_bytes).decode(),
            outstanding=eng.outstanding_requests(),
        )

    # ---------- Claims ----------
    @app.post("/pools/{pool_id}/claim-prize", response_model=ClaimRes)
    def claim_prize(pool_id: str, req: ClaimReq):
        amount = eng.claim_prize(pool_id, participant=req.participant)
        _persist()
        return ClaimRes(pool_id=pool_id, participant=req.participant, kind="prize", amount=str(amount))

    @app.post("/pools/{pool_id}/claim-refund", response_model=ClaimRes)
    def claim_refund(pool_id: str, req: ClaimReq):
        amount = eng.claim_refund(pool_id, participant=req.participant)
        _persist()
        return ClaimRes(pool_id=pool_id, participant=req.participant, kind="refund", amount=str(amount))

    @app.get("/accounts/{account}/balance")
    def account_balance(account: str):
        return {"account": account, "balance": str(eng.balance_of(account))}

    # ---------- Treasury ----------
    @app.get("/treasury", response_model=TreasuryRes)
    def treasury():
        return TreasuryRes(owner=eng.owner, balance=str(eng.treasury_balance()))

    @app.post("/treasury/withdraw", response_model=TreasuryWithdrawRes)
    def treasury_withdraw(req: TreasuryWithdrawReq):
        amount = eng.withdraw_treasury(caller=req.caller, amount=req.amount)
        _persist()
        return TreasuryWithdrawRes(amount=str(amount), remaining=str(eng.treasury_balance()))

    # ---------- Local coprocessor relay (dev / localnet only) ----------
    if local_relay and cp is not None:
        @app.post("/dev/encrypt", response_model=EncryptRes)
        def dev_encrypt(req: EncryptReq):
            try:
                enc = cp.encrypt_weight(req.pool_id, req.participant, req.weight)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return EncryptRes(ciphertext="0x" + enc.ciphertext.hex(), proof="0x" + enc.proof.hex())

        @app.post("/oracle/relay/{request_id}", response_model=PoolView)
        def oracle_relay(request_id: str):
            try:
                result = cp.answer(request_id)
            except KeyError:
                raise HTTPException(status_code=404, detail="No queued decryption request")
            pool = eng.deliver_settlement(result)
            cp.drop(request_id)
            _persist()
            return _pool_view(eng, pool)

    # ---------- Events & metrics ----------
    @app.get("/events", response_model=EventsRes)
    def events(pool_id: Optional[str] = Query(None), limit: int = Query(100, ge=1, le=1000)):
        return EventsRes(items=ev.recent_events(limit=limit, pool_id=pool_id, db_path=db_path))

    @app.get("/metrics", response_model=List[MetricRow])
    def metrics():
        rows = ev.metrics_all(db_path=db_path)
        return [MetricRow(epoch=r[0], entries_count=r[1], claims_count=r[2], updated_at=r[3]) for r in rows]

    @app.post("/admin/replay")
    def admin_replay():
        return {"replayed": ev.replay(db_path=db_path)}

    @app.get("/health")
    async def health():
        return await comprehensive_health_check(db_path, eng.outstanding_requests())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
