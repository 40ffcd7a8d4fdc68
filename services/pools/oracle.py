"""
Settlement oracle adapter.

Settlement is a two-phase exchange with the coprocessor:

    request(pool_id, handles)  -> request_id      (engine.settle)
    authenticate(result)       -> PendingDecryption (engine.deliver_settlement)
    complete(request_id)

At most one request per pool is outstanding. A result is accepted only if its
request id is outstanding and the coprocessor's signature covers exactly
(request_id, plaintexts); once completed, the id is forgotten, so a replayed
or duplicated callback no longer matches anything.

There is no timeout. A request the coprocessor never answers stays in
`outstanding()` forever; health checks report it, nothing here retries it.
"""
from __future__ import annotations

import uuid
from typing import Dict, List, Optional, Sequence

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from services.api.logging_config import get_logger
from services.crypto_core.coprocessor import Coprocessor, callback_message
from services.pools.errors import DecryptionCallbackError, DecryptionPendingError, UnauthorizedError
from services.pools.models import Ciphertext, DecryptionResult, PendingDecryption

logger = get_logger("pools.oracle")


class SettlementOracle:
    def __init__(self, coprocessor: Coprocessor):
        self._cp = coprocessor
        self._vk = VerifyKey(coprocessor.verify_key_bytes)
        self._pending: Dict[str, PendingDecryption] = {}
        self._by_pool: Dict[str, str] = {}

    def is_pending(self, pool_id: str) -> bool:
        return pool_id in self._by_pool

    def pool_for(self, request_id: str) -> Optional[str]:
        p = self._pending.get(request_id)
        return p.pool_id if p else None

    def request(self, pool_id: str, handles: Sequence[Ciphertext], now: int) -> str:
        if pool_id in self._by_pool:
            raise DecryptionPendingError(
                f"decryption already requested for pool {pool_id!r}",
                pool_id=pool_id,
                request_id=self._by_pool[pool_id],
            )
        rid = uuid.uuid4().hex
        self._cp.request_decryption(rid, list(handles))
        self._pending[rid] = PendingDecryption(
            request_id=rid, pool_id=pool_id, handles=tuple(handles), requested_at=now
        )
        self._by_pool[pool_id] = rid
        logger.info("decryption requested", extra={"pool_id": pool_id, "request_id": rid})
        return rid

    def authenticate(self, result: DecryptionResult) -> PendingDecryption:
        """Validate a callback without consuming the request."""
        pending = self._pending.get(result.request_id)
        if pending is None:
            raise DecryptionCallbackError(
                f"no outstanding request {result.request_id!r}", request_id=result.request_id
            )
        try:
            self._vk.verify(callback_message(result.request_id, result.plaintexts), result.signature)
        except (BadSignatureError, ValueError, TypeError):
            raise DecryptionCallbackError(
                "callback signature rejected", request_id=result.request_id, pool_id=pending.pool_id
            )
        if len(result.plaintexts) != len(pending.handles):
            raise DecryptionCallbackError(
                f"expected {len(pending.handles)} plaintexts, got {len(result.plaintexts)}",
                request_id=result.request_id,
            )
        if any(int(x) < 0 for x in result.plaintexts):
            raise DecryptionCallbackError("negative plaintext in callback", request_id=result.request_id)
        return pending

    def complete(self, request_id: str) -> None:
        pending = self._pending.pop(request_id)
        self._by_pool.pop(pending.pool_id, None)

    def outstanding(self, now: int) -> List[dict]:
        return [
            {
                "request_id": p.request_id,
                "pool_id": p.pool_id,
                "requested_at": p.requested_at,
                "age_seconds": max(0, now - p.requested_at),
            }
            for p in self._pending.values()
        ]

    def reveal_weight(self, ct: Ciphertext, participant: str) -> int:
        """Single-participant decryption; the coprocessor enforces the grant."""
        try:
            return int(self._cp.user_decrypt(ct, participant))
        except PermissionError as e:
            raise UnauthorizedError(str(e))

    # ---------- persistence ----------
    def export_state(self) -> dict:
        return {
            rid: {"pool_id": p.pool_id, "handles": [c.hex() for c in p.handles], "requested_at": p.requested_at}
            for rid, p in self._pending.items()
        }

    def load_state(self, st: dict) -> None:
        self._pending = {}
        self._by_pool = {}
        for rid, d in st.items():
            p = PendingDecryption(
                request_id=rid,
                pool_id=d["pool_id"],
                handles=tuple(Ciphertext.from_hex(h) for h in d["handles"]),
                requested_at=int(d["requested_at"]),
            )
            self._pending[rid] = p
            self._by_pool[p.pool_id] = rid
