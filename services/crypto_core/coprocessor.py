"""
FHE coprocessor boundary.

The engine only ever talks to a `Coprocessor`: it asks for encrypted zeros,
homomorphic sums, access grants and decryptions, and it receives signed
answers. It never opens a ciphertext itself.

`LocalCoprocessor` is a deterministic stand-in used by tests and the local
API relay. Plaintexts live sealed (XSalsa20-Poly1305 via SecretBox) behind
random 32-byte handles; input proofs and decryption callbacks are Ed25519
signatures over canonical JSON, so the verifier and the oracle adapter
check them exactly as they would check a remote service.
"""
from __future__ import annotations

import json
import threading
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple

from nacl.secret import SecretBox
from nacl.signing import SigningKey
from nacl.utils import random as nacl_random

from services.crypto_core.keys import derive_subkey, new_master
from services.pools.constants import MAX_WEIGHT, MIN_WEIGHT
from services.pools.models import Ciphertext, DecryptionResult, EncryptedInput

HANDLE_LEN = 32
PROOF_VERSION = 1


# =========================
# Canonical messages
# =========================

def _canon(obj: dict) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def input_proof_message(pool_id: str, account: str, ct: Ciphertext, lo: int, hi: int) -> bytes:
    return _canon({
        "v": PROOF_VERSION,
        "kind": "input",
        "pool": pool_id,
        "account": account,
        "handle": ct.hex(),
        "lo": int(lo),
        "hi": int(hi),
    })


def callback_message(request_id: str, plaintexts: Sequence[int]) -> bytes:
    return _canon({
        "v": PROOF_VERSION,
        "kind": "decryption",
        "request_id": request_id,
        "plaintexts": [int(x) for x in plaintexts],
    })


# =========================
# Interface
# =========================

class Coprocessor(Protocol):
    @property
    def verify_key_bytes(self) -> bytes: ...

    def trivial_zero(self) -> Ciphertext: ...

    def add(self, a: Ciphertext, b: Ciphertext) -> Ciphertext: ...

    def allow(self, ct: Ciphertext, account: str) -> None: ...

    def request_decryption(self, request_id: str, handles: Sequence[Ciphertext]) -> None: ...

    def user_decrypt(self, ct: Ciphertext, account: str) -> int: ...

    def discard(self, ct: Ciphertext) -> None: ...


# =========================
# Local harness
# =========================

class LocalCoprocessor:
    """In-process coprocessor with decryptable stub ciphertexts."""

    def __init__(self, master: Optional[bytes] = None):
        master = master or new_master()
        self._box = SecretBox(derive_subkey(master, "seal"))
        self._signer = SigningKey(derive_subkey(master, "sign"))
        self._sealed: Dict[bytes, bytes] = {}
        self._acl: Dict[bytes, Set[str]] = {}
        self._requests: Dict[str, Tuple[Ciphertext, ...]] = {}
        self._lock = threading.Lock()

    # ---------- keys ----------
    @property
    def verify_key_bytes(self) -> bytes:
        return bytes(self._signer.verify_key)

    # ---------- storage ----------
    def _put(self, value: int) -> Ciphertext:
        handle = nacl_random(HANDLE_LEN)
        blob = self._box.encrypt(int(value).to_bytes(8, "big"))
        with self._lock:
            self._sealed[handle] = bytes(blob)
        return Ciphertext(handle)

    def _get(self, ct: Ciphertext) -> int:
        with self._lock:
            blob = self._sealed.get(ct.handle)
        if blob is None:
            raise ValueError(f"unknown ciphertext handle {ct!r}")
        return int.from_bytes(self._box.decrypt(blob), "big")

    def known(self, ct: Ciphertext) -> bool:
        with self._lock:
            return ct.handle in self._sealed

    # ---------- client side (the SDK's job in production) ----------
    def encrypt_weight(
        self,
        pool_id: str,
        account: str,
        weight: int,
        bounds: Tuple[int, int] = (MIN_WEIGHT, MAX_WEIGHT),
    ) -> EncryptedInput:
        """
        Encrypt `weight` and produce an input proof bound to (pool_id, account).

        A range proof cannot be produced for a value outside `bounds`, so this
        raises ValueError instead of returning something the verifier would
        have to catch.
        """
        lo, hi = bounds
        if not (lo <= int(weight) <= hi):
            raise ValueError(f"weight {weight} outside proof range [{lo}, {hi}]")
        ct = self._put(int(weight))
        signed = self._signer.sign(input_proof_message(pool_id, account, ct, lo, hi))
        return EncryptedInput(ciphertext=ct, proof=bytes(signed))

    # ---------- homomorphic ops ----------
    def trivial_zero(self) -> Ciphertext:
        return self._put(0)

    def add(self, a: Ciphertext, b: Ciphertext) -> Ciphertext:
        return self._put(self._get(a) + self._get(b))

    def allow(self, ct: Ciphertext, account: str) -> None:
        if not self.known(ct):
            raise ValueError(f"unknown ciphertext handle {ct!r}")
        with self._lock:
            self._acl.setdefault(ct.handle, set()).add(account)

    def discard(self, ct: Ciphertext) -> None:
        with self._lock:
            self._sealed.pop(ct.handle, None)
            self._acl.pop(ct.handle, None)

    # ---------- decryption ----------
    def request_decryption(self, request_id: str, handles: Sequence[Ciphertext]) -> None:
        for ct in handles:
            if not self.known(ct):
                raise ValueError(f"unknown ciphertext handle {ct!r}")
        with self._lock:
            self._requests[request_id] = tuple(handles)

    def pending_requests(self) -> List[str]:
        with self._lock:
            return list(self._requests)

    def answer(self, request_id: str) -> DecryptionResult:
        """Decrypt a queued request and sign the answer. The request stays queued."""
        with self._lock:
            handles = self._requests.get(request_id)
        if handles is None:
            raise KeyError(f"no queued decryption request {request_id}")
        plaintexts = tuple(self._get(ct) for ct in handles)
        sig = self._signer.sign(callback_message(request_id, plaintexts)).signature
        return DecryptionResult(request_id=request_id, plaintexts=plaintexts, signature=bytes(sig))

    def drop(self, request_id: str) -> None:
        with self._lock:
            self._requests.pop(request_id, None)

    def fulfil(self, request_id: str) -> DecryptionResult:
        """Answer a queued request and dequeue it (the relayer's callback)."""
        result = self.answer(request_id)
        self.drop(request_id)
        return result

    def user_decrypt(self, ct: Ciphertext, account: str) -> int:
        with self._lock:
            allowed = account in self._acl.get(ct.handle, ())
        if not allowed:
            raise PermissionError(f"{account} is not allowed to decrypt {ct!r}")
        return self._get(ct)

    # ---------- persistence ----------
    def export_state(self) -> dict:
        """Sealed blobs only; nothing here is readable without the master key."""
        with self._lock:
            return {
                "sealed": {h.hex(): b.hex() for h, b in self._sealed.items()},
                "acl": {h.hex(): sorted(a) for h, a in self._acl.items()},
                "requests": {rid: [c.hex() for c in hs] for rid, hs in self._requests.items()},
            }

    def load_state(self, st: dict) -> None:
        with self._lock:
            self._sealed = {bytes.fromhex(h): bytes.fromhex(b) for h, b in st.get("sealed", {}).items()}
            self._acl = {bytes.fromhex(h): set(a) for h, a in st.get("acl", {}).items()}
            self._requests = {
                rid: tuple(Ciphertext.from_hex(x) for x in hs)
                for rid, hs in st.get("requests", {}).items()
            }


__all__ = [
    "Coprocessor",
    "LocalCoprocessor",
    "input_proof_message",
    "callback_message",
]
