# services/pools/proof_verifier.py
from __future__ import annotations

import json
from typing import Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from services.crypto_core.coprocessor import HANDLE_LEN, PROOF_VERSION
from services.pools.constants import MAX_WEIGHT, MIN_WEIGHT
from services.pools.errors import InvalidProofError, ValidationError
from services.pools.models import Ciphertext

SIGNATURE_LEN = 64


class ProofVerifier:
    """
    Checks that an input proof certifies: ciphertext `ct` encrypts an integer in
    [MIN_WEIGHT, MAX_WEIGHT], and was produced for this pool and this participant.
    Binding to (pool, participant) is what stops a ciphertext seen in one entry
    from being replayed by somebody else or in another pool.
    """

    def __init__(self, verify_key: bytes, bounds: Tuple[int, int] = (MIN_WEIGHT, MAX_WEIGHT)):
        self._vk = VerifyKey(verify_key)
        self.bounds = bounds

    @staticmethod
    def check_shape(ct: Ciphertext, proof: bytes) -> None:
        if not isinstance(ct, Ciphertext) or len(ct.handle) != HANDLE_LEN:
            raise ValidationError(f"ciphertext handle must be {HANDLE_LEN} bytes")
        if not proof or len(proof) <= SIGNATURE_LEN:
            raise ValidationError("proof is empty or truncated")

    def verify(self, pool_id: str, participant: str, ct: Ciphertext, proof: bytes) -> None:
        self.check_shape(ct, proof)
        try:
            raw = self._vk.verify(proof)
        except (BadSignatureError, ValueError, TypeError):
            raise InvalidProofError("proof signature rejected", pool_id=pool_id)

        try:
            claim = json.loads(raw)
        except ValueError:
            raise InvalidProofError("proof payload is not canonical JSON", pool_id=pool_id)

        if claim.get("v") != PROOF_VERSION or claim.get("kind") != "input":
            raise InvalidProofError("not an input proof", pool_id=pool_id)
        if claim.get("pool") != pool_id:
            raise InvalidProofError("proof is bound to another pool", pool_id=pool_id)
        if claim.get("account") != participant:
            raise InvalidProofError("proof is bound to another participant", pool_id=pool_id)
        if claim.get("handle") != ct.hex():
            raise InvalidProofError("proof does not cover this ciphertext", pool_id=pool_id)
        lo, hi = self.bounds
        if (claim.get("lo"), claim.get("hi")) != (lo, hi):
            raise InvalidProofError(
                f"proof range [{claim.get('lo')}, {claim.get('hi')}] is not [{lo}, {hi}]",
                pool_id=pool_id,
            )
