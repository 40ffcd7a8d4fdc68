"""
Error taxonomy for pool operations.

Every rejected operation raises one of these before any state is touched,
so callers can rely on `Pool` / `Entry` being unchanged after a failure.
"""
from __future__ import annotations


class PoolError(Exception):
    """Base class; `code` is stable and safe to expose over the API."""

    code = "POOL_ERROR"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


class ValidationError(PoolError):
    code = "VALIDATION_ERROR"


class PaymentMismatchError(ValidationError):
    code = "PAYMENT_MISMATCH"


class NotFoundError(PoolError):
    code = "NOT_FOUND"


class AlreadyExistsError(PoolError):
    code = "ALREADY_EXISTS"


class StateError(PoolError):
    code = "INVALID_STATE"


class InvalidProofError(PoolError):
    code = "INVALID_PROOF"


class DecryptionPendingError(PoolError):
    code = "DECRYPTION_PENDING"


class DecryptionCallbackError(PoolError):
    code = "DECRYPTION_CALLBACK_REJECTED"


class AlreadyClaimedError(PoolError):
    code = "ALREADY_CLAIMED"


class NotWinnerError(PoolError):
    code = "NOT_WINNER"


class UnauthorizedError(PoolError):
    code = "UNAUTHORIZED"


__all__ = [
    "PoolError",
    "ValidationError",
    "PaymentMismatchError",
    "NotFoundError",
    "AlreadyExistsError",
    "StateError",
    "InvalidProofError",
    "DecryptionPendingError",
    "DecryptionCallbackError",
    "AlreadyClaimedError",
    "NotWinnerError",
    "UnauthorizedError",
]
