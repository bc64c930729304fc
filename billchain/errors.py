"""Error types for the bill chain engine.

Validation errors (`TransitionError` and subclasses) are terminal for the
candidate block: it is never partially applied. `StorageError` is the only
error the sync layer retries.
"""

from __future__ import annotations

from typing import Any, Optional


class BillChainError(Exception):
    """Base class for all billchain errors."""

    error_code = "BILLCHAIN_ERROR"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class TransitionError(BillChainError):
    """A candidate block failed validation."""

    error_code = "TRANSITION_ERROR"


class IntegrityError(TransitionError):
    """Hash, signature or linkage mismatch."""

    error_code = "INTEGRITY_ERROR"

    def __init__(self, message: str, check: str = "", **details: Any):
        self.check = check
        super().__init__(message, check=check, **details)


class UnauthorizedActorError(TransitionError):
    """The block was signed by a key that does not hold the required role."""

    error_code = "UNAUTHORIZED_ACTOR"

    def __init__(self, message: str, signer: str = "", expected_role: str = "", **details: Any):
        self.signer = signer
        self.expected_role = expected_role
        super().__init__(message, signer=signer, expected_role=expected_role, **details)


class IllegalTransitionError(TransitionError):
    """The operation is not reachable from the bill's current status."""

    error_code = "ILLEGAL_TRANSITION"

    def __init__(self, message: str, op_code: str = "", status: str = "", **details: Any):
        self.op_code = op_code
        self.status = status
        super().__init__(message, op_code=op_code, status=status, **details)


class MalformedPayloadError(TransitionError):
    """The operation payload violates its schema."""

    error_code = "MALFORMED_PAYLOAD"

    def __init__(self, message: str, field: str = "", **details: Any):
        self.field = field
        super().__init__(message, field=field, **details)


class InvalidOperationError(BillChainError):
    """The builder refused to emit a block because validation failed."""

    error_code = "INVALID_OPERATION"

    def __init__(self, message: str, cause: Optional[TransitionError] = None):
        self.cause = cause
        super().__init__(message, cause=cause)
        if cause is not None:
            self.__cause__ = cause


class StorageError(BillChainError):
    """The persistence gateway could not load or save a chain."""

    error_code = "STORAGE_ERROR"


class DivergenceUnresolvedError(BillChainError):
    """Two valid chains tied on every fork-choice criterion."""

    error_code = "DIVERGENCE_UNRESOLVED"
