"""
Return engine error taxonomy.

Every failure surfaced by the engine carries an ErrorKind so the API layer
can map it to a status code and clients can tell retryable failures apart.
"""

from enum import Enum
from typing import Dict, Optional


class ErrorKind(str, Enum):
    INVALID_TRANSITION = "InvalidTransition"
    FORBIDDEN = "Forbidden"
    STALE_STATE = "StaleState"
    SIDE_EFFECT_FAILED = "SideEffectFailed"
    VALIDATION_ERROR = "ValidationError"
    NOT_FOUND = "NotFound"
    INVALID_AMOUNT = "InvalidAmount"


class ReturnEngineError(Exception):
    """Base exception for return lifecycle errors."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        return {
            "error": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class InvalidTransitionError(ReturnEngineError):
    """Requested status is not reachable from the current status."""
    kind = ErrorKind.INVALID_TRANSITION


class ForbiddenError(ReturnEngineError):
    """Actor role may not perform the transition."""
    kind = ErrorKind.FORBIDDEN


class StaleStateError(ReturnEngineError):
    """The request changed since the caller read it. Re-fetch and retry."""
    kind = ErrorKind.STALE_STATE
    retryable = True


class SideEffectFailedError(ReturnEngineError):
    """A collaborator call failed; status was left unchanged."""
    kind = ErrorKind.SIDE_EFFECT_FAILED
    retryable = True


class ReturnValidationError(ReturnEngineError):
    kind = ErrorKind.VALIDATION_ERROR


class NotFoundError(ReturnEngineError):
    kind = ErrorKind.NOT_FOUND


class InvalidAmountError(ReturnEngineError):
    """Refund amount is outside what the order allows."""
    kind = ErrorKind.INVALID_AMOUNT


# HTTP status used by the API exception handler
ERROR_STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_TRANSITION: 400,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.STALE_STATE: 409,
    ErrorKind.INVALID_AMOUNT: 422,
    ErrorKind.SIDE_EFFECT_FAILED: 502,
}
