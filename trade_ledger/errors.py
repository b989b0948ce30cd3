"""
Error taxonomy for ledger operations.

NotFound, InvalidState, InvalidOperation and Forbidden are surfaced to the
caller as-is and never retried. Conflict means a guarded write lost a race.
Transient covers storage timeouts and unavailability and is the only kind
retried automatically.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""

    code = "ledger_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(LedgerError):
    """Referenced record is absent."""
    code = "not_found"


class ConflictError(LedgerError):
    """A guarded write's precondition no longer holds."""
    code = "conflict"


class InvalidStateError(LedgerError):
    """Operation not legal for the entity's current lifecycle state."""
    code = "invalid_state"


class InvalidOperationError(LedgerError):
    """Malformed or nonsensical request, e.g. a self-trade."""
    code = "invalid_operation"


class ForbiddenError(LedgerError):
    """Actor lacks authority for this mutation."""
    code = "forbidden"


class TransientError(LedgerError):
    """Storage timeout or unavailability."""
    code = "transient"
    retryable = True


class DataIntegrityError(LedgerError):
    """A trade is completed while its listing is still unsold and could not be repaired."""
    code = "data_integrity"
