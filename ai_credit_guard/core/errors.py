"""
Error taxonomy for the billing protocol.

Every rejection carries a machine-readable code and the HTTP status it maps to.
"""

from typing import Any, Dict, Optional


class CreditGuardError(Exception):
    """Base class for errors reported verbatim to the caller.

    Attributes:
        code: Machine-readable error code (e.g. ``INSUFFICIENT_CREDITS``)
        status_code: HTTP-equivalent status
        details: Extra fields echoed in the error payload
    """
    status_code: int = 500

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message or code)
        self.code = code
        self.details = dict(details or {})
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> Dict[str, Any]:
        """Render the error as a JSON-serializable response body."""
        payload: Dict[str, Any] = {"error": self.code}
        payload.update(self.details)
        return payload


class RequestValidationError(CreditGuardError):
    """Malformed request, rejected before any reservation."""
    status_code = 400


class QuotaExceeded(CreditGuardError):
    """Daily message or weekly image quota reached."""
    status_code = 429


class BudgetBlocked(CreditGuardError):
    """Soft USD cap reached on an operation with no cheaper fallback."""
    status_code = 403


class InsufficientCredits(CreditGuardError):
    """Reservation refused: balance or demo quota exhausted."""
    status_code = 402


class RequestConflict(CreditGuardError):
    """Another attempt with the same idempotency key holds the reservation."""
    status_code = 409


class UpstreamFailure(CreditGuardError):
    """Generation backend failed; the reservation has been rolled back."""
    status_code = 500


class StorageFailure(CreditGuardError):
    """Ledger or idempotency store unreachable.

    No charge may be assumed to have taken effect.
    """
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_UNAVAILABLE", message, details)


class LedgerStateError(Exception):
    """Raised when commit targets a missing or already settled ledger entry."""


class PricingError(ValueError):
    """Raised when no price exists for an (operation, mode, tier) combination."""
