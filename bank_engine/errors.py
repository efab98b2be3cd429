"""Error taxonomy for the bank engine.

Each error carries the HTTP status a transport adapter should answer with and
whether the caller may retry the same call unchanged.
"""

from typing import Any, List, Optional


class BankingError(Exception):
    """Base exception for all engine errors."""

    http_status = 500
    retryable = False


class ValidationError(BankingError):
    """Raised when input fields are missing, malformed or out of bounds."""

    http_status = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class AuthorizationError(BankingError):
    """Raised when the principal has the wrong role or does not own the resource."""

    http_status = 403


class NotFoundError(BankingError):
    """Raised when a referenced resource does not exist."""

    http_status = 404


class InvalidTransitionError(BankingError):
    """Raised when the stored status does not allow the requested action."""

    http_status = 409

    def __init__(self, kind: str, resource_id: str, current_status: Optional[str],
                 action: str, message: Optional[str] = None):
        self.kind = kind
        self.resource_id = resource_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            message or f"Cannot {action} {kind} {resource_id} in status {current_status}"
        )


class ConflictError(BankingError):
    """Raised when a request conflicts with stored state (reused idempotency key, inactive counterpart)."""

    http_status = 409


class InsufficientFundsError(BankingError):
    """Raised when a transfer's total exceeds the source balance. Terminal for that transfer."""

    http_status = 400

    def __init__(self, transfer_id: str, available: Any, required: Any):
        self.transfer_id = transfer_id
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient funds for transfer {transfer_id}: "
            f"available {available.to_string()}, required {required.to_string()}"
        )


class ConcurrencyError(BankingError):
    """Raised when a write lost a race or the store timed out. Retry with backoff."""

    http_status = 503
    retryable = True
