"""
Billing error taxonomy.

Every error carries a stable ``code`` (see ERROR_CODES) and converts to the
API error payload with ``to_dict()``. Duplicate errors are raised by the
store on idempotent replays and are caught by the ledger and invoice
generator, which hand the prior record back to the caller.
"""

from typing import Optional

from .config import ERROR_CODES


class BillingError(Exception):
    """Base class for billing core errors."""
    code = "BILLING_ERROR"

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or ERROR_CODES.get(self.code, "Billing error")
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"error_code": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(BillingError):
    """Malformed input, rejected before touching the ledger."""
    code = "VALIDATION_ERROR"


class InsufficientBalance(BillingError):
    """A spend would overdraw the account."""
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, available: int, requested: int):
        self.available = available
        self.requested = requested
        super().__init__(details={"available": available, "requested": requested})


class NotFound(BillingError):
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            f"{resource} not found: {identifier}",
            details={"resource": resource, "id": identifier},
        )


class InvalidStateTransition(BillingError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, action: str, status: str):
        self.action = action
        self.status = status
        super().__init__(
            f"Cannot {action} while subscription is {status}",
            details={"action": action, "status": status},
        )


class ConcurrencyConflict(BillingError):
    """Serialization race lost against another writer."""
    code = "CONCURRENCY_CONFLICT"


class AnalyticsUnavailable(BillingError):
    code = "ANALYTICS_UNAVAILABLE"


class DuplicateTransaction(BillingError):
    """Idempotency key already committed; carries the prior record."""
    code = "DUPLICATE_TRANSACTION"

    def __init__(self, existing):
        self.existing = existing
        super().__init__(f"Transaction already committed for key {existing.idempotency_key}")


class DuplicateInvoice(BillingError):
    """Correlation id already invoiced; carries the prior invoice."""
    code = "DUPLICATE_INVOICE"

    def __init__(self, existing):
        self.existing = existing
        super().__init__(f"Invoice already exists for {existing.correlation_id}")
