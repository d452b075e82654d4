"""
Typed failures raised by the ledger services.

Every failure carries a machine-readable ``kind`` and the HTTP status the API
boundary reports it with. They subclass ``ValueError`` so callers that only
care about "bad request" semantics can keep catching that.
"""

from __future__ import annotations


class LedgerError(ValueError):
    kind = "ledger_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}


class NotFound(LedgerError):
    """No current version in the caller's organization.

    Raised uniformly for missing and cross-tenant ids.
    """

    kind = "not_found"
    status_code = 404


class NotFoundOrVoided(NotFound):
    kind = "not_found_or_voided"


class AlreadyVoided(NotFoundOrVoided):
    kind = "already_voided"
    status_code = 409


class AlreadyReconciled(LedgerError):
    kind = "already_reconciled"
    status_code = 409


class InvalidStatusTransition(LedgerError):
    kind = "invalid_status_transition"
    status_code = 409


InvalidTransition = InvalidStatusTransition


class CannotCancelPaidBill(LedgerError):
    kind = "cannot_cancel_paid_bill"
    status_code = 409


class ConcurrentModificationConflict(LedgerError):
    kind = "concurrent_modification"
    status_code = 409
    retryable = True

    def __init__(self, model_name: str, version_id: str) -> None:
        super().__init__(
            f"Concurrent modification detected on {model_name} version {version_id}"
        )
        self.model_name = model_name
        self.version_id = version_id


class ValidationError(LedgerError):
    kind = "validation_error"
    status_code = 422


class PeriodClosed(LedgerError):
    kind = "period_closed"
    status_code = 409


class ImmutableVersion(LedgerError):
    """A stored version was edited in place instead of being superseded."""

    kind = "immutable_version"
    status_code = 409
