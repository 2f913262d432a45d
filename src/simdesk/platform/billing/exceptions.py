"""
Billing system exceptions.

Custom exceptions for billing operations with clear error messages.
Provides error handling with status codes, context, and recovery hints.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing system error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class CompanyNotFoundError(BillingError):
    """Company not found error."""

    def __init__(self, message: str, company_id: int | None = None) -> None:
        context = {}
        if company_id is not None:
            context["company_id"] = company_id

        super().__init__(
            message,
            "COMPANY_NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint="Verify the company ID and ensure the company exists",
        )


class SubscriptionAlreadyCreditedError(BillingError):
    """A subscription can carry exactly one credit note reference."""

    def __init__(
        self, message: str, subscription_id: int | None, credit_note_id: int | None
    ) -> None:
        super().__init__(
            message,
            "SUBSCRIPTION_ALREADY_CREDITED",
            status_code=409,
            context={"subscription_id": subscription_id, "credit_note_id": credit_note_id},
            recovery_hint="The subscription was already refunded; do not credit it again",
        )


class CreditNoteError(BillingError):
    """Credit note related errors."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "CREDIT_NOTE_ERROR",
            status_code=400,
            context=context,
            recovery_hint=recovery_hint,
        )


class CreditNoteNotFoundError(CreditNoteError):
    """Credit note not found error."""

    def __init__(self, message: str, credit_note_id: int | None = None) -> None:
        context = {}
        if credit_note_id is not None:
            context["credit_note_id"] = credit_note_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the credit note ID",
        )
        self.error_code = "CREDIT_NOTE_NOT_FOUND"
        self.status_code = 404


class CreditNoteImmutableError(CreditNoteError):
    """Issued credit notes are append-only financial records."""

    def __init__(self, message: str, credit_note_id: int | None = None, fields: list[str] | None = None):
        super().__init__(
            message,
            context={"credit_note_id": credit_note_id, "fields": fields or []},
            recovery_hint="Issue a new credit note instead of editing an existing one",
        )
        self.error_code = "CREDIT_NOTE_IMMUTABLE"
        self.status_code = 409


class CreditNoteConflictError(CreditNoteError):
    """Another run credited some of the selected subscriptions first."""

    def __init__(self, message: str, company_id: int, expected: int, marked: int) -> None:
        super().__init__(
            message,
            context={"company_id": company_id, "expected": expected, "marked": marked},
            recovery_hint="Retry the run; already credited subscriptions are skipped",
        )
        self.error_code = "CREDIT_NOTE_CONFLICT"
        self.status_code = 409


class InvalidExchangeRateError(BillingError):
    """Exchange rate input error."""

    def __init__(self, message: str, from_currency: str, to_currency: str) -> None:
        super().__init__(
            message,
            "INVALID_EXCHANGE_RATE",
            status_code=400,
            context={"from_currency": from_currency, "to_currency": to_currency},
            recovery_hint="Rates must be positive and currency codes non-empty",
        )


__all__ = [
    "BillingError",
    "CompanyNotFoundError",
    "SubscriptionAlreadyCreditedError",
    "CreditNoteError",
    "CreditNoteNotFoundError",
    "CreditNoteImmutableError",
    "CreditNoteConflictError",
    "InvalidExchangeRateError",
]
