# app/core/errors.py
"""
Typed domain errors for dispatch, lifecycle and escrow operations.

Each error maps to a specific HTTP status code and a stable ``code``
string.  The transport layer converts ``DomainError`` subtypes into JSON
responses without embedding business rules in the route handlers.

Acceptance contention (already assigned / already on job) is *not*
modelled here: ``accept_job`` reports it as an ``AcceptOutcome``.
"""
from __future__ import annotations


class DomainError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


# --- Precondition errors (client-caused) -----------------------------------

class RequestNotFound(DomainError):
    status_code = 404
    code = "request_not_found"


class NotAvailable(DomainError):
    """The request is not in a state that allows the operation."""

    status_code = 409
    code = "not_available"


class InvalidTransition(DomainError):
    status_code = 409
    code = "invalid_transition"


class NotAuthorized(DomainError):
    status_code = 403
    code = "not_authorized"


class InvalidOtp(DomainError):
    status_code = 400
    code = "invalid_otp"


class InvalidAmount(DomainError):
    status_code = 400
    code = "invalid_amount"


class EscrowNotFound(DomainError):
    status_code = 404
    code = "escrow_not_found"


class EscrowAlreadyFunded(DomainError):
    status_code = 409
    code = "escrow_already_funded"


class EscrowAlreadySettled(EscrowAlreadyFunded):
    """Escrow already released or refunded; a second settlement is refused."""

    code = "escrow_already_settled"


class InsufficientFunds(DomainError):
    """Withdrawal larger than the wallet's available balance."""

    status_code = 409
    code = "insufficient_funds"


# --- Transient collaborator errors -----------------------------------------

class GeoMatcherUnavailable(DomainError):
    """Geo-Matcher timed out or failed after retries. Dispatch is safe to retry."""

    status_code = 503
    code = "geo_matcher_unavailable"


# --- Integrity errors (fatal, operator attention) --------------------------

class IntegrityError(DomainError):
    """Never silently corrected. Callers log CRITICAL and stop."""

    status_code = 500
    code = "integrity_error"


class PaymentReferenceConflict(IntegrityError):
    """Same payment reference replayed with a different amount or request."""

    status_code = 409
    code = "payment_reference_conflict"


class WithdrawalReferenceConflict(IntegrityError):
    """Withdrawal reference replayed by another owner or with another amount."""

    status_code = 409
    code = "withdrawal_reference_conflict"


class LedgerIntegrityError(IntegrityError):
    code = "ledger_integrity_error"
