# app/transport/schemas.py
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.core.dispatch.domain import DispatchResult, ServiceRequest
from app.core.escrow.domain import Escrow, LedgerEntry, WalletAccount, Withdrawal


class CreateRequestIn(BaseModel):
    category: str = Field(min_length=1, max_length=64)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: str = Field(default="", max_length=500)
    estimated_price: int = Field(ge=0)


class OtpIn(BaseModel):
    otp: str | None = Field(default=None, max_length=12)


class CancelIn(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class FundIn(BaseModel):
    amount: int = Field(gt=0)
    payment_reference: str = Field(min_length=1, max_length=128)


class WithdrawalIn(BaseModel):
    amount: int = Field(gt=0)
    reference: str = Field(min_length=1, max_length=128)


class CommissionIn(BaseModel):
    rate_bps: int = Field(ge=0, le=10_000)


class PaymentWebhookIn(BaseModel):
    """Payment gateway capture notification (camelCase on the wire)."""
    model_config = ConfigDict(populate_by_name=True)

    external_payment_reference: str = Field(alias="externalPaymentReference", min_length=1, max_length=128)
    request_id: str = Field(alias="requestId", min_length=1)
    amount: int
    status: str


class RequestOut(BaseModel):
    id: str
    customer_id: str
    category: str
    latitude: float
    longitude: float
    address: str
    estimated_price: int
    status: str
    broadcast_status: str
    assigned_helper_id: str | None = None
    broadcast_expires_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime | None = None
    helper_accepted_at: datetime | None = None
    work_started_at: datetime | None = None
    work_completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    # Only the owning customer sees the OTPs; they hand them to the helper
    start_otp: str | None = None
    end_otp: str | None = None

    @classmethod
    def from_domain(cls, request: ServiceRequest, include_otps: bool = False) -> "RequestOut":
        return cls(
            id=request.id,
            customer_id=request.customer_id,
            category=request.category,
            latitude=request.latitude,
            longitude=request.longitude,
            address=request.address,
            estimated_price=request.estimated_price,
            status=request.status.value,
            broadcast_status=request.broadcast_status.value,
            assigned_helper_id=request.assigned_helper_id,
            broadcast_expires_at=request.broadcast_expires_at,
            cancellation_reason=request.cancellation_reason,
            created_at=request.created_at,
            helper_accepted_at=request.helper_accepted_at,
            work_started_at=request.work_started_at,
            work_completed_at=request.work_completed_at,
            cancelled_at=request.cancelled_at,
            start_otp=request.start_otp if include_otps else None,
            end_otp=request.end_otp if include_otps else None,
        )


class RequestStatusOut(BaseModel):
    request_id: str
    status: str
    broadcast_status: str
    assigned_helper_id: str | None = None


class DispatchOut(BaseModel):
    request_id: str
    broadcast_status: str
    broadcast_expires_at: datetime | None = None
    candidates: int
    no_candidates: bool
    already_broadcasting: bool

    @classmethod
    def from_domain(cls, result: DispatchResult) -> "DispatchOut":
        return cls(
            request_id=result.request.id,
            broadcast_status=result.request.broadcast_status.value,
            broadcast_expires_at=result.request.broadcast_expires_at,
            candidates=len(result.candidates),
            no_candidates=result.no_candidates,
            already_broadcasting=result.already_broadcasting,
        )


class AcceptOut(BaseModel):
    outcome: str
    message: str
    request_id: str
    assigned_helper_id: str | None = None


class EscrowOut(BaseModel):
    id: str
    request_id: str
    customer_id: str
    amount: int
    payment_reference: str
    status: str
    helper_id: str | None = None
    commission_amount: int | None = None
    commission_rate_bps: int | None = None
    funded_at: datetime | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None

    @classmethod
    def from_domain(cls, escrow: Escrow) -> "EscrowOut":
        return cls(
            id=escrow.id,
            request_id=escrow.request_id,
            customer_id=escrow.customer_id,
            amount=escrow.amount,
            payment_reference=escrow.payment_reference,
            status=escrow.status.value,
            helper_id=escrow.helper_id,
            commission_amount=escrow.commission_amount,
            commission_rate_bps=escrow.commission_rate_bps,
            funded_at=escrow.funded_at,
            released_at=escrow.released_at,
            refunded_at=escrow.refunded_at,
        )


class WalletOut(BaseModel):
    owner_id: str
    kind: str
    available_balance: int
    escrow_balance: int

    @classmethod
    def from_domain(cls, account: WalletAccount) -> "WalletOut":
        return cls(
            owner_id=account.owner_id,
            kind=account.kind.value,
            available_balance=account.available_balance,
            escrow_balance=account.escrow_balance,
        )


class LedgerEntryOut(BaseModel):
    id: int | None
    transaction_id: str
    bucket: str
    direction: str
    amount: int
    escrow_id: str | None = None
    withdrawal_id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, entry: LedgerEntry) -> "LedgerEntryOut":
        return cls(
            id=entry.id,
            transaction_id=entry.transaction_id,
            bucket=entry.bucket.value,
            direction=entry.direction.value,
            amount=entry.amount,
            escrow_id=entry.escrow_id,
            withdrawal_id=entry.withdrawal_id,
            created_at=entry.created_at,
        )


class WithdrawalOut(BaseModel):
    id: str
    owner_id: str
    amount: int
    reference: str
    requested_at: datetime | None = None

    @classmethod
    def from_domain(cls, withdrawal: Withdrawal) -> "WithdrawalOut":
        return cls(
            id=withdrawal.id,
            owner_id=withdrawal.owner_id,
            amount=withdrawal.amount,
            reference=withdrawal.reference,
            requested_at=withdrawal.requested_at,
        )
