# app/core/escrow/domain.py
"""
Escrow and double-entry ledger types.

All amounts are ``int`` minor units (paise/cents). A credit increases a
bucket, a debit decreases it. The external clearing account stands for
money outside the system and is the only account allowed below zero.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable

from app.core.errors import InvalidAmount, LedgerIntegrityError


class EscrowStatus(str, Enum):
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"


class AccountKind(str, Enum):
    CUSTOMER = "customer"
    HELPER = "helper"
    PLATFORM = "platform"
    EXTERNAL = "external"


class Bucket(str, Enum):
    AVAILABLE = "available"
    ESCROW = "escrow"


class Direction(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass(frozen=True)
class Posting:
    """One side of a money movement, before it is written as a LedgerEntry."""
    owner_id: str
    kind: AccountKind
    bucket: Bucket
    direction: Direction
    amount: int

    @property
    def signed_amount(self) -> int:
        return self.amount if self.direction == Direction.CREDIT else -self.amount


@dataclass
class Escrow:
    id: str
    request_id: str
    customer_id: str
    amount: int
    payment_reference: str
    status: EscrowStatus = EscrowStatus.FUNDED
    helper_id: str | None = None
    commission_amount: int | None = None
    commission_rate_bps: int | None = None
    funded_at: datetime | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None

    @property
    def is_settled(self) -> bool:
        return self.status != EscrowStatus.FUNDED


@dataclass
class WalletAccount:
    owner_id: str
    kind: AccountKind
    available_balance: int = 0
    escrow_balance: int = 0

    @property
    def total(self) -> int:
        return self.available_balance + self.escrow_balance

    def balance(self, bucket: Bucket) -> int:
        return self.available_balance if bucket == Bucket.AVAILABLE else self.escrow_balance


@dataclass
class LedgerEntry:
    id: int | None
    transaction_id: str
    account_id: str
    bucket: Bucket
    direction: Direction
    amount: int
    escrow_id: str | None = None
    withdrawal_id: str | None = None
    created_at: datetime | None = None


@dataclass
class Withdrawal:
    """Money leaving a wallet's available bucket for the external clearing account."""
    id: str
    owner_id: str
    amount: int
    reference: str
    requested_at: datetime | None = None


@dataclass
class LedgerDiscrepancy:
    """Audit finding. ``kind`` is ``balance_mismatch`` or ``unbalanced_transaction``."""
    kind: str
    account_id: str | None = None
    bucket: str | None = None
    transaction_id: str | None = None
    expected: int = 0
    actual: int = 0

    def describe(self) -> str:
        if self.kind == "unbalanced_transaction":
            return f"transaction {self.transaction_id} nets to {self.actual}"
        return (
            f"account {self.account_id}/{self.bucket}: "
            f"ledger sum {self.expected} != balance {self.actual}"
        )


def validate_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("Amount must be an integer number of minor units")
    if amount <= 0:
        raise InvalidAmount("Amount must be positive")
    return amount


def assert_balanced(postings: Iterable[Posting]) -> list[Posting]:
    """Drop zero postings and check the rest net to zero."""
    kept = [p for p in postings if p.amount != 0]
    if any(p.amount < 0 for p in kept):
        raise LedgerIntegrityError("Posting amounts must be positive")
    net = sum(p.signed_amount for p in kept)
    if net != 0:
        raise LedgerIntegrityError(f"Postings do not balance (net {net})")
    return kept


def fund_postings(customer_id: str, external_account_id: str, amount: int) -> list[Posting]:
    return assert_balanced([
        Posting(external_account_id, AccountKind.EXTERNAL, Bucket.AVAILABLE, Direction.DEBIT, amount),
        Posting(customer_id, AccountKind.CUSTOMER, Bucket.ESCROW, Direction.CREDIT, amount),
    ])


def release_postings(
    customer_id: str,
    helper_id: str,
    platform_account_id: str,
    amount: int,
    commission: int,
) -> list[Posting]:
    return assert_balanced([
        Posting(customer_id, AccountKind.CUSTOMER, Bucket.ESCROW, Direction.DEBIT, amount),
        Posting(helper_id, AccountKind.HELPER, Bucket.AVAILABLE, Direction.CREDIT, amount - commission),
        Posting(platform_account_id, AccountKind.PLATFORM, Bucket.AVAILABLE, Direction.CREDIT, commission),
    ])


def refund_postings(customer_id: str, amount: int) -> list[Posting]:
    return assert_balanced([
        Posting(customer_id, AccountKind.CUSTOMER, Bucket.ESCROW, Direction.DEBIT, amount),
        Posting(customer_id, AccountKind.CUSTOMER, Bucket.AVAILABLE, Direction.CREDIT, amount),
    ])


def withdrawal_postings(
    owner_id: str,
    kind: AccountKind,
    external_account_id: str,
    amount: int,
) -> list[Posting]:
    return assert_balanced([
        Posting(owner_id, kind, Bucket.AVAILABLE, Direction.DEBIT, amount),
        Posting(external_account_id, AccountKind.EXTERNAL, Bucket.AVAILABLE, Direction.CREDIT, amount),
    ])
