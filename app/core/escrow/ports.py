# app/core/escrow/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Protocol, Sequence

from app.core.escrow.domain import (
    Escrow,
    EscrowStatus,
    LedgerDiscrepancy,
    LedgerEntry,
    Posting,
    WalletAccount,
    Withdrawal,
)
from app.core.notifications.events import NotificationEvent


class AsyncLedgerStore(Protocol):
    """
    Escrow rows, wallet balances and the append-only ledger.

    Postings are applied as LedgerEntry inserts plus balance updates in the
    same transaction as the escrow write they belong to.
    """

    async def get_escrow(self, request_id: str) -> Escrow | None: ...

    async def get_escrow_by_reference(self, payment_reference: str) -> Escrow | None: ...

    async def create_escrow(
        self,
        escrow: Escrow,
        postings: Sequence[Posting],
        *,
        transaction_id: str,
        events: Sequence[NotificationEvent] = (),
    ) -> tuple[Escrow, bool]:
        """
        Insert a funded escrow with its postings.

        (escrow, True)      => created
        (existing, False)   => an escrow for the same request or payment
                               reference already exists, nothing written
        """
        ...

    async def settle_escrow(
        self,
        escrow_id: str,
        *,
        to_status: EscrowStatus,
        now: datetime,
        postings: Sequence[Posting],
        transaction_id: str,
        helper_id: str | None = None,
        commission_amount: int | None = None,
        commission_rate_bps: int | None = None,
        events: Sequence[NotificationEvent] = (),
    ) -> Escrow | None:
        """Guarded ``funded -> to_status`` flip. None => already settled, nothing written."""
        ...

    async def get_account(self, owner_id: str) -> WalletAccount | None: ...

    async def create_withdrawal(
        self,
        withdrawal: Withdrawal,
        postings: Sequence[Posting],
        *,
        transaction_id: str,
    ) -> tuple[Withdrawal, bool]:
        """
        Debit the owner's available balance, guarded by ``available >= amount``.

        (withdrawal, True)  => written
        (existing, False)   => reference already used, nothing written
        Raises InsufficientFunds when the guard misses.
        """
        ...

    async def get_withdrawal_by_reference(self, reference: str) -> Withdrawal | None: ...

    async def list_entries(
        self,
        *,
        escrow_id: str | None = None,
        account_id: str | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntry]:
        """Entries in insertion order; newest first when filtered by account."""
        ...

    async def audit(self) -> list[LedgerDiscrepancy]: ...
