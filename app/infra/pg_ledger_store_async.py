# app/infra/pg_ledger_store_async.py
"""
Async PostgreSQL ledger store (asyncpg).

Escrow rows, wallet balances and append-only ledger entries. Each escrow
operation writes the escrow row, one ledger entry per posting, the matching
balance updates and its outbox events in a single transaction. Balance
rows are updated in a fixed (owner_id, bucket) order so concurrent
settlements touching the same wallets cannot deadlock.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Sequence

import asyncpg

from app.core.errors import InsufficientFunds, LedgerIntegrityError
from app.core.escrow.domain import (
    Bucket,
    Direction,
    Escrow,
    EscrowStatus,
    LedgerDiscrepancy,
    LedgerEntry,
    Posting,
    WalletAccount,
    Withdrawal,
    AccountKind,
)
from app.core.escrow.ports import AsyncLedgerStore
from app.core.notifications.events import NotificationEvent
from app.infra.db_resilience_async import rows_affected, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics
from app.infra.pg_job_repo_async import insert_events

logger = get_logger(__name__)

_BALANCE_COLUMN = {
    Bucket.AVAILABLE: "available_balance",
    Bucket.ESCROW: "escrow_balance",
}


def _as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return None


def _row_to_escrow(row) -> Escrow:
    return Escrow(
        id=str(row["id"]),
        request_id=str(row["request_id"]),
        customer_id=row["customer_id"],
        amount=row["amount"],
        payment_reference=row["payment_reference"],
        status=EscrowStatus(row["status"]),
        helper_id=row["helper_id"],
        commission_amount=row["commission_amount"],
        commission_rate_bps=row["commission_rate_bps"],
        funded_at=row["funded_at"],
        released_at=row["released_at"],
        refunded_at=row["refunded_at"],
    )


def _row_to_withdrawal(row) -> Withdrawal:
    return Withdrawal(
        id=str(row["id"]),
        owner_id=row["owner_id"],
        amount=row["amount"],
        reference=row["reference"],
        requested_at=row["requested_at"],
    )


def _row_to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        transaction_id=str(row["transaction_id"]),
        account_id=row["account_id"],
        bucket=Bucket(row["bucket"]),
        direction=Direction(row["direction"]),
        amount=row["amount"],
        escrow_id=str(row["escrow_id"]) if row["escrow_id"] else None,
        withdrawal_id=str(row["withdrawal_id"]) if row["withdrawal_id"] else None,
        created_at=row["created_at"],
    )


async def _apply_postings(
    conn: asyncpg.Connection,
    postings: Sequence[Posting],
    *,
    transaction_id: str,
    escrow_id: str | None = None,
    withdrawal_id: str | None = None,
    guard_debits: bool = False,
) -> None:
    """
    Insert ledger entries and move balances. Caller owns the transaction.

    With ``guard_debits`` a debit that would take a non-external bucket
    below zero matches no row and raises InsufficientFunds instead of
    tripping the CHECK constraint.
    """
    tx_id = uuid.UUID(transaction_id)
    esc_id = uuid.UUID(escrow_id) if escrow_id else None
    wd_id = uuid.UUID(withdrawal_id) if withdrawal_id else None

    owners = sorted({(p.owner_id, p.kind.value) for p in postings})
    kinds = dict(owners)
    await conn.executemany(
        """
        INSERT INTO wallet_accounts (owner_id, kind)
        VALUES ($1, $2)
        ON CONFLICT (owner_id) DO NOTHING
        """,
        owners,
    )

    deltas: dict[tuple[str, Bucket], int] = {}
    for p in postings:
        key = (p.owner_id, p.bucket)
        deltas[key] = deltas.get(key, 0) + p.signed_amount

    try:
        for (owner_id, bucket), delta in sorted(deltas.items(), key=lambda kv: (kv[0][0], kv[0][1].value)):
            if delta == 0:
                continue
            column = _BALANCE_COLUMN[bucket]
            if guard_debits and delta < 0 and kinds[owner_id] != AccountKind.EXTERNAL.value:
                result = await conn.execute(
                    f"UPDATE wallet_accounts SET {column} = {column} + $2, updated_at = now() "
                    f"WHERE owner_id = $1 AND {column} >= -$2",
                    owner_id, delta,
                )
                if rows_affected(result) != 1:
                    raise InsufficientFunds(f"Insufficient {bucket.value} balance for {owner_id}")
                continue
            await conn.execute(
                f"UPDATE wallet_accounts SET {column} = {column} + $2, updated_at = now() WHERE owner_id = $1",
                owner_id, delta,
            )
    except asyncpg.CheckViolationError as exc:
        AppMetrics.integrity_failure("negative_balance")
        logger.critical(
            f"Ledger posting would drive a wallet negative: transaction={transaction_id} "
            f"escrow={escrow_id} withdrawal={withdrawal_id}",
            extra={"escrow_id": escrow_id},
        )
        raise LedgerIntegrityError("Posting would make a wallet balance negative") from exc

    await conn.executemany(
        """
        INSERT INTO ledger_entries (transaction_id, account_id, bucket, direction, amount, escrow_id, withdrawal_id)
        VALUES ($1, $2, $3, $4, $5, $6, $7)
        """,
        [
            (tx_id, p.owner_id, p.bucket.value, p.direction.value, p.amount, esc_id, wd_id)
            for p in postings
        ],
    )


class AsyncPostgresLedgerStore(AsyncLedgerStore):
    """Async PostgreSQL implementation of AsyncLedgerStore using asyncpg."""

    async def get_escrow(self, request_id: str) -> Escrow | None:
        rid = _as_uuid(request_id)
        if rid is None:
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM escrows WHERE request_id = $1", rid)
            return _row_to_escrow(row) if row else None

    async def get_escrow_by_reference(self, payment_reference: str) -> Escrow | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM escrows WHERE payment_reference = $1", payment_reference)
            return _row_to_escrow(row) if row else None

    async def create_escrow(
        self,
        escrow: Escrow,
        postings: Sequence[Posting],
        *,
        transaction_id: str,
        events: Sequence[NotificationEvent] = (),
    ) -> tuple[Escrow, bool]:
        try:
            async with safe_db_conn(autocommit=False) as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO escrows (
                        id, request_id, customer_id, amount, payment_reference,
                        status, helper_id, funded_at
                    )
                    VALUES ($1, $2, $3, $4, $5, 'funded', $6, COALESCE($7, now()))
                    ON CONFLICT DO NOTHING
                    RETURNING *
                    """,
                    uuid.UUID(escrow.id),
                    uuid.UUID(escrow.request_id),
                    escrow.customer_id,
                    escrow.amount,
                    escrow.payment_reference,
                    escrow.helper_id,
                    escrow.funded_at,
                )
                if row is not None:
                    await _apply_postings(conn, postings, transaction_id=transaction_id, escrow_id=escrow.id)
                    await insert_events(conn, events)
                    return _row_to_escrow(row), True

        except LedgerIntegrityError:
            raise
        except Exception:
            logger.error(f"Failed to create escrow: request={escrow.request_id}", exc_info=True)
            AppMetrics.database_error("create_escrow")
            raise

        existing = await self.get_escrow_by_reference(escrow.payment_reference)
        if existing is None:
            existing = await self.get_escrow(escrow.request_id)
        if existing is None:
            raise LedgerIntegrityError(
                f"Escrow insert conflicted but no existing escrow found: request={escrow.request_id}"
            )
        return existing, False

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
        if to_status == EscrowStatus.FUNDED:
            raise ValueError("Cannot settle an escrow back to funded")

        try:
            async with safe_db_conn(autocommit=False) as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE escrows
                    SET status = $2,
                        released_at = CASE WHEN $2 = 'released' THEN $3 ELSE released_at END,
                        refunded_at = CASE WHEN $2 = 'refunded' THEN $3 ELSE refunded_at END,
                        helper_id = COALESCE($4, helper_id),
                        commission_amount = $5,
                        commission_rate_bps = $6
                    WHERE id = $1 AND status = 'funded'
                    RETURNING *
                    """,
                    uuid.UUID(escrow_id),
                    to_status.value,
                    now,
                    helper_id,
                    commission_amount,
                    commission_rate_bps,
                )
                if row is None:
                    return None

                await _apply_postings(conn, postings, transaction_id=transaction_id, escrow_id=escrow_id)
                await insert_events(conn, events)
                return _row_to_escrow(row)

        except LedgerIntegrityError:
            raise
        except Exception:
            logger.error(
                f"Failed to settle escrow: escrow={escrow_id} -> {to_status.value}",
                exc_info=True,
                extra={"escrow_id": escrow_id},
            )
            AppMetrics.database_error("settle_escrow")
            raise

    async def get_account(self, owner_id: str) -> WalletAccount | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM wallet_accounts WHERE owner_id = $1", owner_id)
            if row is None:
                return None
            return WalletAccount(
                owner_id=row["owner_id"],
                kind=AccountKind(row["kind"]),
                available_balance=row["available_balance"],
                escrow_balance=row["escrow_balance"],
            )

    async def create_withdrawal(
        self,
        withdrawal: Withdrawal,
        postings: Sequence[Posting],
        *,
        transaction_id: str,
    ) -> tuple[Withdrawal, bool]:
        try:
            async with safe_db_conn(autocommit=False) as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO withdrawals (id, owner_id, amount, reference, requested_at)
                    SELECT $1::uuid, $2::text, $3::bigint, $4::text, COALESCE($5::timestamptz, now())
                    WHERE EXISTS (SELECT 1 FROM wallet_accounts WHERE owner_id = $2)
                    ON CONFLICT (reference) DO NOTHING
                    RETURNING *
                    """,
                    uuid.UUID(withdrawal.id),
                    withdrawal.owner_id,
                    withdrawal.amount,
                    withdrawal.reference,
                    withdrawal.requested_at,
                )
                if row is None:
                    existing = await conn.fetchrow(
                        "SELECT * FROM withdrawals WHERE reference = $1", withdrawal.reference
                    )
                    if existing is None:
                        raise InsufficientFunds(f"No wallet balance for {withdrawal.owner_id}")
                    return _row_to_withdrawal(existing), False

                await _apply_postings(
                    conn,
                    postings,
                    transaction_id=transaction_id,
                    withdrawal_id=withdrawal.id,
                    guard_debits=True,
                )
                return _row_to_withdrawal(row), True

        except (InsufficientFunds, LedgerIntegrityError):
            raise
        except Exception:
            logger.error(
                f"Failed to create withdrawal: owner={withdrawal.owner_id} reference={withdrawal.reference}",
                exc_info=True,
            )
            AppMetrics.database_error("create_withdrawal")
            raise

    async def get_withdrawal_by_reference(self, reference: str) -> Withdrawal | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM withdrawals WHERE reference = $1", reference)
            return _row_to_withdrawal(row) if row else None

    async def list_entries(
        self,
        *,
        escrow_id: str | None = None,
        account_id: str | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntry]:
        async with safe_db_conn() as conn:
            if account_id:
                rows = await conn.fetch(
                    "SELECT * FROM ledger_entries WHERE account_id = $1 ORDER BY id DESC LIMIT $2",
                    account_id, limit,
                )
            elif escrow_id:
                rows = await conn.fetch(
                    "SELECT * FROM ledger_entries WHERE escrow_id = $1 ORDER BY id",
                    uuid.UUID(escrow_id),
                )
            else:
                rows = await conn.fetch("SELECT * FROM ledger_entries ORDER BY id")
            return [_row_to_entry(r) for r in rows]

    async def audit(self) -> list[LedgerDiscrepancy]:
        """Replay entries against balances on one consistent snapshot."""
        async with safe_db_conn() as conn:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                balance_rows = await conn.fetch(
                    """
                    WITH sums AS (
                        SELECT account_id, bucket,
                               SUM(CASE WHEN direction = 'credit' THEN amount ELSE -amount END) AS net
                        FROM ledger_entries
                        GROUP BY account_id, bucket
                    )
                    SELECT w.owner_id, b.bucket,
                           COALESCE(s.net, 0)::bigint AS ledger_sum,
                           CASE WHEN b.bucket = 'available'
                                THEN w.available_balance ELSE w.escrow_balance END AS balance
                    FROM wallet_accounts w
                    CROSS JOIN (VALUES ('available'), ('escrow')) AS b(bucket)
                    LEFT JOIN sums s ON s.account_id = w.owner_id AND s.bucket = b.bucket
                    WHERE COALESCE(s.net, 0) <> CASE WHEN b.bucket = 'available'
                                                     THEN w.available_balance ELSE w.escrow_balance END
                    """
                )
                tx_rows = await conn.fetch(
                    """
                    SELECT transaction_id,
                           SUM(CASE WHEN direction = 'credit' THEN amount ELSE -amount END)::bigint AS net
                    FROM ledger_entries
                    GROUP BY transaction_id
                    HAVING SUM(CASE WHEN direction = 'credit' THEN amount ELSE -amount END) <> 0
                    """
                )

        discrepancies = [
            LedgerDiscrepancy(
                kind="balance_mismatch",
                account_id=r["owner_id"],
                bucket=r["bucket"],
                expected=r["ledger_sum"],
                actual=r["balance"],
            )
            for r in balance_rows
        ]
        discrepancies.extend(
            LedgerDiscrepancy(
                kind="unbalanced_transaction",
                transaction_id=str(r["transaction_id"]),
                actual=r["net"],
            )
            for r in tx_rows
        )
        return discrepancies


# Global singleton
_ledger_store: AsyncPostgresLedgerStore | None = None


def get_ledger_store() -> AsyncPostgresLedgerStore:
    global _ledger_store
    if _ledger_store is None:
        _ledger_store = AsyncPostgresLedgerStore()
    return _ledger_store
