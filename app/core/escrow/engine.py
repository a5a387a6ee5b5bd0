# app/core/escrow/engine.py
"""
Escrow state machine: fund -> released | refunded, exactly once.

Each operation is one ledger-store transaction (escrow write, ledger
entries, balance updates, outbox events). Replays are resolved through the
payment reference on fund and the ``status = funded`` guard on settlement.
Wallet reads and withdrawals are scoped to the acting customer or helper.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

from app.core.dispatch.domain import Actor, ActorRole, RequestStatus, ServiceRequest
from app.core.dispatch.ports import AsyncRequestStore
from app.core.errors import (
    EscrowAlreadyFunded,
    EscrowAlreadySettled,
    EscrowNotFound,
    InsufficientFunds,
    InvalidAmount,
    NotAuthorized,
    NotAvailable,
    PaymentReferenceConflict,
    RequestNotFound,
    WithdrawalReferenceConflict,
)
from app.core.escrow.commission import CommissionRateProvider, split_commission
from app.core.escrow.domain import (
    AccountKind,
    Escrow,
    EscrowStatus,
    LedgerEntry,
    WalletAccount,
    Withdrawal,
    fund_postings,
    refund_postings,
    release_postings,
    validate_amount,
    withdrawal_postings,
)
from app.core.escrow.ports import AsyncLedgerStore
from app.core.notifications import events as ev
from app.infra.metrics import AppMetrics

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EscrowEngine:
    def __init__(
        self,
        *,
        ledger: AsyncLedgerStore,
        requests: AsyncRequestStore,
        commission: CommissionRateProvider,
        platform_account_id: str,
        external_account_id: str,
        min_withdrawal_amount: int = 10_000,
        history_limit: int = 50,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ledger = ledger
        self.requests = requests
        self.commission = commission
        self.platform_account_id = platform_account_id
        self.external_account_id = external_account_id
        self.min_withdrawal_amount = min_withdrawal_amount
        self.history_limit = history_limit
        self._now = clock

    # ------------------------------------------------------------------
    # fund
    # ------------------------------------------------------------------

    async def fund(self, request_id: str, amount: int, payment_reference: str, actor: Actor) -> Escrow:
        validate_amount(amount)
        reference = (payment_reference or "").strip()
        if not reference:
            raise InvalidAmount("Payment reference is required")

        request = await self._get_request(request_id)
        if not (actor.is_system or (actor.role == ActorRole.CUSTOMER and actor.id == request.customer_id)):
            AppMetrics.escrow_operation("fund", "not_authorized")
            raise NotAuthorized("Only the request's customer can fund its escrow")

        existing = await self.ledger.get_escrow_by_reference(reference)
        if existing is not None:
            return self._resolve_replay(existing, request_id, amount, reference)

        if request.status == RequestStatus.CANCELLED:
            raise NotAvailable("Cannot fund a cancelled request")

        current = await self.ledger.get_escrow(request_id)
        if current is not None:
            return self._resolve_replay(current, request_id, amount, reference)

        escrow = Escrow(
            id=str(uuid.uuid4()),
            request_id=request_id,
            customer_id=request.customer_id,
            amount=amount,
            payment_reference=reference,
            status=EscrowStatus.FUNDED,
            helper_id=request.assigned_helper_id,
            funded_at=self._now(),
        )
        events = [ev.escrow_funded(request_id, request.customer_id, amount)]
        if request.assigned_helper_id:
            events.append(ev.escrow_funded(request_id, request.assigned_helper_id, amount))

        stored, created = await self.ledger.create_escrow(
            escrow,
            fund_postings(request.customer_id, self.external_account_id, amount),
            transaction_id=str(uuid.uuid4()),
            events=events,
        )
        if not created:
            # Lost a race with a concurrent fund for the same request or reference
            return self._resolve_replay(stored, request_id, amount, reference)

        AppMetrics.escrow_operation("fund", "ok")
        logger.info(
            "Escrow funded: request=%s escrow=%s amount=%s actor=%s",
            request_id, stored.id, amount, actor.role.value,
            extra={"service_request_id": request_id, "escrow_id": stored.id},
        )
        return stored

    def _resolve_replay(self, existing: Escrow, request_id: str, amount: int, reference: str) -> Escrow:
        if existing.payment_reference == reference:
            if existing.request_id == request_id and existing.amount == amount:
                AppMetrics.idempotency_hit("escrow_fund")
                logger.info(
                    "Duplicate fund ignored: request=%s reference=%s",
                    request_id, reference,
                    extra={"service_request_id": request_id, "escrow_id": existing.id},
                )
                return existing

            AppMetrics.integrity_failure("payment_reference_conflict")
            logger.critical(
                "Payment reference reused with different details: reference=%s "
                "stored=(request=%s amount=%s) received=(request=%s amount=%s)",
                reference, existing.request_id, existing.amount, request_id, amount,
                extra={"service_request_id": request_id, "escrow_id": existing.id},
            )
            raise PaymentReferenceConflict(
                f"Payment reference {reference} already used for a different payment"
            )

        AppMetrics.escrow_operation("fund", "already_funded")
        raise EscrowAlreadyFunded(f"Request {request_id} already has a funded escrow")

    # ------------------------------------------------------------------
    # release / refund
    # ------------------------------------------------------------------

    async def release(self, request_id: str, actor: Actor) -> Escrow:
        request = await self._get_request(request_id)
        if not (actor.is_admin or actor.is_system or self._is_owner(actor, request)):
            AppMetrics.escrow_operation("release", "not_authorized")
            raise NotAuthorized("Not allowed to release this escrow")

        escrow = await self._get_funded(request_id, "release")

        if request.status != RequestStatus.COMPLETED:
            if not actor.is_admin:
                raise NotAvailable("Escrow can only be released after the job is completed")
            logger.warning(
                "Admin override: releasing escrow before completion: request=%s status=%s admin=%s",
                request_id, request.status.value, actor.id,
                extra={"service_request_id": request_id, "escrow_id": escrow.id},
            )
        if not request.assigned_helper_id:
            raise NotAvailable("Request has no assigned helper to pay")

        rate_bps = await self.commission.current_rate_bps()
        split = split_commission(escrow.amount, rate_bps)
        postings = release_postings(
            escrow.customer_id,
            request.assigned_helper_id,
            self.platform_account_id,
            escrow.amount,
            split.commission,
        )
        events = [
            ev.escrow_released(request_id, request.assigned_helper_id, split.helper_amount),
            ev.escrow_released(request_id, escrow.customer_id, escrow.amount),
        ]

        settled = await self.ledger.settle_escrow(
            escrow.id,
            to_status=EscrowStatus.RELEASED,
            now=self._now(),
            postings=postings,
            transaction_id=str(uuid.uuid4()),
            helper_id=request.assigned_helper_id,
            commission_amount=split.commission,
            commission_rate_bps=rate_bps,
            events=events,
        )
        if settled is None:
            AppMetrics.escrow_operation("release", "already_settled")
            raise EscrowAlreadySettled(f"Escrow for request {request_id} is already settled")

        AppMetrics.escrow_operation("release", "ok")
        logger.info(
            "Escrow released: request=%s helper=%s amount=%s commission=%s rate_bps=%s",
            request_id, request.assigned_helper_id, escrow.amount, split.commission, rate_bps,
            extra={"service_request_id": request_id, "escrow_id": escrow.id,
                   "helper_id": request.assigned_helper_id},
        )
        return settled

    async def refund(self, request_id: str, actor: Actor) -> Escrow:
        """
        Return escrowed money to the customer's available balance.

        A customer can only refund a cancelled request; while the job is
        live the escrow must stay in place so the helper can be paid.
        Admin and system (the cancel flow) are not restricted.
        """
        request = await self._get_request(request_id)
        if not (actor.is_admin or actor.is_system or self._is_owner(actor, request)):
            AppMetrics.escrow_operation("refund", "not_authorized")
            raise NotAuthorized("Not allowed to refund this escrow")
        if self._is_owner(actor, request) and request.status != RequestStatus.CANCELLED:
            AppMetrics.escrow_operation("refund", "request_live")
            raise NotAvailable("Cancel the request to refund its escrow")

        escrow = await self._get_funded(request_id, "refund")

        settled = await self.ledger.settle_escrow(
            escrow.id,
            to_status=EscrowStatus.REFUNDED,
            now=self._now(),
            postings=refund_postings(escrow.customer_id, escrow.amount),
            transaction_id=str(uuid.uuid4()),
            events=[ev.escrow_refunded(request_id, escrow.customer_id, escrow.amount)],
        )
        if settled is None:
            AppMetrics.escrow_operation("refund", "already_settled")
            raise EscrowAlreadySettled(f"Escrow for request {request_id} is already settled")

        AppMetrics.escrow_operation("refund", "ok")
        logger.info(
            "Escrow refunded: request=%s amount=%s actor=%s",
            request_id, escrow.amount, actor.role.value,
            extra={"service_request_id": request_id, "escrow_id": escrow.id},
        )
        return settled

    async def get(self, request_id: str, actor: Actor) -> Escrow:
        request = await self._get_request(request_id)
        if not (actor.is_admin or actor.is_system or self._is_owner(actor, request)
                or (actor.role == ActorRole.HELPER and actor.id == request.assigned_helper_id)):
            raise NotAuthorized("Not allowed to view this escrow")
        escrow = await self.ledger.get_escrow(request_id)
        if escrow is None:
            raise EscrowNotFound(f"No escrow for request {request_id}")
        return escrow

    # ------------------------------------------------------------------
    # wallet
    # ------------------------------------------------------------------

    async def wallet(self, actor: Actor) -> WalletAccount:
        kind = self._wallet_kind(actor)
        account = await self.ledger.get_account(actor.id)
        if account is None:
            return WalletAccount(owner_id=actor.id, kind=kind)
        return account

    async def wallet_entries(self, actor: Actor, limit: int | None = None) -> list[LedgerEntry]:
        self._wallet_kind(actor)
        limit = min(limit or self.history_limit, self.history_limit)
        return await self.ledger.list_entries(account_id=actor.id, limit=limit)

    async def withdraw(self, actor: Actor, amount: int, reference: str) -> Withdrawal:
        """
        Move ``amount`` from the actor's available balance to the external
        clearing account. Replaying the same reference returns the first
        withdrawal; escrowed money is never touched.
        """
        kind = self._wallet_kind(actor)
        validate_amount(amount)
        reference = (reference or "").strip()
        if not reference:
            raise InvalidAmount("Withdrawal reference is required")
        if amount < self.min_withdrawal_amount:
            raise InvalidAmount(f"Minimum withdrawal is {self.min_withdrawal_amount}")

        existing = await self.ledger.get_withdrawal_by_reference(reference)
        if existing is not None:
            return self._resolve_withdrawal_replay(existing, actor, amount)

        withdrawal = Withdrawal(
            id=str(uuid.uuid4()),
            owner_id=actor.id,
            amount=amount,
            reference=reference,
            requested_at=self._now(),
        )
        try:
            stored, created = await self.ledger.create_withdrawal(
                withdrawal,
                withdrawal_postings(actor.id, kind, self.external_account_id, amount),
                transaction_id=str(uuid.uuid4()),
            )
        except InsufficientFunds:
            AppMetrics.escrow_operation("withdraw", "insufficient_funds")
            raise
        if not created:
            return self._resolve_withdrawal_replay(stored, actor, amount)

        AppMetrics.escrow_operation("withdraw", "ok")
        logger.info(
            "Withdrawal recorded: owner=%s amount=%s reference=%s",
            actor.id, amount, reference,
            extra={"withdrawal_id": stored.id},
        )
        return stored

    def _resolve_withdrawal_replay(self, existing: Withdrawal, actor: Actor, amount: int) -> Withdrawal:
        if existing.owner_id == actor.id and existing.amount == amount:
            AppMetrics.idempotency_hit("withdrawal")
            return existing
        AppMetrics.integrity_failure("withdrawal_reference_conflict")
        logger.critical(
            "Withdrawal reference reused with different details: reference=%s "
            "stored=(owner=%s amount=%s) received=(owner=%s amount=%s)",
            existing.reference, existing.owner_id, existing.amount, actor.id, amount,
            extra={"withdrawal_id": existing.id},
        )
        raise WithdrawalReferenceConflict(
            f"Withdrawal reference {existing.reference} already used for a different withdrawal"
        )

    @staticmethod
    def _wallet_kind(actor: Actor) -> AccountKind:
        if actor.role == ActorRole.CUSTOMER:
            return AccountKind.CUSTOMER
        if actor.role == ActorRole.HELPER:
            return AccountKind.HELPER
        raise NotAuthorized("Only customers and helpers have wallets")

    # ------------------------------------------------------------------

    async def _get_request(self, request_id: str) -> ServiceRequest:
        request = await self.requests.get(request_id)
        if request is None:
            raise RequestNotFound(f"Request {request_id} not found")
        return request

    async def _get_funded(self, request_id: str, operation: str) -> Escrow:
        escrow = await self.ledger.get_escrow(request_id)
        if escrow is None:
            AppMetrics.escrow_operation(operation, "not_found")
            raise EscrowNotFound(f"No escrow for request {request_id}")
        if escrow.is_settled:
            AppMetrics.escrow_operation(operation, "already_settled")
            raise EscrowAlreadySettled(
                f"Escrow for request {request_id} is already {escrow.status.value}"
            )
        return escrow

    @staticmethod
    def _is_owner(actor: Actor, request: ServiceRequest) -> bool:
        return actor.role == ActorRole.CUSTOMER and actor.id == request.customer_id
