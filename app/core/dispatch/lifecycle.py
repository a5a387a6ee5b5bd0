# app/core/dispatch/lifecycle.py
"""
Request lifecycle: creation and authorised status transitions.

Allowed transitions per actor:

    transition                     customer   helper (assigned)   admin
    open -> cancelled              owner      -                   yes
    assigned -> cancelled          owner      -                   yes
    in_progress -> cancelled       -          -                   yes
    assigned -> in_progress        -          start OTP           yes
    in_progress -> completed       -          end OTP             yes
    assigned -> open (rebroadcast) -          -                   yes

``broadcasting -> open`` belongs to the system (sweeper / dispatcher).

Each transition is one guarded store write with its outbox events.
Freeing the helper, expiring offers and settling escrow happen afterwards
in their own transactions; their failure is logged, never unwound.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from app.core.dispatch.domain import (
    Actor,
    ActorRole,
    BroadcastStatus,
    RequestStatus,
    ServiceRequest,
    generate_otp,
    otp_matches,
)
from app.core.dispatch.ports import AsyncRequestStore
from app.core.errors import (
    DomainError,
    EscrowAlreadySettled,
    EscrowNotFound,
    InvalidAmount,
    InvalidOtp,
    InvalidTransition,
    NotAuthorized,
    RequestNotFound,
)
from app.core.escrow.engine import EscrowEngine
from app.core.notifications import events as ev
from app.infra.metrics import AppMetrics

logger = logging.getLogger(__name__)

CUSTOMER_CANCELLABLE = frozenset({RequestStatus.OPEN, RequestStatus.ASSIGNED})
ADMIN_CANCELLABLE = frozenset({RequestStatus.OPEN, RequestStatus.ASSIGNED, RequestStatus.IN_PROGRESS})


@dataclass(frozen=True)
class RequestStatusView:
    """Polling view: no customer details, no OTPs."""
    request_id: str
    status: RequestStatus
    broadcast_status: BroadcastStatus
    assigned_helper_id: str | None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestLifecycle:
    def __init__(
        self,
        *,
        requests: AsyncRequestStore,
        escrow: EscrowEngine | None = None,
        auto_release_on_completion: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.requests = requests
        self.escrow = escrow
        self.auto_release_on_completion = auto_release_on_completion
        self._now = clock

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    async def create_request(
        self,
        *,
        customer_id: str,
        category: str,
        latitude: float,
        longitude: float,
        estimated_price: int,
        address: str = "",
    ) -> ServiceRequest:
        if isinstance(estimated_price, bool) or not isinstance(estimated_price, int) or estimated_price < 0:
            raise InvalidAmount("Estimated price must be a non-negative integer amount")

        request = ServiceRequest(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            category=category,
            latitude=latitude,
            longitude=longitude,
            estimated_price=estimated_price,
            address=address,
            status=RequestStatus.OPEN,
            broadcast_status=BroadcastStatus.NONE,
            start_otp=generate_otp(),
            end_otp=generate_otp(),
            created_at=self._now(),
        )
        created = await self.requests.create(request)
        logger.info(
            "Request created: request=%s customer=%s category=%s",
            created.id, customer_id, category,
            extra={"service_request_id": created.id},
        )
        return created

    async def get_request(self, request_id: str, actor: Actor) -> ServiceRequest:
        request = await self._get(request_id)
        if not can_view(actor, request):
            raise NotAuthorized("Not allowed to view this request")
        return request

    async def get_status(self, request_id: str) -> RequestStatusView:
        request = await self._get(request_id)
        return RequestStatusView(
            request_id=request.id,
            status=request.status,
            broadcast_status=request.broadcast_status,
            assigned_helper_id=request.assigned_helper_id,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(self, request_id: str, actor: Actor, otp: str | None = None) -> ServiceRequest:
        request = await self._get(request_id)
        self._require_helper_or_admin(actor, request, "start")
        self._require_status(request, RequestStatus.ASSIGNED, "start")
        if not actor.is_admin and not otp_matches(request.start_otp, otp):
            logger.info("Invalid start OTP: request=%s helper=%s", request_id, actor.id)
            raise InvalidOtp("Invalid start code")

        now = self._now()
        updated = await self.requests.transition(
            request_id,
            from_statuses=[RequestStatus.ASSIGNED],
            to_status=RequestStatus.IN_PROGRESS,
            now=now,
            expected_helper_id=request.assigned_helper_id,
            changes={"work_started_at": now},
            events=[ev.job_started(request_id, request.customer_id)],
        )
        updated = self._check(updated, request, "start")
        self._log_transition("start", updated, actor)
        return updated

    async def complete(self, request_id: str, actor: Actor, otp: str | None = None) -> ServiceRequest:
        request = await self._get(request_id)
        self._require_helper_or_admin(actor, request, "complete")
        self._require_status(request, RequestStatus.IN_PROGRESS, "complete")
        if not actor.is_admin and not otp_matches(request.end_otp, otp):
            logger.info("Invalid end OTP: request=%s helper=%s", request_id, actor.id)
            raise InvalidOtp("Invalid completion code")

        now = self._now()
        events = [ev.job_completed(request_id, request.customer_id)]
        if request.assigned_helper_id:
            events.append(ev.job_completed(request_id, request.assigned_helper_id))
        updated = await self.requests.transition(
            request_id,
            from_statuses=[RequestStatus.IN_PROGRESS],
            to_status=RequestStatus.COMPLETED,
            now=now,
            expected_helper_id=request.assigned_helper_id,
            changes={"work_completed_at": now},
            events=events,
        )
        updated = self._check(updated, request, "complete")
        self._log_transition("complete", updated, actor)

        await self._free_helper(updated)
        if self.auto_release_on_completion:
            await self._settle(updated, "release")
        return updated

    async def cancel(self, request_id: str, actor: Actor, reason: str | None = None) -> ServiceRequest:
        request = await self._get(request_id)
        if actor.is_admin:
            allowed = ADMIN_CANCELLABLE
        elif actor.role == ActorRole.CUSTOMER and actor.id == request.customer_id:
            allowed = CUSTOMER_CANCELLABLE
        else:
            raise NotAuthorized("Only the customer or an admin can cancel this request")
        if request.status not in allowed:
            raise InvalidTransition(f"Cannot cancel a request that is {request.status.value}")

        now = self._now()
        changes: dict = {"cancelled_at": now, "cancellation_reason": reason}
        if request.broadcast_status == BroadcastStatus.BROADCASTING:
            changes["broadcast_status"] = BroadcastStatus.EXPIRED

        events = [ev.job_cancelled(request_id, request.customer_id, reason)]
        if request.assigned_helper_id:
            events.append(ev.job_cancelled(request_id, request.assigned_helper_id, reason))

        updated = await self.requests.transition(
            request_id,
            from_statuses=[request.status],
            to_status=RequestStatus.CANCELLED,
            now=now,
            expected_broadcast_status=request.broadcast_status,
            changes=changes,
            events=events,
        )
        updated = self._check(updated, request, "cancel")
        self._log_transition("cancel", updated, actor)

        await self._expire_offers(updated)
        await self._free_helper(updated)
        await self._settle(updated, "refund")
        return updated

    async def release_assignment(self, request_id: str, actor: Actor) -> ServiceRequest:
        """
        Administrative override: ``assigned -> open`` with the helper cleared.

        Used to rebroadcast a job whose helper never started it.
        """
        if not actor.is_admin:
            raise NotAuthorized("Only an admin can rebroadcast a request")
        request = await self._get(request_id)
        self._require_status(request, RequestStatus.ASSIGNED, "rebroadcast")

        updated = await self.requests.transition(
            request_id,
            from_statuses=[RequestStatus.ASSIGNED],
            to_status=RequestStatus.OPEN,
            now=self._now(),
            expected_helper_id=request.assigned_helper_id,
            changes={
                "assigned_helper_id": None,
                "broadcast_status": BroadcastStatus.NONE,
                "helper_accepted_at": None,
                "broadcast_expires_at": None,
            },
        )
        updated = self._check(updated, request, "rebroadcast")
        logger.warning(
            "Admin override: assignment cleared for rebroadcast: request=%s previous_helper=%s admin=%s",
            request_id, request.assigned_helper_id, actor.id,
            extra={"service_request_id": request_id, "helper_id": request.assigned_helper_id},
        )
        AppMetrics.lifecycle_transition("rebroadcast")
        if request.assigned_helper_id:
            await self._retire_acceptance(request_id, request.assigned_helper_id)
            await self._free_helper_id(request.assigned_helper_id, request_id)
        return updated

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    async def _get(self, request_id: str) -> ServiceRequest:
        request = await self.requests.get(request_id)
        if request is None:
            raise RequestNotFound(f"Request {request_id} not found")
        return request

    @staticmethod
    def _require_helper_or_admin(actor: Actor, request: ServiceRequest, action: str) -> None:
        if actor.is_admin:
            return
        if actor.role == ActorRole.HELPER and actor.id == request.assigned_helper_id:
            return
        raise NotAuthorized(f"Only the assigned helper can {action} this job")

    @staticmethod
    def _require_status(request: ServiceRequest, expected: RequestStatus, action: str) -> None:
        if request.status != expected:
            raise InvalidTransition(
                f"Cannot {action} a request that is {request.status.value}"
            )

    @staticmethod
    def _check(updated: ServiceRequest | None, before: ServiceRequest, action: str) -> ServiceRequest:
        if updated is None:
            raise InvalidTransition(
                f"Request {before.id} changed concurrently, cannot {action}"
            )
        return updated

    @staticmethod
    def _log_transition(action: str, request: ServiceRequest, actor: Actor) -> None:
        AppMetrics.lifecycle_transition(action)
        logger.info(
            "Request %s: request=%s status=%s actor=%s:%s",
            action, request.id, request.status.value, actor.role.value, actor.id,
            extra={"service_request_id": request.id, "helper_id": request.assigned_helper_id},
        )

    # ------------------------------------------------------------------
    # Follow-ons (best effort)
    # ------------------------------------------------------------------

    async def _free_helper(self, request: ServiceRequest) -> None:
        if request.assigned_helper_id:
            await self._free_helper_id(request.assigned_helper_id, request.id)

    async def _free_helper_id(self, helper_id: str, request_id: str) -> None:
        try:
            await self.requests.set_helper_on_job(helper_id, False)
        except Exception:
            logger.error(
                "Failed to clear is_on_job: helper=%s request=%s",
                helper_id, request_id, exc_info=True,
            )

    async def _retire_acceptance(self, request_id: str, helper_id: str) -> None:
        try:
            await self.requests.expire_accepted(request_id, helper_id, now=self._now())
        except Exception:
            logger.error(
                "Failed to expire previous acceptance: request=%s helper=%s", request_id, helper_id,
                exc_info=True,
            )

    async def _expire_offers(self, request: ServiceRequest) -> None:
        try:
            await self.requests.expire_pending(request.id, now=self._now())
        except Exception:
            logger.error("Failed to expire offers for request=%s", request.id, exc_info=True)

    async def _settle(self, request: ServiceRequest, operation: str) -> None:
        if self.escrow is None:
            return
        settle = self.escrow.release if operation == "release" else self.escrow.refund
        try:
            await settle(request.id, Actor.system())
        except (EscrowNotFound, EscrowAlreadySettled):
            logger.debug("No funded escrow to %s for request=%s", operation, request.id)
        except DomainError as exc:
            logger.error(
                "Escrow %s after %s failed: request=%s error=%s",
                operation, request.status.value, request.id, exc.detail,
                extra={"service_request_id": request.id},
            )
        except Exception:
            logger.error(
                "Escrow %s after %s failed: request=%s",
                operation, request.status.value, request.id, exc_info=True,
                extra={"service_request_id": request.id},
            )


def can_view(actor: Actor, request: ServiceRequest) -> bool:
    if actor.is_admin or actor.is_system:
        return True
    if actor.role == ActorRole.CUSTOMER:
        return actor.id == request.customer_id
    if actor.role == ActorRole.HELPER:
        return actor.id == request.assigned_helper_id or (
            request.status == RequestStatus.OPEN and request.assigned_helper_id is None
        )
    return False
