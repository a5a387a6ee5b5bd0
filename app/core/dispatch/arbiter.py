# app/core/dispatch/arbiter.py
"""
Acceptance Arbiter: first accept to land wins.

The decision is the store's ``try_assign``: one transaction holding a
guarded claim on the helper (``is_on_job``) and a guarded claim on the
request (``assigned_helper_id IS NULL AND broadcast_status =
broadcasting``). Rejections are outcomes, not exceptions.

Sibling-row cleanup and ``job_taken`` events run after commit and are
best-effort; ``reconciliation.repair_broadcasts`` re-derives them from
``assigned_helper_id``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from app.core.dispatch.domain import AcceptOutcome, AcceptOutcomeCode, ServiceRequest
from app.core.dispatch.ports import AsyncOutbox, AsyncRequestStore
from app.core.notifications import events as ev
from app.infra.metrics import AppMetrics

logger = logging.getLogger(__name__)

OUTCOME_MESSAGES = {
    AcceptOutcomeCode.ASSIGNED_OK: "Job assigned",
    AcceptOutcomeCode.ALREADY_ASSIGNED: "This job was already accepted by another helper",
    AcceptOutcomeCode.ALREADY_ON_JOB: "You already have an active job",
    AcceptOutcomeCode.NOT_AVAILABLE: "This job is no longer available",
    AcceptOutcomeCode.REQUEST_NOT_FOUND: "Request not found",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AcceptanceArbiter:
    def __init__(
        self,
        *,
        requests: AsyncRequestStore,
        outbox: AsyncOutbox,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.requests = requests
        self.outbox = outbox
        self._now = clock

    async def accept_job(self, request_id: str, helper_id: str) -> AcceptOutcome:
        request = await self.requests.get(request_id)
        if request is None:
            return self._reject(AcceptOutcomeCode.REQUEST_NOT_FOUND, request_id, helper_id, None)

        now = self._now()
        code, current = await self.requests.try_assign(
            request_id,
            helper_id,
            now=now,
            events=[ev.job_accepted(request_id, request.customer_id, helper_id)],
        )
        if code != AcceptOutcomeCode.ASSIGNED_OK:
            return self._reject(code, request_id, helper_id, current)

        AppMetrics.acceptance(code.value)
        logger.info(
            "Job accepted: request=%s helper=%s",
            request_id, helper_id,
            extra={"service_request_id": request_id, "helper_id": helper_id},
        )
        await self._settle_siblings(request_id, helper_id, now)
        return AcceptOutcome(code=code, request=current, message=OUTCOME_MESSAGES[code])

    def _reject(
        self,
        code: AcceptOutcomeCode,
        request_id: str,
        helper_id: str,
        request: ServiceRequest | None,
    ) -> AcceptOutcome:
        AppMetrics.acceptance(code.value)
        logger.info(
            "Accept rejected (%s): request=%s helper=%s",
            code.value, request_id, helper_id,
            extra={"service_request_id": request_id, "helper_id": helper_id},
        )
        return AcceptOutcome(code=code, request=request, message=OUTCOME_MESSAGES[code])

    async def _settle_siblings(self, request_id: str, winner_id: str, now: datetime) -> None:
        try:
            losers = await self.requests.settle_broadcast(request_id, winner_id, now=now)
        except Exception:
            logger.error(
                "Broadcast cleanup failed after accept, left for reconciliation: request=%s",
                request_id, exc_info=True,
                extra={"service_request_id": request_id},
            )
            return

        if not losers:
            return
        try:
            await self.outbox.enqueue([ev.job_taken(request_id, h) for h in losers])
        except Exception:
            logger.error(
                "Failed to enqueue job_taken for %d helpers: request=%s",
                len(losers), request_id, exc_info=True,
            )
