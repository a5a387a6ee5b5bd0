# app/core/dispatch/dispatcher.py
"""
Dispatcher: turn an ``open`` request into a broadcast.

The Geo-Matcher call happens before any write and is bounded by a timeout
with retries; the broadcast itself (status flip, pending rows, offer
events) is a single store transaction. Dispatch is idempotent per request:
a request already broadcasting returns its current broadcast.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from app.core.dispatch.domain import (
    BroadcastStatus,
    Candidate,
    DispatchResult,
    NotificationStatus,
    RequestStatus,
    ServiceRequest,
)
from app.core.dispatch.ports import AsyncOutbox, AsyncRequestStore, GeoMatcher
from app.core.errors import GeoMatcherUnavailable, NotAvailable, RequestNotFound
from app.core.notifications import events as ev
from app.infra.logging_config import mask_coordinates
from app.infra.metrics import AppMetrics

logger = logging.getLogger(__name__)

DISPATCHABLE = frozenset({BroadcastStatus.NONE, BroadcastStatus.EXPIRED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Dispatcher:
    def __init__(
        self,
        *,
        requests: AsyncRequestStore,
        matcher: GeoMatcher,
        outbox: AsyncOutbox,
        max_candidates: int,
        max_radius_km: float,
        broadcast_window_seconds: int,
        matcher_timeout_seconds: float = 3.0,
        matcher_retries: int = 2,
        matcher_retry_delay: float = 0.2,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.requests = requests
        self.matcher = matcher
        self.outbox = outbox
        self.max_candidates = max_candidates
        self.max_radius_km = max_radius_km
        self.broadcast_window = timedelta(seconds=broadcast_window_seconds)
        self.matcher_timeout_seconds = matcher_timeout_seconds
        self.matcher_retries = matcher_retries
        self.matcher_retry_delay = matcher_retry_delay
        self._now = clock

    async def dispatch(self, request_id: str) -> DispatchResult:
        request = await self.requests.get(request_id)
        if request is None:
            raise RequestNotFound(f"Request {request_id} not found")

        if _is_broadcasting(request):
            return await self._existing_broadcast(request)
        if request.status != RequestStatus.OPEN or request.broadcast_status not in DISPATCHABLE:
            AppMetrics.dispatch("not_available")
            raise NotAvailable(
                f"Request {request_id} cannot be dispatched "
                f"(status={request.status.value}, broadcast={request.broadcast_status.value})"
            )

        candidates = await self._rank(request)
        now = self._now()

        if not candidates:
            await self._report_no_candidates(request, now)
            AppMetrics.dispatch("no_candidates")
            return DispatchResult(request=request, no_candidates=True)

        expires_at = now + self.broadcast_window
        offers = [
            ev.job_offered(
                request.id, c.helper_id,
                category=request.category, score=c.score, expires_at=expires_at,
            )
            for c in candidates
        ]
        updated = await self.requests.start_broadcast(
            request.id, candidates, now=now, expires_at=expires_at, events=offers,
        )
        if updated is None:
            # Guard missed: a concurrent dispatch (or a transition) got there first
            current = await self.requests.get(request_id)
            if current is not None and _is_broadcasting(current):
                return await self._existing_broadcast(current)
            AppMetrics.dispatch("not_available")
            raise NotAvailable(f"Request {request_id} is no longer dispatchable")

        AppMetrics.dispatch("broadcast")
        AppMetrics.broadcast_candidates(len(candidates))
        logger.info(
            "Broadcast opened: request=%s candidates=%d expires_at=%s",
            request.id, len(candidates), expires_at.isoformat(),
            extra={"service_request_id": request.id},
        )
        return DispatchResult(request=updated, candidates=candidates)

    async def _rank(self, request: ServiceRequest) -> list[Candidate]:
        delay = self.matcher_retry_delay
        for attempt in range(self.matcher_retries + 1):
            try:
                ranked = await asyncio.wait_for(
                    self.matcher.rank(
                        request.category,
                        request.coordinates,
                        self.max_candidates,
                        self.max_radius_km,
                    ),
                    timeout=self.matcher_timeout_seconds,
                )
                return _dedupe(ranked, self.max_candidates)
            except (asyncio.TimeoutError, GeoMatcherUnavailable) as exc:
                if attempt >= self.matcher_retries:
                    AppMetrics.dispatch("matcher_unavailable")
                    logger.error(
                        "Geo-Matcher failed after %d attempts: request=%s location=%s",
                        attempt + 1, request.id,
                        mask_coordinates(request.latitude, request.longitude),
                        extra={"service_request_id": request.id},
                    )
                    raise GeoMatcherUnavailable("Geo-Matcher unavailable, retry dispatch later") from exc
                logger.warning(
                    "Geo-Matcher attempt %d/%d failed for request=%s: %r. Retrying in %.2fs",
                    attempt + 1, self.matcher_retries + 1, request.id, exc, delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
        return []

    async def _existing_broadcast(self, request: ServiceRequest) -> DispatchResult:
        AppMetrics.idempotency_hit("dispatch")
        rows = await self.requests.list_notifications(request.id)
        pending = [
            Candidate(helper_id=n.helper_id, score=n.score)
            for n in rows
            if n.status == NotificationStatus.PENDING
        ]
        return DispatchResult(request=request, candidates=pending, already_broadcasting=True)

    async def _report_no_candidates(self, request: ServiceRequest, now: datetime) -> None:
        logger.info(
            "No helper available: request=%s category=%s location=%s",
            request.id, request.category,
            mask_coordinates(request.latitude, request.longitude),
            extra={"service_request_id": request.id},
        )
        try:
            await self.outbox.enqueue([ev.no_helper_available(request.id, request.customer_id, now)])
        except Exception:
            logger.error("Failed to enqueue no_helper_available for request=%s", request.id, exc_info=True)


def _is_broadcasting(request: ServiceRequest) -> bool:
    return request.status == RequestStatus.OPEN and request.broadcast_status == BroadcastStatus.BROADCASTING


def _dedupe(ranked: list[Candidate], limit: int) -> list[Candidate]:
    seen: set[str] = set()
    result: list[Candidate] = []
    for candidate in ranked:
        if candidate.helper_id in seen:
            continue
        seen.add(candidate.helper_id)
        result.append(candidate)
        if len(result) >= limit:
            break
    return result
