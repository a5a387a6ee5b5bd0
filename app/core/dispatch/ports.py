# app/core/dispatch/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Protocol, Sequence

from app.core.dispatch.domain import (
    AcceptOutcomeCode,
    BroadcastNotification,
    BroadcastStatus,
    Candidate,
    Coordinates,
    HelperProfile,
    RepairReport,
    RequestStatus,
    ServiceRequest,
    SweepResult,
)
from app.core.notifications.events import NotificationEvent


class AsyncRequestStore(Protocol):
    """
    Durable store for ServiceRequest, BroadcastNotification and helper state.

    Every mutating method is one transaction whose guard and write are a
    single conditional statement; ``events`` are written to the outbox in
    the same transaction and only if the guard held.
    """

    async def create(self, request: ServiceRequest) -> ServiceRequest: ...

    async def get(self, request_id: str) -> ServiceRequest | None: ...

    async def get_helper(self, helper_id: str) -> HelperProfile | None: ...

    async def list_notifications(self, request_id: str) -> list[BroadcastNotification]: ...

    async def start_broadcast(
        self,
        request_id: str,
        candidates: Sequence[Candidate],
        *,
        now: datetime,
        expires_at: datetime,
        events: Sequence[NotificationEvent],
    ) -> ServiceRequest | None:
        """
        Flip ``open`` + ``broadcast_status in (none, expired)`` to
        ``broadcasting`` and upsert one pending row per candidate.
        None => guard missed, nothing written.
        """
        ...

    async def try_assign(
        self,
        request_id: str,
        helper_id: str,
        *,
        now: datetime,
        events: Sequence[NotificationEvent],
    ) -> tuple[AcceptOutcomeCode, ServiceRequest | None]:
        """
        Claim the helper (``is_on_job`` false -> true) and the request
        (``assigned_helper_id IS NULL AND broadcast_status = broadcasting``)
        in one transaction. Either guard missing rolls back both.
        """
        ...

    async def settle_broadcast(self, request_id: str, winner_helper_id: str, *, now: datetime) -> list[str]:
        """Winner row -> accepted, pending siblings -> expired. Returns expired helper ids."""
        ...

    async def expire_pending(self, request_id: str, *, now: datetime) -> list[str]: ...

    async def expire_accepted(self, request_id: str, helper_id: str, *, now: datetime) -> bool:
        """Expire a stale ``accepted`` row whose helper no longer holds the request."""
        ...

    async def transition(
        self,
        request_id: str,
        *,
        from_statuses: Sequence[RequestStatus],
        to_status: RequestStatus,
        now: datetime,
        expected_helper_id: str | None = None,
        expected_broadcast_status: BroadcastStatus | None = None,
        changes: dict[str, Any] | None = None,
        events: Sequence[NotificationEvent] = (),
    ) -> ServiceRequest | None:
        """
        Guarded status update: ``status IN from_statuses`` plus the optional
        helper / broadcast-status guards. None => guard missed.
        """
        ...

    async def set_helper_on_job(self, helper_id: str, on_job: bool) -> None: ...

    async def expire_stale(self, now: datetime) -> SweepResult: ...

    async def repair_broadcasts(self) -> RepairReport: ...


class AsyncOutbox(Protocol):
    async def enqueue(self, events: Sequence[NotificationEvent]) -> int: ...


class GeoMatcher(Protocol):
    async def rank(
        self,
        category: str,
        coordinates: Coordinates,
        max_candidates: int,
        max_radius_km: float,
    ) -> list[Candidate]: ...
