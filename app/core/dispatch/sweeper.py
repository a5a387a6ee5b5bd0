# app/core/dispatch/sweeper.py
"""
Broadcast expiry sweep.

Only flips ``pending -> expired`` rows past their deadline whose request is
still broadcasting, and ``broadcasting -> expired`` requests left with no
pending offer and no helper. Both writes are guarded, so concurrent sweeps
from several instances are harmless.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from app.core.dispatch.domain import SweepResult
from app.core.dispatch.ports import AsyncRequestStore
from app.core.notifications import events as ev
from app.core.notifications.events import NotificationEvent
from app.infra.metrics import inc_counter

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BroadcastSweeper:
    def __init__(self, *, requests: AsyncRequestStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self.requests = requests
        self._now = clock

    async def expire_stale(self, now: datetime | None = None) -> SweepResult:
        result = await self.requests.expire_stale(now or self._now())

        if result.expired_offers:
            inc_counter("sweep_offers_expired_total", len(result.expired_offers))
        if result.expired_broadcasts:
            inc_counter("sweep_broadcasts_expired_total", len(result.expired_broadcasts))
            logger.info(
                "Sweep: %d offers expired, %d broadcasts ended without a helper (%s)",
                len(result.expired_offers),
                len(result.expired_broadcasts),
                ", ".join(b.request_id for b in result.expired_broadcasts[:10]),
            )
        elif result.expired_offers:
            logger.debug("Sweep: %d offers expired", len(result.expired_offers))
        return result


def sweep_events(result: SweepResult) -> list[NotificationEvent]:
    """Outbox events for one sweep, written in the sweep's transaction."""
    events = [
        ev.broadcast_expired(o.request_id, o.helper_id, o.broadcast_expires_at)
        for o in result.expired_offers
    ]
    events.extend(
        ev.no_helper_available(b.request_id, b.customer_id, b.broadcast_expires_at)
        for b in result.expired_broadcasts
    )
    return events
