# app/core/notifications/fanout.py
"""
Deliver one outbox event: in-app record plus push to the recipient's
active devices.

Idempotent per ``NotificationEvent.idempotency_key``: a recorded delivery
is never pushed again. When every push attempt fails the call raises so
the job queue retries with backoff; the in-app insert is itself
idempotent, so a retry does not duplicate it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.notifications.events import NotificationEvent
from app.core.notifications.ports import AsyncNotificationRepository, PushTransport
from app.infra.metrics import AppMetrics

logger = logging.getLogger(__name__)


class PushDeliveryError(RuntimeError):
    """All push attempts for an event failed; the job should be retried."""


@dataclass
class DeliveryResult:
    status: str  # delivered | duplicate | in_app_only
    push_attempted: int = 0
    push_sent: int = 0


class NotificationFanout:
    def __init__(
        self,
        *,
        repository: AsyncNotificationRepository,
        push: PushTransport | None = None,
    ) -> None:
        self.repository = repository
        self.push = push

    async def deliver(self, event: NotificationEvent) -> DeliveryResult:
        event_type = event.event_type.value

        if await self.repository.was_delivered(event):
            AppMetrics.notification("duplicate", event_type)
            logger.debug("Notification already delivered: %s", event.idempotency_key)
            return DeliveryResult(status="duplicate")

        title, body = event.render()
        await self.repository.save_in_app(event, title, body)

        tokens = await self.repository.active_device_tokens(event.recipient_id) if self.push else []
        sent = 0
        for token in tokens:
            try:
                ok = await self.push.send(token, _push_payload(event, title, body))
            except Exception:
                logger.warning(
                    "Push transport error: event=%s recipient=%s",
                    event_type, event.recipient_id, exc_info=True,
                )
                ok = False
            if ok:
                sent += 1

        if tokens and sent == 0:
            AppMetrics.notification("push_failed", event_type)
            raise PushDeliveryError(
                f"Push failed for all {len(tokens)} devices: {event.idempotency_key}"
            )

        first = await self.repository.mark_delivered(event, sent)
        if not first:
            AppMetrics.notification("duplicate", event_type)
            return DeliveryResult(status="duplicate", push_attempted=len(tokens), push_sent=sent)

        status = "delivered" if tokens else "in_app_only"
        AppMetrics.notification(status, event_type)
        logger.info(
            "Notification %s: event=%s request=%s recipient=%s push=%d/%d",
            status, event_type, event.request_id, event.recipient_id, sent, len(tokens),
            extra={"service_request_id": event.request_id},
        )
        return DeliveryResult(status=status, push_attempted=len(tokens), push_sent=sent)


def _push_payload(event: NotificationEvent, title: str, body: str) -> dict:
    return {
        "notification": {"title": title, "body": body},
        "data": {
            "event_type": event.event_type.value,
            "request_id": event.request_id,
            **{k: str(v) for k, v in event.data.items()},
        },
    }
