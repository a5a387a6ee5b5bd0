# app/core/notifications/events.py
"""
Notification events written to the outbox.

An event is addressed to exactly one recipient. Delivery is idempotent per
(request_id, event_type, recipient_id, round_key); ``round_key`` separates
broadcast rounds so a re-dispatched request can offer the same helper again.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventType(str, Enum):
    JOB_OFFERED = "job_offered"
    JOB_ACCEPTED = "job_accepted"
    JOB_TAKEN = "job_taken"
    BROADCAST_EXPIRED = "broadcast_expired"
    NO_HELPER_AVAILABLE = "no_helper_available"
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    JOB_CANCELLED = "job_cancelled"
    ESCROW_FUNDED = "escrow_funded"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REFUNDED = "escrow_refunded"


# Short fixed copy per event; message templating is handled elsewhere.
EVENT_COPY: dict[EventType, tuple[str, str]] = {
    EventType.JOB_OFFERED: ("New job nearby", "A new {category} request is available."),
    EventType.JOB_ACCEPTED: ("Helper assigned", "A helper has accepted your request."),
    EventType.JOB_TAKEN: ("Job taken", "This job was accepted by another helper."),
    EventType.BROADCAST_EXPIRED: ("Offer expired", "This job offer has expired."),
    EventType.NO_HELPER_AVAILABLE: ("No helper available", "No helper is available right now."),
    EventType.JOB_STARTED: ("Work started", "Your helper has started the job."),
    EventType.JOB_COMPLETED: ("Work completed", "The job has been marked complete."),
    EventType.JOB_CANCELLED: ("Job cancelled", "The request has been cancelled."),
    EventType.ESCROW_FUNDED: ("Payment secured", "Payment for the job is held in escrow."),
    EventType.ESCROW_RELEASED: ("Payment released", "Escrow payment has been settled."),
    EventType.ESCROW_REFUNDED: ("Payment refunded", "Your payment has been refunded."),
}


def _round(value: datetime | None) -> str:
    return value.isoformat() if value else ""


@dataclass(frozen=True)
class NotificationEvent:
    event_type: EventType
    request_id: str
    recipient_id: str
    data: dict[str, Any] = field(default_factory=dict)
    round_key: str = ""

    @property
    def idempotency_key(self) -> str:
        return f"{self.request_id}:{self.event_type.value}:{self.recipient_id}:{self.round_key}"

    def render(self) -> tuple[str, str]:
        title, body = EVENT_COPY[self.event_type]
        try:
            return title, body.format(**self.data)
        except (KeyError, IndexError):
            return title, body

    def to_payload(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "request_id": self.request_id,
            "recipient_id": self.recipient_id,
            "data": self.data,
            "round_key": self.round_key,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "NotificationEvent":
        return cls(
            event_type=EventType(payload["event_type"]),
            request_id=payload["request_id"],
            recipient_id=payload["recipient_id"],
            data=dict(payload.get("data") or {}),
            round_key=payload.get("round_key", ""),
        )


# --- Builders ---------------------------------------------------------------

def job_offered(request_id: str, helper_id: str, *, category: str, score: float,
                expires_at: datetime | None) -> NotificationEvent:
    return NotificationEvent(
        EventType.JOB_OFFERED, request_id, helper_id,
        data={
            "category": category,
            "score": score,
            "expires_at": _round(expires_at),
        },
        round_key=_round(expires_at),
    )


def job_accepted(request_id: str, customer_id: str, helper_id: str) -> NotificationEvent:
    return NotificationEvent(
        EventType.JOB_ACCEPTED, request_id, customer_id,
        data={"helper_id": helper_id},
    )


def job_taken(request_id: str, helper_id: str) -> NotificationEvent:
    return NotificationEvent(EventType.JOB_TAKEN, request_id, helper_id)


def broadcast_expired(request_id: str, helper_id: str,
                      broadcast_expires_at: datetime | None) -> NotificationEvent:
    return NotificationEvent(
        EventType.BROADCAST_EXPIRED, request_id, helper_id,
        round_key=_round(broadcast_expires_at),
    )


def no_helper_available(request_id: str, customer_id: str,
                        round_at: datetime | None) -> NotificationEvent:
    return NotificationEvent(
        EventType.NO_HELPER_AVAILABLE, request_id, customer_id,
        round_key=_round(round_at),
    )


def job_started(request_id: str, customer_id: str) -> NotificationEvent:
    return NotificationEvent(EventType.JOB_STARTED, request_id, customer_id)


def job_completed(request_id: str, recipient_id: str) -> NotificationEvent:
    return NotificationEvent(EventType.JOB_COMPLETED, request_id, recipient_id)


def job_cancelled(request_id: str, recipient_id: str, reason: str | None) -> NotificationEvent:
    return NotificationEvent(
        EventType.JOB_CANCELLED, request_id, recipient_id,
        data={"reason": reason or ""},
    )


def escrow_funded(request_id: str, recipient_id: str, amount: int) -> NotificationEvent:
    return NotificationEvent(
        EventType.ESCROW_FUNDED, request_id, recipient_id, data={"amount": amount},
    )


def escrow_released(request_id: str, recipient_id: str, amount: int) -> NotificationEvent:
    return NotificationEvent(
        EventType.ESCROW_RELEASED, request_id, recipient_id, data={"amount": amount},
    )


def escrow_refunded(request_id: str, recipient_id: str, amount: int) -> NotificationEvent:
    return NotificationEvent(
        EventType.ESCROW_REFUNDED, request_id, recipient_id, data={"amount": amount},
    )
