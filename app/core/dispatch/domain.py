# app/core/dispatch/domain.py
"""
Dispatch domain types.

ServiceRequest is the single serialization point for the assignment
decision; BroadcastNotification rows are the per-candidate fan-out of one
broadcast round.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class RequestStatus(str, Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BroadcastStatus(str, Enum):
    NONE = "none"
    BROADCASTING = "broadcasting"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    HELPER = "helper"
    ADMIN = "admin"
    SYSTEM = "system"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED})
ASSIGNED_STATUSES = frozenset({
    RequestStatus.ASSIGNED,
    RequestStatus.IN_PROGRESS,
    RequestStatus.COMPLETED,
})


@dataclass(frozen=True)
class Actor:
    """Principal performing an operation."""
    id: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == ActorRole.SYSTEM

    @classmethod
    def system(cls) -> "Actor":
        return cls(id="system", role=ActorRole.SYSTEM)


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass
class ServiceRequest:
    id: str
    customer_id: str
    category: str
    latitude: float
    longitude: float
    estimated_price: int
    status: RequestStatus = RequestStatus.OPEN
    broadcast_status: BroadcastStatus = BroadcastStatus.NONE
    assigned_helper_id: str | None = None
    address: str = ""
    broadcast_expires_at: datetime | None = None
    start_otp: str | None = None
    end_otp: str | None = None
    cancellation_reason: str | None = None
    created_at: datetime | None = None
    helper_accepted_at: datetime | None = None
    work_started_at: datetime | None = None
    work_completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.latitude, self.longitude)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class BroadcastNotification:
    request_id: str
    helper_id: str
    status: NotificationStatus = NotificationStatus.PENDING
    score: float = 0.0
    expires_at: datetime | None = None
    created_at: datetime | None = None
    responded_at: datetime | None = None


@dataclass
class HelperProfile:
    helper_id: str
    is_on_job: bool = False
    current_latitude: float | None = None
    current_longitude: float | None = None
    location_updated_at: datetime | None = None


@dataclass(frozen=True)
class Candidate:
    """One ranked helper returned by the Geo-Matcher."""
    helper_id: str
    score: float


class AcceptOutcomeCode(str, Enum):
    ASSIGNED_OK = "assigned_ok"
    ALREADY_ASSIGNED = "already_assigned"
    ALREADY_ON_JOB = "already_on_job"
    NOT_AVAILABLE = "not_available"
    REQUEST_NOT_FOUND = "request_not_found"


@dataclass
class AcceptOutcome:
    code: AcceptOutcomeCode
    request: ServiceRequest | None = None
    message: str = ""

    @property
    def accepted(self) -> bool:
        return self.code == AcceptOutcomeCode.ASSIGNED_OK


@dataclass
class DispatchResult:
    request: ServiceRequest
    candidates: list[Candidate] = field(default_factory=list)
    no_candidates: bool = False
    already_broadcasting: bool = False


@dataclass
class ExpiredOffer:
    request_id: str
    helper_id: str
    broadcast_expires_at: datetime | None = None


@dataclass
class ExpiredBroadcast:
    request_id: str
    customer_id: str
    broadcast_expires_at: datetime | None = None


@dataclass
class SweepResult:
    expired_offers: list[ExpiredOffer] = field(default_factory=list)
    expired_broadcasts: list[ExpiredBroadcast] = field(default_factory=list)


@dataclass
class RepairReport:
    notifications_accepted: int = 0
    notifications_expired: int = 0
    helpers_marked_on_job: int = 0
    helpers_released: int = 0

    @property
    def total(self) -> int:
        return (
            self.notifications_accepted
            + self.notifications_expired
            + self.helpers_marked_on_job
            + self.helpers_released
        )


def generate_otp() -> str:
    """6-digit numeric code for start/end verification."""
    return f"{secrets.randbelow(1_000_000):06d}"


def otp_matches(expected: str | None, supplied: str | None) -> bool:
    if not expected or not supplied:
        return False
    return secrets.compare_digest(expected.encode(), supplied.strip().encode())
