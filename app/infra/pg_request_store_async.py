# app/infra/pg_request_store_async.py
"""
Async PostgreSQL request store (asyncpg).

Every state change is a guarded UPDATE whose WHERE clause carries the
precondition, run in one transaction together with its outbox rows.
A guard that matches zero rows means another writer got there first;
nothing is written and the caller gets ``None`` (or a rejection code).
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Sequence

from app.core.dispatch.domain import (
    AcceptOutcomeCode,
    BroadcastNotification,
    BroadcastStatus,
    Candidate,
    ExpiredBroadcast,
    ExpiredOffer,
    HelperProfile,
    NotificationStatus,
    RepairReport,
    RequestStatus,
    ServiceRequest,
    SweepResult,
)
from app.core.dispatch.ports import AsyncRequestStore
from app.core.dispatch.sweeper import sweep_events
from app.core.notifications.events import NotificationEvent
from app.infra.db_resilience_async import retry_on_transient_error, rows_affected, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics
from app.infra.pg_job_repo_async import insert_events

logger = get_logger(__name__)

# Columns a transition may set besides status/updated_at
_TRANSITION_COLUMNS = frozenset({
    "assigned_helper_id",
    "broadcast_status",
    "broadcast_expires_at",
    "helper_accepted_at",
    "work_started_at",
    "work_completed_at",
    "cancelled_at",
    "cancellation_reason",
})

# Helpers released by reconciliation must have been idle this long
_STALE_ON_JOB_SECONDS = 300


class _GuardMissed(Exception):
    """Internal: roll back the current transaction; args[0] names the guard."""


def _as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return None


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, (RequestStatus, BroadcastStatus, NotificationStatus)) else value


def _row_to_request(row) -> ServiceRequest:
    return ServiceRequest(
        id=str(row["id"]),
        customer_id=row["customer_id"],
        category=row["category"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        estimated_price=row["estimated_price"],
        status=RequestStatus(row["status"]),
        broadcast_status=BroadcastStatus(row["broadcast_status"]),
        assigned_helper_id=row["assigned_helper_id"],
        address=row["address"],
        broadcast_expires_at=row["broadcast_expires_at"],
        start_otp=row["start_otp"],
        end_otp=row["end_otp"],
        cancellation_reason=row["cancellation_reason"],
        created_at=row["created_at"],
        helper_accepted_at=row["helper_accepted_at"],
        work_started_at=row["work_started_at"],
        work_completed_at=row["work_completed_at"],
        cancelled_at=row["cancelled_at"],
    )


def _row_to_notification(row) -> BroadcastNotification:
    return BroadcastNotification(
        request_id=str(row["request_id"]),
        helper_id=row["helper_id"],
        status=NotificationStatus(row["status"]),
        score=row["score"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        responded_at=row["responded_at"],
    )


class AsyncPostgresRequestStore(AsyncRequestStore):
    """Async PostgreSQL implementation of AsyncRequestStore using asyncpg."""

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def create(self, request: ServiceRequest) -> ServiceRequest:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO service_requests (
                    id, customer_id, category, latitude, longitude, address,
                    estimated_price, status, broadcast_status, start_otp, end_otp, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, COALESCE($12, now()))
                RETURNING *
                """,
                uuid.UUID(request.id),
                request.customer_id,
                request.category,
                request.latitude,
                request.longitude,
                request.address,
                request.estimated_price,
                request.status.value,
                request.broadcast_status.value,
                request.start_otp,
                request.end_otp,
                request.created_at,
            )
            return _row_to_request(row)

    @retry_on_transient_error(max_retries=2)
    async def get(self, request_id: str) -> ServiceRequest | None:
        rid = _as_uuid(request_id)
        if rid is None:
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM service_requests WHERE id = $1", rid)
            return _row_to_request(row) if row else None

    async def get_helper(self, helper_id: str) -> HelperProfile | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM helper_profiles WHERE helper_id = $1", helper_id)
            if row is None:
                return None
            return HelperProfile(
                helper_id=row["helper_id"],
                is_on_job=row["is_on_job"],
                current_latitude=row["current_latitude"],
                current_longitude=row["current_longitude"],
                location_updated_at=row["location_updated_at"],
            )

    async def list_notifications(self, request_id: str) -> list[BroadcastNotification]:
        rid = _as_uuid(request_id)
        if rid is None:
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM broadcast_notifications WHERE request_id = $1 ORDER BY score DESC, helper_id",
                rid,
            )
            return [_row_to_notification(r) for r in rows]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def start_broadcast(
        self,
        request_id: str,
        candidates: Sequence[Candidate],
        *,
        now: datetime,
        expires_at: datetime,
        events: Sequence[NotificationEvent],
    ) -> ServiceRequest | None:
        rid = _as_uuid(request_id)
        if rid is None:
            return None
        try:
            async with safe_db_conn(autocommit=False) as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE service_requests
                    SET broadcast_status = 'broadcasting',
                        broadcast_expires_at = $2,
                        updated_at = $3
                    WHERE id = $1
                      AND status = 'open'
                      AND assigned_helper_id IS NULL
                      AND broadcast_status IN ('none', 'expired')
                    RETURNING *
                    """,
                    rid, expires_at, now,
                )
                if row is None:
                    return None

                # Accepted rows from an overridden assignment end with the old round
                await conn.execute(
                    """
                    UPDATE broadcast_notifications
                    SET status = 'expired', responded_at = COALESCE(responded_at, $2)
                    WHERE request_id = $1 AND status = 'accepted'
                    """,
                    rid, now,
                )
                await conn.executemany(
                    """
                    INSERT INTO broadcast_notifications
                        (request_id, helper_id, score, status, created_at, expires_at)
                    VALUES ($1, $2, $3, 'pending', $4, $5)
                    ON CONFLICT (request_id, helper_id) DO UPDATE
                    SET status = 'pending',
                        score = EXCLUDED.score,
                        created_at = EXCLUDED.created_at,
                        expires_at = EXCLUDED.expires_at,
                        responded_at = NULL
                    """,
                    [(rid, c.helper_id, float(c.score), now, expires_at) for c in candidates],
                )
                await insert_events(conn, events)
                return _row_to_request(row)

        except Exception:
            logger.error(f"Failed to start broadcast: request={request_id}", exc_info=True)
            AppMetrics.database_error("start_broadcast")
            raise

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    async def try_assign(
        self,
        request_id: str,
        helper_id: str,
        *,
        now: datetime,
        events: Sequence[NotificationEvent],
    ) -> tuple[AcceptOutcomeCode, ServiceRequest | None]:
        """
        Helper row is always locked before the request row, so concurrent
        accepts cannot deadlock. A second accept for the same helper waits
        on the helper row and then fails the ``is_on_job = false`` guard.
        """
        rid = _as_uuid(request_id)
        if rid is None:
            return AcceptOutcomeCode.REQUEST_NOT_FOUND, None

        try:
            async with safe_db_conn(autocommit=False) as conn:
                claimed = await conn.fetchval(
                    """
                    UPDATE helper_profiles
                    SET is_on_job = true, updated_at = $2
                    WHERE helper_id = $1 AND is_on_job = false
                    RETURNING helper_id
                    """,
                    helper_id, now,
                )
                if claimed is None:
                    raise _GuardMissed("helper")

                row = await conn.fetchrow(
                    """
                    UPDATE service_requests
                    SET assigned_helper_id = $2,
                        status = 'assigned',
                        broadcast_status = 'accepted',
                        helper_accepted_at = $3,
                        updated_at = $3
                    WHERE id = $1
                      AND status = 'open'
                      AND assigned_helper_id IS NULL
                      AND broadcast_status = 'broadcasting'
                      AND (broadcast_expires_at IS NULL OR broadcast_expires_at > $3)
                    RETURNING *
                    """,
                    rid, helper_id, now,
                )
                if row is None:
                    raise _GuardMissed("request")

                await insert_events(conn, events)

        except _GuardMissed as miss:
            return await self._rejection(rid, helper_id, miss.args[0])
        except Exception:
            logger.error(f"try_assign failed: request={request_id} helper={helper_id}", exc_info=True)
            AppMetrics.database_error("try_assign")
            raise

        return AcceptOutcomeCode.ASSIGNED_OK, _row_to_request(row)

    async def _rejection(
        self, rid: uuid.UUID, helper_id: str, guard: str,
    ) -> tuple[AcceptOutcomeCode, ServiceRequest | None]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM service_requests WHERE id = $1", rid)
            request = _row_to_request(row) if row else None

            if guard == "helper":
                on_job = await conn.fetchval(
                    "SELECT is_on_job FROM helper_profiles WHERE helper_id = $1", helper_id,
                )
                if on_job is None:
                    return AcceptOutcomeCode.NOT_AVAILABLE, request
                return AcceptOutcomeCode.ALREADY_ON_JOB, request

        if request is None:
            return AcceptOutcomeCode.REQUEST_NOT_FOUND, None
        if request.assigned_helper_id is not None:
            return AcceptOutcomeCode.ALREADY_ASSIGNED, request
        return AcceptOutcomeCode.NOT_AVAILABLE, request

    async def settle_broadcast(self, request_id: str, winner_helper_id: str, *, now: datetime) -> list[str]:
        rid = _as_uuid(request_id)
        if rid is None:
            return []
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute(
                """
                UPDATE broadcast_notifications
                SET status = 'accepted', responded_at = $3
                WHERE request_id = $1 AND helper_id = $2 AND status <> 'accepted'
                  AND EXISTS (
                      SELECT 1 FROM service_requests
                      WHERE id = $1 AND assigned_helper_id = $2
                  )
                """,
                rid, winner_helper_id, now,
            )
            rows = await conn.fetch(
                """
                UPDATE broadcast_notifications
                SET status = 'expired', responded_at = $3
                WHERE request_id = $1 AND helper_id <> $2 AND status = 'pending'
                  AND EXISTS (
                      SELECT 1 FROM service_requests
                      WHERE id = $1 AND assigned_helper_id = $2
                  )
                RETURNING helper_id
                """,
                rid, winner_helper_id, now,
            )
            return [r["helper_id"] for r in rows]

    async def expire_accepted(self, request_id: str, helper_id: str, *, now: datetime) -> bool:
        rid = _as_uuid(request_id)
        if rid is None:
            return False
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE broadcast_notifications bn
                SET status = 'expired', responded_at = $3
                FROM service_requests sr
                WHERE bn.request_id = $1 AND bn.helper_id = $2 AND bn.status = 'accepted'
                  AND sr.id = bn.request_id
                  AND sr.assigned_helper_id IS DISTINCT FROM bn.helper_id
                """,
                rid, helper_id, now,
            )
            return rows_affected(result) == 1

    async def expire_pending(self, request_id: str, *, now: datetime) -> list[str]:
        rid = _as_uuid(request_id)
        if rid is None:
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                UPDATE broadcast_notifications
                SET status = 'expired', responded_at = $2
                WHERE request_id = $1 AND status = 'pending'
                RETURNING helper_id
                """,
                rid, now,
            )
            return [r["helper_id"] for r in rows]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

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
        rid = _as_uuid(request_id)
        if rid is None:
            return None

        changes = dict(changes or {})
        unknown = set(changes) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported transition columns: {sorted(unknown)}")

        params: list[Any] = [rid, [s.value for s in from_statuses], to_status.value, now]
        assignments = ["status = $3", "updated_at = $4"]
        for column, value in changes.items():
            params.append(_db_value(value))
            assignments.append(f"{column} = ${len(params)}")

        guards = ["id = $1", "status = ANY($2::text[])"]
        if expected_helper_id is not None:
            params.append(expected_helper_id)
            guards.append(f"assigned_helper_id = ${len(params)}")
        if expected_broadcast_status is not None:
            params.append(expected_broadcast_status.value)
            guards.append(f"broadcast_status = ${len(params)}")

        sql = (
            f"UPDATE service_requests SET {', '.join(assignments)} "
            f"WHERE {' AND '.join(guards)} RETURNING *"
        )

        try:
            async with safe_db_conn(autocommit=False) as conn:
                row = await conn.fetchrow(sql, *params)
                if row is None:
                    return None
                await insert_events(conn, events)
                return _row_to_request(row)
        except Exception:
            logger.error(
                f"Transition failed: request={request_id} -> {to_status.value}", exc_info=True,
            )
            AppMetrics.database_error("transition")
            raise

    async def set_helper_on_job(self, helper_id: str, on_job: bool) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE helper_profiles SET is_on_job = $2, updated_at = now() WHERE helper_id = $1",
                helper_id, on_job,
            )

    # ------------------------------------------------------------------
    # Sweep and repair
    # ------------------------------------------------------------------

    async def expire_stale(self, now: datetime) -> SweepResult:
        async with safe_db_conn(autocommit=False) as conn:
            offer_rows = await conn.fetch(
                """
                UPDATE broadcast_notifications bn
                SET status = 'expired', responded_at = $1
                FROM service_requests sr
                WHERE bn.request_id = sr.id
                  AND bn.status = 'pending'
                  AND bn.expires_at <= $1
                  AND sr.status = 'open'
                  AND sr.broadcast_status = 'broadcasting'
                RETURNING bn.request_id, bn.helper_id, sr.broadcast_expires_at
                """,
                now,
            )
            request_rows = await conn.fetch(
                """
                UPDATE service_requests sr
                SET broadcast_status = 'expired', updated_at = $1
                WHERE sr.status = 'open'
                  AND sr.broadcast_status = 'broadcasting'
                  AND sr.assigned_helper_id IS NULL
                  AND sr.broadcast_expires_at <= $1
                  AND NOT EXISTS (
                      SELECT 1 FROM broadcast_notifications bn
                      WHERE bn.request_id = sr.id AND bn.status = 'pending'
                  )
                RETURNING sr.id, sr.customer_id, sr.broadcast_expires_at
                """,
                now,
            )

            result = SweepResult(
                expired_offers=[
                    ExpiredOffer(str(r["request_id"]), r["helper_id"], r["broadcast_expires_at"])
                    for r in offer_rows
                ],
                expired_broadcasts=[
                    ExpiredBroadcast(str(r["id"]), r["customer_id"], r["broadcast_expires_at"])
                    for r in request_rows
                ],
            )
            await insert_events(conn, sweep_events(result))
            return result

    async def repair_broadcasts(self) -> RepairReport:
        async with safe_db_conn(autocommit=False) as conn:
            expired = await conn.execute(
                """
                UPDATE broadcast_notifications bn
                SET status = 'expired', responded_at = COALESCE(bn.responded_at, now())
                FROM service_requests sr
                WHERE bn.request_id = sr.id
                  AND (
                      (sr.assigned_helper_id IS NOT NULL
                       AND bn.helper_id <> sr.assigned_helper_id
                       AND bn.status IN ('pending', 'accepted'))
                      OR (sr.assigned_helper_id IS NULL AND bn.status = 'accepted')
                  )
                """
            )
            accepted = await conn.execute(
                """
                UPDATE broadcast_notifications bn
                SET status = 'accepted', responded_at = COALESCE(sr.helper_accepted_at, now())
                FROM service_requests sr
                WHERE bn.request_id = sr.id
                  AND bn.helper_id = sr.assigned_helper_id
                  AND bn.status <> 'accepted'
                """
            )
            on_job = await conn.execute(
                """
                UPDATE helper_profiles hp
                SET is_on_job = true, updated_at = now()
                FROM service_requests sr
                WHERE sr.assigned_helper_id = hp.helper_id
                  AND sr.status IN ('assigned', 'in_progress')
                  AND hp.is_on_job = false
                """
            )
            released = await conn.execute(
                """
                UPDATE helper_profiles hp
                SET is_on_job = false, updated_at = now()
                WHERE hp.is_on_job = true
                  AND hp.updated_at < now() - make_interval(secs => $1)
                  AND NOT EXISTS (
                      SELECT 1 FROM service_requests sr
                      WHERE sr.assigned_helper_id = hp.helper_id
                        AND sr.status IN ('assigned', 'in_progress')
                  )
                """,
                _STALE_ON_JOB_SECONDS,
            )
            return RepairReport(
                notifications_accepted=rows_affected(accepted),
                notifications_expired=rows_affected(expired),
                helpers_marked_on_job=rows_affected(on_job),
                helpers_released=rows_affected(released),
            )


# Global singleton
_request_store: AsyncPostgresRequestStore | None = None


def get_request_store() -> AsyncPostgresRequestStore:
    global _request_store
    if _request_store is None:
        _request_store = AsyncPostgresRequestStore()
    return _request_store
