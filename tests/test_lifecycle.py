# tests/test_lifecycle.py
"""
Tests for the request lifecycle:
- creation defaults and OTPs
- start / complete with OTP verification
- cancellation authorisation matrix
- admin rebroadcast override
"""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from app.core.dispatch.domain import (
    Actor,
    ActorRole,
    BroadcastStatus,
    NotificationStatus,
    RequestStatus,
)
from app.core.dispatch.lifecycle import can_view
from app.core.errors import (
    InvalidAmount,
    InvalidOtp,
    InvalidTransition,
    NotAuthorized,
    RequestNotFound,
)
from app.core.escrow.domain import EscrowStatus
from conftest import CUSTOMER_ID, helper


class TestCreate:
    @pytest.mark.asyncio
    async def test_new_request_is_open(self, open_request, store):
        request = await open_request()

        assert request.status == RequestStatus.OPEN
        assert request.broadcast_status == BroadcastStatus.NONE
        assert request.assigned_helper_id is None
        assert request.customer_id == CUSTOMER_ID
        assert request.id in store.requests

    @pytest.mark.asyncio
    async def test_otps_are_six_digits_and_distinct_fields(self, open_request):
        request = await open_request()

        for otp in (request.start_otp, request.end_otp):
            assert len(otp) == 6
            assert otp.isdigit()

    @pytest.mark.asyncio
    async def test_negative_price_rejected(self, lifecycle):
        with pytest.raises(InvalidAmount):
            await lifecycle.create_request(
                customer_id=CUSTOMER_ID, category="plumbing",
                latitude=0.0, longitude=0.0, estimated_price=-1,
            )

    @pytest.mark.asyncio
    async def test_status_view_has_no_customer_details(self, broadcasting_request, lifecycle):
        request = await broadcasting_request()

        view = await lifecycle.get_status(request.id)

        assert view.status == RequestStatus.OPEN
        assert view.broadcast_status == BroadcastStatus.BROADCASTING
        assert not hasattr(view, "start_otp")
        assert not hasattr(view, "customer_id")

    @pytest.mark.asyncio
    async def test_missing_request(self, lifecycle):
        with pytest.raises(RequestNotFound):
            await lifecycle.get_status("nope")


class TestStartComplete:
    @pytest.mark.asyncio
    async def test_start_with_valid_otp(self, assigned_request, lifecycle, store):
        request = await assigned_request()

        started = await lifecycle.start(request.id, helper("helper-1"), otp=request.start_otp)

        assert started.status == RequestStatus.IN_PROGRESS
        assert started.work_started_at is not None
        [event] = store.events_of("job_started")
        assert event.recipient_id == CUSTOMER_ID

    @pytest.mark.asyncio
    async def test_start_with_wrong_otp(self, assigned_request, lifecycle, store):
        request = await assigned_request()
        wrong = "000000" if request.start_otp != "000000" else "111111"

        with pytest.raises(InvalidOtp):
            await lifecycle.start(request.id, helper("helper-1"), otp=wrong)

        assert store.requests[request.id].status == RequestStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_start_without_otp(self, assigned_request, lifecycle):
        request = await assigned_request()

        with pytest.raises(InvalidOtp):
            await lifecycle.start(request.id, helper("helper-1"))

    @pytest.mark.asyncio
    async def test_end_otp_does_not_start(self, assigned_request, lifecycle):
        request = await assigned_request()
        if request.end_otp == request.start_otp:
            pytest.skip("OTPs collided")

        with pytest.raises(InvalidOtp):
            await lifecycle.start(request.id, helper("helper-1"), otp=request.end_otp)

    @pytest.mark.asyncio
    async def test_other_helper_cannot_start(self, assigned_request, lifecycle):
        request = await assigned_request()

        with pytest.raises(NotAuthorized):
            await lifecycle.start(request.id, helper("helper-2"), otp=request.start_otp)

    @pytest.mark.asyncio
    async def test_customer_cannot_start(self, assigned_request, lifecycle, customer):
        request = await assigned_request()

        with pytest.raises(NotAuthorized):
            await lifecycle.start(request.id, customer, otp=request.start_otp)

    @pytest.mark.asyncio
    async def test_admin_starts_without_otp(self, assigned_request, lifecycle, admin):
        request = await assigned_request()

        started = await lifecycle.start(request.id, admin)

        assert started.status == RequestStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, assigned_request, lifecycle):
        request = await assigned_request()
        await lifecycle.start(request.id, helper("helper-1"), otp=request.start_otp)

        with pytest.raises(InvalidTransition):
            await lifecycle.start(request.id, helper("helper-1"), otp=request.start_otp)

    @pytest.mark.asyncio
    async def test_complete_frees_helper(self, assigned_request, lifecycle, store):
        request = await assigned_request()
        await lifecycle.start(request.id, helper("helper-1"), otp=request.start_otp)

        completed = await lifecycle.complete(request.id, helper("helper-1"), otp=request.end_otp)

        assert completed.status == RequestStatus.COMPLETED
        assert completed.work_completed_at is not None
        assert store.helpers["helper-1"].is_on_job is False
        recipients = sorted(e.recipient_id for e in store.events_of("job_completed"))
        assert recipients == sorted([CUSTOMER_ID, "helper-1"])

    @pytest.mark.asyncio
    async def test_complete_requires_in_progress(self, assigned_request, lifecycle):
        request = await assigned_request()

        with pytest.raises(InvalidTransition):
            await lifecycle.complete(request.id, helper("helper-1"), otp=request.end_otp)

    @pytest.mark.asyncio
    async def test_complete_with_wrong_otp(self, assigned_request, lifecycle, store):
        request = await assigned_request()
        await lifecycle.start(request.id, helper("helper-1"), otp=request.start_otp)
        wrong = "000000" if request.end_otp != "000000" else "111111"

        with pytest.raises(InvalidOtp):
            await lifecycle.complete(request.id, helper("helper-1"), otp=wrong)

        assert store.requests[request.id].status == RequestStatus.IN_PROGRESS
        assert store.helpers["helper-1"].is_on_job is True

    @pytest.mark.asyncio
    async def test_completed_helper_can_accept_again(self, assigned_request, broadcasting_request, lifecycle, arbiter):
        first = await assigned_request()
        await lifecycle.start(first.id, helper("helper-1"), otp=first.start_otp)
        await lifecycle.complete(first.id, helper("helper-1"), otp=first.end_otp)
        second = await broadcasting_request()

        outcome = await arbiter.accept_job(second.id, "helper-1")

        assert outcome.accepted

    @pytest.mark.asyncio
    async def test_complete_releases_funded_escrow(self, assigned_request, lifecycle, escrow_engine, customer, ledger):
        request = await assigned_request(price=10_000)
        await escrow_engine.fund(request.id, 10_000, "pay-complete", customer)
        await lifecycle.start(request.id, helper("helper-1"), otp=request.start_otp)

        await lifecycle.complete(request.id, helper("helper-1"), otp=request.end_otp)

        escrow = await ledger.get_escrow(request.id)
        assert escrow.status == EscrowStatus.RELEASED
        assert ledger.balance("helper-1") == 9_000


class TestCancel:
    @pytest.mark.asyncio
    async def test_customer_cancels_broadcast(self, broadcasting_request, lifecycle, customer, store):
        request = await broadcasting_request()

        cancelled = await lifecycle.cancel(request.id, customer, reason="found someone")

        assert cancelled.status == RequestStatus.CANCELLED
        assert cancelled.broadcast_status == BroadcastStatus.EXPIRED
        assert cancelled.cancellation_reason == "found someone"
        assert cancelled.cancelled_at is not None
        assert all(n.status == NotificationStatus.EXPIRED for n in store.rows_for(request.id))

    @pytest.mark.asyncio
    async def test_customer_cancels_assigned(self, assigned_request, lifecycle, customer, store):
        request = await assigned_request()

        cancelled = await lifecycle.cancel(request.id, customer)

        assert cancelled.status == RequestStatus.CANCELLED
        assert cancelled.assigned_helper_id == "helper-1"
        assert store.helpers["helper-1"].is_on_job is False
        recipients = sorted(e.recipient_id for e in store.events_of("job_cancelled"))
        assert recipients == sorted([CUSTOMER_ID, "helper-1"])

    @pytest.mark.asyncio
    async def test_customer_cannot_cancel_in_progress(self, assigned_request, lifecycle, customer):
        request = await assigned_request()
        await lifecycle.start(request.id, helper("helper-1"), otp=request.start_otp)

        with pytest.raises(InvalidTransition):
            await lifecycle.cancel(request.id, customer)

    @pytest.mark.asyncio
    async def test_admin_cancels_in_progress(self, assigned_request, lifecycle, admin, store):
        request = await assigned_request()
        await lifecycle.start(request.id, helper("helper-1"), otp=request.start_otp)

        cancelled = await lifecycle.cancel(request.id, admin, reason="dispute")

        assert cancelled.status == RequestStatus.CANCELLED
        assert store.helpers["helper-1"].is_on_job is False

    @pytest.mark.asyncio
    async def test_other_customer_cannot_cancel(self, open_request, lifecycle, other_customer):
        request = await open_request()

        with pytest.raises(NotAuthorized):
            await lifecycle.cancel(request.id, other_customer)

    @pytest.mark.asyncio
    async def test_helper_cannot_cancel(self, assigned_request, lifecycle):
        request = await assigned_request()

        with pytest.raises(NotAuthorized):
            await lifecycle.cancel(request.id, helper("helper-1"))

    @pytest.mark.asyncio
    async def test_completed_is_terminal(self, assigned_request, lifecycle, admin):
        request = await assigned_request()
        await lifecycle.start(request.id, admin)
        await lifecycle.complete(request.id, admin)

        with pytest.raises(InvalidTransition):
            await lifecycle.cancel(request.id, admin)

    @pytest.mark.asyncio
    async def test_cancel_refunds_funded_escrow(self, assigned_request, lifecycle, escrow_engine, customer, ledger):
        request = await assigned_request(price=10_000)
        await escrow_engine.fund(request.id, 10_000, "pay-cancel", customer)

        await lifecycle.cancel(request.id, customer)

        escrow = await ledger.get_escrow(request.id)
        assert escrow.status == EscrowStatus.REFUNDED
        assert ledger.balance(CUSTOMER_ID) == 10_000

    @pytest.mark.asyncio
    async def test_cancel_without_escrow(self, open_request, lifecycle, customer):
        request = await open_request()

        cancelled = await lifecycle.cancel(request.id, customer)

        assert cancelled.status == RequestStatus.CANCELLED


class TestReleaseAssignment:
    @pytest.mark.asyncio
    async def test_admin_reopens_assignment(self, assigned_request, lifecycle, admin, store):
        request = await assigned_request()

        reopened = await lifecycle.release_assignment(request.id, admin)

        assert reopened.status == RequestStatus.OPEN
        assert reopened.broadcast_status == BroadcastStatus.NONE
        assert reopened.assigned_helper_id is None
        assert store.helpers["helper-1"].is_on_job is False

    @pytest.mark.asyncio
    async def test_rebroadcast_offers_new_round(self, assigned_request, lifecycle, dispatcher, arbiter, admin, store):
        request = await assigned_request()
        await lifecycle.release_assignment(request.id, admin)

        result = await dispatcher.dispatch(request.id)
        outcome = await arbiter.accept_job(request.id, "helper-2")

        assert result.request.broadcast_status == BroadcastStatus.BROADCASTING
        assert outcome.accepted
        statuses = {n.helper_id: n.status for n in store.rows_for(request.id)}
        assert statuses["helper-2"] == NotificationStatus.ACCEPTED
        assert statuses["helper-1"] == NotificationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_previous_acceptance_expired(self, assigned_request, lifecycle, admin, store):
        request = await assigned_request()

        await lifecycle.release_assignment(request.id, admin)

        assert store.notifications[(request.id, "helper-1")].status == NotificationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_no_candidates_leaves_no_accepted_row(
        self, assigned_request, lifecycle, dispatcher, matcher, reconciler, admin, store
    ):
        request = await assigned_request()
        await lifecycle.release_assignment(request.id, admin)
        matcher.candidates = []

        result = await dispatcher.dispatch(request.id)
        report = await reconciler.repair_broadcasts()

        assert result.no_candidates
        assert not any(n.status == NotificationStatus.ACCEPTED for n in store.rows_for(request.id))
        assert report.notifications_expired == 0

    @pytest.mark.asyncio
    async def test_reopen_survives_expiry_failure(self, assigned_request, lifecycle, admin, store):
        request = await assigned_request()
        store.expire_accepted = AsyncMock(side_effect=ConnectionError("db down"))

        reopened = await lifecycle.release_assignment(request.id, admin)

        assert reopened.status == RequestStatus.OPEN
        assert store.helpers["helper-1"].is_on_job is False

    @pytest.mark.asyncio
    async def test_customer_cannot_reopen(self, assigned_request, lifecycle, customer):
        request = await assigned_request()

        with pytest.raises(NotAuthorized):
            await lifecycle.release_assignment(request.id, customer)

    @pytest.mark.asyncio
    async def test_only_assigned_can_reopen(self, assigned_request, lifecycle, admin):
        request = await assigned_request()
        await lifecycle.start(request.id, admin)

        with pytest.raises(InvalidTransition):
            await lifecycle.release_assignment(request.id, admin)


class TestCanView:
    @pytest.mark.asyncio
    async def test_visibility(self, assigned_request, open_request):
        assigned = await assigned_request()
        unassigned = await open_request()

        assert can_view(Actor(CUSTOMER_ID, ActorRole.CUSTOMER), assigned)
        assert not can_view(Actor("customer-2", ActorRole.CUSTOMER), assigned)
        assert can_view(helper("helper-1"), assigned)
        assert not can_view(helper("helper-2"), assigned)
        assert can_view(helper("helper-2"), unassigned)
        assert can_view(Actor("admin", ActorRole.ADMIN), assigned)
