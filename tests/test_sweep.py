# tests/test_sweep.py
"""
Tests for broadcast expiry and reconciliation:
- sweep flips only stale pending offers of broadcasting requests
- sweep is idempotent and emits one event per expiry
- repair re-derives fan-out state from assigned_helper_id
- the timer loop keeps running after a failed pass
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.core.dispatch.domain import BroadcastStatus, NotificationStatus, RequestStatus, SweepResult
from app.core.dispatch.sweeper import BroadcastSweeper
from app.infra.broadcast_sweeper import BroadcastSweepLoop
from conftest import CUSTOMER_ID


class TestExpireStale:
    @pytest.mark.asyncio
    async def test_nothing_to_do_before_deadline(self, broadcasting_request, sweeper, clock, store):
        request = await broadcasting_request()
        clock.advance(60)

        result = await sweeper.expire_stale()

        assert result.expired_offers == []
        assert result.expired_broadcasts == []
        assert store.requests[request.id].broadcast_status == BroadcastStatus.BROADCASTING

    @pytest.mark.asyncio
    async def test_expires_offers_and_broadcast(self, broadcasting_request, sweeper, clock, store):
        request = await broadcasting_request()
        clock.advance(1800)

        result = await sweeper.expire_stale()

        assert sorted(o.helper_id for o in result.expired_offers) == ["helper-1", "helper-2", "helper-3"]
        assert [b.request_id for b in result.expired_broadcasts] == [request.id]
        stored = store.requests[request.id]
        assert stored.status == RequestStatus.OPEN
        assert stored.broadcast_status == BroadcastStatus.EXPIRED
        assert all(n.status == NotificationStatus.EXPIRED for n in store.rows_for(request.id))

    @pytest.mark.asyncio
    async def test_sweep_events(self, broadcasting_request, sweeper, clock, store):
        request = await broadcasting_request()
        clock.advance(1801)

        await sweeper.expire_stale()

        expired = store.events_of("broadcast_expired")
        assert sorted(e.recipient_id for e in expired) == ["helper-1", "helper-2", "helper-3"]
        [no_helper] = store.events_of("no_helper_available")
        assert no_helper.recipient_id == CUSTOMER_ID
        assert no_helper.request_id == request.id

    @pytest.mark.asyncio
    async def test_second_sweep_is_noop(self, broadcasting_request, sweeper, clock, store):
        await broadcasting_request()
        clock.advance(1801)
        await sweeper.expire_stale()
        events_before = len(store.events)

        again = await sweeper.expire_stale()

        assert again.expired_offers == []
        assert again.expired_broadcasts == []
        assert len(store.events) == events_before

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_expire_once(self, broadcasting_request, sweeper, clock, store):
        await broadcasting_request()
        clock.advance(1801)

        results = await asyncio.gather(sweeper.expire_stale(), sweeper.expire_stale())

        assert sum(len(r.expired_offers) for r in results) == 3
        assert sum(len(r.expired_broadcasts) for r in results) == 1

    @pytest.mark.asyncio
    async def test_assigned_request_untouched(self, assigned_request, sweeper, clock, store):
        request = await assigned_request()
        clock.advance(3600)

        result = await sweeper.expire_stale()

        assert result.expired_broadcasts == []
        assert store.requests[request.id].status == RequestStatus.ASSIGNED
        assert store.requests[request.id].broadcast_status == BroadcastStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_accept_loses_to_deadline(self, broadcasting_request, sweeper, arbiter, clock):
        request = await broadcasting_request()
        clock.advance(1801)
        await sweeper.expire_stale()

        outcome = await arbiter.accept_job(request.id, "helper-1")

        assert not outcome.accepted


class TestRepair:
    @pytest.mark.asyncio
    async def test_clean_state_reports_nothing(self, assigned_request, reconciler):
        await assigned_request()

        report = await reconciler.repair_broadcasts()

        assert report.total == 0

    @pytest.mark.asyncio
    async def test_marks_assigned_helper_on_job(self, assigned_request, reconciler, store):
        await assigned_request()
        store.helpers["helper-1"].is_on_job = False

        report = await reconciler.repair_broadcasts()

        assert report.helpers_marked_on_job == 1
        assert store.helpers["helper-1"].is_on_job is True

    @pytest.mark.asyncio
    async def test_releases_stuck_helper(self, reconciler, store):
        store.helpers["helper-3"].is_on_job = True

        report = await reconciler.repair_broadcasts()

        assert report.helpers_released == 1
        assert store.helpers["helper-3"].is_on_job is False

    @pytest.mark.asyncio
    async def test_expires_acceptance_on_reopened_request(self, assigned_request, reconciler, store):
        request = await assigned_request()
        reopened = store.requests[request.id]
        reopened.status = RequestStatus.OPEN
        reopened.broadcast_status = BroadcastStatus.NONE
        reopened.assigned_helper_id = None

        report = await reconciler.repair_broadcasts()

        assert report.notifications_expired == 1
        assert store.notifications[(request.id, "helper-1")].status == NotificationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_repair_is_idempotent(self, broadcasting_request, arbiter, reconciler, store):
        request = await broadcasting_request()
        store.fail_settle = True
        await arbiter.accept_job(request.id, "helper-2")

        first = await reconciler.repair_broadcasts()
        second = await reconciler.repair_broadcasts()

        assert first.total == 3
        assert second.total == 0

    @pytest.mark.asyncio
    async def test_run_reports_clean_ledger(self, reconciler):
        report = await reconciler.run()

        assert report.ledger_ok
        assert report.discrepancies == []


class TestSweepLoop:
    @pytest.mark.asyncio
    async def test_run_once_counts(self, store, clock):
        loop = BroadcastSweepLoop(BroadcastSweeper(requests=store, clock=clock), interval=0.01)

        await loop.run_once()

        assert loop.runs == 1

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self):
        calls = []

        async def expire_stale():
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("db down")
            return SweepResult()

        sweeper = AsyncMock(spec=BroadcastSweeper)
        sweeper.expire_stale = expire_stale
        loop = BroadcastSweepLoop(sweeper, interval=0.01)

        await loop.start()
        await asyncio.sleep(0.1)
        await loop.stop()

        assert len(calls) >= 2
        assert loop.runs >= 1
