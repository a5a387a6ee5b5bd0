# tests/conftest.py
"""
Pytest configuration and fixtures.

The in-memory stores mirror the guarded writes of the PostgreSQL adapters:
each check-and-write runs without an ``await`` in between, so it is atomic
on the event loop the way a single conditional UPDATE is atomic in the
database. Every store method yields once before its critical section so
concurrent callers under ``asyncio.gather`` really interleave.
"""
from __future__ import annotations

import asyncio
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Sequence

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.dispatch.arbiter import AcceptanceArbiter  # noqa: E402
from app.core.dispatch.dispatcher import Dispatcher  # noqa: E402
from app.core.dispatch.domain import (  # noqa: E402
    AcceptOutcomeCode,
    Actor,
    ActorRole,
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
from app.core.dispatch.lifecycle import RequestLifecycle  # noqa: E402
from app.core.dispatch.reconciliation import Reconciler  # noqa: E402
from app.core.dispatch.sweeper import BroadcastSweeper, sweep_events  # noqa: E402
from app.core.errors import InsufficientFunds, LedgerIntegrityError  # noqa: E402
from app.core.escrow.commission import StaticCommissionRate  # noqa: E402
from app.core.escrow.domain import (  # noqa: E402
    AccountKind,
    Bucket,
    Escrow,
    EscrowStatus,
    LedgerDiscrepancy,
    LedgerEntry,
    Posting,
    WalletAccount,
    Withdrawal,
)
from app.core.escrow.engine import EscrowEngine  # noqa: E402
from app.core.notifications.events import NotificationEvent  # noqa: E402
from app.infra.services import Services  # noqa: E402

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

CUSTOMER_ID = "customer-1"
OTHER_CUSTOMER_ID = "customer-2"
HELPER_IDS = ("helper-1", "helper-2", "helper-3")
PLATFORM_ACCOUNT = "platform"
EXTERNAL_ACCOUNT = "external-clearing"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ---------------------------------------------------------------------------
# Request store
# ---------------------------------------------------------------------------

class FakeRequestStore:
    """In-memory AsyncRequestStore; ``events`` collects the outbox rows."""

    def __init__(self, helpers: Sequence[str] = HELPER_IDS):
        self.requests: dict[str, ServiceRequest] = {}
        self.notifications: dict[tuple[str, str], BroadcastNotification] = {}
        self.helpers: dict[str, HelperProfile] = {h: HelperProfile(helper_id=h) for h in helpers}
        self.events: list[NotificationEvent] = []
        self.fail_settle = False

    def add_helper(self, helper_id: str, *, on_job: bool = False) -> None:
        self.helpers[helper_id] = HelperProfile(helper_id=helper_id, is_on_job=on_job)

    def rows_for(self, request_id: str) -> list[BroadcastNotification]:
        return [n for (rid, _), n in self.notifications.items() if rid == request_id]

    def events_of(self, event_type: str) -> list[NotificationEvent]:
        return [e for e in self.events if e.event_type.value == event_type]

    async def create(self, request: ServiceRequest) -> ServiceRequest:
        await asyncio.sleep(0)
        self.requests[request.id] = replace(request)
        return replace(request)

    async def get(self, request_id: str) -> ServiceRequest | None:
        await asyncio.sleep(0)
        request = self.requests.get(request_id)
        return replace(request) if request else None

    async def get_helper(self, helper_id: str) -> HelperProfile | None:
        helper = self.helpers.get(helper_id)
        return replace(helper) if helper else None

    async def list_notifications(self, request_id: str) -> list[BroadcastNotification]:
        rows = sorted(self.rows_for(request_id), key=lambda n: (-n.score, n.helper_id))
        return [replace(n) for n in rows]

    async def start_broadcast(self, request_id, candidates, *, now, expires_at, events):
        await asyncio.sleep(0)
        request = self.requests.get(request_id)
        if (
            request is None
            or request.status != RequestStatus.OPEN
            or request.assigned_helper_id is not None
            or request.broadcast_status not in (BroadcastStatus.NONE, BroadcastStatus.EXPIRED)
        ):
            return None
        request.broadcast_status = BroadcastStatus.BROADCASTING
        request.broadcast_expires_at = expires_at
        for row in self.rows_for(request_id):
            if row.status == NotificationStatus.ACCEPTED:
                row.status = NotificationStatus.EXPIRED
                row.responded_at = row.responded_at or now
        for c in candidates:
            self.notifications[(request_id, c.helper_id)] = BroadcastNotification(
                request_id=request_id,
                helper_id=c.helper_id,
                status=NotificationStatus.PENDING,
                score=c.score,
                expires_at=expires_at,
                created_at=now,
            )
        self.events.extend(events)
        return replace(request)

    async def try_assign(self, request_id, helper_id, *, now, events):
        await asyncio.sleep(0)
        request = self.requests.get(request_id)
        helper = self.helpers.get(helper_id)

        if helper is None:
            return AcceptOutcomeCode.NOT_AVAILABLE, replace(request) if request else None
        if helper.is_on_job:
            return AcceptOutcomeCode.ALREADY_ON_JOB, replace(request) if request else None

        if (
            request is None
            or request.status != RequestStatus.OPEN
            or request.assigned_helper_id is not None
            or request.broadcast_status != BroadcastStatus.BROADCASTING
            or (request.broadcast_expires_at is not None and request.broadcast_expires_at <= now)
        ):
            # Helper claim rolls back with the request guard
            if request is None:
                return AcceptOutcomeCode.REQUEST_NOT_FOUND, None
            if request.assigned_helper_id is not None:
                return AcceptOutcomeCode.ALREADY_ASSIGNED, replace(request)
            return AcceptOutcomeCode.NOT_AVAILABLE, replace(request)

        helper.is_on_job = True
        request.assigned_helper_id = helper_id
        request.status = RequestStatus.ASSIGNED
        request.broadcast_status = BroadcastStatus.ACCEPTED
        request.helper_accepted_at = now
        self.events.extend(events)
        return AcceptOutcomeCode.ASSIGNED_OK, replace(request)

    async def settle_broadcast(self, request_id, winner_helper_id, *, now):
        await asyncio.sleep(0)
        if self.fail_settle:
            raise ConnectionError("settle failed")
        request = self.requests.get(request_id)
        if request is None or request.assigned_helper_id != winner_helper_id:
            return []
        losers = []
        for row in self.rows_for(request_id):
            if row.helper_id == winner_helper_id:
                if row.status != NotificationStatus.ACCEPTED:
                    row.status = NotificationStatus.ACCEPTED
                    row.responded_at = now
            elif row.status == NotificationStatus.PENDING:
                row.status = NotificationStatus.EXPIRED
                row.responded_at = now
                losers.append(row.helper_id)
        return losers

    async def expire_accepted(self, request_id, helper_id, *, now):
        await asyncio.sleep(0)
        row = self.notifications.get((request_id, helper_id))
        request = self.requests.get(request_id)
        if row is None or request is None or row.status != NotificationStatus.ACCEPTED:
            return False
        if request.assigned_helper_id == helper_id:
            return False
        row.status = NotificationStatus.EXPIRED
        row.responded_at = now
        return True

    async def expire_pending(self, request_id, *, now):
        await asyncio.sleep(0)
        expired = []
        for row in self.rows_for(request_id):
            if row.status == NotificationStatus.PENDING:
                row.status = NotificationStatus.EXPIRED
                row.responded_at = now
                expired.append(row.helper_id)
        return expired

    async def transition(
        self,
        request_id,
        *,
        from_statuses,
        to_status,
        now,
        expected_helper_id=None,
        expected_broadcast_status=None,
        changes: dict[str, Any] | None = None,
        events=(),
    ):
        await asyncio.sleep(0)
        request = self.requests.get(request_id)
        if request is None or request.status not in from_statuses:
            return None
        if expected_helper_id is not None and request.assigned_helper_id != expected_helper_id:
            return None
        if expected_broadcast_status is not None and request.broadcast_status != expected_broadcast_status:
            return None
        request.status = to_status
        for column, value in (changes or {}).items():
            setattr(request, column, value)
        self.events.extend(events)
        return replace(request)

    async def set_helper_on_job(self, helper_id: str, on_job: bool) -> None:
        await asyncio.sleep(0)
        if helper_id in self.helpers:
            self.helpers[helper_id].is_on_job = on_job

    async def expire_stale(self, now: datetime) -> SweepResult:
        await asyncio.sleep(0)
        result = SweepResult()
        for (rid, _), row in self.notifications.items():
            request = self.requests[rid]
            if (
                row.status == NotificationStatus.PENDING
                and row.expires_at is not None
                and row.expires_at <= now
                and request.status == RequestStatus.OPEN
                and request.broadcast_status == BroadcastStatus.BROADCASTING
            ):
                row.status = NotificationStatus.EXPIRED
                row.responded_at = now
                result.expired_offers.append(ExpiredOffer(rid, row.helper_id, request.broadcast_expires_at))
        for request in self.requests.values():
            if (
                request.status == RequestStatus.OPEN
                and request.broadcast_status == BroadcastStatus.BROADCASTING
                and request.assigned_helper_id is None
                and request.broadcast_expires_at is not None
                and request.broadcast_expires_at <= now
                and not any(n.status == NotificationStatus.PENDING for n in self.rows_for(request.id))
            ):
                request.broadcast_status = BroadcastStatus.EXPIRED
                result.expired_broadcasts.append(
                    ExpiredBroadcast(request.id, request.customer_id, request.broadcast_expires_at)
                )
        self.events.extend(sweep_events(result))
        return result

    async def repair_broadcasts(self) -> RepairReport:
        await asyncio.sleep(0)
        report = RepairReport()
        for (rid, hid), row in self.notifications.items():
            winner = self.requests[rid].assigned_helper_id
            if winner is None:
                if row.status == NotificationStatus.ACCEPTED:
                    row.status = NotificationStatus.EXPIRED
                    report.notifications_expired += 1
                continue
            if hid != winner and row.status in (NotificationStatus.PENDING, NotificationStatus.ACCEPTED):
                row.status = NotificationStatus.EXPIRED
                report.notifications_expired += 1
            elif hid == winner and row.status != NotificationStatus.ACCEPTED:
                row.status = NotificationStatus.ACCEPTED
                report.notifications_accepted += 1
        active = {
            r.assigned_helper_id
            for r in self.requests.values()
            if r.assigned_helper_id and r.status in (RequestStatus.ASSIGNED, RequestStatus.IN_PROGRESS)
        }
        for helper in self.helpers.values():
            if helper.helper_id in active and not helper.is_on_job:
                helper.is_on_job = True
                report.helpers_marked_on_job += 1
            elif helper.helper_id not in active and helper.is_on_job:
                helper.is_on_job = False
                report.helpers_released += 1
        return report


# ---------------------------------------------------------------------------
# Ledger store
# ---------------------------------------------------------------------------

class FakeLedgerStore:
    """In-memory AsyncLedgerStore; only the external account may go negative."""

    def __init__(self):
        self.escrows: dict[str, Escrow] = {}
        self.accounts: dict[str, WalletAccount] = {}
        self.entries: list[LedgerEntry] = []
        self.events: list[NotificationEvent] = []
        self.withdrawals: dict[str, Withdrawal] = {}

    def balance(self, owner_id: str, bucket: Bucket = Bucket.AVAILABLE) -> int:
        account = self.accounts.get(owner_id)
        return account.balance(bucket) if account else 0

    def total_balance(self) -> int:
        return sum(a.total for a in self.accounts.values())

    def _apply(
        self,
        postings: Sequence[Posting],
        transaction_id: str,
        escrow_id: str | None = None,
        withdrawal_id: str | None = None,
        error: type[Exception] = LedgerIntegrityError,
    ) -> None:
        deltas: dict[tuple[str, Bucket], int] = {}
        kinds: dict[str, AccountKind] = {}
        for p in postings:
            deltas[(p.owner_id, p.bucket)] = deltas.get((p.owner_id, p.bucket), 0) + p.signed_amount
            kinds[p.owner_id] = p.kind
        for (owner_id, bucket), delta in deltas.items():
            account = self.accounts.get(owner_id)
            current = account.balance(bucket) if account else 0
            if kinds[owner_id] != AccountKind.EXTERNAL and current + delta < 0:
                raise error("Posting would make a wallet balance negative")

        for owner_id, kind in kinds.items():
            self.accounts.setdefault(owner_id, WalletAccount(owner_id=owner_id, kind=kind))
        for (owner_id, bucket), delta in deltas.items():
            account = self.accounts[owner_id]
            if bucket == Bucket.AVAILABLE:
                account.available_balance += delta
            else:
                account.escrow_balance += delta
        for p in postings:
            self.entries.append(LedgerEntry(
                id=len(self.entries) + 1,
                transaction_id=transaction_id,
                account_id=p.owner_id,
                bucket=p.bucket,
                direction=p.direction,
                amount=p.amount,
                escrow_id=escrow_id,
                withdrawal_id=withdrawal_id,
            ))

    async def get_escrow(self, request_id: str) -> Escrow | None:
        await asyncio.sleep(0)
        for escrow in self.escrows.values():
            if escrow.request_id == request_id:
                return replace(escrow)
        return None

    async def get_escrow_by_reference(self, payment_reference: str) -> Escrow | None:
        await asyncio.sleep(0)
        for escrow in self.escrows.values():
            if escrow.payment_reference == payment_reference:
                return replace(escrow)
        return None

    async def create_escrow(self, escrow, postings, *, transaction_id, events=()):
        await asyncio.sleep(0)
        for existing in self.escrows.values():
            if existing.payment_reference == escrow.payment_reference:
                return replace(existing), False
        for existing in self.escrows.values():
            if existing.request_id == escrow.request_id:
                return replace(existing), False
        self._apply(postings, transaction_id, escrow.id)
        self.escrows[escrow.id] = replace(escrow)
        self.events.extend(events)
        return replace(escrow), True

    async def settle_escrow(
        self,
        escrow_id,
        *,
        to_status,
        now,
        postings,
        transaction_id,
        helper_id=None,
        commission_amount=None,
        commission_rate_bps=None,
        events=(),
    ):
        await asyncio.sleep(0)
        escrow = self.escrows.get(escrow_id)
        if escrow is None or escrow.status != EscrowStatus.FUNDED:
            return None
        self._apply(postings, transaction_id, escrow_id)
        escrow.status = to_status
        if to_status == EscrowStatus.RELEASED:
            escrow.released_at = now
        else:
            escrow.refunded_at = now
        escrow.helper_id = helper_id or escrow.helper_id
        escrow.commission_amount = commission_amount
        escrow.commission_rate_bps = commission_rate_bps
        self.events.extend(events)
        return replace(escrow)

    async def get_account(self, owner_id: str) -> WalletAccount | None:
        account = self.accounts.get(owner_id)
        return replace(account) if account else None

    async def create_withdrawal(self, withdrawal, postings, *, transaction_id):
        await asyncio.sleep(0)
        for existing in self.withdrawals.values():
            if existing.reference == withdrawal.reference:
                return replace(existing), False
        if withdrawal.owner_id not in self.accounts:
            raise InsufficientFunds(f"No wallet balance for {withdrawal.owner_id}")
        self._apply(postings, transaction_id, withdrawal_id=withdrawal.id, error=InsufficientFunds)
        self.withdrawals[withdrawal.id] = replace(withdrawal)
        return replace(withdrawal), True

    async def get_withdrawal_by_reference(self, reference: str) -> Withdrawal | None:
        for withdrawal in self.withdrawals.values():
            if withdrawal.reference == reference:
                return replace(withdrawal)
        return None

    async def list_entries(self, *, escrow_id=None, account_id=None, limit=None) -> list[LedgerEntry]:
        if account_id is not None:
            mine = [e for e in reversed(self.entries) if e.account_id == account_id]
            return mine[:limit] if limit else mine
        return [e for e in self.entries if escrow_id is None or e.escrow_id == escrow_id]

    async def audit(self) -> list[LedgerDiscrepancy]:
        sums: dict[tuple[str, str], int] = {}
        nets: dict[str, int] = {}
        for e in self.entries:
            signed = e.amount if e.direction.value == "credit" else -e.amount
            sums[(e.account_id, e.bucket.value)] = sums.get((e.account_id, e.bucket.value), 0) + signed
            nets[e.transaction_id] = nets.get(e.transaction_id, 0) + signed

        found = []
        for account in self.accounts.values():
            for bucket in Bucket:
                expected = sums.get((account.owner_id, bucket.value), 0)
                actual = account.balance(bucket)
                if expected != actual:
                    found.append(LedgerDiscrepancy(
                        kind="balance_mismatch", account_id=account.owner_id,
                        bucket=bucket.value, expected=expected, actual=actual,
                    ))
        found.extend(
            LedgerDiscrepancy(kind="unbalanced_transaction", transaction_id=tx, actual=net)
            for tx, net in nets.items() if net != 0
        )
        return found


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class FakeOutbox:
    def __init__(self):
        self.events: list[NotificationEvent] = []
        self.fail = False

    async def enqueue(self, events: Sequence[NotificationEvent]) -> int:
        if self.fail:
            raise ConnectionError("outbox unavailable")
        self.events.extend(events)
        return len(events)


class FakeMatcher:
    """
    Returns ``candidates``. ``failures`` is consumed one per call before
    any success: an exception instance is raised, a number is slept.
    """

    def __init__(self, candidates: list[Candidate] | None = None):
        self.candidates = list(candidates or [])
        self.failures: list[Any] = []
        self.calls = 0

    async def rank(self, category, coordinates, max_candidates, max_radius_km):
        self.calls += 1
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            await asyncio.sleep(failure)
        return list(self.candidates)


class FakeNotificationRepo:
    def __init__(self):
        self.delivered: dict[str, int] = {}
        self.in_app: dict[str, tuple[str, str]] = {}
        self.tokens: dict[str, list[str]] = {}

    async def was_delivered(self, event: NotificationEvent) -> bool:
        return event.idempotency_key in self.delivered

    async def save_in_app(self, event: NotificationEvent, title: str, body: str) -> None:
        self.in_app.setdefault(event.idempotency_key, (title, body))

    async def mark_delivered(self, event: NotificationEvent, push_sent: int) -> bool:
        if event.idempotency_key in self.delivered:
            return False
        self.delivered[event.idempotency_key] = push_sent
        return True

    async def active_device_tokens(self, user_id: str) -> list[str]:
        return list(self.tokens.get(user_id, []))


class FakePush:
    def __init__(self, *, ok: bool = True):
        self.ok = ok
        self.sent: list[tuple[str, dict]] = []

    async def send(self, device_token: str, payload: dict) -> bool:
        self.sent.append((device_token, payload))
        return self.ok


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def candidates(*helper_ids: str) -> list[Candidate]:
    return [Candidate(helper_id=h, score=1.0 - i * 0.1) for i, h in enumerate(helper_ids)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FakeRequestStore()


@pytest.fixture
def ledger():
    return FakeLedgerStore()


@pytest.fixture
def outbox():
    return FakeOutbox()


@pytest.fixture
def matcher():
    return FakeMatcher(candidates(*HELPER_IDS))


@pytest.fixture
def escrow_engine(ledger, store, clock):
    return EscrowEngine(
        ledger=ledger,
        requests=store,
        commission=StaticCommissionRate(1000),
        platform_account_id=PLATFORM_ACCOUNT,
        external_account_id=EXTERNAL_ACCOUNT,
        clock=clock,
    )


@pytest.fixture
def dispatcher(store, matcher, outbox, clock):
    return Dispatcher(
        requests=store,
        matcher=matcher,
        outbox=outbox,
        max_candidates=10,
        max_radius_km=15.0,
        broadcast_window_seconds=1800,
        matcher_timeout_seconds=0.05,
        matcher_retries=2,
        matcher_retry_delay=0,
        clock=clock,
    )


@pytest.fixture
def arbiter(store, outbox, clock):
    return AcceptanceArbiter(requests=store, outbox=outbox, clock=clock)


@pytest.fixture
def lifecycle(store, escrow_engine, clock):
    return RequestLifecycle(requests=store, escrow=escrow_engine, clock=clock)


@pytest.fixture
def sweeper(store, clock):
    return BroadcastSweeper(requests=store, clock=clock)


@pytest.fixture
def reconciler(store, ledger):
    return Reconciler(requests=store, ledger=ledger)


@pytest.fixture
def services(store, ledger, lifecycle, dispatcher, arbiter, escrow_engine, sweeper, reconciler):
    return Services(
        requests=store,
        ledger=ledger,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        arbiter=arbiter,
        escrow=escrow_engine,
        sweeper=sweeper,
        reconciler=reconciler,
    )


@pytest.fixture
def customer():
    return Actor(CUSTOMER_ID, ActorRole.CUSTOMER)


@pytest.fixture
def other_customer():
    return Actor(OTHER_CUSTOMER_ID, ActorRole.CUSTOMER)


@pytest.fixture
def admin():
    return Actor("admin-1", ActorRole.ADMIN)


def helper(helper_id: str = HELPER_IDS[0]) -> Actor:
    return Actor(helper_id, ActorRole.HELPER)


@pytest.fixture
def open_request(lifecycle):
    async def _create(price: int = 50_000) -> ServiceRequest:
        return await lifecycle.create_request(
            customer_id=CUSTOMER_ID,
            category="plumbing",
            latitude=19.076,
            longitude=72.8777,
            estimated_price=price,
            address="12 Marine Drive",
        )
    return _create


@pytest.fixture
def broadcasting_request(open_request, dispatcher):
    async def _create(price: int = 50_000) -> ServiceRequest:
        request = await open_request(price)
        result = await dispatcher.dispatch(request.id)
        return result.request
    return _create


@pytest.fixture
def assigned_request(broadcasting_request, arbiter):
    async def _create(helper_id: str = HELPER_IDS[0], price: int = 50_000) -> ServiceRequest:
        request = await broadcasting_request(price)
        outcome = await arbiter.accept_job(request.id, helper_id)
        assert outcome.accepted
        return outcome.request
    return _create
