# app/infra/services.py
"""
Wiring: builds the domain services over the PostgreSQL adapters.

The HTTP app builds one ``Services`` at startup and keeps it on
``app.state``; tests build their own over in-memory ports.
"""
from __future__ import annotations

from dataclasses import dataclass

from app.config import settings
from app.core.dispatch.arbiter import AcceptanceArbiter
from app.core.dispatch.dispatcher import Dispatcher
from app.core.dispatch.lifecycle import RequestLifecycle
from app.core.dispatch.ports import AsyncRequestStore, GeoMatcher
from app.core.dispatch.reconciliation import Reconciler
from app.core.dispatch.sweeper import BroadcastSweeper
from app.core.escrow.engine import EscrowEngine
from app.core.escrow.ports import AsyncLedgerStore
from app.core.notifications.fanout import NotificationFanout
from app.infra.geo_matcher import HttpGeoMatcher, NullGeoMatcher
from app.infra.logging_config import get_logger
from app.infra.pg_job_repo_async import get_outbox
from app.infra.pg_ledger_store_async import get_ledger_store
from app.infra.pg_notification_repo_async import get_notification_repo
from app.infra.pg_platform_settings_async import PostgresCommissionRateProvider
from app.infra.pg_request_store_async import get_request_store
from app.infra.push_transport import FcmPushTransport

logger = get_logger(__name__)


@dataclass
class Services:
    requests: AsyncRequestStore
    ledger: AsyncLedgerStore
    lifecycle: RequestLifecycle
    dispatcher: Dispatcher
    arbiter: AcceptanceArbiter
    escrow: EscrowEngine
    sweeper: BroadcastSweeper
    reconciler: Reconciler
    dispatch_on_create: bool = True


def build_matcher() -> GeoMatcher:
    if not settings.geo_matcher_url:
        return NullGeoMatcher()
    return HttpGeoMatcher(settings.geo_matcher_url, timeout_seconds=settings.geo_matcher_timeout_seconds)


def build_fanout() -> NotificationFanout:
    push = None
    if settings.push_configured:
        push = FcmPushTransport(
            endpoint=settings.fcm_endpoint,
            server_key=settings.fcm_server_key,
            timeout_seconds=settings.push_timeout_seconds,
        )
    else:
        logger.info("Push transport disabled: notifications are in-app only")
    return NotificationFanout(repository=get_notification_repo(), push=push)


def build_services() -> Services:
    requests = get_request_store()
    ledger = get_ledger_store()
    outbox = get_outbox()

    escrow = EscrowEngine(
        ledger=ledger,
        requests=requests,
        commission=PostgresCommissionRateProvider(),
        platform_account_id=settings.platform_account_id,
        external_account_id=settings.external_clearing_account_id,
        min_withdrawal_amount=settings.min_withdrawal_amount,
        history_limit=settings.wallet_history_limit,
    )
    dispatcher = Dispatcher(
        requests=requests,
        matcher=build_matcher(),
        outbox=outbox,
        max_candidates=settings.dispatch_max_candidates,
        max_radius_km=settings.dispatch_max_radius_km,
        broadcast_window_seconds=settings.broadcast_window_seconds,
        matcher_timeout_seconds=settings.geo_matcher_timeout_seconds,
        matcher_retries=settings.geo_matcher_retries,
        matcher_retry_delay=settings.geo_matcher_base_retry_delay,
    )

    return Services(
        requests=requests,
        ledger=ledger,
        lifecycle=RequestLifecycle(
            requests=requests,
            escrow=escrow,
            auto_release_on_completion=settings.auto_release_on_completion,
        ),
        dispatcher=dispatcher,
        arbiter=AcceptanceArbiter(requests=requests, outbox=outbox),
        escrow=escrow,
        sweeper=BroadcastSweeper(requests=requests),
        reconciler=Reconciler(requests=requests, ledger=ledger),
        dispatch_on_create=settings.dispatch_on_create,
    )
