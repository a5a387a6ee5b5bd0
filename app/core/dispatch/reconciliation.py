# app/core/dispatch/reconciliation.py
"""
Periodic reconciliation.

Broadcast fan-out is repaired from the authoritative
``assigned_helper_id``. Ledger drift is only reported: a mismatch between
replayed entries and balances is an integrity failure for an operator,
never corrected here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.core.dispatch.domain import RepairReport
from app.core.dispatch.ports import AsyncRequestStore
from app.core.errors import LedgerIntegrityError
from app.core.escrow.domain import LedgerDiscrepancy
from app.core.escrow.ports import AsyncLedgerStore
from app.infra.metrics import AppMetrics

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    repair: RepairReport
    discrepancies: list[LedgerDiscrepancy] = field(default_factory=list)

    @property
    def ledger_ok(self) -> bool:
        return not self.discrepancies


class Reconciler:
    def __init__(self, *, requests: AsyncRequestStore, ledger: AsyncLedgerStore) -> None:
        self.requests = requests
        self.ledger = ledger

    async def repair_broadcasts(self) -> RepairReport:
        report = await self.requests.repair_broadcasts()
        if report.total:
            logger.warning(
                "Broadcast drift repaired: accepted=%d expired=%d on_job=%d released=%d",
                report.notifications_accepted,
                report.notifications_expired,
                report.helpers_marked_on_job,
                report.helpers_released,
            )
        return report

    async def audit_ledger(self) -> list[LedgerDiscrepancy]:
        discrepancies = await self.ledger.audit()
        for d in discrepancies:
            AppMetrics.integrity_failure(d.kind)
            logger.critical("Ledger integrity failure: %s", d.describe())
        return discrepancies

    async def run(self, *, raise_on_mismatch: bool = True) -> ReconciliationReport:
        report = ReconciliationReport(
            repair=await self.repair_broadcasts(),
            discrepancies=await self.audit_ledger(),
        )
        if report.discrepancies and raise_on_mismatch:
            raise LedgerIntegrityError(
                f"Ledger audit found {len(report.discrepancies)} discrepancies: "
                + "; ".join(d.describe() for d in report.discrepancies[:5])
            )
        return report
