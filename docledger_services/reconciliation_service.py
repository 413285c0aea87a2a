"""
docledger_services.reconciliation_service -- tenant-wide replay check.

Responsibility:
    Runs every integrity check of the IntegritySelector for one
    organization and packages the findings as a ReconciliationReport.
    The stored caches (current_stock, reserved_stock, account_balance,
    balance_after, payment_status, total_credit_issued) are trusted by the
    hot paths; this is where that trust is verified.

Architecture position:
    Services -- read-only.  Reached through ``DocumentLedgerFacade.reconcile``.

Failure modes:
    - None raised for inconsistencies; they are returned as findings and
      logged at ERROR as a defect signal.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from docledger_engines.monetary import PAYMENT_EPSILON
from docledger_kernel.domain.clock import Clock, SystemClock
from docledger_kernel.logging_config import get_logger
from docledger_kernel.selectors.integrity_selector import Finding, IntegritySelector

logger = get_logger("services.reconciliation")


@dataclass(frozen=True)
class ReconciliationReport:
    """Outcome of one reconciliation run."""

    organization_id: UUID
    findings: tuple[Finding, ...]
    checked_at: datetime

    @property
    def is_consistent(self) -> bool:
        return not self.findings

    def by_check(self) -> dict[str, list[Finding]]:
        grouped: dict[str, list[Finding]] = {}
        for finding in self.findings:
            grouped.setdefault(finding.check, []).append(finding)
        return grouped


class ReconciliationService:
    """
    Batch consistency check over one tenant.

    Non-goals:
        - Repairing caches.  A finding means a write path has a defect.
    """

    def __init__(
        self,
        integrity: IntegritySelector,
        clock: Clock | None = None,
        epsilon: Decimal = PAYMENT_EPSILON,
    ):
        self._integrity = integrity
        self._clock = clock or SystemClock()
        self._epsilon = epsilon

    def reconcile(self, organization_id: UUID) -> ReconciliationReport:
        t0 = time.monotonic()
        findings = tuple(self._integrity.all_findings(organization_id, self._epsilon))
        report = ReconciliationReport(
            organization_id=organization_id,
            findings=findings,
            checked_at=self._clock.now(),
        )
        duration_ms = round((time.monotonic() - t0) * 1000, 2)

        if report.is_consistent:
            logger.info(
                "reconciliation_clean",
                extra={"organization_id": str(organization_id), "duration_ms": duration_ms},
            )
        else:
            logger.error(
                "reconciliation_findings",
                extra={
                    "organization_id": str(organization_id),
                    "finding_count": len(findings),
                    "checks": sorted(report.by_check()),
                    "duration_ms": duration_ms,
                },
            )
        return report
