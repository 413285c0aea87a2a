"""
docledger_services.service_container -- dependency injection for one unit
of work.

Responsibility:
    Creates every ledger, selector and the orchestrator exactly once per
    session and wires them together.  No service creates another service
    internally.

Architecture position:
    Services -- built by the facade inside each UnitOfWork attempt, so a
    container never outlives its session.

Usage:
    container = ServiceContainer(session, config, clock)
    container.stock.reserve(org_id, product_id, 1)
    container.orchestrator.transition_document(org_id, "invoice", invoice_id, "validated")
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from docledger_config.schema import TenantConfig
from docledger_engines.monetary import MonetaryCalculator
from docledger_kernel.domain.clock import Clock, SystemClock
from docledger_kernel.selectors.integrity_selector import IntegritySelector
from docledger_kernel.selectors.ledger_selector import LedgerSelector
from docledger_kernel.services.account_ledger import AccountLedger
from docledger_kernel.services.credit_ledger import CreditLedger
from docledger_kernel.services.sequence_service import SequenceService
from docledger_kernel.services.stock_ledger import StockLedger
from docledger_services.document_orchestrator import DocumentOrchestrator
from docledger_services.reconciliation_service import ReconciliationService


class ServiceContainer:
    """
    Single-session factory for the ledger services.

    Contract:
        Receives a Session, a TenantConfig and an optional Clock.  Builds
        every service in dependency order and exposes it as an attribute.

    Guarantees:
        - All services share the same Session, Clock and calculator.

    Non-goals:
        - Does NOT commit or roll back.
    """

    def __init__(
        self,
        session: Session,
        config: TenantConfig,
        clock: Clock | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self.clock = clock or SystemClock()

        # Pure engine
        self.calculator = MonetaryCalculator(config.decimal_places)

        # Leaf ledgers
        self.sequences = SequenceService(session)
        self.stock = StockLedger(session, self.clock, config.reservation_ttl_days)
        self.credit = CreditLedger(session, self.clock)
        self.accounts = AccountLedger(session, self.clock)

        # Read side
        self.ledger_selector = LedgerSelector(session)
        self.integrity_selector = IntegritySelector(session)

        # Orchestration
        self.orchestrator = DocumentOrchestrator(
            session,
            config,
            self.calculator,
            self.sequences,
            self.stock,
            self.credit,
            self.accounts,
            clock=self.clock,
        )
        self.reconciliation = ReconciliationService(
            self.integrity_selector, self.clock, config.payment_epsilon,
        )
