"""Document lifecycles, atomic units of work and the public facade."""

from docledger_services.document_orchestrator import DocumentOrchestrator
from docledger_services.facade import DocumentLedgerFacade
from docledger_services.reconciliation_service import ReconciliationReport, ReconciliationService
from docledger_services.service_container import ServiceContainer
from docledger_services.unit_of_work import EntityLockManager, UnitOfWork, lock_key
from docledger_services.workflows import (
    CREDIT_NOTE_WORKFLOW,
    INVOICE_WORKFLOW,
    PURCHASE_WORKFLOW,
    WORKFLOWS,
)

__all__ = [
    "CREDIT_NOTE_WORKFLOW",
    "DocumentLedgerFacade",
    "DocumentOrchestrator",
    "EntityLockManager",
    "INVOICE_WORKFLOW",
    "PURCHASE_WORKFLOW",
    "ReconciliationReport",
    "ReconciliationService",
    "ServiceContainer",
    "UnitOfWork",
    "WORKFLOWS",
    "lock_key",
]
