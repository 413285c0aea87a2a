"""Services for the document ledger kernel (write side)."""

from docledger_kernel.services.account_ledger import AccountLedger
from docledger_kernel.services.base import BaseService, ensure_same_tenant
from docledger_kernel.services.credit_ledger import CreditLedger
from docledger_kernel.services.sequence_service import SequenceService
from docledger_kernel.services.stock_ledger import StockLedger

__all__ = [
    "AccountLedger",
    "BaseService",
    "CreditLedger",
    "SequenceService",
    "StockLedger",
    "ensure_same_tenant",
]
