"""Selectors for the document ledger kernel (read side)."""

from docledger_kernel.selectors.base import BaseSelector
from docledger_kernel.selectors.integrity_selector import Finding, IntegritySelector
from docledger_kernel.selectors.ledger_selector import (
    AccountMovementView,
    BalanceView,
    CreditApplicationView,
    CreditView,
    DocumentView,
    LedgerSelector,
    PaymentView,
    ReservationView,
    StockMovementView,
    StockPositionView,
)

__all__ = [
    "AccountMovementView",
    "BalanceView",
    "BaseSelector",
    "CreditApplicationView",
    "CreditView",
    "DocumentView",
    "Finding",
    "IntegritySelector",
    "LedgerSelector",
    "PaymentView",
    "ReservationView",
    "StockMovementView",
    "StockPositionView",
]
