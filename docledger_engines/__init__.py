"""
Module: docledger_engines
Responsibility:
    Pure calculation layer.  Re-exports the monetary calculator.

Architecture position:
    Engines -- zero I/O.  May import docledger_kernel.db.types,
    docledger_kernel.domain and docledger_kernel.exceptions.  MUST NOT
    import docledger_services.
"""

from docledger_engines.monetary import (
    AppliedCustomTax,
    CustomTax,
    CustomTaxApplication,
    CustomTaxPhase,
    CustomTaxValueType,
    DocumentTotals,
    LineTotals,
    MonetaryCalculator,
    format_document_number,
    round_money,
)

__all__ = [
    "AppliedCustomTax",
    "CustomTax",
    "CustomTaxApplication",
    "CustomTaxPhase",
    "CustomTaxValueType",
    "DocumentTotals",
    "LineTotals",
    "MonetaryCalculator",
    "format_document_number",
    "round_money",
]
