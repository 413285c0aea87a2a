"""
Document references.

A credit note is sourced on exactly one document: a customer invoice or a
supplier purchase document.  ``SourceRef`` is the tagged variant that makes
"both set" and "neither set" unrepresentable.
"""

from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class DocumentKind(str, Enum):
    """Kinds of documents that carry a lifecycle."""

    INVOICE = "invoice"
    PURCHASE = "purchase"
    CREDIT_NOTE = "credit_note"


@dataclass(frozen=True)
class InvoiceRef:
    """Reference to a customer invoice."""

    invoice_id: UUID

    @property
    def kind(self) -> DocumentKind:
        return DocumentKind.INVOICE

    @property
    def document_id(self) -> UUID:
        return self.invoice_id

    @property
    def is_customer(self) -> bool:
        return True


@dataclass(frozen=True)
class PurchaseRef:
    """Reference to a supplier purchase document."""

    purchase_id: UUID

    @property
    def kind(self) -> DocumentKind:
        return DocumentKind.PURCHASE

    @property
    def document_id(self) -> UUID:
        return self.purchase_id

    @property
    def is_customer(self) -> bool:
        return False


SourceRef = InvoiceRef | PurchaseRef


def source_ref_from(kind: DocumentKind | str, document_id: UUID) -> SourceRef:
    """
    Rebuild a SourceRef from its persisted (kind, id) pair.

    Raises:
        ValueError: If ``kind`` is not a source document kind.
    """
    kind = DocumentKind(kind)
    if kind is DocumentKind.INVOICE:
        return InvoiceRef(document_id)
    if kind is DocumentKind.PURCHASE:
        return PurchaseRef(document_id)
    raise ValueError(f"{kind.value} cannot be a credit source")
