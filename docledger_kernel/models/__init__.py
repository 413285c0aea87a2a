"""ORM models. Importing this package registers every table on Base.metadata."""

from docledger_kernel.models.client import (
    Client,
    ClientAccountMovement,
    MovementDirection,
    MovementSource,
)
from docledger_kernel.models.credit_note import (
    CreditApplication,
    CreditNote,
    CreditNoteLine,
    CreditNoteStatus,
    CreditNoteType,
)
from docledger_kernel.models.document import (
    Invoice,
    InvoiceLine,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    PurchaseDocument,
    PurchaseLine,
    PurchaseStatus,
)
from docledger_kernel.models.product import (
    Product,
    ProductReservation,
    ReservationStatus,
    StockMovement,
    StockMovementType,
    StockReason,
)
from docledger_kernel.models.sequence import SequenceCounter

__all__ = [
    "Client",
    "ClientAccountMovement",
    "MovementDirection",
    "MovementSource",
    "CreditApplication",
    "CreditNote",
    "CreditNoteLine",
    "CreditNoteStatus",
    "CreditNoteType",
    "Invoice",
    "InvoiceLine",
    "InvoiceStatus",
    "Payment",
    "PaymentStatus",
    "PurchaseDocument",
    "PurchaseLine",
    "PurchaseStatus",
    "Product",
    "ProductReservation",
    "ReservationStatus",
    "StockMovement",
    "StockMovementType",
    "StockReason",
    "SequenceCounter",
]
