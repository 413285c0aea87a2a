"""
Monetary document ORM models: invoices, purchase documents, their lines,
and payments.

All totals are derived by the monetary calculator and written by the
document orchestrator.  Once a document leaves its editable states only the
settlement fields may change (db/immutability.py).
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docledger_kernel.db.base import EnumString, TenantScopedBase, UUIDString
from docledger_kernel.db.types import PERCENT_TYPE, RATE_TYPE, ZERO
from docledger_kernel.domain.values import PaymentStatus


class InvoiceStatus(str, Enum):
    CREATED = "created"
    DRAFT = "draft"
    VALIDATED = "validated"
    CANCELLED = "cancelled"
    PRODUCT_RETURN_TOTAL = "product_return_total"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    CANCELLED = "cancelled"


INVOICE_EDITABLE_STATES = frozenset({InvoiceStatus.CREATED, InvoiceStatus.DRAFT})
PURCHASE_EDITABLE_STATES = frozenset({PurchaseStatus.PENDING})

# Fields that may still change once a document is frozen
SETTLEMENT_FIELDS = frozenset({
    "paid_amount",
    "payment_status",
    "total_credited",
    "total_credit_issued",
    "net_payable",
    "status",
    "cancelled_at",
    "version",
    "updated_at",
})


class MonetaryTotalsMixin:
    """Derived totals shared by invoices and purchase documents."""

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="TND")
    exchange_rate: Mapped[Decimal] = mapped_column(RATE_TYPE, nullable=False, default=Decimal("1"))
    vat_exempt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    stamp_duty_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    withholding_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    withholding_rate: Mapped[Decimal] = mapped_column(PERCENT_TYPE, nullable=False, default=ZERO)
    # Custom tax definitions frozen onto the document at creation
    custom_taxes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    subtotal_ht: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_vat: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_discount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_ttc: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_custom_taxes: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_payment_taxes: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    stamp_duty_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    withholding_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_credited: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_credit_issued: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    net_payable: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    paid_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        EnumString(PaymentStatus, 10), nullable=False, default=PaymentStatus.UNPAID,
    )

    @property
    def outstanding(self) -> Decimal:
        return self.net_payable - self.paid_amount


class LineTotalsMixin:
    """Caller-supplied line inputs plus calculator-derived line totals."""

    position: Mapped[int] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_price_ht: Mapped[Decimal] = mapped_column(nullable=False)
    discount_percent: Mapped[Decimal] = mapped_column(PERCENT_TYPE, nullable=False, default=ZERO)
    vat_rate: Mapped[Decimal] = mapped_column(PERCENT_TYPE, nullable=False, default=ZERO)
    line_total_ht: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    line_total_vat: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    line_total_ttc: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    line_discount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    # True once validation moved stock for this line
    stock_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Invoice(MonetaryTotalsMixin, TenantScopedBase):
    """
    Customer invoice.

    Contract:
        Lifecycle created -> draft -> validated -> {cancelled,
        product_return_total}.  Lines are editable only while created or
        draft.  Validation freezes totals, assigns ``number``, consumes
        stock and debits the client account.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("organization_id", "number", name="uq_invoices_org_number"),
        Index("idx_invoices_client", "client_id"),
        Index("idx_invoices_status", "status"),
    )

    client_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("clients.id"), nullable=False,
    )
    number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[InvoiceStatus] = mapped_column(
        EnumString(InvoiceStatus, 30), nullable=False, default=InvoiceStatus.CREATED,
    )
    document_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Debit appended at validation; compensated on cancellation
    validation_movement_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("client_account_movements.id"), nullable=True,
    )
    version: Mapped[int] = mapped_column(nullable=False)

    lines: Mapped[list["InvoiceLine"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLine.position",
        lazy="selectin",
    )

    EDITABLE_STATES = INVOICE_EDITABLE_STATES
    TERMINAL_STATES = frozenset({InvoiceStatus.CANCELLED})

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_editable(self) -> bool:
        return self.status in INVOICE_EDITABLE_STATES

    def __repr__(self) -> str:
        return f"<Invoice {self.number or self.id} status={self.status.value} net={self.net_payable}>"


class InvoiceLine(LineTotalsMixin, TenantScopedBase):
    __tablename__ = "invoice_lines"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_invoice_lines_quantity_positive"),
        Index("idx_invoice_lines_invoice", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=False,
    )
    product_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("products.id"), nullable=True,
    )
    reservation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("product_reservations.id"), nullable=True,
    )

    invoice: Mapped["Invoice"] = relationship(back_populates="lines")


class PurchaseDocument(MonetaryTotalsMixin, TenantScopedBase):
    """
    Supplier purchase document.

    Contract:
        Lifecycle pending -> validated -> cancelled.  Validation receives
        stock for every product line; cancellation removes it again.
    """

    __tablename__ = "purchase_documents"

    __table_args__ = (
        UniqueConstraint("organization_id", "number", name="uq_purchase_documents_org_number"),
        Index("idx_purchase_documents_status", "status"),
    )

    supplier_name: Mapped[str] = mapped_column(String(255), nullable=False)
    supplier_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[PurchaseStatus] = mapped_column(
        EnumString(PurchaseStatus, 20), nullable=False, default=PurchaseStatus.PENDING,
    )
    document_date: Mapped[date] = mapped_column(Date, nullable=False)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(nullable=False)

    lines: Mapped[list["PurchaseLine"]] = relationship(
        back_populates="purchase",
        cascade="all, delete-orphan",
        order_by="PurchaseLine.position",
        lazy="selectin",
    )

    EDITABLE_STATES = PURCHASE_EDITABLE_STATES
    TERMINAL_STATES = frozenset({PurchaseStatus.CANCELLED})

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_editable(self) -> bool:
        return self.status in PURCHASE_EDITABLE_STATES

    def __repr__(self) -> str:
        return f"<PurchaseDocument {self.number or self.id} status={self.status.value}>"


class PurchaseLine(LineTotalsMixin, TenantScopedBase):
    __tablename__ = "purchase_lines"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_purchase_lines_quantity_positive"),
        Index("idx_purchase_lines_purchase", "purchase_id"),
    )

    purchase_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("purchase_documents.id"), nullable=False,
    )
    product_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("products.id"), nullable=True,
    )

    purchase: Mapped["PurchaseDocument"] = relationship(back_populates="lines")


class Payment(TenantScopedBase):
    """Immutable record of money received against an invoice."""

    __tablename__ = "payments"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        Index("idx_payments_invoice", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=False,
    )
    client_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("clients.id"), nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False, default="cash")
    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    account_movement_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("client_account_movements.id"), nullable=False,
    )
