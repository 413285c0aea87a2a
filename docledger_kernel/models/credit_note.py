"""
Credit note ORM models.

A credit note is sourced on exactly one document (``source_kind`` +
``source_id``).  Its amounts obey the conservation law

    generated == used + blocked + available

which CreditLedger asserts after every operation.  ``refunded`` is the part
of ``used`` that was paid back rather than applied to a document.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docledger_kernel.db.base import EnumString, TenantScopedBase, UUIDString
from docledger_kernel.db.types import PERCENT_TYPE, ZERO
from docledger_kernel.domain.references import DocumentKind, SourceRef, source_ref_from


class CreditNoteStatus(str, Enum):
    DRAFT = "draft"
    VALIDATED = "validated"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    PARTIALLY_APPLIED = "partially_applied"
    SETTLED = "settled"
    CANCELLED = "cancelled"


class CreditNoteType(str, Enum):
    FINANCIAL = "financial"
    PRODUCT_RETURN = "product_return"
    COMMERCIAL_PRICE = "commercial_price"


class CreditNote(TenantScopedBase):
    """
    Customer or supplier credit note.

    Guarantees:
        - generated, used, blocked, available, refunded are all >= 0.
        - generated never changes after issue, except that cancellation
          zeroes every amount.
    """

    __tablename__ = "credit_notes"

    __table_args__ = (
        UniqueConstraint("organization_id", "number", name="uq_credit_notes_org_number"),
        CheckConstraint("generated >= 0", name="ck_credit_notes_generated_non_negative"),
        CheckConstraint("used >= 0", name="ck_credit_notes_used_non_negative"),
        CheckConstraint("blocked >= 0", name="ck_credit_notes_blocked_non_negative"),
        CheckConstraint("available >= 0", name="ck_credit_notes_available_non_negative"),
        CheckConstraint("refunded >= 0", name="ck_credit_notes_refunded_non_negative"),
        Index("idx_credit_notes_source", "source_kind", "source_id"),
        Index("idx_credit_notes_client", "client_id"),
    )

    number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    source_kind: Mapped[DocumentKind] = mapped_column(
        EnumString(DocumentKind, 20), nullable=False,
    )
    source_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    # Set for customer credit notes only
    client_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("clients.id"), nullable=True,
    )
    credit_note_type: Mapped[CreditNoteType] = mapped_column(
        EnumString(CreditNoteType, 20), nullable=False,
    )
    status: Mapped[CreditNoteStatus] = mapped_column(
        EnumString(CreditNoteStatus, 20), nullable=False, default=CreditNoteStatus.DRAFT,
    )
    reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    subtotal_ht: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_vat: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_ttc: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    generated: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    used: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    blocked: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    available: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    refunded: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    # Product returns stay blocked until the goods are received back
    awaiting_return: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(nullable=False)

    lines: Mapped[list["CreditNoteLine"]] = relationship(
        back_populates="credit_note",
        cascade="all, delete-orphan",
        order_by="CreditNoteLine.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def source(self) -> SourceRef:
        return source_ref_from(self.source_kind, self.source_id)

    @property
    def is_customer(self) -> bool:
        return self.source_kind == DocumentKind.INVOICE

    def __repr__(self) -> str:
        return (
            f"<CreditNote {self.number or self.id} {self.status.value} "
            f"g={self.generated} u={self.used} b={self.blocked} a={self.available}>"
        )


class CreditNoteLine(TenantScopedBase):
    """A credit-note line reversing part of one source document line."""

    __tablename__ = "credit_note_lines"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_credit_note_lines_quantity_positive"),
        Index("idx_credit_note_lines_source_line", "source_line_id"),
    )

    credit_note_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("credit_notes.id"), nullable=False,
    )
    position: Mapped[int] = mapped_column(nullable=False)
    # InvoiceLine.id or PurchaseLine.id, depending on the note's source
    source_line_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    product_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("products.id"), nullable=True,
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_price_ht: Mapped[Decimal] = mapped_column(nullable=False)
    discount_percent: Mapped[Decimal] = mapped_column(PERCENT_TYPE, nullable=False, default=ZERO)
    vat_rate: Mapped[Decimal] = mapped_column(PERCENT_TYPE, nullable=False, default=ZERO)
    line_total_ht: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    line_total_vat: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    line_total_ttc: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    return_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stock_restored: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    credit_note: Mapped["CreditNote"] = relationship(back_populates="lines")


class CreditApplication(TenantScopedBase):
    """Immutable record of credit consumed against a target document."""

    __tablename__ = "credit_applications"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_applications_amount_positive"),
        Index("idx_credit_applications_credit_note", "credit_note_id"),
        Index("idx_credit_applications_target", "target_kind", "target_id"),
    )

    credit_note_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("credit_notes.id"), nullable=False,
    )
    target_kind: Mapped[DocumentKind] = mapped_column(
        EnumString(DocumentKind, 20), nullable=False,
    )
    target_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    from_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    account_movement_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("client_account_movements.id"), nullable=True,
    )
