"""
Stock ORM models: products, reservations and the stock movement log.

Invariants (enforced by StockLedger, backed by CHECK constraints here):
    - current_stock >= 0, reserved_stock >= 0.
    - reserved_stock == sum of ACTIVE reservation quantities.
    - current_stock == replay of StockMovement rows from 0.
    - StockMovement rows are append-only (db/immutability.py).
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docledger_kernel.db.base import EnumString, TenantScopedBase, UUIDString
from docledger_kernel.db.types import ZERO


class StockMovementType(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class StockReason(str, Enum):
    """Why stock moved."""

    SALE = "sale"
    SALE_CANCELLATION = "sale_cancellation"
    PURCHASE_RECEIPT = "purchase_receipt"
    PURCHASE_CANCELLATION = "purchase_cancellation"
    CREDIT_NOTE_RETURN = "credit_note_return"
    SUPPLIER_RETURN = "supplier_return"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    OPENING_BALANCE = "opening_balance"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Product(TenantScopedBase):
    """
    A stocked (or unlimited) product.

    Contract:
        Stock counters are only changed by StockLedger under the product's
        lock.  ``version`` is SQLAlchemy's optimistic version counter; a stale
        write raises StaleDataError.

    Non-goals:
        - Pricing.  Unit prices live on document lines.
    """

    __tablename__ = "products"

    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ck_products_current_stock_non_negative"),
        CheckConstraint("reserved_stock >= 0", name="ck_products_reserved_stock_non_negative"),
        Index("idx_products_org_reference", "organization_id", "reference"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    current_stock: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    reserved_stock: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    unlimited_stock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allow_out_of_stock_sale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    movement_count: Mapped[int] = mapped_column(nullable=False, default=0)
    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def available_stock(self) -> Decimal:
        return self.current_stock - self.reserved_stock

    def __repr__(self) -> str:
        return (
            f"<Product {self.name} current={self.current_stock} "
            f"reserved={self.reserved_stock}>"
        )


class ProductReservation(TenantScopedBase):
    """A hold on product quantity for a client until ``expiration_date``."""

    __tablename__ = "product_reservations"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_product_reservations_quantity_positive"),
        Index("idx_product_reservations_product_status", "product_id", "status"),
        Index("idx_product_reservations_client", "client_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("products.id"), nullable=False,
    )
    client_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("clients.id"), nullable=True,
    )
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    expiration_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        EnumString(ReservationStatus, 20),
        nullable=False,
        default=ReservationStatus.ACTIVE,
    )
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    product: Mapped["Product"] = relationship()

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.ACTIVE

    def is_expired_on(self, today: date) -> bool:
        """Expiry has date granularity: a reservation lives through its expiration day."""
        return self.expiration_date < today

    def __repr__(self) -> str:
        return f"<ProductReservation {self.id} qty={self.quantity} status={self.status.value}>"


class StockMovement(TenantScopedBase):
    """
    Append-only record of one stock change.

    Guarantees:
        - new_stock == previous_stock + quantity for ADD and
          previous_stock - quantity for REMOVE.
    """

    __tablename__ = "stock_movements"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        CheckConstraint("new_stock >= 0", name="ck_stock_movements_new_stock_non_negative"),
        Index("idx_stock_movements_product_seq", "product_id", "sequence"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("products.id"), nullable=False,
    )
    # Per-product ordering; derived from the locked product row
    sequence: Mapped[int] = mapped_column(nullable=False)
    movement_type: Mapped[StockMovementType] = mapped_column(
        EnumString(StockMovementType, 10), nullable=False,
    )
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    previous_stock: Mapped[Decimal] = mapped_column(nullable=False)
    new_stock: Mapped[Decimal] = mapped_column(nullable=False)
    reason_category: Mapped[StockReason] = mapped_column(
        EnumString(StockReason, 30), nullable=False,
    )
    reason_detail: Mapped[str | None] = mapped_column(String(500), nullable=True)
    reservation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("product_reservations.id"), nullable=True,
    )
    source_document_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    @property
    def signed_quantity(self) -> Decimal:
        if self.movement_type == StockMovementType.ADD:
            return self.quantity
        return -self.quantity

    def __repr__(self) -> str:
        return (
            f"<StockMovement {self.movement_type.value} {self.quantity} "
            f"{self.previous_stock}->{self.new_stock}>"
        )
