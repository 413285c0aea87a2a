"""
Client and client account movement ORM models.

The movement log is the source of truth for what a client owes or is owed;
``Client.account_balance`` is a cache verified against the last movement
before every write.  Negative amounts are debits (the client owes more),
positive amounts are credits.
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
from sqlalchemy.orm import Mapped, mapped_column

from docledger_kernel.db.base import EnumString, TenantScopedBase, UUIDString
from docledger_kernel.db.types import ZERO


class MovementDirection(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class MovementSource(str, Enum):
    """What produced an account movement."""

    INVOICE_VALIDATION = "invoice_validation"
    INVOICE_PAYMENT = "invoice_payment"
    DIRECT_DEPOSIT = "direct_deposit"
    CREDIT_NOTE_APPLICATION = "credit_note_application"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    COMPENSATION = "compensation"


class Client(TenantScopedBase):
    """
    A customer with an append-only account ledger.

    Guarantees:
        - account_balance equals balance_after of the movement with the
          highest sequence (0 when there is none).
        - movement_count is the highest allocated movement sequence.
    """

    __tablename__ = "clients"

    __table_args__ = (
        Index("idx_clients_org_name", "organization_id", "name"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Foreign clients are invoiced without VAT and without stamp duty
    is_foreign: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    account_balance: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    movement_count: Mapped[int] = mapped_column(nullable=False, default=0)
    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Client {self.name} balance={self.account_balance}>"


class ClientAccountMovement(TenantScopedBase):
    """
    One immutable entry of a client's running-balance log.

    Guarantees:
        - balance_after == previous balance_after + amount.
        - (client_id, sequence) is unique and gap-free from 1.
        - A movement is reversed by at most one compensating movement.
    """

    __tablename__ = "client_account_movements"

    __table_args__ = (
        UniqueConstraint("client_id", "sequence", name="uq_client_movements_client_sequence"),
        UniqueConstraint("reverses_movement_id", name="uq_client_movements_reverses"),
        CheckConstraint("amount <> 0", name="ck_client_movements_amount_non_zero"),
        Index("idx_client_movements_source", "source_type", "source_id"),
    )

    client_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("clients.id"), nullable=False,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(nullable=False)
    movement_type: Mapped[MovementDirection] = mapped_column(
        EnumString(MovementDirection, 10), nullable=False,
    )
    source_type: Mapped[MovementSource] = mapped_column(
        EnumString(MovementSource, 40), nullable=False,
    )
    source_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    movement_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    reverses_movement_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("client_account_movements.id"), nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ClientAccountMovement #{self.sequence} {self.amount} "
            f"balance_after={self.balance_after}>"
        )
