"""
LedgerSelector -- snapshot reads of balances, credit and reservations.

Reads run against the caller's session and see the latest committed state
(plus whatever the caller's own transaction has flushed).  They never lock,
so they never block writers.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from docledger_kernel.db.types import ZERO
from docledger_kernel.domain.references import DocumentKind
from docledger_kernel.models.client import Client, ClientAccountMovement
from docledger_kernel.models.credit_note import CreditApplication, CreditNote, CreditNoteStatus
from docledger_kernel.models.document import Invoice, Payment, PurchaseDocument
from docledger_kernel.models.product import (
    Product,
    ProductReservation,
    ReservationStatus,
    StockMovement,
)
from docledger_kernel.selectors.base import BaseSelector

SPENDABLE_STATUSES = (
    CreditNoteStatus.VALIDATED,
    CreditNoteStatus.BLOCKED,
    CreditNoteStatus.UNBLOCKED,
    CreditNoteStatus.PARTIALLY_APPLIED,
)


@dataclass(frozen=True)
class BalanceView:
    client_id: UUID
    balance: Decimal
    movement_count: int


@dataclass(frozen=True)
class AccountMovementView:
    movement_id: UUID
    sequence: int
    amount: Decimal
    balance_after: Decimal
    source_type: str
    source_id: UUID | None
    movement_date: datetime
    reference_number: str | None
    reverses_movement_id: UUID | None


@dataclass(frozen=True)
class CreditView:
    """The conserved quadruple of one credit note."""

    credit_note_id: UUID
    number: str | None
    status: str
    generated: Decimal
    used: Decimal
    blocked: Decimal
    available: Decimal
    refunded: Decimal


@dataclass(frozen=True)
class ReservationView:
    reservation_id: UUID
    product_id: UUID
    client_id: UUID | None
    quantity: Decimal
    expiration_date: date


@dataclass(frozen=True)
class StockPositionView:
    product_id: UUID
    current_stock: Decimal
    reserved_stock: Decimal
    available_stock: Decimal | None
    unlimited_stock: bool


@dataclass(frozen=True)
class StockMovementView:
    movement_id: UUID
    product_id: UUID
    sequence: int
    movement_type: str
    reason_category: str
    quantity: Decimal
    previous_stock: Decimal
    new_stock: Decimal
    reservation_id: UUID | None
    source_document_id: UUID | None


@dataclass(frozen=True)
class DocumentView:
    """Totals and settlement state of an invoice or purchase document."""

    document_id: UUID
    kind: str
    number: str | None
    status: str
    payment_status: str
    subtotal_ht: Decimal
    total_vat: Decimal
    total_discount: Decimal
    total_ttc: Decimal
    total_custom_taxes: Decimal
    stamp_duty_amount: Decimal
    withholding_amount: Decimal
    total_credited: Decimal
    total_credit_issued: Decimal
    net_payable: Decimal
    paid_amount: Decimal
    line_ids: tuple[UUID, ...]


@dataclass(frozen=True)
class PaymentView:
    payment_id: UUID
    invoice_id: UUID
    amount: Decimal
    method: str
    account_movement_id: UUID


@dataclass(frozen=True)
class CreditApplicationView:
    application_id: UUID
    credit_note_id: UUID
    target_kind: str
    target_id: UUID
    amount: Decimal
    from_blocked: bool
    account_movement_id: UUID | None


# -----------------------------------------------------------------------------
# Builders: ORM row -> frozen view
# -----------------------------------------------------------------------------


def stock_movement_view(movement: StockMovement) -> StockMovementView:
    return StockMovementView(
        movement_id=movement.id,
        product_id=movement.product_id,
        sequence=movement.sequence,
        movement_type=movement.movement_type.value,
        reason_category=movement.reason_category.value,
        quantity=movement.quantity,
        previous_stock=movement.previous_stock,
        new_stock=movement.new_stock,
        reservation_id=movement.reservation_id,
        source_document_id=movement.source_document_id,
    )


def document_view(document: Invoice | PurchaseDocument) -> DocumentView:
    kind = DocumentKind.INVOICE if isinstance(document, Invoice) else DocumentKind.PURCHASE
    return DocumentView(
        document_id=document.id,
        kind=kind.value,
        number=document.number,
        status=document.status.value,
        payment_status=document.payment_status.value,
        subtotal_ht=document.subtotal_ht,
        total_vat=document.total_vat,
        total_discount=document.total_discount,
        total_ttc=document.total_ttc,
        total_custom_taxes=document.total_custom_taxes,
        stamp_duty_amount=document.stamp_duty_amount,
        withholding_amount=document.withholding_amount,
        total_credited=document.total_credited,
        total_credit_issued=document.total_credit_issued,
        net_payable=document.net_payable,
        paid_amount=document.paid_amount,
        line_ids=tuple(line.id for line in document.lines),
    )


def payment_view(payment: Payment) -> PaymentView:
    return PaymentView(
        payment_id=payment.id,
        invoice_id=payment.invoice_id,
        amount=payment.amount,
        method=payment.method,
        account_movement_id=payment.account_movement_id,
    )


def application_view(application: CreditApplication) -> CreditApplicationView:
    return CreditApplicationView(
        application_id=application.id,
        credit_note_id=application.credit_note_id,
        target_kind=application.target_kind.value,
        target_id=application.target_id,
        amount=application.amount,
        from_blocked=application.from_blocked,
        account_movement_id=application.account_movement_id,
    )


def balance_view(client: Client) -> BalanceView:
    return BalanceView(
        client_id=client.id,
        balance=client.account_balance,
        movement_count=client.movement_count,
    )


def movement_view(movement: ClientAccountMovement) -> AccountMovementView:
    return AccountMovementView(
        movement_id=movement.id,
        sequence=movement.sequence,
        amount=movement.amount,
        balance_after=movement.balance_after,
        source_type=movement.source_type.value,
        source_id=movement.source_id,
        movement_date=movement.movement_date,
        reference_number=movement.reference_number,
        reverses_movement_id=movement.reverses_movement_id,
    )


def credit_view(note: CreditNote) -> CreditView:
    return CreditView(
        credit_note_id=note.id,
        number=note.number,
        status=note.status.value,
        generated=note.generated,
        used=note.used,
        blocked=note.blocked,
        available=note.available,
        refunded=note.refunded,
    )


def reservation_view(reservation: ProductReservation) -> ReservationView:
    return ReservationView(
        reservation_id=reservation.id,
        product_id=reservation.product_id,
        client_id=reservation.client_id,
        quantity=reservation.quantity,
        expiration_date=reservation.expiration_date,
    )


def stock_position_view(product: Product) -> StockPositionView:
    return StockPositionView(
        product_id=product.id,
        current_stock=product.current_stock,
        reserved_stock=product.reserved_stock,
        available_stock=None if product.unlimited_stock else product.available_stock,
        unlimited_stock=product.unlimited_stock,
    )


class LedgerSelector(BaseSelector):
    """
    Read-only views over the stock, credit and account ledgers.

    Guarantees:
        - Every lookup by id rejects entities of another tenant.
        - All amounts are Decimal.
    """

    def get_balance(self, organization_id: UUID, client_id: UUID) -> BalanceView:
        return balance_view(self._get_owned(Client, client_id, organization_id))

    def list_movements(
        self, organization_id: UUID, client_id: UUID, limit: int | None = None,
    ) -> list[AccountMovementView]:
        """Movements of one client in sequence order."""
        client = self._get_owned(Client, client_id, organization_id)
        query = (
            select(ClientAccountMovement)
            .where(ClientAccountMovement.client_id == client.id)
            .order_by(ClientAccountMovement.sequence)
        )
        if limit is not None:
            query = query.limit(limit)
        return [movement_view(m) for m in self.session.execute(query).scalars()]

    def get_available_credit(self, organization_id: UUID, credit_note_id: UUID) -> CreditView:
        return credit_view(self._get_owned(CreditNote, credit_note_id, organization_id))

    def total_available_credit(self, organization_id: UUID, client_id: UUID) -> Decimal:
        """Spendable credit across all of a client's notes."""
        client = self._get_owned(Client, client_id, organization_id)
        amounts = self.session.execute(
            select(CreditNote.available).where(
                CreditNote.organization_id == organization_id,
                CreditNote.client_id == client.id,
                CreditNote.status.in_(SPENDABLE_STATUSES),
            )
        ).scalars()
        return sum(amounts, ZERO)

    def list_active_reservations(
        self,
        organization_id: UUID,
        product_id: UUID | None = None,
        client_id: UUID | None = None,
    ) -> list[ReservationView]:
        """
        Active reservations, oldest expiry first.

        Reservations past their expiry that no write has swept yet are
        still listed; the next write on the product releases them.
        """
        query = select(ProductReservation).where(
            ProductReservation.organization_id == organization_id,
            ProductReservation.status == ReservationStatus.ACTIVE,
        )
        if product_id is not None:
            self._get_owned(Product, product_id, organization_id)
            query = query.where(ProductReservation.product_id == product_id)
        if client_id is not None:
            query = query.where(ProductReservation.client_id == client_id)
        query = query.order_by(ProductReservation.expiration_date, ProductReservation.created_at)
        return [reservation_view(r) for r in self.session.execute(query).scalars()]

    def stock_position(self, organization_id: UUID, product_id: UUID) -> StockPositionView:
        return stock_position_view(self._get_owned(Product, product_id, organization_id))

    def list_stock_movements(self, organization_id: UUID, product_id: UUID) -> list[StockMovementView]:
        product = self._get_owned(Product, product_id, organization_id)
        movements = self.session.execute(
            select(StockMovement)
            .where(StockMovement.product_id == product.id)
            .order_by(StockMovement.sequence)
        ).scalars()
        return [stock_movement_view(m) for m in movements]

    def get_document(
        self, organization_id: UUID, kind: DocumentKind | str, document_id: UUID,
    ) -> DocumentView:
        model = Invoice if DocumentKind(kind) is DocumentKind.INVOICE else PurchaseDocument
        return document_view(self._get_owned(model, document_id, organization_id))
