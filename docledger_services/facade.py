"""
docledger_services.facade -- the narrow call surface of the engine.

Responsibility:
    Every public operation takes the caller's ``organization_id``
    explicitly, plans the entities it will touch, and runs as one
    UnitOfWork: per-entity locks in global order, a fresh session, a
    ServiceContainer built on it, commit or rollback, retry on conflict.
    Results are returned as frozen views, never as session-bound ORM rows.

Architecture position:
    Services -- outermost layer.  Callers (an HTTP layer, a CLI, tests)
    see only this module and the view types.

Invariants enforced:
    - Atomicity: a call either lands every effect or none.
    - Lock order: all entity keys of a call are acquired sorted, so no two
      calls can deadlock on the in-process locks.
    - Reads take no locks and see committed state only.

Failure modes:
    - ConcurrencyConflictError once the retry budget is spent.
    - CrossTenantAccessError, never retried.
    - Every domain error of the layers below, unchanged, after rollback.

Usage:
    facade = DocumentLedgerFacade(get_session_factory())
    client = facade.register_client(org_id, "ACME")
    invoice = facade.create_invoice(org_id, client.client_id, [LineInput(...)])
    facade.transition_document(org_id, "invoice", invoice.document_id, "validated")
"""

from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, Sequence, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from docledger_config import get_tenant_config
from docledger_config.schema import TenantConfig
from docledger_engines.monetary import CustomTax, DocumentTotals, MonetaryCalculator
from docledger_kernel.db.immutability import register_immutability_listeners
from docledger_kernel.domain.clock import Clock, SystemClock
from docledger_kernel.domain.dtos import CreditLineInput, LineInput
from docledger_kernel.domain.references import DocumentKind, InvoiceRef, PurchaseRef, SourceRef
from docledger_kernel.exceptions import ValidationError
from docledger_kernel.logging_config import LogContext, get_logger
from docledger_kernel.models.client import ClientAccountMovement, MovementSource
from docledger_kernel.models.credit_note import CreditNote, CreditNoteType
from docledger_kernel.models.document import Invoice, PurchaseDocument
from docledger_kernel.models.product import (
    ProductReservation,
    ReservationStatus,
    StockMovementType,
    StockReason,
)
from docledger_kernel.selectors.ledger_selector import (
    AccountMovementView,
    BalanceView,
    CreditApplicationView,
    CreditView,
    DocumentView,
    PaymentView,
    ReservationView,
    StockMovementView,
    StockPositionView,
    application_view,
    balance_view,
    credit_view,
    document_view,
    movement_view,
    payment_view,
    reservation_view,
    stock_movement_view,
    stock_position_view,
)
from docledger_services.reconciliation_service import ReconciliationReport
from docledger_services.service_container import ServiceContainer
from docledger_services.unit_of_work import EntityLockManager, LockKey, UnitOfWork, lock_key

logger = get_logger("services.facade")

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Lock planning
# -----------------------------------------------------------------------------
#
# Planners read a snapshot and return every entity a call will write.  They
# run twice: once before the locks are taken and once inside the locked
# transaction, where a grown set makes the attempt retry.


def _product_keys(product_ids: Iterable[UUID | None]) -> list[LockKey]:
    return [lock_key("Product", pid) for pid in product_ids if pid is not None]


def _sequence_key(organization_id: UUID) -> LockKey:
    return lock_key("Sequence", organization_id)


def _document_keys(session: Session, kind: DocumentKind, document_id: UUID) -> list[LockKey]:
    if kind is DocumentKind.INVOICE:
        invoice = session.get(Invoice, document_id)
        if invoice is None:
            return []
        keys = [lock_key("Invoice", invoice.id), lock_key("Client", invoice.client_id)]
        keys += _product_keys(line.product_id for line in invoice.lines)
        return keys
    if kind is DocumentKind.PURCHASE:
        purchase = session.get(PurchaseDocument, document_id)
        if purchase is None:
            return []
        return [lock_key("PurchaseDocument", purchase.id)] + _product_keys(
            line.product_id for line in purchase.lines
        )
    return _credit_note_keys(session, document_id)


def _credit_note_keys(session: Session, credit_note_id: UUID) -> list[LockKey]:
    note = session.get(CreditNote, credit_note_id)
    if note is None:
        return []
    source_type = "Invoice" if note.source_kind is DocumentKind.INVOICE else "PurchaseDocument"
    keys = [lock_key("CreditNote", note.id), lock_key(source_type, note.source_id)]
    if note.client_id is not None:
        keys.append(lock_key("Client", note.client_id))
    keys += _product_keys(line.product_id for line in note.lines)
    return keys


def _reservation_keys(session: Session, reservation_id: UUID) -> list[LockKey]:
    reservation = session.get(ProductReservation, reservation_id)
    if reservation is None:
        return []
    return [lock_key("Product", reservation.product_id)]


def _movement_keys(session: Session, movement_id: UUID) -> list[LockKey]:
    movement = session.get(ClientAccountMovement, movement_id)
    if movement is None:
        return []
    return [lock_key("Client", movement.client_id)]


class DocumentLedgerFacade:
    """
    Entry point for every document and ledger operation.

    Contract:
        Construct with a session factory.  Tenant settings come from
        ``config`` when given, else from ``get_tenant_config`` per
        organization (cached).  Methods are safe to call from many threads;
        share one EntityLockManager between facades of the same process.
        Constructing a facade registers the immutability listeners.
        Each operation logs under a fresh correlation id unless the caller
        has bound one, and under ``actor_id`` when the facade was given one.

    Non-goals:
        - Authentication and authorization; ``organization_id`` is trusted.
        - Cross-process exclusion beyond row locks and version checks.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        *,
        config: TenantConfig | None = None,
        config_dir: Path | None = None,
        clock: Clock | None = None,
        lock_manager: EntityLockManager | None = None,
        actor_id: str | None = None,
    ):
        self._session_factory = session_factory
        self._actor_id = actor_id
        self._config = config
        self._config_dir = config_dir
        self._configs: dict[UUID, TenantConfig] = {}
        self._configs_lock = threading.Lock()
        self._clock = clock or SystemClock()
        self._locks = lock_manager or EntityLockManager()
        register_immutability_listeners()

    # =========================================================================
    # Plumbing
    # =========================================================================

    def config_for(self, organization_id: UUID) -> TenantConfig:
        if self._config is not None:
            return self._config
        with self._configs_lock:
            config = self._configs.get(organization_id)
            if config is None:
                config = get_tenant_config(organization_id, self._config_dir)
                self._configs[organization_id] = config
            return config

    def _run(
        self,
        organization_id: UUID,
        operation_name: str,
        operation: Callable[[ServiceContainer], T],
        lock_keys: Iterable[LockKey] = (),
        plan: Callable[[Session], Iterable[LockKey]] | None = None,
    ) -> T:
        config = self.config_for(organization_id)
        unit = UnitOfWork(self._session_factory, self._locks, config.max_retry_attempts)
        with LogContext.bind(
            correlation_id=LogContext.get("correlation_id") or uuid4(),
            organization_id=organization_id,
            actor_id=self._actor_id,
            operation=operation_name,
        ):
            return unit.run(
                lock_keys,
                lambda session: operation(ServiceContainer(session, config, self._clock)),
                plan=plan,
                operation_name=operation_name,
            )

    def _read(self, organization_id: UUID, operation: Callable[[ServiceContainer], T]) -> T:
        config = self.config_for(organization_id)
        session = self._session_factory()
        try:
            return operation(ServiceContainer(session, config, self._clock))
        finally:
            session.rollback()
            session.close()

    # =========================================================================
    # Monetary calculator
    # =========================================================================

    def compute_document_totals(
        self,
        organization_id: UUID,
        lines: Sequence[LineInput],
        *,
        stamp_duty_enabled: bool | None = None,
        withholding_rate: Decimal | int | str = 0,
        custom_taxes: Sequence[CustomTax] | None = None,
        total_credited: Decimal | int | str = 0,
        vat_exempt: bool = False,
    ) -> DocumentTotals:
        """Pure computation under the tenant's settings; touches no state."""
        config = self.config_for(organization_id)
        calculator = MonetaryCalculator(config.decimal_places)
        stamp = config.stamp_duty_enabled if stamp_duty_enabled is None else stamp_duty_enabled
        return calculator.compute_document_totals(
            lines,
            stamp_duty_enabled=stamp and not vat_exempt,
            withholding_rate=withholding_rate,
            custom_taxes=config.custom_taxes if custom_taxes is None else custom_taxes,
            stamp_duty_amount=config.stamp_duty_amount,
            total_credited=total_credited,
            vat_exempt=vat_exempt,
        )

    # =========================================================================
    # Parties and products
    # =========================================================================

    def register_client(
        self, organization_id: UUID, name: str, is_foreign: bool = False,
    ) -> BalanceView:
        return self._run(
            organization_id, "register_client",
            lambda c: balance_view(c.accounts.register_client(organization_id, name, is_foreign)),
        )

    def register_product(
        self,
        organization_id: UUID,
        name: str,
        opening_stock: Decimal | int | str = 0,
        *,
        unlimited_stock: bool = False,
        allow_out_of_stock_sale: bool = False,
        reference: str | None = None,
    ) -> StockPositionView:
        return self._run(
            organization_id, "register_product",
            lambda c: stock_position_view(c.stock.register_product(
                organization_id, name, opening_stock,
                unlimited_stock=unlimited_stock,
                allow_out_of_stock_sale=allow_out_of_stock_sale,
                reference=reference,
            )),
        )

    # =========================================================================
    # Stock ledger
    # =========================================================================

    def reserve_stock(
        self,
        organization_id: UUID,
        product_id: UUID,
        quantity: Decimal | int | str,
        client_id: UUID | None = None,
        expiration_date: date | None = None,
        notes: str | None = None,
    ) -> ReservationView:
        return self._run(
            organization_id, "reserve_stock",
            lambda c: reservation_view(c.stock.reserve(
                organization_id, product_id, quantity, client_id, expiration_date, notes,
            )),
            [lock_key("Product", product_id)],
        )

    def release_reservation(
        self,
        organization_id: UUID,
        reservation_id: UUID,
        status: ReservationStatus = ReservationStatus.CANCELLED,
    ) -> ReservationView:
        return self._run(
            organization_id, "release_reservation",
            lambda c: reservation_view(c.stock.release_reservation(organization_id, reservation_id, status)),
            plan=lambda s: _reservation_keys(s, reservation_id),
        )

    def consume_reservation(
        self, organization_id: UUID, reservation_id: UUID, reason_detail: str | None = None,
    ) -> StockMovementView | None:
        def operation(c: ServiceContainer) -> StockMovementView | None:
            movement = c.stock.consume_reservation(organization_id, reservation_id, reason_detail)
            return stock_movement_view(movement) if movement is not None else None

        return self._run(
            organization_id, "consume_reservation", operation,
            plan=lambda s: _reservation_keys(s, reservation_id),
        )

    def sweep_expired(self, organization_id: UUID, product_id: UUID) -> int:
        return self._run(
            organization_id, "sweep_expired",
            lambda c: c.stock.sweep_expired(organization_id, product_id),
            [lock_key("Product", product_id)],
        )

    def apply_stock_movement(
        self,
        organization_id: UUID,
        product_id: UUID,
        quantity: Decimal | int | str,
        movement_type: StockMovementType,
        reason_category: StockReason,
        reason_detail: str | None = None,
    ) -> StockMovementView:
        return self._run(
            organization_id, "apply_stock_movement",
            lambda c: stock_movement_view(c.stock.apply_movement(
                organization_id, product_id, quantity, movement_type, reason_category, reason_detail,
            )),
            [lock_key("Product", product_id)],
        )

    # =========================================================================
    # Account balance ledger
    # =========================================================================

    def append_account_movement(
        self,
        organization_id: UUID,
        client_id: UUID,
        amount: Decimal | int | str,
        source_type: MovementSource = MovementSource.MANUAL_ADJUSTMENT,
        source_id: UUID | None = None,
        *,
        reference_number: str | None = None,
        notes: str | None = None,
    ) -> AccountMovementView:
        return self._run(
            organization_id, "append_account_movement",
            lambda c: movement_view(c.accounts.append(
                organization_id, client_id, amount, source_type, source_id,
                reference_number=reference_number, notes=notes,
            )),
            [lock_key("Client", client_id)],
        )

    def compensate_account_movement(
        self, organization_id: UUID, movement_id: UUID, notes: str | None = None,
    ) -> AccountMovementView:
        return self._run(
            organization_id, "compensate_account_movement",
            lambda c: movement_view(c.accounts.compensate(organization_id, movement_id, notes)),
            plan=lambda s: _movement_keys(s, movement_id),
        )

    def record_deposit(
        self,
        organization_id: UUID,
        client_id: UUID,
        amount: Decimal | int | str,
        *,
        method: str = "cash",
        reference_number: str | None = None,
        notes: str | None = None,
    ) -> AccountMovementView:
        return self._run(
            organization_id, "record_deposit",
            lambda c: movement_view(c.orchestrator.record_deposit(
                organization_id, client_id, amount,
                method=method, reference_number=reference_number, notes=notes,
            )),
            [lock_key("Client", client_id)],
        )

    # =========================================================================
    # Documents
    # =========================================================================

    def create_invoice(
        self,
        organization_id: UUID,
        client_id: UUID,
        lines: Sequence[LineInput],
        **options,
    ) -> DocumentView:
        """See ``DocumentOrchestrator.create_invoice`` for ``options``."""
        return self._run(
            organization_id, "create_invoice",
            lambda c: document_view(c.orchestrator.create_invoice(
                organization_id, client_id, lines, **options,
            )),
        )

    def update_invoice_lines(
        self, organization_id: UUID, invoice_id: UUID, lines: Sequence[LineInput],
    ) -> DocumentView:
        return self._run(
            organization_id, "update_invoice_lines",
            lambda c: document_view(c.orchestrator.update_invoice_lines(organization_id, invoice_id, lines)),
            [lock_key("Invoice", invoice_id)],
        )

    def create_purchase_document(
        self,
        organization_id: UUID,
        supplier_name: str,
        lines: Sequence[LineInput],
        **options,
    ) -> DocumentView:
        return self._run(
            organization_id, "create_purchase_document",
            lambda c: document_view(c.orchestrator.create_purchase_document(
                organization_id, supplier_name, lines, **options,
            )),
        )

    def transition_document(
        self,
        organization_id: UUID,
        kind: DocumentKind | str,
        document_id: UUID,
        target_state: str,
    ) -> DocumentView | CreditView:
        """
        Run one lifecycle transition with all of its ledger effects.

        Credit notes answer with a CreditView, other documents with a
        DocumentView.
        """
        kind = DocumentKind(kind)

        def operation(c: ServiceContainer) -> DocumentView | CreditView:
            document = c.orchestrator.transition_document(organization_id, kind, document_id, target_state)
            if kind is DocumentKind.CREDIT_NOTE:
                return credit_view(document)
            return document_view(document)

        with LogContext.bind(document_id=document_id):
            return self._run(
                organization_id, f"transition_{kind.value}", operation,
                [_sequence_key(organization_id)],
                plan=lambda s: _document_keys(s, kind, document_id),
            )

    def record_payment(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        amount: Decimal | int | str,
        *,
        method: str = "cash",
        reference_number: str | None = None,
    ) -> PaymentView:
        return self._run(
            organization_id, "record_payment",
            lambda c: payment_view(c.orchestrator.record_payment(
                organization_id, invoice_id, amount,
                method=method, reference_number=reference_number,
            )),
            plan=lambda s: _document_keys(s, DocumentKind.INVOICE, invoice_id)[:2],
        )

    # =========================================================================
    # Credit ledger
    # =========================================================================

    def issue_credit(
        self,
        organization_id: UUID,
        source: SourceRef,
        *,
        amount: Decimal | int | str | None = None,
        lines: Sequence[CreditLineInput] = (),
        credit_note_type: CreditNoteType = CreditNoteType.FINANCIAL,
        reason: str | None = None,
    ) -> CreditView:
        if not isinstance(source, (InvoiceRef, PurchaseRef)):
            raise ValidationError("source", source, "must be an InvoiceRef or PurchaseRef")
        source_type = "Invoice" if source.is_customer else "PurchaseDocument"
        return self._run(
            organization_id, "issue_credit",
            lambda c: credit_view(c.orchestrator.issue_credit_note(
                organization_id, source,
                amount=amount, lines=lines, credit_note_type=credit_note_type, reason=reason,
            )),
            [lock_key(source_type, source.document_id), _sequence_key(organization_id)],
        )

    def validate_credit(self, organization_id: UUID, credit_note_id: UUID) -> CreditView:
        return self._credit_call(
            organization_id, credit_note_id, "validate_credit",
            lambda c: c.orchestrator.validate_credit_note(organization_id, credit_note_id),
        )

    def block_credit(self, organization_id: UUID, credit_note_id: UUID, amount) -> CreditView:
        return self._credit_call(
            organization_id, credit_note_id, "block_credit",
            lambda c: c.orchestrator.block_credit(organization_id, credit_note_id, amount),
        )

    def unblock_credit(self, organization_id: UUID, credit_note_id: UUID, amount) -> CreditView:
        return self._credit_call(
            organization_id, credit_note_id, "unblock_credit",
            lambda c: c.orchestrator.unblock_credit(organization_id, credit_note_id, amount),
        )

    def refund_credit(self, organization_id: UUID, credit_note_id: UUID, amount) -> CreditView:
        return self._credit_call(
            organization_id, credit_note_id, "refund_credit",
            lambda c: c.orchestrator.refund_credit(organization_id, credit_note_id, amount),
        )

    def cancel_credit(self, organization_id: UUID, credit_note_id: UUID) -> CreditView:
        return self._credit_call(
            organization_id, credit_note_id, "cancel_credit",
            lambda c: c.orchestrator.cancel_credit_note(organization_id, credit_note_id),
        )

    def receive_returned_goods(self, organization_id: UUID, credit_note_id: UUID) -> CreditView:
        return self._credit_call(
            organization_id, credit_note_id, "receive_returned_goods",
            lambda c: c.orchestrator.receive_returned_goods(organization_id, credit_note_id),
        )

    def apply_credit(
        self,
        organization_id: UUID,
        credit_note_id: UUID,
        target_id: UUID,
        amount: Decimal | int | str,
        *,
        from_blocked: bool = False,
    ) -> CreditApplicationView:
        def plan(session: Session) -> list[LockKey]:
            keys = _credit_note_keys(session, credit_note_id)
            note = session.get(CreditNote, credit_note_id)
            if note is not None:
                keys += _document_keys(session, note.source_kind, target_id)[:2]
            return keys

        return self._run(
            organization_id, "apply_credit",
            lambda c: application_view(c.orchestrator.apply_credit(
                organization_id, credit_note_id, target_id, amount, from_blocked=from_blocked,
            )),
            plan=plan,
        )

    def _credit_call(
        self,
        organization_id: UUID,
        credit_note_id: UUID,
        operation_name: str,
        operation: Callable[[ServiceContainer], CreditNote],
    ) -> CreditView:
        return self._run(
            organization_id, operation_name,
            lambda c: credit_view(operation(c)),
            plan=lambda s: _credit_note_keys(s, credit_note_id),
        )

    # =========================================================================
    # Snapshot reads
    # =========================================================================

    def get_balance(self, organization_id: UUID, client_id: UUID) -> BalanceView:
        return self._read(organization_id, lambda c: c.ledger_selector.get_balance(organization_id, client_id))

    def list_account_movements(
        self, organization_id: UUID, client_id: UUID, limit: int | None = None,
    ) -> list[AccountMovementView]:
        return self._read(
            organization_id,
            lambda c: c.ledger_selector.list_movements(organization_id, client_id, limit),
        )

    def get_available_credit(self, organization_id: UUID, credit_note_id: UUID) -> CreditView:
        return self._read(
            organization_id,
            lambda c: c.ledger_selector.get_available_credit(organization_id, credit_note_id),
        )

    def total_available_credit(self, organization_id: UUID, client_id: UUID) -> Decimal:
        return self._read(
            organization_id,
            lambda c: c.ledger_selector.total_available_credit(organization_id, client_id),
        )

    def list_active_reservations(
        self,
        organization_id: UUID,
        product_id: UUID | None = None,
        client_id: UUID | None = None,
    ) -> list[ReservationView]:
        return self._read(
            organization_id,
            lambda c: c.ledger_selector.list_active_reservations(organization_id, product_id, client_id),
        )

    def get_stock_position(self, organization_id: UUID, product_id: UUID) -> StockPositionView:
        return self._read(organization_id, lambda c: c.ledger_selector.stock_position(organization_id, product_id))

    def list_stock_movements(self, organization_id: UUID, product_id: UUID) -> list[StockMovementView]:
        return self._read(
            organization_id,
            lambda c: c.ledger_selector.list_stock_movements(organization_id, product_id),
        )

    def get_document(
        self, organization_id: UUID, kind: DocumentKind | str, document_id: UUID,
    ) -> DocumentView:
        return self._read(
            organization_id,
            lambda c: c.ledger_selector.get_document(organization_id, kind, document_id),
        )

    def reconcile(self, organization_id: UUID) -> ReconciliationReport:
        return self._read(organization_id, lambda c: c.reconciliation.reconcile(organization_id))
