"""
docledger_services.document_orchestrator -- document lifecycles and their
cross-ledger effects.

Responsibility:
    Runs the invoice, purchase document and credit note state machines.
    Every transition recomputes totals through the monetary calculator and
    sequences its effects on the stock, credit and account ledgers inside
    the caller's transaction.

Architecture position:
    Services -- sits above the kernel ledgers and the pure calculator.
    It is the only layer that translates a lower-layer failure into a
    document-level outcome: a failed stock consumption aborts the whole
    validation and the invoice stays where it was.

Invariants enforced:
    - Totals are derived, never accepted from the caller.
    - Invoice validation order: totals, number, stock per line, account
      debit of -net_payable, then status.  The status flip is the last
      write, so the document is still editable while its effects land.
    - Cancelling a validated invoice re-adds stock and compensates the
      debit; history is never rewritten.
    - payment_status is always derived from paid_amount and net_payable.
    - Credit applied to a document re-runs the calculator on the target.
    - Every entity loaded is checked against the caller's organization.

Failure modes:
    - InvalidTransitionError for undeclared lifecycle moves.
    - BusinessRuleError when a guard fails (no lines, settled invoice,
      overpayment, credit beyond the outstanding amount).
    - Anything raised by the ledgers, unchanged.
"""

from __future__ import annotations

import time
from datetime import date
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from docledger_config.schema import TenantConfig
from docledger_engines.monetary import CustomTax, DocumentTotals, MonetaryCalculator
from docledger_kernel.db.types import ZERO, round_money, to_decimal, validate_currency
from docledger_kernel.domain.clock import Clock
from docledger_kernel.domain.dtos import CreditLineInput, LineInput, positive_amount
from docledger_kernel.domain.references import DocumentKind, InvoiceRef, PurchaseRef, SourceRef
from docledger_kernel.exceptions import (
    BusinessRuleError,
    InvalidTransitionError,
    ReservationNotActiveError,
    ValidationError,
)
from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.client import Client, ClientAccountMovement, MovementSource
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
    PurchaseDocument,
    PurchaseLine,
    PurchaseStatus,
)
from docledger_kernel.domain.values import PaymentStatus
from docledger_kernel.models.product import (
    Product,
    ProductReservation,
    StockMovementType,
    StockReason,
)
from docledger_kernel.services.account_ledger import AccountLedger
from docledger_kernel.services.base import BaseService
from docledger_kernel.services.credit_ledger import USABLE_STATUSES, CreditLedger
from docledger_kernel.services.sequence_service import SequenceService
from docledger_kernel.services.stock_ledger import StockLedger
from docledger_services.workflows import (
    CREDIT_NOTE_WORKFLOW,
    INVOICE_WORKFLOW,
    PURCHASE_WORKFLOW,
)

logger = get_logger("services.document_orchestrator")


class DocumentOrchestrator(BaseService):
    """
    Document lifecycles over the stock, credit and account ledgers.

    Contract:
        Receives its ledgers and calculator from the service container.
        Every method flushes; none commits.

    Non-goals:
        - Does NOT take in-process locks; the unit of work does.
        - Does NOT render, store or number anything beyond the document
          number itself.
    """

    def __init__(
        self,
        session: Session,
        config: TenantConfig,
        calculator: MonetaryCalculator,
        sequences: SequenceService,
        stock: StockLedger,
        credit: CreditLedger,
        accounts: AccountLedger,
        clock: Clock | None = None,
    ):
        super().__init__(session, clock)
        self._config = config
        self._calculator = calculator
        self._sequences = sequences
        self._stock = stock
        self._credit = credit
        self._accounts = accounts

    # =========================================================================
    # Document creation
    # =========================================================================

    def create_invoice(
        self,
        organization_id: UUID,
        client_id: UUID,
        lines: Sequence[LineInput],
        *,
        document_date: date | None = None,
        due_date: date | None = None,
        currency: str | None = None,
        exchange_rate: Decimal | int | str = 1,
        stamp_duty_enabled: bool | None = None,
        withholding_rate: Decimal | int | str | None = None,
        custom_taxes: Sequence[CustomTax] | None = None,
        notes: str | None = None,
    ) -> Invoice:
        """
        Create an invoice in ``created`` with its totals computed.

        Foreign clients are invoiced without VAT and without stamp duty.
        """
        currency, rate = self._currency_and_rate(currency, exchange_rate)
        withholding = self._withholding_rate(withholding_rate)
        client = self._get(Client, client_id, organization_id)
        self._check_lines(organization_id, lines, allow_reservations=True)

        stamp = self._config.stamp_duty_enabled if stamp_duty_enabled is None else stamp_duty_enabled
        invoice = Invoice(
            organization_id=organization_id,
            client_id=client.id,
            status=InvoiceStatus.CREATED,
            document_date=document_date or self.clock.today(),
            due_date=due_date,
            notes=notes,
            currency=currency,
            exchange_rate=rate,
            vat_exempt=client.is_foreign,
            stamp_duty_enabled=stamp and not client.is_foreign,
            withholding_applied=withholding > ZERO,
            withholding_rate=withholding,
            custom_taxes=self._custom_tax_payload(custom_taxes),
            paid_amount=ZERO,
            total_credited=ZERO,
            total_credit_issued=ZERO,
            payment_status=PaymentStatus.UNPAID,
        )
        invoice.lines = [self._build_line(InvoiceLine, organization_id, i, line)
                         for i, line in enumerate(lines, start=1)]
        self._apply_totals(invoice)
        self.session.add(invoice)
        self.session.flush()

        logger.info(
            "invoice_created",
            extra={
                "invoice_id": str(invoice.id),
                "client_id": str(client.id),
                "line_count": len(invoice.lines),
                "net_payable": str(invoice.net_payable),
                "vat_exempt": invoice.vat_exempt,
            },
        )
        return invoice

    def update_invoice_lines(
        self, organization_id: UUID, invoice_id: UUID, lines: Sequence[LineInput],
    ) -> Invoice:
        """Replace the lines of a created or draft invoice and recompute."""
        invoice = self._lock(Invoice, invoice_id, organization_id)
        if not invoice.is_editable:
            raise BusinessRuleError(
                f"Invoice {invoice.number or invoice.id} is {invoice.status.value}; "
                "lines can only change while created or draft"
            )
        self._check_lines(organization_id, lines, allow_reservations=True)
        invoice.lines = [self._build_line(InvoiceLine, organization_id, i, line)
                         for i, line in enumerate(lines, start=1)]
        self._apply_totals(invoice)
        self.session.flush()
        logger.info(
            "invoice_lines_updated",
            extra={
                "invoice_id": str(invoice.id),
                "line_count": len(invoice.lines),
                "net_payable": str(invoice.net_payable),
            },
        )
        return invoice

    def create_purchase_document(
        self,
        organization_id: UUID,
        supplier_name: str,
        lines: Sequence[LineInput],
        *,
        supplier_reference: str | None = None,
        document_date: date | None = None,
        currency: str | None = None,
        exchange_rate: Decimal | int | str = 1,
        stamp_duty_enabled: bool | None = None,
        withholding_rate: Decimal | int | str | None = None,
        custom_taxes: Sequence[CustomTax] | None = None,
    ) -> PurchaseDocument:
        """Create a purchase document in ``pending``."""
        if not supplier_name:
            raise ValidationError("supplier_name", supplier_name, "must not be empty")
        currency, rate = self._currency_and_rate(currency, exchange_rate)
        withholding = self._withholding_rate(withholding_rate)
        self._check_lines(organization_id, lines, allow_reservations=False)

        stamp = self._config.stamp_duty_enabled if stamp_duty_enabled is None else stamp_duty_enabled
        purchase = PurchaseDocument(
            organization_id=organization_id,
            supplier_name=supplier_name,
            supplier_reference=supplier_reference,
            status=PurchaseStatus.PENDING,
            document_date=document_date or self.clock.today(),
            currency=currency,
            exchange_rate=rate,
            vat_exempt=False,
            stamp_duty_enabled=stamp,
            withholding_applied=withholding > ZERO,
            withholding_rate=withholding,
            custom_taxes=self._custom_tax_payload(custom_taxes),
            paid_amount=ZERO,
            total_credited=ZERO,
            total_credit_issued=ZERO,
            payment_status=PaymentStatus.UNPAID,
        )
        purchase.lines = [self._build_line(PurchaseLine, organization_id, i, line)
                          for i, line in enumerate(lines, start=1)]
        self._apply_totals(purchase)
        self.session.add(purchase)
        self.session.flush()
        logger.info(
            "purchase_document_created",
            extra={
                "purchase_id": str(purchase.id),
                "line_count": len(purchase.lines),
                "total_ttc": str(purchase.total_ttc),
            },
        )
        return purchase

    # =========================================================================
    # Transitions
    # =========================================================================

    def transition_document(
        self,
        organization_id: UUID,
        kind: DocumentKind | str,
        document_id: UUID,
        target_state: str,
    ) -> Invoice | PurchaseDocument | CreditNote:
        """
        Move a document to ``target_state`` with all of the transition's
        ledger effects, or raise and leave everything unchanged.
        """
        kind = DocumentKind(kind)
        t0 = time.monotonic()
        if kind is DocumentKind.INVOICE:
            document = self._transition_invoice(organization_id, document_id, InvoiceStatus(target_state))
        elif kind is DocumentKind.PURCHASE:
            document = self._transition_purchase(organization_id, document_id, PurchaseStatus(target_state))
        else:
            document = self._transition_credit_note(
                organization_id, document_id, CreditNoteStatus(target_state),
            )
        logger.info(
            "document_transitioned",
            extra={
                "kind": kind.value,
                "document_id": str(document.id),
                "to_state": document.status.value,
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            },
        )
        return document

    def _transition_invoice(
        self, organization_id: UUID, invoice_id: UUID, target: InvoiceStatus,
    ) -> Invoice:
        invoice = self._lock(Invoice, invoice_id, organization_id)
        INVOICE_WORKFLOW.require("Invoice", invoice.id, invoice.status.value, target.value)
        if target is InvoiceStatus.DRAFT:
            invoice.status = InvoiceStatus.DRAFT
            self.session.flush()
        elif target is InvoiceStatus.VALIDATED:
            self._validate_invoice(organization_id, invoice)
        elif target is InvoiceStatus.CANCELLED:
            self._cancel_invoice(organization_id, invoice)
        else:
            self._mark_invoice_returned(invoice)
        return invoice

    def _validate_invoice(self, organization_id: UUID, invoice: Invoice) -> None:
        if not invoice.lines:
            raise BusinessRuleError(f"Invoice {invoice.id} has no lines")

        self._apply_totals(invoice)
        number = self._sequences.next_document_number(
            organization_id, self._config.numbering.invoice_prefix, invoice.document_date.year,
        )
        invoice.number = number
        self.session.flush()

        for line in invoice.lines:
            if line.product_id is None:
                continue
            if self._remove_sold_stock(organization_id, invoice, line):
                line.stock_applied = True

        movement = None
        if invoice.net_payable != ZERO:
            movement = self._accounts.append(
                organization_id,
                invoice.client_id,
                -invoice.net_payable,
                MovementSource.INVOICE_VALIDATION,
                invoice.id,
                reference_number=number,
            )
        invoice.validation_movement_id = movement.id if movement is not None else None
        invoice.validated_at = self.clock.now()
        invoice.payment_status = self._derive_status(invoice)
        # Last write: from here on the invoice is frozen
        invoice.status = InvoiceStatus.VALIDATED
        self.session.flush()

        logger.info(
            "invoice_validated",
            extra={
                "invoice_id": str(invoice.id),
                "number": number,
                "net_payable": str(invoice.net_payable),
                "client_id": str(invoice.client_id),
            },
        )

    def _remove_sold_stock(self, organization_id: UUID, invoice: Invoice, line: InvoiceLine) -> bool:
        detail = f"invoice {invoice.number}"
        if line.reservation_id is not None:
            movement = self._stock.consume_reservation(
                organization_id, line.reservation_id,
                reason_detail=detail, source_document_id=invoice.id,
            )
            if movement is None:
                return False
            remainder = line.quantity - movement.quantity
            if remainder > ZERO:
                self._stock.apply_movement(
                    organization_id, line.product_id, remainder,
                    StockMovementType.REMOVE, StockReason.SALE, detail,
                    source_document_id=invoice.id,
                )
            return True

        product = self._stock.lock_product(organization_id, line.product_id)
        if product.unlimited_stock:
            return False
        self._stock.apply_movement(
            organization_id, line.product_id, line.quantity,
            StockMovementType.REMOVE, StockReason.SALE, detail,
            source_document_id=invoice.id,
        )
        return True

    def _cancel_invoice(self, organization_id: UUID, invoice: Invoice) -> None:
        if invoice.paid_amount != ZERO or invoice.total_credited != ZERO or invoice.total_credit_issued != ZERO:
            raise BusinessRuleError(
                f"Invoice {invoice.number} has payments or credit; it cannot be cancelled"
            )
        for line in invoice.lines:
            if line.stock_applied:
                self._stock.apply_movement(
                    organization_id, line.product_id, line.quantity,
                    StockMovementType.ADD, StockReason.SALE_CANCELLATION,
                    f"invoice {invoice.number} cancelled",
                    source_document_id=invoice.id,
                )
        if invoice.validation_movement_id is not None:
            self._accounts.compensate(
                organization_id, invoice.validation_movement_id,
                notes=f"cancellation of invoice {invoice.number}",
            )
        invoice.cancelled_at = self.clock.now()
        invoice.status = InvoiceStatus.CANCELLED
        self.session.flush()
        logger.info(
            "invoice_cancelled",
            extra={"invoice_id": str(invoice.id), "number": invoice.number},
        )

    def _mark_invoice_returned(self, invoice: Invoice) -> None:
        if invoice.total_credit_issued != invoice.total_ttc:
            raise BusinessRuleError(
                f"Invoice {invoice.number} is credited {invoice.total_credit_issued} "
                f"of {invoice.total_ttc}; a total return needs the full amount"
            )
        invoice.status = InvoiceStatus.PRODUCT_RETURN_TOTAL
        self.session.flush()

    def _transition_purchase(
        self, organization_id: UUID, purchase_id: UUID, target: PurchaseStatus,
    ) -> PurchaseDocument:
        purchase = self._lock(PurchaseDocument, purchase_id, organization_id)
        PURCHASE_WORKFLOW.require("PurchaseDocument", purchase.id, purchase.status.value, target.value)
        if target is PurchaseStatus.VALIDATED:
            self._validate_purchase(organization_id, purchase)
        else:
            self._cancel_purchase(organization_id, purchase)
        return purchase

    def _validate_purchase(self, organization_id: UUID, purchase: PurchaseDocument) -> None:
        if not purchase.lines:
            raise BusinessRuleError(f"Purchase document {purchase.id} has no lines")
        self._apply_totals(purchase)
        purchase.number = self._sequences.next_document_number(
            organization_id, self._config.numbering.purchase_prefix, purchase.document_date.year,
        )
        self.session.flush()

        for line in purchase.lines:
            if line.product_id is None:
                continue
            product = self._stock.lock_product(organization_id, line.product_id)
            if product.unlimited_stock:
                continue
            self._stock.apply_movement(
                organization_id, line.product_id, line.quantity,
                StockMovementType.ADD, StockReason.PURCHASE_RECEIPT,
                f"purchase {purchase.number}",
                source_document_id=purchase.id,
            )
            line.stock_applied = True

        purchase.validated_at = self.clock.now()
        purchase.status = PurchaseStatus.VALIDATED
        self.session.flush()
        logger.info(
            "purchase_document_validated",
            extra={"purchase_id": str(purchase.id), "number": purchase.number},
        )

    def _cancel_purchase(self, organization_id: UUID, purchase: PurchaseDocument) -> None:
        if purchase.total_credit_issued != ZERO or purchase.total_credited != ZERO:
            raise BusinessRuleError(
                f"Purchase document {purchase.number} has credit notes; it cannot be cancelled"
            )
        for line in purchase.lines:
            if line.stock_applied:
                self._stock.apply_movement(
                    organization_id, line.product_id, line.quantity,
                    StockMovementType.REMOVE, StockReason.PURCHASE_CANCELLATION,
                    f"purchase {purchase.number} cancelled",
                    source_document_id=purchase.id,
                )
        purchase.cancelled_at = self.clock.now()
        purchase.status = PurchaseStatus.CANCELLED
        self.session.flush()
        logger.info(
            "purchase_document_cancelled",
            extra={"purchase_id": str(purchase.id), "number": purchase.number},
        )

    def _transition_credit_note(
        self, organization_id: UUID, credit_note_id: UUID, target: CreditNoteStatus,
    ) -> CreditNote:
        if target is CreditNoteStatus.VALIDATED:
            return self.validate_credit_note(organization_id, credit_note_id)
        if target is CreditNoteStatus.CANCELLED:
            return self.cancel_credit_note(organization_id, credit_note_id)
        # Amount-driven states are reached through block / apply / refund
        note = self._credit.lock_note(organization_id, credit_note_id)
        raise InvalidTransitionError("CreditNote", str(note.id), note.status.value, target.value)

    # =========================================================================
    # Payments
    # =========================================================================

    def record_payment(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        amount: Decimal | int | str,
        *,
        method: str = "cash",
        reference_number: str | None = None,
    ) -> Payment:
        """
        Record money received against a validated invoice.

        Raises:
            BusinessRuleError: the invoice is not validated, or the amount
                exceeds what is still outstanding.
        """
        value = round_money(positive_amount("amount", amount), self._calculator.places)
        invoice = self._lock(Invoice, invoice_id, organization_id)
        if invoice.status != InvoiceStatus.VALIDATED:
            raise BusinessRuleError(
                f"Invoice {invoice.number or invoice.id} is {invoice.status.value}; "
                "payments need a validated invoice"
            )
        outstanding = invoice.net_payable - invoice.paid_amount
        if value > outstanding:
            raise BusinessRuleError(
                f"Payment {value} exceeds outstanding {outstanding} on invoice {invoice.number}"
            )

        movement = self._accounts.append(
            organization_id, invoice.client_id, value, MovementSource.INVOICE_PAYMENT, invoice.id,
            reference_number=reference_number or invoice.number, payment_method=method,
        )
        payment = Payment(
            organization_id=organization_id,
            invoice_id=invoice.id,
            client_id=invoice.client_id,
            amount=value,
            method=method,
            reference_number=reference_number,
            paid_at=self.clock.now(),
            account_movement_id=movement.id,
        )
        self.session.add(payment)
        invoice.paid_amount = invoice.paid_amount + value
        invoice.payment_status = self._derive_status(invoice)
        self.session.flush()

        logger.info(
            "payment_recorded",
            extra={
                "invoice_id": str(invoice.id),
                "payment_id": str(payment.id),
                "amount": str(value),
                "paid_amount": str(invoice.paid_amount),
                "payment_status": invoice.payment_status.value,
            },
        )
        return payment

    def record_deposit(
        self,
        organization_id: UUID,
        client_id: UUID,
        amount: Decimal | int | str,
        *,
        method: str = "cash",
        reference_number: str | None = None,
        notes: str | None = None,
    ) -> ClientAccountMovement:
        """Money received on account, not tied to an invoice."""
        value = round_money(positive_amount("amount", amount), self._calculator.places)
        return self._accounts.append(
            organization_id, client_id, value, MovementSource.DIRECT_DEPOSIT,
            reference_number=reference_number, notes=notes, payment_method=method,
        )

    # =========================================================================
    # Credit notes
    # =========================================================================

    def issue_credit_note(
        self,
        organization_id: UUID,
        source: SourceRef,
        *,
        amount: Decimal | int | str | None = None,
        lines: Sequence[CreditLineInput] = (),
        credit_note_type: CreditNoteType = CreditNoteType.FINANCIAL,
        reason: str | None = None,
    ) -> CreditNote:
        """
        Issue a draft credit note on a validated source document.

        Either ``amount`` (a financial credit) or ``lines`` (reversing
        quantities of source lines) must be given, not both.  Line
        quantities are capped by what earlier notes have not yet credited.
        """
        credit_note_type = CreditNoteType(credit_note_type)
        if (amount is None) == (not lines):
            raise ValidationError("lines", len(lines), "give either an amount or lines")
        if credit_note_type is CreditNoteType.PRODUCT_RETURN and not lines:
            raise ValidationError("lines", 0, "product returns need lines")
        if not isinstance(source, (InvoiceRef, PurchaseRef)):
            raise ValidationError("source", source, "must be an InvoiceRef or PurchaseRef")
        value = None
        if amount is not None:
            value = round_money(positive_amount("amount", amount), self._calculator.places)

        document = self._credit.lock_source(organization_id, source)
        totals = None
        note_lines: list[CreditNoteLine] = []
        if lines:
            note_lines = self._build_credit_lines(document, lines)
            subtotal = round_money(sum((l.line_total_ht for l in note_lines), ZERO), self._calculator.places)
            vat = round_money(sum((l.line_total_vat for l in note_lines), ZERO), self._calculator.places)
            totals = (subtotal, vat)
            value = subtotal + vat

        note = self._credit.issue(
            organization_id,
            source,
            value,
            credit_note_type,
            lines=note_lines,
            reason=reason,
            client_id=document.client_id if source.is_customer else None,
            totals=totals,
        )
        note.number = self._sequences.next_document_number(
            organization_id, self._config.numbering.credit_note_prefix, self.clock.today().year,
        )
        self.session.flush()
        return note

    def validate_credit_note(self, organization_id: UUID, credit_note_id: UUID) -> CreditNote:
        """
        draft -> validated.

        A customer product return is blocked in full until the goods come
        back; a supplier product return sends the stock out now.
        """
        note = self._credit.lock_note(organization_id, credit_note_id)
        CREDIT_NOTE_WORKFLOW.require("CreditNote", note.id, note.status.value, "validated")
        note = self._credit.validate(organization_id, note.id)
        if note.credit_note_type is not CreditNoteType.PRODUCT_RETURN:
            return note

        if note.is_customer:
            if any(line.product_id is not None for line in note.lines) and note.available > ZERO:
                note = self._credit.block(organization_id, note.id, note.available)
                note.awaiting_return = True
        else:
            self._move_returned_stock(
                organization_id, note, StockMovementType.REMOVE, StockReason.SUPPLIER_RETURN,
            )
        self.session.flush()
        return note

    def block_credit(self, organization_id: UUID, credit_note_id: UUID, amount) -> CreditNote:
        return self._credit.block(organization_id, credit_note_id, amount)

    def unblock_credit(self, organization_id: UUID, credit_note_id: UUID, amount) -> CreditNote:
        note = self._credit.lock_note(organization_id, credit_note_id)
        if note.awaiting_return:
            raise BusinessRuleError(
                f"Credit note {note.number} is held until the returned goods are received"
            )
        return self._credit.unblock(organization_id, note.id, amount)

    def apply_credit(
        self,
        organization_id: UUID,
        credit_note_id: UUID,
        target_id: UUID,
        amount: Decimal | int | str,
        *,
        from_blocked: bool = False,
    ) -> CreditApplication:
        """
        Consume credit against a validated document of the same party.

        The target's total_credited grows by ``amount`` and its net_payable
        is recomputed by the calculator.  Customer notes also credit the
        client account.
        """
        value = round_money(positive_amount("amount", amount), self._calculator.places)
        note = self._credit.lock_note(organization_id, credit_note_id)
        if note.status not in USABLE_STATUSES:
            raise InvalidTransitionError(
                "CreditNote", str(note.id), note.status.value, CreditNoteStatus.PARTIALLY_APPLIED.value,
            )
        if note.awaiting_return:
            raise BusinessRuleError(
                f"Credit note {note.number} is held until the returned goods are received"
            )
        if note.is_customer:
            target = self._lock(Invoice, target_id, organization_id)
            if target.client_id != note.client_id:
                raise BusinessRuleError(
                    f"Credit note {note.number} belongs to another client than invoice {target.number}"
                )
            validated = InvoiceStatus.VALIDATED
        else:
            target = self._lock(PurchaseDocument, target_id, organization_id)
            origin = self._get(PurchaseDocument, note.source_id, organization_id)
            if target.supplier_name != origin.supplier_name:
                raise BusinessRuleError(
                    f"Credit note {note.number} belongs to another supplier than purchase {target.number}"
                )
            validated = PurchaseStatus.VALIDATED
        if target.status != validated:
            raise BusinessRuleError(
                f"Credit can only be applied to a validated document; {target.id} is {target.status.value}"
            )
        outstanding = target.net_payable - target.paid_amount
        if value > outstanding:
            raise BusinessRuleError(
                f"Credit {value} exceeds outstanding {outstanding} on document {target.number}"
            )

        movement_id = None
        if note.is_customer:
            movement = self._accounts.append(
                organization_id, note.client_id, value, MovementSource.CREDIT_NOTE_APPLICATION, note.id,
                reference_number=note.number,
                notes=f"applied to invoice {target.number}",
            )
            movement_id = movement.id

        application = self._credit.apply(
            organization_id, note.id, value, note.source_kind, target.id,
            from_blocked=from_blocked, account_movement_id=movement_id,
        )

        target.total_credited = target.total_credited + value
        totals = self._compute(target)
        target.net_payable = totals.net_payable
        target.payment_status = self._derive_status(target)
        self.session.flush()

        logger.info(
            "credit_applied_to_document",
            extra={
                "credit_note_id": str(note.id),
                "target_id": str(target.id),
                "amount": str(value),
                "total_credited": str(target.total_credited),
                "net_payable": str(target.net_payable),
            },
        )
        return application

    def refund_credit(self, organization_id: UUID, credit_note_id: UUID, amount) -> CreditNote:
        value = round_money(positive_amount("amount", amount), self._calculator.places)
        return self._credit.refund(organization_id, credit_note_id, value)

    def cancel_credit_note(self, organization_id: UUID, credit_note_id: UUID) -> CreditNote:
        """
        Cancel an unused note.  Stock already sent back to a supplier is
        received again.
        """
        note = self._credit.lock_note(organization_id, credit_note_id)
        CREDIT_NOTE_WORKFLOW.require("CreditNote", note.id, note.status.value, "cancelled")
        if not note.is_customer and note.credit_note_type is CreditNoteType.PRODUCT_RETURN:
            self._move_returned_stock(
                organization_id, note, StockMovementType.ADD, StockReason.PURCHASE_RECEIPT,
                only_restored=True,
            )
        return self._credit.cancel(organization_id, note.id)

    def receive_returned_goods(self, organization_id: UUID, credit_note_id: UUID) -> CreditNote:
        """
        Put returned goods back in stock and release the credit held for
        them.
        """
        note = self._credit.lock_note(organization_id, credit_note_id)
        if not (note.is_customer and note.credit_note_type is CreditNoteType.PRODUCT_RETURN):
            raise BusinessRuleError(f"Credit note {note.number} is not a customer product return")
        if not note.awaiting_return:
            raise BusinessRuleError(f"Credit note {note.number} is not awaiting returned goods")

        self._move_returned_stock(
            organization_id, note, StockMovementType.ADD, StockReason.CREDIT_NOTE_RETURN,
        )
        if note.blocked > ZERO:
            note = self._credit.unblock(organization_id, note.id, note.blocked)
        logger.info(
            "returned_goods_received",
            extra={"credit_note_id": str(note.id), "available": str(note.available)},
        )
        return note

    # =========================================================================
    # Internals
    # =========================================================================

    def _move_returned_stock(
        self,
        organization_id: UUID,
        note: CreditNote,
        movement_type: StockMovementType,
        reason: StockReason,
        *,
        only_restored: bool = False,
    ) -> None:
        for line in note.lines:
            if line.product_id is None or line.stock_restored != only_restored:
                continue
            product = self._stock.lock_product(organization_id, line.product_id)
            if product.unlimited_stock:
                continue
            self._stock.apply_movement(
                organization_id, line.product_id, line.quantity, movement_type, reason,
                f"credit note {note.number}",
                source_document_id=note.id,
            )
            line.stock_restored = not only_restored
        self.session.flush()

    def _build_credit_lines(
        self, document: Invoice | PurchaseDocument, lines: Sequence[CreditLineInput],
    ) -> list[CreditNoteLine]:
        source_lines = {line.id: line for line in document.lines}
        requested: dict[UUID, Decimal] = {}
        result: list[CreditNoteLine] = []
        for credit_line in lines:
            source_line = source_lines.get(credit_line.source_line_id)
            if source_line is None:
                raise ValidationError(
                    "source_line_id", str(credit_line.source_line_id),
                    f"is not a line of document {document.id}",
                )
            already = self._credited_quantity(source_line.id)
            requested[source_line.id] = requested.get(source_line.id, ZERO) + credit_line.quantity
            remaining = source_line.quantity - already
            if requested[source_line.id] > remaining:
                raise BusinessRuleError(
                    f"Line {source_line.position} of document {document.number}: "
                    f"crediting {requested[source_line.id]} exceeds uncredited quantity {remaining}"
                )
            totals = self._calculator.compute_line(
                credit_line.quantity,
                source_line.unit_price_ht,
                source_line.discount_percent,
                source_line.vat_rate,
                vat_exempt=document.vat_exempt,
            )
            result.append(CreditNoteLine(
                source_line_id=source_line.id,
                product_id=source_line.product_id,
                description=source_line.description,
                quantity=credit_line.quantity,
                unit_price_ht=source_line.unit_price_ht,
                discount_percent=source_line.discount_percent,
                vat_rate=source_line.vat_rate,
                line_total_ht=totals.line_total_ht,
                line_total_vat=totals.line_total_vat,
                line_total_ttc=totals.line_total_ttc,
                return_reason=credit_line.return_reason,
                stock_restored=False,
            ))
        return result

    def _credited_quantity(self, source_line_id: UUID) -> Decimal:
        total = self.session.execute(
            select(CreditNoteLine.quantity)
            .join(CreditNote, CreditNote.id == CreditNoteLine.credit_note_id)
            .where(
                CreditNoteLine.source_line_id == source_line_id,
                CreditNote.status != CreditNoteStatus.CANCELLED,
            )
        ).scalars()
        return sum(total, ZERO)

    def _check_lines(
        self, organization_id: UUID, lines: Sequence[LineInput], *, allow_reservations: bool,
    ) -> None:
        for line in lines:
            if not isinstance(line, LineInput):
                raise ValidationError("lines", type(line).__name__, "must be LineInput")
            if not self._config.is_known_vat_rate(line.vat_rate):
                raise ValidationError("vat_rate", line.vat_rate, "is not a configured VAT rate")
            if line.product_id is not None:
                self._get(Product, line.product_id, organization_id)
            if line.reservation_id is None:
                continue
            if not allow_reservations:
                raise ValidationError("reservation_id", line.reservation_id, "not allowed on this document")
            reservation = self._get(ProductReservation, line.reservation_id, organization_id)
            if not reservation.is_active:
                raise ReservationNotActiveError(str(reservation.id), reservation.status.value)
            if reservation.product_id != line.product_id:
                raise ValidationError("reservation_id", line.reservation_id, "reserves another product")
            if reservation.quantity > line.quantity:
                raise ValidationError(
                    "reservation_id", line.reservation_id, "reserves more than the line sells",
                )

    @staticmethod
    def _build_line(model, organization_id: UUID, position: int, line: LineInput):
        values = dict(
            organization_id=organization_id,
            position=position,
            description=line.description,
            quantity=line.quantity,
            unit_price_ht=line.unit_price_ht,
            discount_percent=line.discount_percent,
            vat_rate=line.vat_rate,
            product_id=line.product_id,
            stock_applied=False,
        )
        if model is InvoiceLine:
            values["reservation_id"] = line.reservation_id
        return model(**values)

    def _compute(self, document: Invoice | PurchaseDocument) -> DocumentTotals:
        # Frozen documents keep the stamp duty they were validated with
        if document.is_editable:
            stamp_duty = self._config.stamp_duty_amount
        else:
            stamp_duty = document.stamp_duty_amount
        return self._calculator.compute_document_totals(
            document.lines,
            stamp_duty_enabled=document.stamp_duty_enabled,
            withholding_rate=document.withholding_rate,
            custom_taxes=[CustomTax.from_dict(tax) for tax in document.custom_taxes or ()],
            stamp_duty_amount=stamp_duty,
            withholding_applied=document.withholding_applied,
            total_credited=document.total_credited,
            vat_exempt=document.vat_exempt,
        )

    def _apply_totals(self, document: Invoice | PurchaseDocument) -> DocumentTotals:
        totals = self._compute(document)
        for line, line_totals in zip(document.lines, totals.lines):
            line.line_total_ht = line_totals.line_total_ht
            line.line_total_vat = line_totals.line_total_vat
            line.line_total_ttc = line_totals.line_total_ttc
            line.line_discount = line_totals.line_discount
        document.subtotal_ht = totals.subtotal_ht
        document.total_vat = totals.total_vat
        document.total_discount = totals.total_discount
        document.total_ttc = totals.total_ttc
        document.total_custom_taxes = totals.total_custom_taxes
        document.total_payment_taxes = totals.payment_taxes
        document.stamp_duty_amount = totals.stamp_duty_amount
        document.withholding_amount = totals.withholding_amount
        document.net_payable = totals.net_payable
        return totals

    def _derive_status(self, document: Invoice | PurchaseDocument) -> PaymentStatus:
        return self._calculator.derive_payment_status(
            document.paid_amount, document.net_payable, self._config.payment_epsilon,
        )

    def _currency_and_rate(self, currency: str | None, exchange_rate) -> tuple[str, Decimal]:
        try:
            code = validate_currency(currency or self._config.reference_currency)
            rate = to_decimal(exchange_rate)
        except ValueError as exc:
            raise ValidationError("currency", currency, str(exc)) from exc
        if rate <= ZERO:
            raise ValidationError("exchange_rate", exchange_rate, "must be positive")
        if code == self._config.reference_currency and rate != Decimal("1"):
            raise ValidationError("exchange_rate", exchange_rate, "must be 1 for the reference currency")
        return code, rate

    def _withholding_rate(self, withholding_rate) -> Decimal:
        if withholding_rate is None:
            return self._config.default_withholding_rate
        try:
            rate = to_decimal(withholding_rate)
        except ValueError as exc:
            raise ValidationError("withholding_rate", withholding_rate, str(exc)) from exc
        if rate != ZERO and rate not in self._config.withholding_rates:
            raise ValidationError("withholding_rate", withholding_rate, "is not a configured rate")
        return rate

    def _custom_tax_payload(self, custom_taxes: Sequence[CustomTax] | None) -> list[dict]:
        taxes = self._config.custom_taxes if custom_taxes is None else custom_taxes
        return [tax.to_dict() for tax in taxes]
