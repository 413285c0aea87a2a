"""
IntegritySelector -- replay checks over every stored ledger cache.

Responsibility:
    Recomputes each derived field from its source-of-truth log and reports
    every mismatch as a ``Finding``.  Used per entity by the ledgers'
    ``reconcile_*`` methods and tenant-wide by the reconciliation service.

Invariants checked:
    - Stock: current_stock equals the replay of the movement log from 0,
      each movement chains previous_stock -> new_stock, current_stock >= 0,
      reserved_stock equals the sum of ACTIVE reservations and stays within
      current_stock unless the product allows out-of-stock sales.
    - Accounts: sequences are gap-free from 1, balance_after chains, and
      the last balance_after equals Client.account_balance.
    - Credit: generated == used + blocked + available, status agrees with
      the amounts, applications sum to used - refunded, and each source
      document's total_credit_issued matches its live notes.
    - Documents: net_payable satisfies the cascade identity, paid_amount
      equals the sum of payments, payment_status is the derived one.

Findings are reported, never corrected.
"""

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from docledger_engines.monetary import PAYMENT_EPSILON, MonetaryCalculator
from docledger_kernel.db.types import ZERO
from docledger_kernel.domain.references import DocumentKind
from docledger_kernel.models.client import Client, ClientAccountMovement
from docledger_kernel.models.credit_note import (
    CreditApplication,
    CreditNote,
    CreditNoteStatus,
)
from docledger_kernel.models.document import (
    Invoice,
    InvoiceStatus,
    Payment,
    PurchaseDocument,
)
from docledger_kernel.models.product import (
    Product,
    ProductReservation,
    ReservationStatus,
    StockMovement,
    StockMovementType,
)
from docledger_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class Finding:
    """One detected inconsistency."""

    check: str
    entity_type: str
    entity_id: UUID
    expected: str
    actual: str
    detail: str = ""


class IntegritySelector(BaseSelector):
    """
    Read-only consistency checks, scoped to one tenant.

    Non-goals:
        - Repairing anything.  A finding means a defect upstream.
    """

    # =========================================================================
    # Stock
    # =========================================================================

    def stock_findings(self, organization_id: UUID, product_id: UUID | None = None) -> list[Finding]:
        query = select(Product).where(Product.organization_id == organization_id)
        if product_id is not None:
            query = query.where(Product.id == product_id)
        findings: list[Finding] = []
        for product in self.session.execute(query.order_by(Product.id)).scalars():
            findings.extend(self._check_product(product))
        return findings

    def _check_product(self, product: Product) -> list[Finding]:
        findings: list[Finding] = []

        def report(check: str, expected, actual, detail: str = "") -> None:
            findings.append(Finding(check, "Product", product.id, str(expected), str(actual), detail))

        movements = self.session.execute(
            select(StockMovement)
            .where(StockMovement.product_id == product.id)
            .order_by(StockMovement.sequence)
        ).scalars().all()

        running = ZERO
        for movement in movements:
            if movement.previous_stock != running:
                report("stock_chain", running, movement.previous_stock,
                       f"movement #{movement.sequence} previous_stock")
            if movement.movement_type == StockMovementType.ADD:
                running = running + movement.quantity
            else:
                running = running - movement.quantity
            if movement.new_stock != running:
                report("stock_chain", running, movement.new_stock,
                       f"movement #{movement.sequence} new_stock")
        if running != product.current_stock:
            report("stock_replay", running, product.current_stock)
        if product.current_stock < ZERO:
            report("stock_non_negative", ZERO, product.current_stock)

        if not product.unlimited_stock:
            reserved = self.session.execute(
                select(ProductReservation.quantity).where(
                    ProductReservation.product_id == product.id,
                    ProductReservation.status == ReservationStatus.ACTIVE,
                )
            ).scalars()
            reserved_sum = sum(reserved, ZERO)
            if reserved_sum != product.reserved_stock:
                report("reserved_stock_sum", reserved_sum, product.reserved_stock)
            if (
                not product.allow_out_of_stock_sale
                and product.reserved_stock > product.current_stock
            ):
                report("reserved_within_current", product.current_stock, product.reserved_stock)
        return findings

    # =========================================================================
    # Client accounts
    # =========================================================================

    def balance_findings(self, organization_id: UUID, client_id: UUID | None = None) -> list[Finding]:
        query = select(Client).where(Client.organization_id == organization_id)
        if client_id is not None:
            query = query.where(Client.id == client_id)
        findings: list[Finding] = []
        for client in self.session.execute(query.order_by(Client.id)).scalars():
            movements = self.session.execute(
                select(ClientAccountMovement)
                .where(ClientAccountMovement.client_id == client.id)
                .order_by(ClientAccountMovement.sequence)
            ).scalars().all()

            running = ZERO
            for expected_sequence, movement in enumerate(movements, start=1):
                if movement.sequence != expected_sequence:
                    findings.append(Finding(
                        "movement_sequence", "Client", client.id,
                        str(expected_sequence), str(movement.sequence),
                    ))
                running = running + movement.amount
                if movement.balance_after != running:
                    findings.append(Finding(
                        "balance_chain", "Client", client.id,
                        str(running), str(movement.balance_after),
                        f"movement #{movement.sequence}",
                    ))
                    running = movement.balance_after
            if running != client.account_balance:
                findings.append(Finding(
                    "balance_replay", "Client", client.id,
                    str(running), str(client.account_balance),
                ))
        return findings

    # =========================================================================
    # Credit
    # =========================================================================

    def credit_findings(self, organization_id: UUID) -> list[Finding]:
        findings: list[Finding] = []
        notes = self.session.execute(
            select(CreditNote)
            .where(CreditNote.organization_id == organization_id)
            .order_by(CreditNote.id)
        ).scalars().all()

        applied: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        for note_id, amount in self.session.execute(
            select(CreditApplication.credit_note_id, CreditApplication.amount).where(
                CreditApplication.organization_id == organization_id
            )
        ):
            applied[note_id] = applied[note_id] + amount

        issued: dict[tuple[DocumentKind, UUID], Decimal] = defaultdict(lambda: ZERO)
        for note in notes:
            def report(check: str, expected, actual) -> None:
                findings.append(Finding(check, "CreditNote", note.id, str(expected), str(actual)))

            total = note.used + note.blocked + note.available
            if total != note.generated:
                report("credit_conservation", note.generated, total)
            if note.status == CreditNoteStatus.SETTLED and (note.available or note.blocked):
                report("settled_consistency", "available=0 blocked=0",
                       f"available={note.available} blocked={note.blocked}")
            if note.status == CreditNoteStatus.CANCELLED and note.generated != ZERO:
                report("cancelled_consistency", ZERO, note.generated)
            if applied[note.id] != note.used - note.refunded:
                report("credit_applications", note.used - note.refunded, applied[note.id])
            if note.status != CreditNoteStatus.CANCELLED:
                key = (note.source_kind, note.source_id)
                issued[key] = issued[key] + note.generated

        for model, kind in ((Invoice, DocumentKind.INVOICE), (PurchaseDocument, DocumentKind.PURCHASE)):
            for document in self.session.execute(
                select(model).where(model.organization_id == organization_id).order_by(model.id)
            ).scalars():
                expected = issued.get((kind, document.id), ZERO)
                if document.total_credit_issued != expected:
                    findings.append(Finding(
                        "credit_issued_total", model.__name__, document.id,
                        str(expected), str(document.total_credit_issued),
                    ))
                if document.total_credit_issued > document.total_ttc:
                    findings.append(Finding(
                        "credit_cap", model.__name__, document.id,
                        str(document.total_ttc), str(document.total_credit_issued),
                    ))
        return findings

    # =========================================================================
    # Documents
    # =========================================================================

    def document_findings(
        self, organization_id: UUID, epsilon: Decimal = PAYMENT_EPSILON,
    ) -> list[Finding]:
        findings: list[Finding] = []
        paid: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        for invoice_id, amount in self.session.execute(
            select(Payment.invoice_id, Payment.amount).where(
                Payment.organization_id == organization_id
            )
        ):
            paid[invoice_id] = paid[invoice_id] + amount

        invoices = self.session.execute(
            select(Invoice).where(Invoice.organization_id == organization_id).order_by(Invoice.id)
        ).scalars()
        for invoice in invoices:
            def report(check: str, expected, actual) -> None:
                findings.append(Finding(check, "Invoice", invoice.id, str(expected), str(actual)))

            expected_net = (
                invoice.total_ttc + invoice.total_custom_taxes + invoice.stamp_duty_amount
                - invoice.withholding_amount - invoice.total_credited
            )
            if invoice.total_ttc != invoice.subtotal_ht + invoice.total_vat:
                report("total_ttc_identity", invoice.subtotal_ht + invoice.total_vat, invoice.total_ttc)
            if invoice.net_payable != expected_net:
                report("net_payable_identity", expected_net, invoice.net_payable)
            if invoice.paid_amount != paid[invoice.id]:
                report("paid_amount_sum", paid[invoice.id], invoice.paid_amount)
            if invoice.status in (InvoiceStatus.VALIDATED, InvoiceStatus.PRODUCT_RETURN_TOTAL):
                derived = MonetaryCalculator.derive_payment_status(
                    invoice.paid_amount, invoice.net_payable, epsilon,
                )
                if invoice.payment_status != derived:
                    report("payment_status_derived", derived.value, invoice.payment_status.value)
        return findings

    def all_findings(self, organization_id: UUID, epsilon: Decimal = PAYMENT_EPSILON) -> list[Finding]:
        return (
            self.stock_findings(organization_id)
            + self.balance_findings(organization_id)
            + self.credit_findings(organization_id)
            + self.document_findings(organization_id, epsilon)
        )
