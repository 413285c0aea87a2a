"""
Tests for the ORM immutability listeners and the table constraints behind
them.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from docledger_kernel.db.engine import (
    create_tables,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from docledger_kernel.db.immutability import unregister_immutability_listeners
from docledger_kernel.domain.references import InvoiceRef
from docledger_kernel.exceptions import ImmutabilityViolationError
from docledger_kernel.models.client import ClientAccountMovement, MovementSource
from docledger_kernel.models.product import StockMovement
from docledger_services.facade import DocumentLedgerFacade


class TestAppendOnlyLogs:

    def test_stock_movement_update_blocked(self, session, product):
        movement = session.execute(
            select(StockMovement).where(StockMovement.product_id == product.id)
        ).scalar_one()
        movement.quantity = Decimal("11")
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == "StockMovement"

    def test_stock_movement_delete_blocked(self, session, product):
        movement = session.execute(
            select(StockMovement).where(StockMovement.product_id == product.id)
        ).scalar_one()
        session.delete(movement)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_account_movement_update_blocked(self, session, accounts, org_id, client):
        movement = accounts.append(org_id, client.id, "10", MovementSource.DIRECT_DEPOSIT)
        movement.notes = "edited"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_account_movement_delete_blocked(self, session, accounts, org_id, client):
        movement = accounts.append(org_id, client.id, "10", MovementSource.DIRECT_DEPOSIT)
        session.delete(movement)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_payment_update_blocked(self, session, orchestrator, org_id, validated_invoice):
        payment = orchestrator.record_payment(org_id, validated_invoice.id, "10")
        payment.amount = Decimal("20")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_violation_logged(self, session, accounts, org_id, client, captured_logs):
        movement = accounts.append(org_id, client.id, "10", MovementSource.DIRECT_DEPOSIT)
        movement.amount = Decimal("11")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        events = [r for r in captured_logs() if r["message"] == "immutability_violation_blocked"]
        assert events[0]["entity_type"] == "ClientAccountMovement"
        assert events[0]["field"] == "amount"


class TestFrozenDocuments:

    def test_validated_invoice_totals_frozen(self, session, validated_invoice):
        validated_invoice.subtotal_ht = Decimal("1")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_validated_invoice_lines_frozen(self, session, validated_invoice):
        validated_invoice.lines[0].quantity = Decimal("1")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_validated_invoice_settlement_fields_move(self, session, validated_invoice):
        validated_invoice.paid_amount = Decimal("10")
        session.flush()
        assert validated_invoice.paid_amount == Decimal("10")

    def test_cancelled_invoice_fully_frozen(self, session, orchestrator, org_id, validated_invoice):
        orchestrator.transition_document(org_id, "invoice", validated_invoice.id, "cancelled")
        validated_invoice.paid_amount = Decimal("1")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_validated_invoice_cannot_be_deleted(self, session, validated_invoice):
        session.delete(validated_invoice)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_created_invoice_is_editable(self, session, orchestrator, org_id, client, make_line):
        invoice = orchestrator.create_invoice(org_id, client.id, [make_line()])
        invoice.notes = "call before delivery"
        session.flush()

    def test_cancelled_credit_note_frozen(self, session, orchestrator, org_id, validated_invoice):
        note = orchestrator.issue_credit_note(org_id, InvoiceRef(validated_invoice.id), amount="10")
        orchestrator.cancel_credit_note(org_id, note.id)
        note.reason = "changed my mind"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestTableConstraints:

    def test_negative_stock_rejected_by_database(self, session, product):
        product.current_stock = Decimal("-1")
        with pytest.raises(IntegrityError):
            session.flush()

    def test_duplicate_account_sequence_rejected(self, session, accounts, org_id, client):
        first = accounts.append(org_id, client.id, "10", MovementSource.DIRECT_DEPOSIT)
        session.add(ClientAccountMovement(
            organization_id=org_id,
            client_id=client.id,
            sequence=first.sequence,
            amount=Decimal("1"),
            balance_after=Decimal("11"),
            movement_type=first.movement_type,
            source_type=MovementSource.MANUAL_ADJUSTMENT,
            movement_date=first.movement_date,
        ))
        with pytest.raises(IntegrityError):
            session.flush()


class TestListenerRegistration:
    """The guards are live for any caller, not only under the test fixtures."""

    def test_engine_initialization_enables_guards(self, tmp_path, org_id):
        unregister_immutability_listeners()
        init_engine_from_url(f"sqlite:///{tmp_path / 'fresh.db'}")
        try:
            create_tables()
            facade = DocumentLedgerFacade(get_session_factory())
            product = facade.register_product(org_id, "Widget", 5)

            session = get_session()
            try:
                movement = session.execute(
                    select(StockMovement).where(StockMovement.product_id == product.product_id)
                ).scalar_one()
                movement.quantity = Decimal("999")
                with pytest.raises(ImmutabilityViolationError):
                    session.commit()
            finally:
                session.rollback()
                session.close()
        finally:
            unregister_immutability_listeners()
            reset_engine()

    def test_facade_enables_guards(self, session_factory, org_id):
        unregister_immutability_listeners()
        facade = DocumentLedgerFacade(session_factory)
        product = facade.register_product(org_id, "Widget", 5)

        session = session_factory()
        try:
            movement = session.execute(
                select(StockMovement).where(StockMovement.product_id == product.product_id)
            ).scalar_one()
            session.delete(movement)
            with pytest.raises(ImmutabilityViolationError):
                session.flush()
        finally:
            session.rollback()
            session.close()
