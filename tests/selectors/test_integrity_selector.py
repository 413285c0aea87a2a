"""
Tests for IntegritySelector.

Each test corrupts one cached field directly through the session and
checks that the matching replay check reports it.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from docledger_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from docledger_kernel.domain.references import InvoiceRef
from docledger_kernel.models.client import MovementSource
from docledger_kernel.models.product import StockMovement
from docledger_kernel.selectors.integrity_selector import IntegritySelector


def _checks(findings):
    return {finding.check for finding in findings}


@pytest.fixture
def integrity(session):
    return IntegritySelector(session)


@pytest.fixture
def busy_ledger(orchestrator, stock, org_id, client, product, validated_invoice):
    """Stock, account, payment and credit activity on one tenant."""
    stock.reserve(org_id, product.id, 3)
    orchestrator.record_payment(org_id, validated_invoice.id, "100")
    note = orchestrator.issue_credit_note(org_id, InvoiceRef(validated_invoice.id), amount="40")
    orchestrator.validate_credit_note(org_id, note.id)
    orchestrator.apply_credit(org_id, note.id, validated_invoice.id, "25")
    orchestrator.refund_credit(org_id, note.id, "5")
    return note


class TestCleanLedger:

    def test_no_findings_after_activity(self, integrity, org_id, busy_ledger):
        assert integrity.all_findings(org_id) == []

    def test_empty_tenant(self, integrity, other_org_id):
        assert integrity.all_findings(other_org_id) == []


class TestStockChecks:

    def test_current_stock_drift(self, integrity, session, org_id, product):
        product.current_stock = Decimal("12")
        session.flush()
        findings = integrity.stock_findings(org_id, product.id)
        assert _checks(findings) == {"stock_replay"}
        assert Decimal(findings[0].expected) == Decimal("10")
        assert Decimal(findings[0].actual) == Decimal("12")

    def test_reserved_stock_drift(self, integrity, session, org_id, product):
        product.reserved_stock = Decimal("3")
        session.flush()
        assert _checks(integrity.stock_findings(org_id)) == {"reserved_stock_sum"}

    def test_reserved_above_current(self, integrity, stock, session, org_id, product):
        stock.reserve(org_id, product.id, 4)
        product.current_stock = Decimal("2")
        session.flush()
        assert {"reserved_within_current", "stock_replay"} <= _checks(integrity.stock_findings(org_id))

    def test_broken_movement_chain(self, integrity, session, org_id, product):
        movement = session.execute(
            select(StockMovement).where(StockMovement.product_id == product.id)
        ).scalar_one()
        unregister_immutability_listeners()
        try:
            movement.new_stock = Decimal("9")
            session.flush()
        finally:
            register_immutability_listeners()
        assert "stock_chain" in _checks(integrity.stock_findings(org_id))


class TestBalanceChecks:

    def test_cached_balance_drift(self, integrity, accounts, session, org_id, client):
        accounts.append(org_id, client.id, "10", MovementSource.DIRECT_DEPOSIT)
        client.account_balance = Decimal("15")
        session.flush()
        assert _checks(integrity.balance_findings(org_id, client.id)) == {"balance_replay"}

    def test_broken_balance_chain(self, integrity, accounts, session, org_id, client):
        first = accounts.append(org_id, client.id, "10", MovementSource.DIRECT_DEPOSIT)
        accounts.append(org_id, client.id, "5", MovementSource.DIRECT_DEPOSIT)
        unregister_immutability_listeners()
        try:
            first.balance_after = Decimal("11")
            session.flush()
        finally:
            register_immutability_listeners()
        assert "balance_chain" in _checks(integrity.balance_findings(org_id))


class TestCreditChecks:

    def test_conservation_drift(self, integrity, session, org_id, busy_ledger):
        busy_ledger.available = busy_ledger.available + Decimal("1")
        session.flush()
        assert _checks(integrity.credit_findings(org_id)) == {"credit_conservation"}

    def test_applications_disagree_with_used(self, integrity, session, org_id, busy_ledger):
        busy_ledger.used = busy_ledger.used + Decimal("1")
        busy_ledger.available = busy_ledger.available - Decimal("1")
        session.flush()
        assert _checks(integrity.credit_findings(org_id)) == {"credit_applications"}

    def test_issued_total_drift(self, integrity, session, org_id, validated_invoice):
        validated_invoice.total_credit_issued = Decimal("5")
        session.flush()
        assert _checks(integrity.credit_findings(org_id)) == {"credit_issued_total"}

    def test_cap_exceeded(self, integrity, session, org_id, validated_invoice):
        validated_invoice.total_credit_issued = Decimal("300")
        session.flush()
        assert _checks(integrity.credit_findings(org_id)) == {"credit_issued_total", "credit_cap"}


class TestDocumentChecks:

    def test_net_payable_drift(self, integrity, session, org_id, validated_invoice):
        validated_invoice.net_payable = Decimal("1")
        session.flush()
        assert "net_payable_identity" in _checks(integrity.document_findings(org_id))

    def test_paid_amount_without_payment(self, integrity, session, org_id, validated_invoice):
        validated_invoice.paid_amount = Decimal("10")
        session.flush()
        checks = _checks(integrity.document_findings(org_id))
        assert checks == {"paid_amount_sum", "payment_status_derived"}
