"""Tests for the tenant-wide reconciliation run."""

from decimal import Decimal


class TestReconciliationService:

    def test_clean_tenant(self, container, org_id, validated_invoice, captured_logs):
        report = container.reconciliation.reconcile(org_id)

        assert report.is_consistent
        assert report.findings == ()
        assert report.organization_id == org_id
        assert any(r["message"] == "reconciliation_clean" for r in captured_logs())

    def test_findings_grouped_and_logged(self, container, session, org_id, product, client, captured_logs):
        product.current_stock = Decimal("11")
        client.account_balance = Decimal("-1")
        session.flush()

        report = container.reconciliation.reconcile(org_id)

        assert not report.is_consistent
        assert set(report.by_check()) == {"stock_replay", "balance_replay"}
        assert report.by_check()["stock_replay"][0].entity_id == product.id
        events = [r for r in captured_logs() if r["message"] == "reconciliation_findings"]
        assert events[0]["level"] == "ERROR"
        assert events[0]["checks"] == ["balance_replay", "stock_replay"]

    def test_checked_at_from_clock(self, container, org_id, deterministic_clock):
        report = container.reconciliation.reconcile(org_id)
        assert report.checked_at == deterministic_clock.now()
