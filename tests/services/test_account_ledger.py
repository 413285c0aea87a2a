"""Tests for AccountLedger: running balances, compensation and drift detection."""

from decimal import Decimal
from uuid import uuid4

import pytest

from docledger_kernel.exceptions import (
    BusinessRuleError,
    CrossTenantAccessError,
    InvariantViolationError,
    ValidationError,
)
from docledger_kernel.models.client import MovementDirection, MovementSource


class TestAppend:

    def test_running_balance(self, accounts, container, org_id, client):
        accounts.append(org_id, client.id, "-214.200", MovementSource.INVOICE_VALIDATION, uuid4())
        accounts.append(org_id, client.id, "100", MovementSource.INVOICE_PAYMENT, uuid4())
        accounts.append(org_id, client.id, "50", MovementSource.DIRECT_DEPOSIT)

        movements = container.ledger_selector.list_movements(org_id, client.id)
        assert [m.sequence for m in movements] == [1, 2, 3]
        assert [m.balance_after for m in movements] == [
            Decimal("-214.200"), Decimal("-114.200"), Decimal("-64.200"),
        ]
        balance = container.ledger_selector.get_balance(org_id, client.id)
        assert balance.balance == Decimal("-64.200")
        assert balance.movement_count == 3

    def test_direction_follows_sign(self, accounts, org_id, client):
        debit = accounts.append(org_id, client.id, "-1", MovementSource.MANUAL_ADJUSTMENT)
        credit = accounts.append(org_id, client.id, "1", MovementSource.MANUAL_ADJUSTMENT)
        assert debit.movement_type == MovementDirection.DEBIT
        assert credit.movement_type == MovementDirection.CREDIT

    def test_zero_amount_rejected(self, accounts, org_id, client):
        with pytest.raises(ValidationError):
            accounts.append(org_id, client.id, "0.000", MovementSource.MANUAL_ADJUSTMENT)

    def test_movement_date_from_clock(self, accounts, org_id, client, deterministic_clock):
        movement = accounts.append(org_id, client.id, "5", MovementSource.DIRECT_DEPOSIT)
        assert movement.movement_date.replace(tzinfo=None) == deterministic_clock.now().replace(tzinfo=None)

    def test_other_tenant_rejected(self, accounts, other_org_id, client):
        with pytest.raises(CrossTenantAccessError):
            accounts.append(other_org_id, client.id, "5", MovementSource.DIRECT_DEPOSIT)

    def test_appended_event_logged(self, accounts, org_id, client, captured_logs):
        accounts.append(org_id, client.id, "12.5", MovementSource.DIRECT_DEPOSIT)
        events = [r for r in captured_logs() if r["message"] == "account_movement_appended"]
        assert events[-1]["amount"] == "12.5"
        assert events[-1]["source_type"] == "direct_deposit"


class TestDriftDetection:
    """A cached balance that disagrees with the log is reported, not repaired."""

    def test_drift_blocks_the_next_append(self, accounts, session, org_id, client, captured_logs):
        accounts.append(org_id, client.id, "10", MovementSource.DIRECT_DEPOSIT)
        client.account_balance = Decimal("99")
        session.flush()

        with pytest.raises(InvariantViolationError):
            accounts.append(org_id, client.id, "1", MovementSource.DIRECT_DEPOSIT)

        assert any(r["message"] == "account_balance_drift_detected" for r in captured_logs())

    def test_reconcile_reports_drift(self, accounts, session, org_id, client):
        accounts.append(org_id, client.id, "10", MovementSource.DIRECT_DEPOSIT)
        assert accounts.reconcile_client(org_id, client.id) == []

        client.account_balance = Decimal("11")
        session.flush()
        checks = {finding.check for finding in accounts.reconcile_client(org_id, client.id)}
        assert "balance_replay" in checks


class TestCompensate:

    def test_compensation_is_the_exact_opposite(self, accounts, container, org_id, client):
        original = accounts.append(org_id, client.id, "-80", MovementSource.INVOICE_VALIDATION, uuid4())
        compensation = accounts.compensate(org_id, original.id, notes="entered twice")

        assert compensation.amount == Decimal("80")
        assert compensation.source_type == MovementSource.COMPENSATION
        assert compensation.source_id == original.source_id
        assert compensation.reverses_movement_id == original.id
        assert compensation.reference_number == "REV-000001"
        assert container.ledger_selector.get_balance(org_id, client.id).balance == Decimal("0")

    def test_compensate_twice_rejected(self, accounts, org_id, client):
        original = accounts.append(org_id, client.id, "-80", MovementSource.MANUAL_ADJUSTMENT)
        accounts.compensate(org_id, original.id)
        with pytest.raises(BusinessRuleError):
            accounts.compensate(org_id, original.id)

    def test_compensation_cannot_be_compensated(self, accounts, org_id, client):
        original = accounts.append(org_id, client.id, "-80", MovementSource.MANUAL_ADJUSTMENT)
        compensation = accounts.compensate(org_id, original.id)
        with pytest.raises(BusinessRuleError):
            accounts.compensate(org_id, compensation.id)

    def test_log_replays_after_compensation(self, accounts, org_id, client):
        first = accounts.append(org_id, client.id, "-30", MovementSource.MANUAL_ADJUSTMENT)
        accounts.append(org_id, client.id, "10", MovementSource.DIRECT_DEPOSIT)
        accounts.compensate(org_id, first.id)
        assert accounts.reconcile_client(org_id, client.id) == []


class TestRegisterClient:

    def test_new_client_starts_at_zero(self, accounts, org_id):
        new_client = accounts.register_client(org_id, "Globex", is_foreign=True)
        assert new_client.account_balance == Decimal("0")
        assert new_client.movement_count == 0
        assert new_client.is_foreign is True

    def test_empty_name_rejected(self, accounts, org_id):
        with pytest.raises(ValidationError):
            accounts.register_client(org_id, "")
