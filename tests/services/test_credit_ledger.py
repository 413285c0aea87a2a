"""
Tests for CreditLedger.

Every test checks the quadruple through the ledger's own operations; the
source is a validated invoice with total_ttc 214.200.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from docledger_kernel.domain.references import DocumentKind, InvoiceRef
from docledger_kernel.exceptions import (
    BusinessRuleError,
    CreditCapExceededError,
    InsufficientAvailableCreditError,
    InsufficientBlockedCreditError,
    InvalidTransitionError,
    ValidationError,
)
from docledger_kernel.models.credit_note import CreditNoteStatus


def _assert_conserved(note):
    assert note.generated == note.used + note.blocked + note.available
    assert note.refunded <= note.used


@pytest.fixture
def source(validated_invoice):
    return InvoiceRef(validated_invoice.id)


@pytest.fixture
def note(credit, org_id, client, source):
    """A validated 100.000 financial credit note."""
    issued = credit.issue(org_id, source, "100", client_id=client.id, reason="goodwill")
    return credit.validate(org_id, issued.id)


class TestIssue:

    def test_issue_creates_draft_with_full_availability(self, credit, org_id, source, validated_invoice):
        issued = credit.issue(org_id, source, "50")

        assert issued.status == CreditNoteStatus.DRAFT
        assert issued.generated == Decimal("50")
        assert issued.available == Decimal("50")
        assert issued.used == Decimal("0")
        assert issued.blocked == Decimal("0")
        assert validated_invoice.total_credit_issued == Decimal("50")
        _assert_conserved(issued)

    def test_issue_up_to_the_cap(self, credit, org_id, source):
        credit.issue(org_id, source, "200")
        last = credit.issue(org_id, source, "14.200")
        assert last.generated == Decimal("14.200")

    def test_issue_beyond_the_cap_rejected(self, credit, org_id, source, validated_invoice):
        credit.issue(org_id, source, "200")
        with pytest.raises(CreditCapExceededError) as exc_info:
            credit.issue(org_id, source, "14.201")

        assert exc_info.value.remaining == Decimal("14.200")
        assert validated_invoice.total_credit_issued == Decimal("200")

    def test_cap_exceeded_logged_as_error(self, credit, org_id, source, captured_logs):
        with pytest.raises(CreditCapExceededError):
            credit.issue(org_id, source, "500")
        events = [r for r in captured_logs() if r["message"] == "credit_cap_exceeded"]
        assert len(events) == 1
        assert events[0]["level"] == "ERROR"

    def test_draft_source_rejected(self, credit, orchestrator, org_id, client, make_line):
        draft = orchestrator.create_invoice(org_id, client.id, [make_line()])
        with pytest.raises(BusinessRuleError):
            credit.issue(org_id, InvoiceRef(draft.id), "10")

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount_rejected(self, credit, org_id, source, amount):
        with pytest.raises(ValidationError):
            credit.issue(org_id, source, amount)

    def test_validate_twice_rejected(self, credit, org_id, note):
        with pytest.raises(InvalidTransitionError):
            credit.validate(org_id, note.id)


class TestBlockAndUnblock:

    def test_block_moves_available_to_blocked(self, credit, org_id, note):
        credit.block(org_id, note.id, "30")

        assert note.status == CreditNoteStatus.BLOCKED
        assert note.blocked == Decimal("30")
        assert note.available == Decimal("70")
        _assert_conserved(note)

    def test_block_more_than_available_rejected(self, credit, org_id, note):
        with pytest.raises(InsufficientAvailableCreditError) as exc_info:
            credit.block(org_id, note.id, "100.001")
        assert exc_info.value.available == Decimal("100")

    def test_unblock_part_stays_blocked(self, credit, org_id, note):
        credit.block(org_id, note.id, "30")
        credit.unblock(org_id, note.id, "10")

        assert note.status == CreditNoteStatus.BLOCKED
        assert note.blocked == Decimal("20")
        assert note.available == Decimal("80")

    def test_unblock_all_is_unblocked(self, credit, org_id, note):
        credit.block(org_id, note.id, "30")
        credit.unblock(org_id, note.id, "30")
        assert note.status == CreditNoteStatus.UNBLOCKED
        assert note.available == Decimal("100")

    def test_unblock_after_use_is_partially_applied(self, credit, org_id, note, validated_invoice):
        credit.apply(org_id, note.id, "10", DocumentKind.INVOICE, validated_invoice.id)
        credit.block(org_id, note.id, "5")
        credit.unblock(org_id, note.id, "5")
        assert note.status == CreditNoteStatus.PARTIALLY_APPLIED

    def test_unblock_more_than_blocked_rejected(self, credit, org_id, note):
        credit.block(org_id, note.id, "5")
        with pytest.raises(InsufficientBlockedCreditError):
            credit.unblock(org_id, note.id, "6")

    def test_draft_cannot_be_blocked(self, credit, org_id, source):
        draft = credit.issue(org_id, source, "10")
        with pytest.raises(InvalidTransitionError):
            credit.block(org_id, draft.id, "1")


class TestApply:

    def test_apply_from_available(self, credit, org_id, note, validated_invoice):
        application = credit.apply(org_id, note.id, "40", DocumentKind.INVOICE, validated_invoice.id)

        assert application.amount == Decimal("40")
        assert application.from_blocked is False
        assert note.used == Decimal("40")
        assert note.available == Decimal("60")
        assert note.status == CreditNoteStatus.PARTIALLY_APPLIED
        _assert_conserved(note)

    def test_apply_from_blocked(self, credit, org_id, note, validated_invoice):
        credit.block(org_id, note.id, "25")
        credit.apply(
            org_id, note.id, "25", DocumentKind.INVOICE, validated_invoice.id, from_blocked=True,
        )
        assert note.blocked == Decimal("0")
        assert note.available == Decimal("75")
        assert note.used == Decimal("25")

    def test_full_use_settles(self, credit, org_id, note, validated_invoice):
        credit.apply(org_id, note.id, "60", DocumentKind.INVOICE, validated_invoice.id)
        credit.apply(org_id, note.id, "40", DocumentKind.INVOICE, validated_invoice.id)
        assert note.status == CreditNoteStatus.SETTLED
        assert note.available == Decimal("0")

    def test_settled_note_accepts_nothing(self, credit, org_id, note, validated_invoice):
        credit.apply(org_id, note.id, "100", DocumentKind.INVOICE, validated_invoice.id)
        with pytest.raises(InvalidTransitionError):
            credit.apply(org_id, note.id, "1", DocumentKind.INVOICE, validated_invoice.id)

    def test_apply_more_than_available_rejected(self, credit, org_id, note, validated_invoice):
        credit.block(org_id, note.id, "50")
        with pytest.raises(InsufficientAvailableCreditError):
            credit.apply(org_id, note.id, "51", DocumentKind.INVOICE, validated_invoice.id)

    def test_apply_more_than_blocked_rejected(self, credit, org_id, note, validated_invoice):
        credit.block(org_id, note.id, "5")
        with pytest.raises(InsufficientBlockedCreditError):
            credit.apply(
                org_id, note.id, "6", DocumentKind.INVOICE, validated_invoice.id, from_blocked=True,
            )

    def test_apply_logs_state(self, credit, org_id, note, captured_logs):
        target = uuid4()
        credit.apply(org_id, note.id, "10", DocumentKind.INVOICE, target)
        events = [r for r in captured_logs() if r["message"] == "credit_applied"]
        assert events[-1]["amount"] == "10"
        assert events[-1]["target_id"] == str(target)
        assert events[-1]["status"] == "partially_applied"


class TestRefund:

    def test_refund_counts_as_used(self, credit, org_id, note):
        credit.refund(org_id, note.id, "30")

        assert note.refunded == Decimal("30")
        assert note.used == Decimal("30")
        assert note.available == Decimal("70")
        _assert_conserved(note)

    def test_refund_everything_settles(self, credit, org_id, note):
        credit.refund(org_id, note.id, "100")
        assert note.status == CreditNoteStatus.SETTLED

    def test_refund_cannot_touch_blocked(self, credit, org_id, note):
        credit.block(org_id, note.id, "90")
        with pytest.raises(InsufficientAvailableCreditError):
            credit.refund(org_id, note.id, "20")


class TestCancel:

    def test_cancel_zeroes_and_releases_cap(self, credit, org_id, note, validated_invoice):
        credit.cancel(org_id, note.id)

        assert note.status == CreditNoteStatus.CANCELLED
        for amount in (note.generated, note.used, note.blocked, note.available, note.refunded):
            assert amount == Decimal("0")
        assert validated_invoice.total_credit_issued == Decimal("0")

    def test_cancelled_cap_can_be_reissued(self, credit, org_id, source, note):
        credit.cancel(org_id, note.id)
        reissued = credit.issue(org_id, source, "214.200")
        assert reissued.generated == Decimal("214.200")

    def test_cancel_draft(self, credit, org_id, source):
        draft = credit.issue(org_id, source, "10")
        assert credit.cancel(org_id, draft.id).status == CreditNoteStatus.CANCELLED

    def test_cancel_after_use_rejected(self, credit, org_id, note, validated_invoice):
        credit.apply(org_id, note.id, "1", DocumentKind.INVOICE, validated_invoice.id)
        with pytest.raises(InvalidTransitionError):
            credit.cancel(org_id, note.id)

    def test_cancel_with_hold_rejected(self, credit, org_id, note):
        credit.block(org_id, note.id, "1")
        with pytest.raises(InvalidTransitionError):
            credit.cancel(org_id, note.id)

    def test_cancel_twice_rejected(self, credit, org_id, note):
        credit.cancel(org_id, note.id)
        with pytest.raises(InvalidTransitionError):
            credit.cancel(org_id, note.id)


class TestConservationSequence:
    """The law holds after every step of a mixed sequence."""

    def test_mixed_sequence(self, credit, org_id, note, validated_invoice):
        steps = [
            lambda: credit.block(org_id, note.id, "20"),
            lambda: credit.apply(org_id, note.id, "15", DocumentKind.INVOICE, validated_invoice.id),
            lambda: credit.apply(
                org_id, note.id, "5", DocumentKind.INVOICE, validated_invoice.id, from_blocked=True,
            ),
            lambda: credit.unblock(org_id, note.id, "15"),
            lambda: credit.refund(org_id, note.id, "10"),
        ]
        for step in steps:
            step()
            _assert_conserved(note)

        assert note.used == Decimal("30")
        assert note.available == Decimal("70")
        assert note.blocked == Decimal("0")
        assert note.refunded == Decimal("10")
