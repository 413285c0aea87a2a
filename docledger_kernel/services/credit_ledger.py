"""
CreditLedger -- the conserved credit quadruple of every credit note.

Responsibility:
    Owns ``generated``, ``used``, ``blocked``, ``available`` and
    ``refunded`` on CreditNote, the note's lifecycle status, and the
    source document's ``total_credit_issued`` cap counter.

Architecture position:
    Kernel > Services.  Leaf dependency of the document orchestrator.
    Applying credit to a document also changes that document's totals,
    so ``apply`` is only called by the orchestrator.

Invariants enforced:
    - generated == used + blocked + available after every operation,
      re-checked before the flush (ConservationViolationError otherwise).
    - generated <= source.total_ttc - source.total_credit_issued at issue.
    - Cancellation only from draft or validated with used == 0 and
      blocked == 0; it zeroes every amount and releases the source cap.
    - Status is derived from the amounts after block / unblock / apply /
      refund; callers never set it directly.

Failure modes:
    - CreditCapExceededError (invariant violation, logged at ERROR).
    - InsufficientAvailableCreditError / InsufficientBlockedCreditError.
    - InvalidTransitionError when the note's status forbids the operation.
"""

from decimal import Decimal
from typing import Iterable
from uuid import UUID

from docledger_kernel.db.types import ZERO
from docledger_kernel.domain.dtos import positive_amount
from docledger_kernel.domain.references import DocumentKind, SourceRef
from docledger_kernel.exceptions import (
    BusinessRuleError,
    ConservationViolationError,
    CreditCapExceededError,
    InsufficientAvailableCreditError,
    InsufficientBlockedCreditError,
    InvalidTransitionError,
)
from docledger_kernel.logging_config import get_logger
from docledger_kernel.models.credit_note import (
    CreditApplication,
    CreditNote,
    CreditNoteLine,
    CreditNoteStatus,
    CreditNoteType,
)
from docledger_kernel.models.document import (
    Invoice,
    InvoiceStatus,
    PurchaseDocument,
    PurchaseStatus,
)
from docledger_kernel.services.base import BaseService

logger = get_logger("services.credit_ledger")

# Statuses in which amounts may be blocked, applied or refunded
USABLE_STATUSES = frozenset({
    CreditNoteStatus.VALIDATED,
    CreditNoteStatus.BLOCKED,
    CreditNoteStatus.UNBLOCKED,
    CreditNoteStatus.PARTIALLY_APPLIED,
})

CANCELLABLE_STATUSES = frozenset({CreditNoteStatus.DRAFT, CreditNoteStatus.VALIDATED})

_SOURCE_MODELS = {
    DocumentKind.INVOICE: (Invoice, InvoiceStatus.VALIDATED),
    DocumentKind.PURCHASE: (PurchaseDocument, PurchaseStatus.VALIDATED),
}


class CreditLedger(BaseService):
    """
    Issue, hold, consume and cancel credit.

    Contract:
        Every public method locks the credit note (and, for issue and
        cancel, the source document) before reading its amounts.

    Guarantees:
        - The conservation law holds on every flushed state.
        - A CreditApplication row is appended for every apply.

    Non-goals:
        - Does NOT touch the target document's totals or the client
          account; the orchestrator does both.
    """

    # =========================================================================
    # Issue / validate / cancel
    # =========================================================================

    def issue(
        self,
        organization_id: UUID,
        source: SourceRef,
        amount: Decimal | int | str,
        credit_note_type: CreditNoteType = CreditNoteType.FINANCIAL,
        *,
        lines: Iterable[CreditNoteLine] = (),
        reason: str | None = None,
        client_id: UUID | None = None,
        totals: tuple[Decimal, Decimal] | None = None,
    ) -> CreditNote:
        """
        Create a draft credit note with ``generated = available = amount``.

        ``totals`` is the (subtotal_ht, total_vat) pair when the amount was
        derived from lines; a pure financial note carries the amount as TTC.

        Raises:
            CreditCapExceededError: amount exceeds what is left to credit on
                the source document.
        """
        value = positive_amount("amount", amount)
        credit_note_type = CreditNoteType(credit_note_type)
        source_doc = self.lock_source(organization_id, source)

        remaining = source_doc.total_ttc - source_doc.total_credit_issued
        if value > remaining:
            logger.error(
                "credit_cap_exceeded",
                extra={
                    "source_kind": source.kind.value,
                    "source_id": str(source.document_id),
                    "requested": str(value),
                    "remaining": str(remaining),
                },
            )
            raise CreditCapExceededError(str(source.document_id), value, remaining)

        subtotal_ht, total_vat = totals if totals is not None else (value, ZERO)
        note = CreditNote(
            organization_id=organization_id,
            source_kind=source.kind,
            source_id=source.document_id,
            client_id=client_id,
            credit_note_type=credit_note_type,
            status=CreditNoteStatus.DRAFT,
            reason=reason,
            subtotal_ht=subtotal_ht,
            total_vat=total_vat,
            total_ttc=value,
            generated=value,
            used=ZERO,
            blocked=ZERO,
            available=value,
            refunded=ZERO,
            awaiting_return=False,
        )
        for position, line in enumerate(lines, start=1):
            line.organization_id = organization_id
            line.position = position
            note.lines.append(line)
        source_doc.total_credit_issued = source_doc.total_credit_issued + value

        self.session.add(note)
        self._check_conservation(note)
        self.session.flush()

        logger.info(
            "credit_note_issued",
            extra={
                "credit_note_id": str(note.id),
                "source_kind": source.kind.value,
                "source_id": str(source.document_id),
                "credit_note_type": credit_note_type.value,
                "generated": str(value),
                "line_count": len(note.lines),
            },
        )
        return note

    def validate(self, organization_id: UUID, credit_note_id: UUID) -> CreditNote:
        """draft -> validated.  No arithmetic change."""
        note = self.lock_note(organization_id, credit_note_id)
        self._require_status(note, {CreditNoteStatus.DRAFT}, CreditNoteStatus.VALIDATED)
        note.validated_at = self.clock.now()
        note.status = CreditNoteStatus.VALIDATED
        self._check_conservation(note)
        self.session.flush()
        self._log_state("credit_note_validated", note)
        return note

    def cancel(self, organization_id: UUID, credit_note_id: UUID) -> CreditNote:
        """
        Cancel a draft or validated note that has never been used or held.

        Zeroes every amount and gives the cancelled amount back to the
        source document's credit cap.
        """
        note = self.lock_note(organization_id, credit_note_id)
        self._require_status(note, CANCELLABLE_STATUSES, CreditNoteStatus.CANCELLED)
        if note.used != ZERO or note.blocked != ZERO:
            raise InvalidTransitionError(
                "CreditNote", str(note.id), note.status.value, CreditNoteStatus.CANCELLED.value,
            )

        source_doc = self.lock_source(organization_id, note.source, require_validated=False)
        source_doc.total_credit_issued = source_doc.total_credit_issued - note.generated

        released = note.generated
        note.generated = ZERO
        note.used = ZERO
        note.blocked = ZERO
        note.available = ZERO
        note.refunded = ZERO
        note.awaiting_return = False
        note.cancelled_at = self.clock.now()
        note.status = CreditNoteStatus.CANCELLED
        self._check_conservation(note)
        self.session.flush()

        logger.info(
            "credit_note_cancelled",
            extra={"credit_note_id": str(note.id), "released_cap": str(released)},
        )
        return note

    # =========================================================================
    # Holds
    # =========================================================================

    def block(self, organization_id: UUID, credit_note_id: UUID, amount) -> CreditNote:
        """Move ``amount`` from available to blocked."""
        value = positive_amount("amount", amount)
        note = self.lock_note(organization_id, credit_note_id)
        self._require_status(note, USABLE_STATUSES, CreditNoteStatus.BLOCKED)
        if value > note.available:
            raise InsufficientAvailableCreditError(str(note.id), value, note.available)

        note.available = note.available - value
        note.blocked = note.blocked + value
        note.status = CreditNoteStatus.BLOCKED
        self._check_conservation(note)
        self.session.flush()
        self._log_state("credit_blocked", note, amount=value)
        return note

    def unblock(self, organization_id: UUID, credit_note_id: UUID, amount) -> CreditNote:
        """Move ``amount`` from blocked back to available."""
        value = positive_amount("amount", amount)
        note = self.lock_note(organization_id, credit_note_id)
        self._require_status(note, USABLE_STATUSES, CreditNoteStatus.UNBLOCKED)
        if value > note.blocked:
            raise InsufficientBlockedCreditError(str(note.id), value, note.blocked)

        note.blocked = note.blocked - value
        note.available = note.available + value
        if note.blocked > ZERO:
            note.status = CreditNoteStatus.BLOCKED
        elif note.used > ZERO:
            note.status = CreditNoteStatus.PARTIALLY_APPLIED
        else:
            note.status = CreditNoteStatus.UNBLOCKED
        if note.blocked == ZERO:
            note.awaiting_return = False
        self._check_conservation(note)
        self.session.flush()
        self._log_state("credit_unblocked", note, amount=value)
        return note

    # =========================================================================
    # Consumption
    # =========================================================================

    def apply(
        self,
        organization_id: UUID,
        credit_note_id: UUID,
        amount,
        target_kind: DocumentKind,
        target_id: UUID,
        *,
        from_blocked: bool = False,
        account_movement_id: UUID | None = None,
    ) -> CreditApplication:
        """
        Move ``amount`` to used and record it against a target document.

        Consumes from ``available`` unless ``from_blocked`` is set, in which
        case it consumes an existing hold.
        """
        value = positive_amount("amount", amount)
        target_kind = DocumentKind(target_kind)
        note = self.lock_note(organization_id, credit_note_id)
        self._require_status(note, USABLE_STATUSES, CreditNoteStatus.PARTIALLY_APPLIED)
        if note.awaiting_return:
            raise BusinessRuleError(
                f"Credit note {note.id} is held until the returned goods are received"
            )

        self._consume(note, value, from_blocked)
        application = CreditApplication(
            organization_id=organization_id,
            credit_note_id=note.id,
            target_kind=target_kind,
            target_id=target_id,
            amount=value,
            from_blocked=from_blocked,
            applied_at=self.clock.now(),
            account_movement_id=account_movement_id,
        )
        self.session.add(application)
        self._check_conservation(note)
        self.session.flush()
        self._log_state(
            "credit_applied", note,
            amount=value, target_kind=target_kind.value, target_id=str(target_id),
            from_blocked=from_blocked,
        )
        return application

    def refund(self, organization_id: UUID, credit_note_id: UUID, amount) -> CreditNote:
        """Pay ``amount`` of available credit back to the party."""
        value = positive_amount("amount", amount)
        note = self.lock_note(organization_id, credit_note_id)
        self._require_status(note, USABLE_STATUSES, CreditNoteStatus.PARTIALLY_APPLIED)
        self._consume(note, value, from_blocked=False)
        note.refunded = note.refunded + value
        self._check_conservation(note)
        self.session.flush()
        self._log_state("credit_refunded", note, amount=value)
        return note

    # =========================================================================
    # Locking helpers
    # =========================================================================

    def lock_note(self, organization_id: UUID, credit_note_id: UUID) -> CreditNote:
        return self._lock(CreditNote, credit_note_id, organization_id)

    def lock_source(
        self, organization_id: UUID, source: SourceRef, *, require_validated: bool = True,
    ) -> Invoice | PurchaseDocument:
        """Lock the credit note's source document."""
        model, validated = _SOURCE_MODELS[source.kind]
        document = self._lock(model, source.document_id, organization_id)
        if require_validated and document.status != validated:
            raise BusinessRuleError(
                f"{model.__name__} {document.id} is {document.status.value}; "
                "only validated documents can be credited"
            )
        return document

    # =========================================================================
    # Internals
    # =========================================================================

    def _consume(self, note: CreditNote, value: Decimal, from_blocked: bool) -> None:
        if from_blocked:
            if value > note.blocked:
                raise InsufficientBlockedCreditError(str(note.id), value, note.blocked)
            note.blocked = note.blocked - value
        else:
            if value > note.available:
                raise InsufficientAvailableCreditError(str(note.id), value, note.available)
            note.available = note.available - value
        note.used = note.used + value
        if note.available + note.blocked > ZERO:
            note.status = CreditNoteStatus.PARTIALLY_APPLIED
        else:
            note.status = CreditNoteStatus.SETTLED

    @staticmethod
    def _require_status(note: CreditNote, allowed, target: CreditNoteStatus) -> None:
        if note.status not in allowed:
            raise InvalidTransitionError("CreditNote", str(note.id), note.status.value, target.value)

    @staticmethod
    def _check_conservation(note: CreditNote) -> None:
        amounts = (note.generated, note.used, note.blocked, note.available, note.refunded)
        if (
            note.generated != note.used + note.blocked + note.available
            or any(value < ZERO for value in amounts)
            or note.refunded > note.used
        ):
            logger.error(
                "credit_conservation_violated",
                extra={
                    "credit_note_id": str(note.id),
                    "generated": str(note.generated),
                    "used": str(note.used),
                    "blocked": str(note.blocked),
                    "available": str(note.available),
                    "refunded": str(note.refunded),
                },
            )
            raise ConservationViolationError(
                str(note.id), note.generated, note.used, note.blocked, note.available,
            )

    @staticmethod
    def _log_state(event: str, note: CreditNote, **extra) -> None:
        payload = {
            "credit_note_id": str(note.id),
            "status": note.status.value,
            "generated": str(note.generated),
            "used": str(note.used),
            "blocked": str(note.blocked),
            "available": str(note.available),
        }
        payload.update({key: str(value) if isinstance(value, Decimal) else value
                        for key, value in extra.items()})
        logger.info(event, extra=payload)

