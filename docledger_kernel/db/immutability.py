"""
ORM-level immutability enforcement.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners registered here inspect attribute history and raise
ImmutabilityViolationError, which aborts the flush and the enclosing unit of
work.

    session.flush()
         |
         v
    [before_update] --> _check_*() --> ImmutabilityViolationError
    [before_delete] --> _check_*() --------^
         |
         v
    SQL sent to database (only if checks pass)

Protected entities
------------------

Entity                 | When immutable
-----------------------|---------------------------------------------------
StockMovement          | always
ClientAccountMovement  | always
CreditApplication      | always
Payment                | always
Invoice                | once validated: only settlement fields may change;
                       | once cancelled: nothing may change
InvoiceLine            | once the parent invoice has left created/draft
PurchaseDocument       | once validated: only settlement fields may change
PurchaseLine           | once the parent purchase has left pending
CreditNote             | once cancelled: nothing may change
CreditNoteLine         | once the parent note has left draft

``updated_at`` and ``version`` are bookkeeping and may always change.

The check asks "was the row frozen BEFORE this flush", read from attribute
history, so the flush that performs the freezing transition itself
(draft -> validated) is allowed through.
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from docledger_kernel.exceptions import ImmutabilityViolationError
from docledger_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_BOOKKEEPING_FIELDS = frozenset({"updated_at", "version"})


def _block(entity_type: str, target, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "field": field,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _status_before_flush(target):
    """Status as it was loaded, ignoring changes pending in this flush."""
    history = get_history(target, "status")
    if history.deleted:
        return history.deleted[0]
    return target.status


def _first_changed_column(target, allowed: frozenset[str]) -> str | None:
    insp = inspect(target)
    for attr in insp.mapper.column_attrs:
        if attr.key in allowed or attr.key in _BOOKKEEPING_FIELDS:
            continue
        if insp.attrs[attr.key].history.has_changes():
            return attr.key
    return None


# =============================================================================
# Append-only records
# =============================================================================


def _append_only_update(mapper, connection, target):
    entity_type = type(target).__name__
    field = _first_changed_column(target, frozenset())
    if field is not None:
        _block(entity_type, target, "UPDATE", f"{entity_type} rows are append-only", field)


def _append_only_delete(mapper, connection, target):
    entity_type = type(target).__name__
    _block(entity_type, target, "DELETE", f"{entity_type} rows are append-only")


# =============================================================================
# Documents
# =============================================================================


def _check_document_update(mapper, connection, target):
    from docledger_kernel.models.document import SETTLEMENT_FIELDS

    entity_type = type(target).__name__
    previous = _status_before_flush(target)
    if previous in target.EDITABLE_STATES:
        return

    allowed = frozenset() if previous in target.TERMINAL_STATES else SETTLEMENT_FIELDS
    field = _first_changed_column(target, allowed)
    if field is not None:
        _block(
            entity_type, target, "UPDATE",
            f"field '{field}' is frozen on a {previous.value} document", field,
        )


def _check_document_delete(mapper, connection, target):
    previous = _status_before_flush(target)
    if previous not in target.EDITABLE_STATES:
        _block(
            type(target).__name__, target, "DELETE",
            f"cannot delete a {previous.value} document",
        )


def _line_parent(target):
    from docledger_kernel.models.document import InvoiceLine

    if isinstance(target, InvoiceLine):
        return target.invoice
    return target.purchase


def _check_document_line_update(mapper, connection, target):
    parent = _line_parent(target)
    if parent is None:
        return
    previous = _status_before_flush(parent)
    if previous not in parent.EDITABLE_STATES:
        field = _first_changed_column(target, frozenset({"stock_applied"}))
        if field is not None:
            _block(
                type(target).__name__, target, "UPDATE",
                f"lines of a {previous.value} document are frozen", field,
            )


def _check_document_line_delete(mapper, connection, target):
    parent = _line_parent(target)
    if parent is None:
        return
    previous = _status_before_flush(parent)
    if previous not in parent.EDITABLE_STATES:
        _block(
            type(target).__name__, target, "DELETE",
            f"lines of a {previous.value} document are frozen",
        )


# =============================================================================
# Credit notes
# =============================================================================


def _check_credit_note_update(mapper, connection, target):
    from docledger_kernel.models.credit_note import CreditNoteStatus

    if _status_before_flush(target) == CreditNoteStatus.CANCELLED:
        field = _first_changed_column(target, frozenset())
        if field is not None:
            _block("CreditNote", target, "UPDATE", "credit note is cancelled", field)


def _check_credit_note_delete(mapper, connection, target):
    from docledger_kernel.models.credit_note import CreditNoteStatus

    if _status_before_flush(target) != CreditNoteStatus.DRAFT:
        _block("CreditNote", target, "DELETE", "only draft credit notes can be deleted")


def _check_credit_note_line_update(mapper, connection, target):
    from docledger_kernel.models.credit_note import CreditNoteStatus

    parent = target.credit_note
    if parent is not None and _status_before_flush(parent) != CreditNoteStatus.DRAFT:
        field = _first_changed_column(target, frozenset({"stock_restored"}))
        if field is not None:
            _block("CreditNoteLine", target, "UPDATE", "credit note lines are frozen", field)


# =============================================================================
# Registration
# =============================================================================


def _listener_table():
    from docledger_kernel.models.client import ClientAccountMovement
    from docledger_kernel.models.credit_note import CreditApplication, CreditNote, CreditNoteLine
    from docledger_kernel.models.document import (
        Invoice,
        InvoiceLine,
        Payment,
        PurchaseDocument,
        PurchaseLine,
    )
    from docledger_kernel.models.product import StockMovement

    table = []
    for model in (StockMovement, ClientAccountMovement, CreditApplication, Payment):
        table.append((model, "before_update", _append_only_update))
        table.append((model, "before_delete", _append_only_delete))
    for model in (Invoice, PurchaseDocument):
        table.append((model, "before_update", _check_document_update))
        table.append((model, "before_delete", _check_document_delete))
    for model in (InvoiceLine, PurchaseLine):
        table.append((model, "before_update", _check_document_line_update))
        table.append((model, "before_delete", _check_document_line_delete))
    table.append((CreditNote, "before_update", _check_credit_note_update))
    table.append((CreditNote, "before_delete", _check_credit_note_delete))
    table.append((CreditNoteLine, "before_update", _check_credit_note_line_update))
    return table


def register_immutability_listeners() -> None:
    """Register all immutability listeners (idempotent)."""
    for target, event_name, fn in _listener_table():
        if not event.contains(target, event_name, fn):
            event.listen(target, event_name, fn)


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability listeners.

    WARNING: Only for tests that deliberately bypass the rules.
    """
    for target, event_name, fn in _listener_table():
        _safe_remove_listener(target, event_name, fn)
