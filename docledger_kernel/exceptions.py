"""
Typed exception hierarchy for the document ledger kernel.

Every error raised by the kernel, the calculator, and the orchestrator is an
instance of ``DocLedgerError``.  Callers catch by type, read the
machine-readable ``code``, and use the structured attributes instead of
parsing messages.

    DocLedgerError (base)
    |
    +-- ValidationError                    malformed input, nothing was read
    |
    +-- InvariantViolationError            defect signal, logged at ERROR
    |   +-- InvalidTransitionError
    |   +-- CreditCapExceededError
    |   +-- ConservationViolationError
    |   +-- ImmutabilityViolationError
    |
    +-- ConcurrencyConflictError           retryable from a fresh read
    |
    +-- CrossTenantAccessError             security event, never retried
    |
    +-- BusinessRuleError                  expected outcome, not a defect
    |   +-- InsufficientStockError
    |   +-- ReservationNotActiveError
    |   +-- InsufficientAvailableCreditError
    |   +-- InsufficientBlockedCreditError
    |
    +-- EntityNotFoundError

Any of these aborts the enclosing atomic unit.  Nothing is clamped.
"""

from decimal import Decimal
from typing import Any


class DocLedgerError(Exception):
    """Base exception for all document ledger errors."""

    code: str = "DOCLEDGER_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# =============================================================================
# Validation
# =============================================================================


class ValidationError(DocLedgerError):
    """Input is malformed: non-positive quantity, negative price, bad rate."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, value: Any, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}={value!r}: {reason}")


# =============================================================================
# Invariant violations
# =============================================================================


class InvariantViolationError(DocLedgerError):
    """A conservation or structural invariant would be broken."""

    code: str = "INVARIANT_VIOLATION"


class InvalidTransitionError(InvariantViolationError):
    """A lifecycle transition is not declared for the current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity_type: str, entity_id: str, from_state: str, to_state: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"{entity_type} {entity_id} cannot move from {from_state!r} to {to_state!r}"
        )


class CreditCapExceededError(InvariantViolationError):
    """Issued credit would exceed the source document's remaining total."""

    code: str = "CREDIT_CAP_EXCEEDED"

    def __init__(self, source_id: str, requested: Decimal, remaining: Decimal):
        self.source_id = str(source_id)
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Credit of {requested} exceeds remaining creditable amount "
            f"{remaining} on source {source_id}"
        )


class ConservationViolationError(InvariantViolationError):
    """generated != used + blocked + available after a credit operation."""

    code: str = "CONSERVATION_VIOLATION"

    def __init__(self, credit_note_id: str, generated: Decimal, used: Decimal,
                 blocked: Decimal, available: Decimal):
        self.credit_note_id = str(credit_note_id)
        self.generated = generated
        self.used = used
        self.blocked = blocked
        self.available = available
        super().__init__(
            f"Credit note {credit_note_id} breaks conservation: generated={generated} "
            f"used={used} blocked={blocked} available={available}"
        )


class ImmutabilityViolationError(InvariantViolationError):
    """Attempt to modify or delete an append-only or finalized record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")


# =============================================================================
# Concurrency and tenancy
# =============================================================================


class ConcurrencyConflictError(DocLedgerError):
    """A concurrent writer changed the entity; retry from a fresh read."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, reason: str = "concurrent modification"):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(f"{entity_type} {entity_id}: {reason}")


class CrossTenantAccessError(DocLedgerError):
    """An operation referenced an entity owned by another tenant."""

    code: str = "CROSS_TENANT_ACCESS"

    def __init__(self, entity_type: str, entity_id: str, organization_id: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.organization_id = str(organization_id)
        super().__init__(
            f"{entity_type} {entity_id} does not belong to organization {organization_id}"
        )


# =============================================================================
# Business rules
# =============================================================================


class BusinessRuleError(DocLedgerError):
    """Expected rejection of a well-formed request."""

    code: str = "BUSINESS_RULE"


class InsufficientStockError(BusinessRuleError):
    """Requested quantity exceeds what the product can supply."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: Decimal, available: Decimal):
        self.product_id = str(product_id)
        self.requested = requested
        self.available = available
        super().__init__(
            f"Product {product_id}: requested {requested}, available {available}"
        )


class ReservationNotActiveError(BusinessRuleError):
    """The reservation was already consumed, cancelled or has expired."""

    code: str = "RESERVATION_NOT_ACTIVE"

    def __init__(self, reservation_id: str, status: str):
        self.reservation_id = str(reservation_id)
        self.status = status
        super().__init__(f"Reservation {reservation_id} is {status}, not active")


class InsufficientAvailableCreditError(BusinessRuleError):
    """Requested amount exceeds the credit note's available balance."""

    code: str = "INSUFFICIENT_AVAILABLE_CREDIT"

    def __init__(self, credit_note_id: str, requested: Decimal, available: Decimal):
        self.credit_note_id = str(credit_note_id)
        self.requested = requested
        self.available = available
        super().__init__(
            f"Credit note {credit_note_id}: requested {requested}, available {available}"
        )


class InsufficientBlockedCreditError(BusinessRuleError):
    """Requested amount exceeds the credit note's blocked balance."""

    code: str = "INSUFFICIENT_BLOCKED_CREDIT"

    def __init__(self, credit_note_id: str, requested: Decimal, blocked: Decimal):
        self.credit_note_id = str(credit_note_id)
        self.requested = requested
        self.blocked = blocked
        super().__init__(
            f"Credit note {credit_note_id}: requested {requested}, blocked {blocked}"
        )


class EntityNotFoundError(DocLedgerError):
    """Referenced entity does not exist."""

    code: str = "ENTITY_NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(f"{entity_type} {entity_id} not found")
