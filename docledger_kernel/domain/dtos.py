"""
Domain DTOs -- immutable inputs crossing the service boundary.

Callers describe documents and credit lines with these frozen dataclasses;
services never accept ORM objects from outside their own session.
Construction validates shape only (signs, ranges).  Anything needing stored
state is checked by the owning service.
"""

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from docledger_kernel.db.types import ZERO, to_decimal
from docledger_kernel.exceptions import ValidationError

HUNDRED = Decimal("100")


def _as_decimal(field: str, value) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError as exc:
        raise ValidationError(field, value, str(exc)) from exc


@dataclass(frozen=True)
class LineInput:
    """
    One document line as supplied by the caller.

    Guarantees:
        - quantity > 0, unit_price_ht >= 0.
        - 0 <= discount_percent <= 100, vat_rate >= 0.
    """

    quantity: Decimal
    unit_price_ht: Decimal
    discount_percent: Decimal = ZERO
    vat_rate: Decimal = ZERO
    description: str = ""
    product_id: UUID | None = None
    reservation_id: UUID | None = None

    def __post_init__(self) -> None:
        quantity = _as_decimal("quantity", self.quantity)
        price = _as_decimal("unit_price_ht", self.unit_price_ht)
        discount = _as_decimal("discount_percent", self.discount_percent)
        vat = _as_decimal("vat_rate", self.vat_rate)
        if quantity <= ZERO:
            raise ValidationError("quantity", self.quantity, "must be positive")
        if price < ZERO:
            raise ValidationError("unit_price_ht", self.unit_price_ht, "must not be negative")
        if discount < ZERO or discount > HUNDRED:
            raise ValidationError("discount_percent", self.discount_percent, "must be within 0..100")
        if vat < ZERO:
            raise ValidationError("vat_rate", self.vat_rate, "must not be negative")
        if self.reservation_id is not None and self.product_id is None:
            raise ValidationError("reservation_id", self.reservation_id, "requires product_id")
        object.__setattr__(self, "quantity", quantity)
        object.__setattr__(self, "unit_price_ht", price)
        object.__setattr__(self, "discount_percent", discount)
        object.__setattr__(self, "vat_rate", vat)


@dataclass(frozen=True)
class CreditLineInput:
    """A credit-note line reversing (part of) a source document line."""

    source_line_id: UUID
    quantity: Decimal
    return_reason: str | None = None

    def __post_init__(self) -> None:
        quantity = _as_decimal("quantity", self.quantity)
        if quantity <= ZERO:
            raise ValidationError("quantity", self.quantity, "must be positive")
        object.__setattr__(self, "quantity", quantity)


def positive_amount(field: str, value) -> Decimal:
    """
    Coerce ``value`` and require it to be strictly positive.

    Raises:
        ValidationError: If the value is non-numeric or <= 0.
    """
    amount = _as_decimal(field, value)
    if amount <= ZERO:
        raise ValidationError(field, value, "must be positive")
    return amount


def non_zero_amount(field: str, value) -> Decimal:
    """Coerce ``value`` and reject zero."""
    amount = _as_decimal(field, value)
    if amount == ZERO:
        raise ValidationError(field, value, "must not be zero")
    return amount
