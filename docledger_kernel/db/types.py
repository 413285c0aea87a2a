"""
Module: docledger_kernel.db.types
Responsibility: Annotated column type aliases and the sanctioned rounding and
    coercion helpers for monetary values.
Architecture position: Kernel > DB.  Imported by models/, domain/, services/,
    engines and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - round_money() is the ONLY rounding function for monetary values.  It
      rounds half away from zero (ROUND_HALF_UP on Decimal) to the configured
      number of places, 3 by default.
    - No floats.  to_decimal() converts floats through their string form so
      that 0.1 stays 0.1.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from sqlalchemy import Numeric

# Decimal columns default to Numeric(38, 9) through Base.type_annotation_map.
# Percentages (VAT, discount, withholding) and exchange rates use these.
PERCENT_TYPE = Numeric(9, 4)
RATE_TYPE = Numeric(38, 18)


MONEY_DECIMAL_PLACES = 3
DEFAULT_ROUNDING = ROUND_HALF_UP
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """
    Coerce int, str, float or Decimal to Decimal.

    Raises:
        ValueError: If the value is not numeric or not finite.
    """
    if isinstance(value, bool):
        raise ValueError(f"Boolean is not a numeric amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        try:
            result = Decimal(value)
        except (InvalidOperation, TypeError) as exc:
            raise ValueError(f"Not a numeric amount: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return result


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to ``decimal_places``.

    This is the only sanctioned rounding function for monetary values.
    Rounding a value that is already rounded returns it unchanged.
    """
    quantum = Decimal(1).scaleb(-decimal_places)
    return value.quantize(quantum, rounding=rounding)


def validate_currency(currency: str) -> str:
    """
    Normalize a three-letter currency code.

    Raises:
        ValueError: If the code is not three ASCII letters.
    """
    if not isinstance(currency, str):
        raise ValueError(f"Invalid currency code: {currency!r}")
    normalized = currency.strip().upper()
    if len(normalized) != 3 or not normalized.isascii() or not normalized.isalpha():
        raise ValueError(f"Invalid currency code: {currency!r}")
    return normalized
