"""
Monetary Calculator - line and document totals for financial documents.

Pure functions with no I/O.  Same inputs always produce the same totals, and
recomputing a document from its own lines reproduces the stored totals.

Cascade (fixed order):
    1. per line: HT after discount, VAT on the rounded HT, TTC = HT + VAT
    2. subtotal_ht, total_vat, total_discount summed over lines
    3. total_ttc = subtotal_ht + total_vat
    4. custom taxes in ``application_order``:
         before_vat  percentage base is subtotal_ht
         after_vat   percentage base is total_ttc
         on_payment  reported in payment_taxes, not added to net_payable
    5. flat stamp duty if enabled
    6. withholding = total_ttc * withholding_rate / 100 if applied
    7. minus total_credited

    net_payable = total_ttc + total_custom_taxes + stamp_duty
                  - withholding - total_credited

Rounding is half away from zero at line level, and aggregates are rounded
again.  Both roundings are intentional.

Usage:
    from decimal import Decimal
    from docledger_engines.monetary import MonetaryCalculator
    from docledger_kernel.domain.dtos import LineInput

    calculator = MonetaryCalculator()
    totals = calculator.compute_document_totals(
        [LineInput(quantity=2, unit_price_ht=100, discount_percent=10, vat_rate=19)],
        stamp_duty_enabled=True,
    )
    print(totals.total_ttc)    # 214.200
    print(totals.net_payable)  # 215.200
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Sequence

from docledger_kernel.db.types import (
    MONEY_DECIMAL_PLACES,
    ZERO,
    round_money,
    to_decimal,
)
from docledger_kernel.exceptions import ValidationError
from docledger_kernel.logging_config import get_logger
from docledger_kernel.domain.values import PaymentStatus

logger = get_logger("engines.monetary")

HUNDRED = Decimal("100")
DEFAULT_STAMP_DUTY = Decimal("1.000")
PAYMENT_EPSILON = Decimal("0.001")


class CustomTaxValueType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class CustomTaxApplication(str, Enum):
    ADD = "add"
    DEDUCT = "deduct"


class CustomTaxPhase(str, Enum):
    """Where in the cascade a custom tax is applied."""

    BEFORE_VAT = "before_vat"
    AFTER_VAT = "after_vat"
    ON_PAYMENT = "on_payment"


def _decimal(field_name: str, value: Any) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError as exc:
        raise ValidationError(field_name, value, str(exc)) from exc


@dataclass(frozen=True)
class CustomTax:
    """
    Tenant-configured extra charge or deduction.

    Immutable value object.  ``value`` is an amount for FIXED taxes and a
    percentage for PERCENTAGE taxes.
    """

    name: str
    value: Decimal
    value_type: CustomTaxValueType = CustomTaxValueType.PERCENTAGE
    application_type: CustomTaxApplication = CustomTaxApplication.ADD
    phase: CustomTaxPhase = CustomTaxPhase.AFTER_VAT
    application_order: int = 0

    def __post_init__(self) -> None:
        value = _decimal("custom_tax.value", self.value)
        if value < ZERO:
            raise ValidationError("custom_tax.value", self.value, "must not be negative")
        object.__setattr__(self, "value", value)
        object.__setattr__(self, "value_type", CustomTaxValueType(self.value_type))
        object.__setattr__(self, "application_type", CustomTaxApplication(self.application_type))
        object.__setattr__(self, "phase", CustomTaxPhase(self.phase))

    @property
    def sign(self) -> int:
        return 1 if self.application_type == CustomTaxApplication.ADD else -1

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": str(self.value),
            "value_type": self.value_type.value,
            "application_type": self.application_type.value,
            "phase": self.phase.value,
            "application_order": self.application_order,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CustomTax:
        return cls(
            name=data["name"],
            value=Decimal(str(data["value"])),
            value_type=data.get("value_type", CustomTaxValueType.PERCENTAGE.value),
            application_type=data.get("application_type", CustomTaxApplication.ADD.value),
            phase=data.get("phase", CustomTaxPhase.AFTER_VAT.value),
            application_order=int(data.get("application_order", 0)),
        )


@dataclass(frozen=True)
class LineTotals:
    """Derived totals of one document line."""

    line_total_ht: Decimal
    line_total_vat: Decimal
    line_total_ttc: Decimal
    line_discount: Decimal


@dataclass(frozen=True)
class AppliedCustomTax:
    """A custom tax as applied to one document; ``amount`` is signed."""

    name: str
    phase: CustomTaxPhase
    base: Decimal
    amount: Decimal


@dataclass(frozen=True)
class DocumentTotals:
    """
    Result of a document computation.

    Guarantees:
        - total_ttc == subtotal_ht + total_vat
        - net_payable == total_ttc + total_custom_taxes + stamp_duty_amount
          - withholding_amount - total_credited
    """

    lines: tuple[LineTotals, ...]
    subtotal_ht: Decimal
    total_vat: Decimal
    total_discount: Decimal
    total_ttc: Decimal
    total_custom_taxes: Decimal
    payment_taxes: Decimal
    stamp_duty_amount: Decimal
    withholding_rate: Decimal
    withholding_amount: Decimal
    total_credited: Decimal
    net_payable: Decimal
    applied_custom_taxes: tuple[AppliedCustomTax, ...] = field(default_factory=tuple)


class MonetaryCalculator:
    """
    Computes line and document totals.

    Contract:
        Stateless apart from the configured number of decimal places.
        Safe to share between threads.

    Non-goals:
        - Tax-law correctness beyond the configured rates.
        - Sourcing exchange rates; ``convert`` takes the rate as input.
    """

    def __init__(self, places: int = MONEY_DECIMAL_PLACES):
        if places < 0 or places > 9:
            raise ValidationError("places", places, "must be within 0..9")
        self.places = places

    def _round(self, value: Decimal) -> Decimal:
        return round_money(value, self.places)

    # -------------------------------------------------------------------------
    # Lines
    # -------------------------------------------------------------------------

    def compute_line(
        self,
        quantity: Any,
        unit_price_ht: Any,
        discount_percent: Any = ZERO,
        vat_rate: Any = ZERO,
        vat_exempt: bool = False,
    ) -> LineTotals:
        """
        Compute the totals of one line.

        Discount applies before VAT.  VAT is computed on the rounded HT, so
        ``line_total_ttc`` is exactly ``line_total_ht + line_total_vat``.

        Raises:
            ValidationError: quantity <= 0, negative price, discount outside
                0..100, or negative VAT rate.
        """
        qty = _decimal("quantity", quantity)
        price = _decimal("unit_price_ht", unit_price_ht)
        discount = _decimal("discount_percent", discount_percent)
        vat = _decimal("vat_rate", vat_rate)

        if qty <= ZERO:
            raise ValidationError("quantity", quantity, "must be positive")
        if price < ZERO:
            raise ValidationError("unit_price_ht", unit_price_ht, "must not be negative")
        if discount < ZERO or discount > HUNDRED:
            raise ValidationError("discount_percent", discount_percent, "must be within 0..100")
        if vat < ZERO:
            raise ValidationError("vat_rate", vat_rate, "must not be negative")

        gross = qty * price
        line_ht = self._round(gross * (HUNDRED - discount) / HUNDRED)
        line_discount = self._round(gross * discount / HUNDRED)
        line_vat = ZERO if vat_exempt else self._round(line_ht * vat / HUNDRED)

        return LineTotals(
            line_total_ht=line_ht,
            line_total_vat=line_vat,
            line_total_ttc=line_ht + line_vat,
            line_discount=line_discount,
        )

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    def compute_document_totals(
        self,
        lines: Sequence[Any],
        stamp_duty_enabled: bool = False,
        withholding_rate: Any = ZERO,
        custom_taxes: Iterable[CustomTax] = (),
        *,
        stamp_duty_amount: Any = DEFAULT_STAMP_DUTY,
        withholding_applied: bool = True,
        total_credited: Any = ZERO,
        vat_exempt: bool = False,
    ) -> DocumentTotals:
        """
        Compute all totals of a document.

        Args:
            lines: Objects exposing quantity, unit_price_ht, discount_percent
                and vat_rate (LineInput DTOs or stored lines).
            stamp_duty_enabled: Add the flat stamp duty.
            withholding_rate: Percentage of total_ttc withheld at source.
            custom_taxes: Tenant custom taxes, applied by application_order.
            stamp_duty_amount: Flat stamp duty when enabled.
            withholding_applied: Whether withholding is deducted at all.
            total_credited: Credit already applied to the document.
            vat_exempt: Zero VAT on every line (foreign clients).

        Returns:
            DocumentTotals

        Raises:
            ValidationError: On any malformed input.
        """
        t0 = time.monotonic()
        rate = _decimal("withholding_rate", withholding_rate)
        stamp = _decimal("stamp_duty_amount", stamp_duty_amount)
        credited = _decimal("total_credited", total_credited)
        if rate < ZERO or rate > HUNDRED:
            raise ValidationError("withholding_rate", withholding_rate, "must be within 0..100")
        if stamp < ZERO:
            raise ValidationError("stamp_duty_amount", stamp_duty_amount, "must not be negative")
        if credited < ZERO:
            raise ValidationError("total_credited", total_credited, "must not be negative")

        line_totals = tuple(
            self.compute_line(
                line.quantity,
                line.unit_price_ht,
                line.discount_percent,
                line.vat_rate,
                vat_exempt=vat_exempt,
            )
            for line in lines
        )

        subtotal_ht = self._round(sum((lt.line_total_ht for lt in line_totals), ZERO))
        total_vat = self._round(sum((lt.line_total_vat for lt in line_totals), ZERO))
        total_discount = self._round(sum((lt.line_discount for lt in line_totals), ZERO))
        total_ttc = subtotal_ht + total_vat

        applied = self._apply_custom_taxes(custom_taxes, subtotal_ht, total_ttc)
        total_custom = self._round(sum(
            (a.amount for a in applied if a.phase != CustomTaxPhase.ON_PAYMENT), ZERO,
        ))
        payment_taxes = self._round(sum(
            (a.amount for a in applied if a.phase == CustomTaxPhase.ON_PAYMENT), ZERO,
        ))

        stamp_amount = self._round(stamp) if stamp_duty_enabled else ZERO
        withholding = self._round(total_ttc * rate / HUNDRED) if withholding_applied else ZERO
        credited = self._round(credited)

        net_payable = self._round(
            total_ttc + total_custom + stamp_amount - withholding - credited
        )

        result = DocumentTotals(
            lines=line_totals,
            subtotal_ht=subtotal_ht,
            total_vat=total_vat,
            total_discount=total_discount,
            total_ttc=total_ttc,
            total_custom_taxes=total_custom,
            payment_taxes=payment_taxes,
            stamp_duty_amount=stamp_amount,
            withholding_rate=rate if withholding_applied else ZERO,
            withholding_amount=withholding,
            total_credited=credited,
            net_payable=net_payable,
            applied_custom_taxes=applied,
        )

        duration_ms = round((time.monotonic() - t0) * 1000, 2)
        logger.debug("document_totals_computed", extra={
            "line_count": len(line_totals),
            "subtotal_ht": str(subtotal_ht),
            "total_ttc": str(total_ttc),
            "net_payable": str(net_payable),
            "custom_tax_count": len(applied),
            "duration_ms": duration_ms,
        })
        return result

    def _apply_custom_taxes(
        self,
        custom_taxes: Iterable[CustomTax],
        subtotal_ht: Decimal,
        total_ttc: Decimal,
    ) -> tuple[AppliedCustomTax, ...]:
        ordered = sorted(
            enumerate(custom_taxes),
            key=lambda pair: (pair[1].application_order, pair[0]),
        )
        applied: list[AppliedCustomTax] = []
        for _, tax in ordered:
            base = subtotal_ht if tax.phase == CustomTaxPhase.BEFORE_VAT else total_ttc
            if tax.value_type == CustomTaxValueType.FIXED:
                magnitude = self._round(tax.value)
            else:
                magnitude = self._round(base * tax.value / HUNDRED)
            applied.append(AppliedCustomTax(
                name=tax.name,
                phase=tax.phase,
                base=base,
                amount=magnitude * tax.sign,
            ))
        return tuple(applied)

    # -------------------------------------------------------------------------
    # Currency and settlement
    # -------------------------------------------------------------------------

    def convert(self, amount: Any, exchange_rate: Any) -> Decimal:
        """
        Express ``amount`` in the reference currency.

        Raises:
            ValidationError: If the rate is not strictly positive.
        """
        value = _decimal("amount", amount)
        rate = _decimal("exchange_rate", exchange_rate)
        if rate <= ZERO:
            raise ValidationError("exchange_rate", exchange_rate, "must be positive")
        return self._round(value * rate)

    @staticmethod
    def derive_payment_status(
        paid_amount: Decimal,
        net_payable: Decimal,
        epsilon: Decimal = PAYMENT_EPSILON,
    ) -> PaymentStatus:
        """
        Payment status is always derived, never stored independently.

        Nothing paid is UNPAID, even when the net payable is zero.  Otherwise
        a document whose net payable is covered within epsilon is PAID.
        """
        if paid_amount == ZERO:
            return PaymentStatus.UNPAID
        if paid_amount >= net_payable - epsilon:
            return PaymentStatus.PAID
        return PaymentStatus.PARTIAL


def format_document_number(prefix: str, year: int, counter: int) -> str:
    """PREFIX-YEAR-00042"""
    return f"{prefix}-{year}-{counter:05d}"
