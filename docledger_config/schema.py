"""
Tenant configuration schema (``docledger_config.schema``).

Frozen dataclasses describing one organization's settings.  Validation
happens in ``__post_init__`` so an invalid configuration can never be
constructed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from docledger_engines.monetary import CustomTax


@dataclass(frozen=True)
class NumberingConfig:
    """Document number prefixes; numbers render as PREFIX-YEAR-00001."""

    invoice_prefix: str = "FAC"
    credit_note_prefix: str = "AV"
    purchase_prefix: str = "ACH"

    def __post_init__(self) -> None:
        for name in ("invoice_prefix", "credit_note_prefix", "purchase_prefix"):
            value = getattr(self, name)
            if not value or not value.strip():
                raise ValueError(f"{name} must not be empty")
        prefixes = {self.invoice_prefix, self.credit_note_prefix, self.purchase_prefix}
        if len(prefixes) != 3:
            raise ValueError("Document prefixes must be distinct")


@dataclass(frozen=True)
class TenantConfig:
    """
    Settings of one organization.

    Guarantees:
        - decimal_places within 0..9.
        - stamp_duty_amount >= 0, 0 <= default_withholding_rate <= 100.
        - reservation_ttl_days >= 1, max_retry_attempts >= 1.
    """

    organization_id: UUID | None = None
    reference_currency: str = "TND"
    decimal_places: int = 3
    stamp_duty_amount: Decimal = Decimal("1.000")
    stamp_duty_enabled: bool = True
    default_withholding_rate: Decimal = Decimal("0")
    withholding_rates: tuple[Decimal, ...] = (
        Decimal("1.5"), Decimal("3"), Decimal("5"),
        Decimal("10"), Decimal("15"), Decimal("25"),
    )
    vat_rates: tuple[Decimal, ...] = (
        Decimal("0"), Decimal("7"), Decimal("13"), Decimal("19"),
    )
    reservation_ttl_days: int = 7
    payment_epsilon: Decimal = Decimal("0.001")
    max_retry_attempts: int = 3
    numbering: NumberingConfig = field(default_factory=NumberingConfig)
    custom_taxes: tuple[CustomTax, ...] = ()

    def __post_init__(self) -> None:
        if not (0 <= self.decimal_places <= 9):
            raise ValueError(f"decimal_places must be within 0..9, got {self.decimal_places}")
        if self.stamp_duty_amount < 0:
            raise ValueError("stamp_duty_amount must not be negative")
        if not (Decimal("0") <= self.default_withholding_rate <= Decimal("100")):
            raise ValueError("default_withholding_rate must be within 0..100")
        if self.reservation_ttl_days < 1:
            raise ValueError("reservation_ttl_days must be at least 1")
        if self.max_retry_attempts < 1:
            raise ValueError("max_retry_attempts must be at least 1")
        if self.payment_epsilon < 0:
            raise ValueError("payment_epsilon must not be negative")
        if len(self.reference_currency) != 3:
            raise ValueError(f"Invalid reference currency {self.reference_currency!r}")
        names = [tax.name for tax in self.custom_taxes]
        if len(names) != len(set(names)):
            raise ValueError("Custom tax names must be unique")

    def is_known_vat_rate(self, rate: Decimal) -> bool:
        return rate in self.vat_rates
