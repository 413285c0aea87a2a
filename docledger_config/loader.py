"""
Configuration Loader (``docledger_config.loader``).

Responsibility
--------------
Loads tenant YAML files and parses them into the frozen dataclasses of
``docledger_config.schema``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages.  Unknown top-level keys are rejected rather than ignored.
* ``compute_checksum`` is deterministic for identical input.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml

from docledger_config.schema import NumberingConfig, TenantConfig
from docledger_engines.monetary import CustomTax

_KNOWN_KEYS = frozenset({
    "organization_id",
    "reference_currency",
    "decimal_places",
    "stamp_duty_amount",
    "stamp_duty_enabled",
    "default_withholding_rate",
    "withholding_rates",
    "vat_rates",
    "reservation_ttl_days",
    "payment_epsilon",
    "max_retry_attempts",
    "numbering",
    "custom_taxes",
})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, field: str) -> Decimal:
    """YAML floats are read through their string form to keep 1.5 exact."""
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{field}: cannot parse decimal from {value!r}") from exc


def parse_custom_tax(data: dict[str, Any]) -> CustomTax:
    """
    Parse one custom tax definition.

    Raises:
        KeyError: if ``name`` or ``value`` is missing.
        ValueError: on unknown enum values.
    """
    return CustomTax(
        name=data["name"],
        value=parse_decimal(data["value"], f"custom_taxes.{data['name']}.value"),
        value_type=data.get("value_type", "percentage"),
        application_type=data.get("application_type", "add"),
        phase=data.get("phase", "after_vat"),
        application_order=int(data.get("application_order", 0)),
    )


def parse_tenant_config(data: dict[str, Any], base: TenantConfig | None = None) -> TenantConfig:
    """
    Parse a TenantConfig from a mapping, filling gaps from ``base``.

    Raises:
        ValueError: on unknown keys or invalid values.
    """
    unknown = set(data) - _KNOWN_KEYS
    if unknown:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

    base = base or TenantConfig()
    numbering_data = data.get("numbering") or {}
    numbering = NumberingConfig(
        invoice_prefix=numbering_data.get("invoice_prefix", base.numbering.invoice_prefix),
        credit_note_prefix=numbering_data.get("credit_note_prefix", base.numbering.credit_note_prefix),
        purchase_prefix=numbering_data.get("purchase_prefix", base.numbering.purchase_prefix),
    )

    def _dec(key: str, default: Decimal) -> Decimal:
        return parse_decimal(data[key], key) if key in data else default

    def _dec_tuple(key: str, default: tuple[Decimal, ...]) -> tuple[Decimal, ...]:
        if key not in data:
            return default
        return tuple(parse_decimal(v, key) for v in data[key])

    org = data.get("organization_id")
    custom_taxes = (
        tuple(parse_custom_tax(item) for item in data["custom_taxes"])
        if "custom_taxes" in data else base.custom_taxes
    )

    return TenantConfig(
        organization_id=UUID(str(org)) if org else base.organization_id,
        reference_currency=str(data.get("reference_currency", base.reference_currency)).upper(),
        decimal_places=int(data.get("decimal_places", base.decimal_places)),
        stamp_duty_amount=_dec("stamp_duty_amount", base.stamp_duty_amount),
        stamp_duty_enabled=bool(data.get("stamp_duty_enabled", base.stamp_duty_enabled)),
        default_withholding_rate=_dec("default_withholding_rate", base.default_withholding_rate),
        withholding_rates=_dec_tuple("withholding_rates", base.withholding_rates),
        vat_rates=_dec_tuple("vat_rates", base.vat_rates),
        reservation_ttl_days=int(data.get("reservation_ttl_days", base.reservation_ttl_days)),
        payment_epsilon=_dec("payment_epsilon", base.payment_epsilon),
        max_retry_attempts=int(data.get("max_retry_attempts", base.max_retry_attempts)),
        numbering=numbering,
        custom_taxes=custom_taxes,
    )


def load_tenant_config(path: Path, base: TenantConfig | None = None) -> TenantConfig:
    """Load and parse a tenant YAML file."""
    return parse_tenant_config(load_yaml_file(Path(path)), base=base)


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
