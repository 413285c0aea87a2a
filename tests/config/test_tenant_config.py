"""
Tests for tenant configuration loading.

Defaults come from the packaged defaults.yaml; a per-organization file only
lists what it overrides.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
import yaml

from docledger_config import (
    compute_checksum,
    default_config,
    get_tenant_config,
    load_tenant_config,
    parse_tenant_config,
)
from docledger_config.schema import NumberingConfig, TenantConfig
from docledger_engines.monetary import CustomTaxPhase


def _write_yaml(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaults:

    def test_default_values(self):
        config = default_config()
        assert config.reference_currency == "TND"
        assert config.decimal_places == 3
        assert config.stamp_duty_enabled is True
        assert config.stamp_duty_amount == Decimal("1.000")
        assert config.default_withholding_rate == Decimal("0")
        assert config.vat_rates == (Decimal("0"), Decimal("7"), Decimal("13"), Decimal("19"))
        assert Decimal("1.5") in config.withholding_rates
        assert config.numbering.invoice_prefix == "FAC"
        assert config.numbering.credit_note_prefix == "AV"
        assert config.numbering.purchase_prefix == "ACH"
        assert config.custom_taxes == ()

    def test_defaults_match_the_dataclass(self):
        assert default_config() == TenantConfig()

    def test_known_vat_rate(self):
        config = default_config()
        assert config.is_known_vat_rate(Decimal("19"))
        assert config.is_known_vat_rate(Decimal("19.000"))
        assert not config.is_known_vat_rate(Decimal("20"))


class TestTenantOverrides:

    def test_missing_file_returns_defaults_for_the_organization(self, tmp_path):
        org = uuid4()
        config = get_tenant_config(org, tmp_path)
        assert config.organization_id == org
        assert config.stamp_duty_amount == Decimal("1.000")

    def test_no_config_dir(self):
        org = uuid4()
        assert get_tenant_config(org).organization_id == org

    def test_file_overrides_only_listed_keys(self, tmp_path):
        org = uuid4()
        _write_yaml(tmp_path / f"{org}.yaml", {
            "stamp_duty_enabled": False,
            "vat_rates": ["0", "20"],
            "numbering": {"invoice_prefix": "INV"},
        })
        config = get_tenant_config(org, tmp_path)
        assert config.stamp_duty_enabled is False
        assert config.vat_rates == (Decimal("0"), Decimal("20"))
        assert config.numbering.invoice_prefix == "INV"
        assert config.numbering.credit_note_prefix == "AV"
        assert config.decimal_places == 3

    def test_custom_taxes_parsed(self, tmp_path):
        path = _write_yaml(tmp_path / "tenant.yaml", {
            "custom_taxes": [
                {"name": "fodec", "value": 1, "phase": "before_vat", "application_order": 1},
                {"name": "fee", "value": "0.5", "value_type": "fixed"},
            ],
        })
        config = load_tenant_config(path, base=default_config())
        assert [t.name for t in config.custom_taxes] == ["fodec", "fee"]
        assert config.custom_taxes[0].phase == CustomTaxPhase.BEFORE_VAT
        assert config.custom_taxes[1].value == Decimal("0.5")

    def test_yaml_floats_stay_exact(self):
        config = parse_tenant_config({"withholding_rates": [1.5, 3]})
        assert config.withholding_rates == (Decimal("1.5"), Decimal("3"))

    def test_tenant_config_logged(self, tmp_path, captured_logs):
        org = uuid4()
        _write_yaml(tmp_path / f"{org}.yaml", {"reservation_ttl_days": 3})
        get_tenant_config(org, tmp_path)
        events = [r for r in captured_logs() if r["message"] == "tenant_config_loaded"]
        assert len(events) == 1
        assert events[0]["organization_id"] == str(org)


class TestValidation:

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            parse_tenant_config({"stamp_duty": 1})

    @pytest.mark.parametrize(
        "data",
        [
            {"decimal_places": 12},
            {"stamp_duty_amount": "-1"},
            {"default_withholding_rate": "150"},
            {"reservation_ttl_days": 0},
            {"max_retry_attempts": 0},
            {"reference_currency": "EURO"},
            {"payment_epsilon": "abc"},
        ],
    )
    def test_invalid_values_rejected(self, data):
        with pytest.raises(ValueError):
            parse_tenant_config(data)

    def test_duplicate_custom_tax_names_rejected(self):
        with pytest.raises(ValueError, match="unique"):
            parse_tenant_config({"custom_taxes": [
                {"name": "fee", "value": 1},
                {"name": "fee", "value": 2},
            ]})

    def test_prefixes_must_be_distinct(self):
        with pytest.raises(ValueError):
            NumberingConfig(invoice_prefix="X", credit_note_prefix="X")

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_tenant_config(tmp_path / "absent.yaml")


class TestChecksum:

    def test_deterministic_and_order_independent(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})

    def test_changes_with_content(self):
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})
