"""
docledger_config -- tenant configuration.

Responsibility:
    Provides ``default_config()`` and ``get_tenant_config()``, the entry
    points for per-organization settings (currency, precision, stamp duty,
    withholding, numbering, custom taxes, retry policy).

Architecture position:
    Configuration sits above ``docledger_kernel`` and ``docledger_engines``
    and below ``docledger_services``.  The kernel MUST NEVER import from it.
"""

from __future__ import annotations

from pathlib import Path
from uuid import UUID

from docledger_config.loader import (
    compute_checksum,
    load_tenant_config,
    load_yaml_file,
    parse_tenant_config,
)
from docledger_config.schema import NumberingConfig, TenantConfig
from docledger_kernel.logging_config import get_logger

logger = get_logger("config")

DEFAULTS_PATH = Path(__file__).with_name("defaults.yaml")


def default_config() -> TenantConfig:
    """Built-in defaults from ``defaults.yaml``."""
    return load_tenant_config(DEFAULTS_PATH)


def get_tenant_config(
    organization_id: UUID,
    config_dir: Path | None = None,
) -> TenantConfig:
    """
    Settings for one organization.

    Reads ``<config_dir>/<organization_id>.yaml`` on top of the defaults
    when it exists; otherwise returns the defaults bound to the organization.
    """
    base = parse_tenant_config({"organization_id": str(organization_id)}, base=default_config())
    if config_dir is None:
        return base
    path = Path(config_dir) / f"{organization_id}.yaml"
    if not path.exists():
        return base
    raw = load_yaml_file(path)
    config = parse_tenant_config(raw, base=base)
    logger.info(
        "tenant_config_loaded",
        extra={
            "organization_id": str(organization_id),
            "path": str(path),
            "checksum": compute_checksum(raw),
        },
    )
    return config


__all__ = [
    "NumberingConfig",
    "TenantConfig",
    "compute_checksum",
    "default_config",
    "get_tenant_config",
    "load_tenant_config",
    "parse_tenant_config",
]
