"""
Pytest fixtures for the document ledger test suite.

Provides:
- A fresh database per test (SQLite file under tmp_path by default)
- Per-test sessions and a session factory for threaded tests
- Ledger services wired through the ServiceContainer
- Deterministic clock and log capture

Environment Variables:
- DATABASE_URL: run against another database (e.g. PostgreSQL) instead of
  the per-test SQLite file.  Tables are dropped and recreated per test.
"""

import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from docledger_config import default_config
from docledger_config.schema import TenantConfig
from docledger_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from docledger_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from docledger_kernel.domain.clock import DeterministicClock
from docledger_kernel.domain.dtos import LineInput
from docledger_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from docledger_services.facade import DocumentLedgerFacade
from docledger_services.service_container import ServiceContainer
from docledger_services.unit_of_work import EntityLockManager


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _configure_test_logging():
    """Configure structured logging for every test."""
    reset_logging()
    configure_logging(level=logging.INFO)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture docledger logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, stock):
            stock.reserve(...)
            assert any(r["message"] == "stock_reserved" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("docledger")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    """Engine over a database that lives for one test."""
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'ledger.db'}"
    engine = init_engine_from_url(url, pool_size=20, max_overflow=20)
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield engine
    unregister_immutability_listeners()
    if os.environ.get("DATABASE_URL"):
        drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    """A session whose uncommitted work is rolled back at teardown."""
    sess = session_factory()
    yield sess
    sess.rollback()
    sess.close()


# =============================================================================
# Tenancy, clock and configuration
# =============================================================================


@pytest.fixture
def org_id() -> UUID:
    return uuid4()


@pytest.fixture
def other_org_id() -> UUID:
    return uuid4()


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock(datetime(2024, 3, 15, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def config() -> TenantConfig:
    return default_config()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def container(session, config, deterministic_clock) -> ServiceContainer:
    return ServiceContainer(session, config, deterministic_clock)


@pytest.fixture
def stock(container):
    return container.stock


@pytest.fixture
def credit(container):
    return container.credit


@pytest.fixture
def accounts(container):
    return container.accounts


@pytest.fixture
def orchestrator(container):
    return container.orchestrator


@pytest.fixture
def facade(session_factory, config, deterministic_clock) -> DocumentLedgerFacade:
    return DocumentLedgerFacade(
        session_factory,
        config=config,
        clock=deterministic_clock,
        lock_manager=EntityLockManager(),
    )


# =============================================================================
# Data helpers
# =============================================================================


@pytest.fixture
def client(accounts, org_id):
    return accounts.register_client(org_id, "ACME SARL")


@pytest.fixture
def product(stock, org_id):
    return stock.register_product(org_id, "Widget", Decimal("10"))


@pytest.fixture
def make_line():
    """Build a LineInput with the cascade example's defaults."""

    def _make(
        quantity="2",
        unit_price_ht="100",
        discount_percent="10",
        vat_rate="19",
        product_id=None,
        reservation_id=None,
        description="line",
    ) -> LineInput:
        return LineInput(
            quantity=Decimal(quantity),
            unit_price_ht=Decimal(unit_price_ht),
            discount_percent=Decimal(discount_percent),
            vat_rate=Decimal(vat_rate),
            description=description,
            product_id=product_id,
            reservation_id=reservation_id,
        )

    return _make


@pytest.fixture
def validated_invoice(orchestrator, org_id, client, product, make_line):
    """
    A validated invoice for ``client``: two widgets at 100, 10 % off, 19 %
    VAT, stamp duty on.  total_ttc 214.200, net_payable 215.200.
    """
    invoice = orchestrator.create_invoice(
        org_id, client.id, [make_line(product_id=product.id)],
    )
    return orchestrator.transition_document(org_id, "invoice", invoice.id, "validated")
