"""Tests for UnitOfWork and EntityLockManager."""

import pytest
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from docledger_kernel.exceptions import BusinessRuleError, ConcurrencyConflictError
from docledger_kernel.models.client import Client
from docledger_kernel.services.account_ledger import AccountLedger
from docledger_services.unit_of_work import EntityLockManager, UnitOfWork, lock_key


def _client_names(session_factory, org_id):
    session = session_factory()
    try:
        return [c.name for c in session.execute(
            select(Client).where(Client.organization_id == org_id)
        ).scalars()]
    finally:
        session.close()


class TestCommitAndRollback:

    def test_commits_on_success(self, session_factory, org_id):
        unit = UnitOfWork(session_factory)
        client_id = unit.run([], lambda s: AccountLedger(s).register_client(org_id, "ACME").id)

        assert client_id is not None
        assert _client_names(session_factory, org_id) == ["ACME"]

    def test_rolls_back_on_error(self, session_factory, org_id):
        unit = UnitOfWork(session_factory)

        def operation(session):
            AccountLedger(session).register_client(org_id, "Ghost")
            raise BusinessRuleError("refused")

        with pytest.raises(BusinessRuleError):
            unit.run([], operation)
        assert _client_names(session_factory, org_id) == []

    def test_domain_errors_are_not_retried(self, session_factory):
        calls = []

        def operation(session):
            calls.append(1)
            raise BusinessRuleError("refused")

        with pytest.raises(BusinessRuleError):
            UnitOfWork(session_factory, max_attempts=5).run([], operation)
        assert len(calls) == 1

    def test_max_attempts_must_be_positive(self, session_factory):
        with pytest.raises(ValueError):
            UnitOfWork(session_factory, max_attempts=0)


class TestRetry:

    def test_conflict_retried_then_succeeds(self, session_factory, captured_logs):
        calls = []

        def operation(session):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrencyConflictError("Product", "p-1")
            return "done"

        assert UnitOfWork(session_factory).run([], operation, operation_name="reserve") == "done"
        assert len(calls) == 2
        retries = [r for r in captured_logs() if r["message"] == "unit_of_work_conflict_retry"]
        assert retries[0]["operation"] == "reserve"
        assert retries[0]["entity_type"] == "Product"

    def test_stale_data_is_a_conflict(self, session_factory):
        calls = []

        def operation(session):
            calls.append(1)
            if len(calls) == 1:
                raise StaleDataError("version mismatch")
            return len(calls)

        assert UnitOfWork(session_factory).run([], operation) == 2

    def test_retries_exhausted(self, session_factory, captured_logs):
        calls = []

        def operation(session):
            calls.append(1)
            raise ConcurrencyConflictError("Client", "c-1")

        with pytest.raises(ConcurrencyConflictError):
            UnitOfWork(session_factory, max_attempts=3).run([], operation)
        assert len(calls) == 3
        assert any(r["message"] == "unit_of_work_retries_exhausted" for r in captured_logs())

    def test_grown_lock_set_is_replanned(self, session_factory):
        plans = []
        held = []
        manager = EntityLockManager()

        def plan(session):
            plans.append(1)
            # The snapshot sees one product; the locked re-plan sees two
            if len(plans) == 1:
                return [lock_key("Product", "a")]
            return [lock_key("Product", "a"), lock_key("Product", "b")]

        def operation(session):
            held.append(1)
            return "ok"

        unit = UnitOfWork(session_factory, manager)
        assert unit.run([], operation, plan=plan) == "ok"
        assert len(held) == 1
        assert len(plans) >= 3


class TestEntityLockManager:

    def test_keys_acquired_sorted_and_unique(self):
        manager = EntityLockManager()
        keys = [lock_key("Product", "b"), lock_key("Client", "z"), lock_key("Product", "a"),
                lock_key("Product", "b")]
        with manager.hold(keys) as ordered:
            assert ordered == (("Client", "z"), ("Product", "a"), ("Product", "b"))

    def test_locks_released_after_error(self):
        manager = EntityLockManager()
        key = lock_key("Invoice", "i-1")
        with pytest.raises(RuntimeError):
            with manager.hold([key]):
                raise RuntimeError("boom")
        lock = manager._lock_for(key)
        assert lock.acquire(blocking=False)
        lock.release()

    def test_same_key_same_lock(self):
        manager = EntityLockManager()
        assert manager._lock_for(("A", "1")) is manager._lock_for(("A", "1"))
