"""
UnitOfWork -- one atomic, entity-locked, retryable mutation.

Responsibility:
    Wraps every facade call: acquires the per-entity in-process locks in a
    fixed global order, opens a session, runs the operation, commits on
    success and rolls back on any error.  Concurrency conflicts are retried
    from a fresh read.

Architecture position:
    Services layer.  The kernel services only flush; this is the one place
    that commits.

Invariants enforced:
    - Lock order: keys are sorted by (entity_type, entity_id) before any is
      acquired, so two units can never wait on each other in a cycle.
    - Locks are held across the commit; no other thread in the process
      observes a half-applied unit.
    - A lock set planned from a snapshot is re-planned inside the locked
      transaction.  If it grew, the attempt is a conflict and is retried
      with the larger set.
    - StaleDataError (optimistic version check) and database lock
      timeouts or deadlocks become ConcurrencyConflictError.

Failure modes:
    - ConcurrencyConflictError after ``max_attempts`` conflicting attempts.
    - Any other error propagates unchanged after rollback and is never
      retried (CrossTenantAccessError included).
"""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, TypeVar
from uuid import UUID

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from docledger_kernel.exceptions import ConcurrencyConflictError
from docledger_kernel.logging_config import get_logger

logger = get_logger("services.unit_of_work")

T = TypeVar("T")

LockKey = tuple[str, str]

DEFAULT_MAX_ATTEMPTS = 3

_RETRYABLE_DB_MESSAGES = ("database is locked", "deadlock detected", "could not serialize")


def lock_key(entity_type: str, entity_id: UUID | str) -> LockKey:
    return (entity_type, str(entity_id))


class EntityLockManager:
    """
    Process-wide registry of per-entity mutexes.

    Contract:
        ``hold(keys)`` acquires the lock of every key in sorted order and
        releases them in reverse order on exit.

    Non-goals:
        - Cross-process exclusion; row locks and version columns cover that.
    """

    def __init__(self) -> None:
        self._locks: dict[LockKey, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: LockKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, keys: Iterable[LockKey]) -> Iterator[tuple[LockKey, ...]]:
        ordered = tuple(sorted(set(keys)))
        acquired: list[threading.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()


def _is_retryable_db_error(exc: OperationalError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(fragment in message for fragment in _RETRYABLE_DB_MESSAGES)


class UnitOfWork:
    """
    Runs operations as atomic units.

    Contract:
        ``run(lock_keys, operation)`` calls ``operation(session)`` with a
        fresh session while the locks are held and returns its result after
        a successful commit.

    Guarantees:
        - Either every effect of the operation is committed or none is.
        - The session is always closed.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        lock_manager: EntityLockManager | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session_factory = session_factory
        self._locks = lock_manager or EntityLockManager()
        self._max_attempts = max_attempts

    @property
    def lock_manager(self) -> EntityLockManager:
        return self._locks

    def run(
        self,
        lock_keys: Iterable[LockKey],
        operation: Callable[[Session], T],
        *,
        plan: Callable[[Session], Iterable[LockKey]] | None = None,
        operation_name: str = "unit_of_work",
    ) -> T:
        """
        Execute ``operation`` atomically, retrying on concurrency conflicts.

        Args:
            lock_keys: Entities known up front.
            operation: Receives the session; must only flush.
            plan: Optional read-only callable that derives further lock keys
                (e.g. the products on an invoice's lines) from a snapshot.
            operation_name: Used in log events.
        """
        static_keys = frozenset(lock_keys)
        extra_keys: frozenset[LockKey] = frozenset()

        for attempt in range(1, self._max_attempts + 1):
            t0 = time.monotonic()
            try:
                if plan is not None:
                    extra_keys = extra_keys | self._plan_snapshot(plan)
                result = self._attempt(static_keys | extra_keys, operation, plan)
            except ConcurrencyConflictError as exc:
                if attempt >= self._max_attempts:
                    logger.error(
                        "unit_of_work_retries_exhausted",
                        extra={
                            "operation": operation_name,
                            "attempts": attempt,
                            "entity_type": exc.entity_type,
                            "entity_id": exc.entity_id,
                        },
                    )
                    raise
                logger.warning(
                    "unit_of_work_conflict_retry",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt,
                        "entity_type": exc.entity_type,
                        "entity_id": exc.entity_id,
                        "reason": exc.reason,
                    },
                )
                if isinstance(exc, _LockSetChanged):
                    extra_keys = extra_keys | exc.missing
                continue

            logger.debug(
                "unit_of_work_committed",
                extra={
                    "operation": operation_name,
                    "attempt": attempt,
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )
            return result

        raise AssertionError("unreachable")  # pragma: no cover

    def _plan_snapshot(self, plan: Callable[[Session], Iterable[LockKey]]) -> frozenset[LockKey]:
        session = self._session_factory()
        try:
            return frozenset(plan(session))
        finally:
            session.rollback()
            session.close()

    def _attempt(
        self,
        keys: frozenset[LockKey],
        operation: Callable[[Session], T],
        plan: Callable[[Session], Iterable[LockKey]] | None,
    ) -> T:
        with self._locks.hold(keys):
            session = self._session_factory()
            try:
                if plan is not None:
                    missing = frozenset(plan(session)) - keys
                    if missing:
                        raise _LockSetChanged(missing)
                result = operation(session)
                session.commit()
                return result
            except StaleDataError as exc:
                session.rollback()
                raise ConcurrencyConflictError("unknown", "unknown", str(exc)) from exc
            except OperationalError as exc:
                session.rollback()
                if _is_retryable_db_error(exc):
                    raise ConcurrencyConflictError("database", "lock", str(exc.orig)) from exc
                raise
            except BaseException:
                session.rollback()
                raise
            finally:
                session.close()


class _LockSetChanged(ConcurrencyConflictError):
    """The entities touched by the operation changed after planning."""

    def __init__(self, missing: frozenset[LockKey]):
        self.missing = missing
        first_type, first_id = sorted(missing)[0]
        super().__init__(first_type, first_id, "lock set changed since planning")
