"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor, tenant-checked entity loading and row
    locking used by every ledger.  Services use ``session.flush()`` and never
    ``session.commit()``; the unit of work owns the transaction.

Invariants enforced:
    - Tenant isolation: every load compares the entity's organization_id
      with the caller's and raises CrossTenantAccessError on mismatch,
      before the entity is read or written any further.
    - Mutating loads take a row lock (SELECT ... FOR UPDATE) and refresh
      the identity map from the database (populate_existing).

Failure modes:
    - EntityNotFoundError when the id does not exist.
    - CrossTenantAccessError, logged as a security event.
"""

from abc import ABC
from typing import TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from docledger_kernel.db.base import Base
from docledger_kernel.domain.clock import Clock, SystemClock
from docledger_kernel.exceptions import EntityNotFoundError
from docledger_kernel.selectors.base import ensure_same_tenant

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a SQLAlchemy ``Session`` and a ``Clock`` from the caller and
        persists changes with ``session.flush()`` inside the caller's
        transaction.

    Non-goals:
        - Does NOT commit or roll back.
        - Does NOT acquire in-process locks; the unit of work does.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

    def _get(
        self,
        model: type[ModelType],
        entity_id: UUID,
        organization_id: UUID,
        *,
        for_update: bool = False,
    ) -> ModelType:
        stmt = select(model).where(model.id == entity_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        entity = self.session.execute(stmt).scalar_one_or_none()
        if entity is None:
            raise EntityNotFoundError(model.__name__, str(entity_id))
        ensure_same_tenant(entity, organization_id)
        return entity

    def _lock(self, model: type[ModelType], entity_id: UUID, organization_id: UUID) -> ModelType:
        return self._get(model, entity_id, organization_id, for_update=True)
