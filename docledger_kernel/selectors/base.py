"""
Module: docledger_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors, and
    the tenant ownership check shared by the read and write sides.
Architecture position: Kernel > Selectors.  May import from db/, models/
    and the pure engines.  MUST NOT import from services/.

Invariants enforced:
    - Read-only access: selectors accept a Session from the caller and
      never add, delete, flush or commit.
    - DTO return convention: selectors return frozen dataclasses, not ORM
      instances.
    - Tenant isolation: an entity owned by another organization is never
      returned; the access is logged and rejected.
"""

from abc import ABC
from typing import TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from docledger_kernel.db.base import Base
from docledger_kernel.exceptions import CrossTenantAccessError, EntityNotFoundError
from docledger_kernel.logging_config import get_logger

ModelType = TypeVar("ModelType", bound=Base)

logger = get_logger("selectors")


def ensure_same_tenant(entity, organization_id: UUID) -> None:
    """
    Raise CrossTenantAccessError unless ``entity`` belongs to ``organization_id``.
    """
    if entity.organization_id != organization_id:
        logger.warning(
            "cross_tenant_access_rejected",
            extra={
                "entity_type": type(entity).__name__,
                "entity_id": str(entity.id),
                "requested_organization_id": str(organization_id),
            },
        )
        raise CrossTenantAccessError(type(entity).__name__, str(entity.id), str(organization_id))


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a Session from the caller, perform read-only
        queries, and return DTOs.  They take no row locks.
    """

    def __init__(self, session: Session):
        self.session = session

    def _get_owned(self, model: type[ModelType], entity_id: UUID, organization_id: UUID) -> ModelType:
        entity = self.session.execute(
            select(model).where(model.id == entity_id)
        ).scalar_one_or_none()
        if entity is None:
            raise EntityNotFoundError(model.__name__, str(entity_id))
        ensure_same_tenant(entity, organization_id)
        return entity
