"""Database layer - engine, base classes, types, and immutability listeners."""

from docledger_kernel.db.base import UUID, Base, TenantScopedBase, UUIDString
from docledger_kernel.db.engine import create_tables, get_engine, get_session, session_scope
from docledger_kernel.db.types import ZERO, round_money, to_decimal

__all__ = [
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "Base",
    "TenantScopedBase",
    "UUIDString",
    "UUID",
    "ZERO",
    "round_money",
    "to_decimal",
]
