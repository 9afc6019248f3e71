"""Database layer - engine, base classes, types, and immutability."""

from orderflow_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from orderflow_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    session_scope,
)
from orderflow_kernel.db.types import Cost, LongText, PayloadHash, ShortCode, Weight

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "Weight",
    "Cost",
    "PayloadHash",
    "ShortCode",
    "LongText",
]
