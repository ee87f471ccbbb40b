"""Database layer - engine, base classes and the key-value store."""

from guarantee_kernel.db.base import Base, TrackedBase, UUIDString
from guarantee_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from guarantee_kernel.db.kv_store import (
    InMemoryKeyValueStore,
    KeyValueStore,
    SqlKeyValueStore,
)

__all__ = [
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "drop_tables",
    "reset_engine",
    "Base",
    "TrackedBase",
    "UUIDString",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "SqlKeyValueStore",
]
