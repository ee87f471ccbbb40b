"""
Module: guarantee_kernel.db.kv_store
Responsibility: Versioned key-value storage with compare-and-set, the only
    primitive the registry needs to make stage advances race-free.
Architecture position: Kernel > DB.  Imports models/kv_record.py for the
    SQL implementation.  Knows nothing about Applications or stages.

Invariants enforced:
    - ``compare_and_set(key, value, expected_version)`` writes iff the
      stored version equals ``expected_version`` (None means "absent").
      Of two concurrent callers with the same expectation exactly one wins.
    - Stored values are JSON documents.  Callers always get a fresh copy;
      mutating a returned value never changes the store.

Failure modes:
    - SQLAlchemy errors other than the unique-key race propagate unchanged.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from guarantee_kernel.db.engine import session_scope
from guarantee_kernel.logging_config import get_logger
from guarantee_kernel.models.kv_record import KeyValueRecord
from guarantee_kernel.utils.hashing import canonicalize_json

logger = get_logger("db.kv_store")


@runtime_checkable
class KeyValueStore(Protocol):
    """Versioned JSON document store."""

    def get(self, key: str) -> Any | None: ...

    def get_versioned(self, key: str) -> tuple[Any | None, int | None]:
        """Return (value, version); (None, None) when the key is absent."""
        ...

    def set(self, key: str, value: Any) -> int:
        """Unconditional write.  Returns the new version."""
        ...

    def delete(self, key: str) -> bool: ...

    def compare_and_set(
        self, key: str, value: Any, expected_version: int | None
    ) -> bool: ...


def _copy(value: Any) -> Any:
    return json.loads(canonicalize_json(value))


class InMemoryKeyValueStore:
    """Process-local store guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, tuple[str, int]] = {}

    def get(self, key: str) -> Any | None:
        return self.get_versioned(key)[0]

    def get_versioned(self, key: str) -> tuple[Any | None, int | None]:
        with self._lock:
            entry = self._data.get(key)
        if entry is None:
            return None, None
        text, version = entry
        return json.loads(text), version

    def set(self, key: str, value: Any) -> int:
        text = canonicalize_json(value)
        with self._lock:
            current = self._data.get(key)
            version = current[1] + 1 if current else 1
            self._data[key] = (text, version)
        return version

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def compare_and_set(
        self, key: str, value: Any, expected_version: int | None
    ) -> bool:
        text = canonicalize_json(value)
        with self._lock:
            current = self._data.get(key)
            actual = current[1] if current else None
            if actual != expected_version:
                return False
            self._data[key] = (text, (actual or 0) + 1)
        return True

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class SqlKeyValueStore:
    """
    Key-value store over the ``kv_records`` table.

    Each call runs in its own short transaction.  Compare-and-set is a
    conditional ``UPDATE ... WHERE version = :expected`` (or an INSERT
    guarded by the unique key), so it holds across processes sharing the
    database.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)

    def get(self, key: str) -> Any | None:
        return self.get_versioned(key)[0]

    def get_versioned(self, key: str) -> tuple[Any | None, int | None]:
        with self._scope() as session:
            row = session.execute(
                select(KeyValueRecord.value, KeyValueRecord.version).where(
                    KeyValueRecord.key == key
                )
            ).first()
        if row is None:
            return None, None
        return _copy(row.value), row.version

    def set(self, key: str, value: Any) -> int:
        payload = _copy(value)
        while True:
            _, version = self.get_versioned(key)
            if self.compare_and_set(key, payload, version):
                return (version or 0) + 1
            logger.debug("kv_set_retry", extra={"key": key})

    def delete(self, key: str) -> bool:
        with self._scope() as session:
            result = session.execute(
                delete(KeyValueRecord).where(KeyValueRecord.key == key)
            )
            return result.rowcount > 0

    def compare_and_set(
        self, key: str, value: Any, expected_version: int | None
    ) -> bool:
        payload = _copy(value)
        if expected_version is None:
            try:
                with self._scope() as session:
                    session.add(KeyValueRecord(key=key, value=payload, version=1))
            except IntegrityError:
                logger.debug("kv_insert_conflict", extra={"key": key})
                return False
            return True

        with self._scope() as session:
            result = session.execute(
                update(KeyValueRecord)
                .where(
                    KeyValueRecord.key == key,
                    KeyValueRecord.version == expected_version,
                )
                .values(value=payload, version=expected_version + 1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def keys(self, prefix: str = "") -> list[str]:
        with self._scope() as session:
            rows = session.execute(
                select(KeyValueRecord.key)
                .where(KeyValueRecord.key.startswith(prefix, autoescape=True))
                .order_by(KeyValueRecord.key)
            ).scalars()
            return list(rows)
