"""
Module: guarantee_kernel.models.kv_record
Responsibility: ORM persistence for the versioned key-value records behind
    the Application/Draft registry, ballots and transaction histories.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - ``key`` is unique (uq_kv_record_key).
    - ``version`` starts at 1 and increases by exactly one per write; the
      compare-and-set in db/kv_store.py conditions every update on it.

Failure modes:
    - IntegrityError on a concurrent first write of the same key; the store
      reports this as a lost compare-and-set.
"""

from typing import Any

from sqlalchemy import JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from guarantee_kernel.db.base import TrackedBase


class KeyValueRecord(TrackedBase):
    """One JSON document stored under a namespaced key."""

    __tablename__ = "kv_records"

    __table_args__ = (
        UniqueConstraint("key", name="uq_kv_record_key"),
    )

    key: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    value: Mapped[Any] = mapped_column(
        JSON,
        nullable=False,
    )

    version: Mapped[int] = mapped_column(
        nullable=False,
        default=1,
    )

    def __repr__(self) -> str:
        return f"<KeyValueRecord {self.key} v{self.version}>"
