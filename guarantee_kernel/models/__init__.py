"""ORM models for the guarantee kernel."""

from guarantee_kernel.models.kv_record import KeyValueRecord

__all__ = [
    "KeyValueRecord",
]
