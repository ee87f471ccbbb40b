"""Utility modules for the guarantee kernel."""

from guarantee_kernel.utils.hashing import canonicalize_json, hash_payload
from guarantee_kernel.utils.idempotency import (
    agreement_operation_key,
    parse_operation_key,
    stage_operation_key,
    vote_operation_key,
)

__all__ = [
    "agreement_operation_key",
    "canonicalize_json",
    "hash_payload",
    "parse_operation_key",
    "stage_operation_key",
    "vote_operation_key",
]
