"""
Ledger operation key generation.

One logical ledger operation maps to exactly one key, so a retried
submission or a duplicate confirmation is recognised and reconciled at most
once.

Formats:
    stage transitions      <request_id>:<target_stage>
    financier votes        <request_id>:vote:<voter>:<decision>
    delivery agreements    <request_id>:delivery_agreement:<agreement_id>
"""

from enum import IntEnum


def stage_operation_key(request_id: str, target_stage: int | IntEnum) -> str:
    """
    Key for an operation that moves the stage pointer.

    Example:
        >>> stage_operation_key("PG-1700000000000-ABC123", 4)
        "PG-1700000000000-ABC123:4"
    """
    return f"{request_id}:{int(target_stage)}"


def vote_operation_key(request_id: str, voter_address: str, decision: str) -> str:
    return f"{request_id}:vote:{voter_address.lower()}:{decision}"


def agreement_operation_key(request_id: str, agreement_id: str) -> str:
    return f"{request_id}:delivery_agreement:{agreement_id}"


def parse_operation_key(key: str) -> tuple[str, str]:
    """
    Split a key into (request_id, remainder).

    Request ids never contain ``:``, so the first separator is the boundary.

    Raises:
        ValueError: If key format is invalid.
    """
    request_id, sep, rest = key.partition(":")
    if not sep or not request_id or not rest:
        raise ValueError(f"Invalid operation key format: {key}")
    return request_id, rest
