"""
Unit tests for ledger operation keys and canonical hashing.

Verifies:
- Key formats per operation family
- Key parsing and malformed-key rejection
- Canonical JSON is order-independent and Decimal-safe
"""

from datetime import date
from decimal import Decimal

import pytest

from guarantee_kernel.domain.stages import Stage
from guarantee_kernel.utils.hashing import canonicalize_json, hash_payload
from guarantee_kernel.utils.idempotency import (
    agreement_operation_key,
    parse_operation_key,
    stage_operation_key,
    vote_operation_key,
)

RID = "PG-1700000000000-ABC123"


class TestOperationKeys:

    def test_stage_key_uses_target_number(self):
        assert stage_operation_key(RID, Stage.FEE_PAID) == f"{RID}:4"
        assert stage_operation_key(RID, 9) == f"{RID}:9"

    def test_vote_key_lowercases_voter(self):
        key = vote_operation_key(RID, "0xABCdef", "approve")
        assert key == f"{RID}:vote:0xabcdef:approve"

    def test_agreement_key(self):
        assert agreement_operation_key(RID, "DA-1") == f"{RID}:delivery_agreement:DA-1"

    def test_parse_splits_on_first_separator(self):
        key = vote_operation_key(RID, "0xabc", "reject")
        assert parse_operation_key(key) == (RID, "vote:0xabc:reject")

    @pytest.mark.parametrize("key", ["", "no-separator", ":4", f"{RID}:"])
    def test_parse_rejects_malformed(self, key):
        with pytest.raises(ValueError):
            parse_operation_key(key)


class TestCanonicalHashing:

    def test_key_order_does_not_change_hash(self):
        assert hash_payload({"a": 1, "b": 2}) == hash_payload({"b": 2, "a": 1})

    def test_decimal_and_date_serialize_as_text(self):
        text = canonicalize_json({"fee": Decimal("800.000000"), "due": date(2024, 4, 1)})
        assert text == '{"due":"2024-04-01","fee":"800.000000"}'

    def test_distinct_payloads_hash_differently(self):
        assert hash_payload({"approve": True}) != hash_payload({"approve": False})

    def test_unserializable_value_raises(self):
        with pytest.raises(TypeError):
            canonicalize_json({"x": object()})
