"""
Tests for the Application record and the draft certificate.
"""

import random
import re
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from guarantee_kernel.domain.application import (
    Application,
    BuyerParty,
    DraftCertificate,
    DraftStatus,
    ProofOfShipment,
    SellerParty,
    ShipmentDocument,
    new_request_id,
    normalize_address,
)
from guarantee_kernel.domain.stages import Stage
from guarantee_kernel.exceptions import NegativeBalanceError
from tests.fakes import BUYER, SELLER

AT = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _application(**overrides) -> Application:
    fields = dict(
        request_id="PG-1704110400000-ABC123",
        buyer=BuyerParty(company="Acme", wallet_address=BUYER, application_date=date(2024, 1, 1)),
        seller=SellerParty(wallet_address=SELLER, name="Widgets"),
        trade_description="inverters",
        trade_value=Decimal("100"),
        guarantee_amount=Decimal("50"),
        issuance_fee=Decimal("0.5"),
        collateral_value=Decimal("5"),
        created_at=AT,
        contract_number="CN-1",
        payment_due_date=date(2024, 4, 1),
    )
    fields.update(overrides)
    return Application.create(**fields)


class TestRequestId:
    def test_format(self):
        rid = new_request_id(AT)
        assert re.fullmatch(r"PG-1704110400000-[0-9A-Z]{6}", rid)

    def test_seeded_rng_is_reproducible(self):
        assert new_request_id(AT, random.Random(7)) == new_request_id(AT, random.Random(7))


class TestNormalizeAddress:
    def test_lowercases_and_strips(self):
        assert normalize_address("  0xABC ") == "0xabc"


class TestApplicationCreate:
    def test_starts_at_stage_one_as_draft(self):
        app = _application()
        assert app.current_stage is Stage.APPLIED
        assert app.status == "Applied"
        assert app.is_draft
        assert app.last_updated == AT
        assert not app.is_terminated

    def test_guarantee_above_trade_refused(self):
        with pytest.raises(NegativeBalanceError):
            _application(guarantee_amount=Decimal("101"))

    def test_parties_are_normalized(self):
        assert _application().parties() == (BUYER.lower(), SELLER.lower())


class TestWithStage:
    def test_advance_clears_draft_flag(self):
        later = datetime(2024, 1, 2, tzinfo=timezone.utc)
        app = _application().with_stage(Stage.DRAFT_SENT, later)
        assert app.current_stage is Stage.DRAFT_SENT
        assert not app.is_draft
        assert app.last_updated == later
        assert app.status == "Draft Sent"

    def test_changes_are_applied(self):
        app = _application().with_stage(Stage.FEE_PAID, AT, certificate_number="PGC-1")
        assert app.certificate_number == "PGC-1"

    def test_original_is_unchanged(self):
        app = _application()
        app.with_stage(Stage.TERMINATED, AT)
        assert app.current_stage is Stage.APPLIED


class TestApplicationJson:
    def test_round_trip_with_evidence(self):
        shipment = ProofOfShipment(
            tracking_number="MSKU1",
            carrier="Maersk",
            shipping_date=date(2024, 2, 1),
            documents=(ShipmentDocument("bol.pdf", "ipfs://bol", "pdf"),),
        )
        app = _application().with_stage(
            Stage.GOODS_SHIPPED,
            AT,
            proof_of_shipment=shipment,
            certificate_number="PGC-1",
            certificate_issued_at=AT,
        )
        data = app.to_json()
        assert data["current_stage"] == 6
        assert data["status"] == "Goods Shipped"
        assert data["trade_value"] == "100.000000"
        assert Application.from_json(data) == app

    def test_json_amounts_are_strings(self):
        data = _application().to_json()
        for key in ("trade_value", "guarantee_amount", "issuance_fee", "collateral_value"):
            assert isinstance(data[key], str)


class TestDraftCertificate:
    def test_from_application(self):
        app = _application()
        draft = DraftCertificate.from_application(app, AT)
        assert draft.guarantee_no == f"PGA-{app.request_id}"
        assert draft.applicant == app.buyer
        assert draft.beneficiary == app.seller
        assert draft.status is DraftStatus.SENT_TO_SELLER
        assert not draft.is_approved

    def test_round_trip(self):
        draft = DraftCertificate.from_application(_application(), AT)
        assert DraftCertificate.from_json(draft.to_json()) == draft
