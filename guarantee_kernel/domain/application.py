"""
Application and DraftCertificate records (``guarantee_kernel.domain.application``).

Responsibility
--------------
Frozen value objects for the buyer's guarantee request and for the
seller-facing draft certificate projected from it, plus their JSON
representation for the key-value store.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``guarantee_amount <= trade_value`` (checked by ``Application.create``).
* ``status`` always mirrors ``current_stage``.
* Monetary fields are ``Decimal`` in memory and decimal strings in JSON.
* An approved draft is never mutated; approval produces a new record.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from guarantee_kernel.domain.settlement import format_amount, remaining_balance
from guarantee_kernel.domain.stages import Stage, stage_label

DEFAULT_FINANCING_DURATION_DAYS = 90


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def normalize_address(address: str) -> str:
    """Wallet addresses compare case-insensitively."""
    return address.strip().lower()


_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def new_request_id(at: datetime, rng: random.Random | None = None) -> str:
    """Generate ``PG-<epoch millis>-<6 upper-case base36 chars>``."""
    rng = rng or random.SystemRandom()
    millis = int(at.timestamp() * 1000)
    suffix = "".join(rng.choice(_BASE36) for _ in range(6))
    return f"PG-{millis}-{suffix}"


# =========================================================================
# Parties and evidence
# =========================================================================


@dataclass(frozen=True)
class BuyerParty:
    """The applicant company."""

    company: str
    wallet_address: str
    registration: str = ""
    country: str = ""
    contact: str = ""
    email: str = ""
    phone: str = ""
    application_date: date | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "company": self.company,
            "wallet_address": self.wallet_address,
            "registration": self.registration,
            "country": self.country,
            "contact": self.contact,
            "email": self.email,
            "phone": self.phone,
            "application_date": _iso(self.application_date),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> BuyerParty:
        return cls(
            company=data["company"],
            wallet_address=data["wallet_address"],
            registration=data.get("registration", ""),
            country=data.get("country", ""),
            contact=data.get("contact", ""),
            email=data.get("email", ""),
            phone=data.get("phone", ""),
            application_date=_parse_date(data.get("application_date")),
        )


@dataclass(frozen=True)
class SellerParty:
    """The beneficiary of the guarantee."""

    wallet_address: str
    name: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {"wallet_address": self.wallet_address, "name": self.name}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> SellerParty:
        return cls(wallet_address=data["wallet_address"], name=data.get("name"))


@dataclass(frozen=True)
class ShipmentDocument:
    name: str
    uri: str
    type: str = ""


@dataclass(frozen=True)
class ProofOfShipment:
    """Evidence attached when goods are confirmed shipped."""

    tracking_number: str = ""
    carrier: str = ""
    shipping_date: date | None = None
    documents: tuple[ShipmentDocument, ...] = ()

    def to_json(self) -> dict[str, Any]:
        return {
            "tracking_number": self.tracking_number,
            "carrier": self.carrier,
            "shipping_date": _iso(self.shipping_date),
            "documents": [
                {"name": d.name, "uri": d.uri, "type": d.type}
                for d in self.documents
            ],
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ProofOfShipment:
        return cls(
            tracking_number=data.get("tracking_number", ""),
            carrier=data.get("carrier", ""),
            shipping_date=_parse_date(data.get("shipping_date")),
            documents=tuple(
                ShipmentDocument(d["name"], d["uri"], d.get("type", ""))
                for d in data.get("documents", ())
            ),
        )


# =========================================================================
# Application
# =========================================================================


@dataclass(frozen=True)
class Application:
    """One buyer-initiated guarantee request.

    Records are replaced, never mutated: every stage advance or evidence
    update yields a new instance through ``dataclasses.replace``.
    """

    request_id: str
    buyer: BuyerParty
    seller: SellerParty
    trade_description: str
    trade_value: Decimal
    guarantee_amount: Decimal
    issuance_fee: Decimal
    collateral_value: Decimal
    current_stage: Stage
    last_updated: datetime
    id: str = field(default_factory=lambda: str(uuid4()))
    collateral_description: str = ""
    financing_duration: int = DEFAULT_FINANCING_DURATION_DAYS
    contract_number: str = ""
    payment_due_date: date | None = None
    is_draft: bool = True
    proof_of_shipment: ProofOfShipment | None = None
    delivery_agreement_id: str | None = None
    delivery_confirmed_date: datetime | None = None
    certificate_number: str | None = None
    certificate_issued_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def create(
        cls,
        *,
        request_id: str,
        buyer: BuyerParty,
        seller: SellerParty,
        trade_description: str,
        trade_value: Decimal,
        guarantee_amount: Decimal,
        issuance_fee: Decimal,
        collateral_value: Decimal,
        created_at: datetime,
        **terms: Any,
    ) -> Application:
        """Build a stage-1 Application, enforcing guarantee <= trade value."""
        remaining_balance(trade_value, guarantee_amount)
        return cls(
            request_id=request_id,
            buyer=buyer,
            seller=seller,
            trade_description=trade_description,
            trade_value=trade_value,
            guarantee_amount=guarantee_amount,
            issuance_fee=issuance_fee,
            collateral_value=collateral_value,
            current_stage=Stage.APPLIED,
            last_updated=created_at,
            **terms,
        )

    @property
    def status(self) -> str:
        return stage_label(self.current_stage)

    @property
    def is_terminated(self) -> bool:
        return self.current_stage is Stage.TERMINATED

    def parties(self) -> tuple[str, str]:
        """Normalized (buyer, seller) wallet addresses."""
        return (
            normalize_address(self.buyer.wallet_address),
            normalize_address(self.seller.wallet_address),
        )

    def with_stage(self, stage: Stage, at: datetime, **changes: Any) -> Application:
        return replace(
            self,
            current_stage=stage,
            is_draft=stage is Stage.APPLIED,
            last_updated=at,
            **changes,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "buyer": self.buyer.to_json(),
            "seller": self.seller.to_json(),
            "trade_description": self.trade_description,
            "trade_value": format_amount(self.trade_value),
            "guarantee_amount": format_amount(self.guarantee_amount),
            "issuance_fee": format_amount(self.issuance_fee),
            "collateral_description": self.collateral_description,
            "collateral_value": format_amount(self.collateral_value),
            "financing_duration": self.financing_duration,
            "contract_number": self.contract_number,
            "payment_due_date": _iso(self.payment_due_date),
            "current_stage": int(self.current_stage),
            "status": self.status,
            "is_draft": self.is_draft,
            "last_updated": _iso(self.last_updated),
            "proof_of_shipment": (
                self.proof_of_shipment.to_json() if self.proof_of_shipment else None
            ),
            "delivery_agreement_id": self.delivery_agreement_id,
            "delivery_confirmed_date": _iso(self.delivery_confirmed_date),
            "certificate_number": self.certificate_number,
            "certificate_issued_at": _iso(self.certificate_issued_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Application:
        shipment = data.get("proof_of_shipment")
        return cls(
            id=data["id"],
            request_id=data["request_id"],
            buyer=BuyerParty.from_json(data["buyer"]),
            seller=SellerParty.from_json(data["seller"]),
            trade_description=data["trade_description"],
            trade_value=Decimal(data["trade_value"]),
            guarantee_amount=Decimal(data["guarantee_amount"]),
            issuance_fee=Decimal(data["issuance_fee"]),
            collateral_description=data.get("collateral_description", ""),
            collateral_value=Decimal(data["collateral_value"]),
            financing_duration=data.get(
                "financing_duration", DEFAULT_FINANCING_DURATION_DAYS
            ),
            contract_number=data.get("contract_number", ""),
            payment_due_date=_parse_date(data.get("payment_due_date")),
            current_stage=Stage(data["current_stage"]),
            is_draft=data.get("is_draft", False),
            last_updated=datetime.fromisoformat(data["last_updated"]),
            proof_of_shipment=ProofOfShipment.from_json(shipment) if shipment else None,
            delivery_agreement_id=data.get("delivery_agreement_id"),
            delivery_confirmed_date=_parse_datetime(data.get("delivery_confirmed_date")),
            certificate_number=data.get("certificate_number"),
            certificate_issued_at=_parse_datetime(data.get("certificate_issued_at")),
            completed_at=_parse_datetime(data.get("completed_at")),
        )


# =========================================================================
# Draft certificate
# =========================================================================


class DraftStatus(str, Enum):
    """Seller-facing draft lifecycle, distinct from the numeric stage."""

    SENT_TO_SELLER = "SENT TO SELLER"
    AWAITING_FEE_PAYMENT = "AWAITING FEE PAYMENT"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class DraftCertificate:
    """Pre-binding projection of an Application at stage 2."""

    request_id: str
    guarantee_no: str
    applicant: BuyerParty
    beneficiary: SellerParty
    trade_description: str
    collateral_description: str
    trade_value: Decimal
    guarantee_amount: Decimal
    collateral_value: Decimal
    issuance_fee: Decimal
    financing_duration: int
    contract_number: str
    payment_due_date: date | None
    created_at: datetime
    status: DraftStatus = DraftStatus.SENT_TO_SELLER
    seller_approved_at: datetime | None = None
    approved_at: datetime | None = None

    @classmethod
    def from_application(cls, application: Application, at: datetime) -> DraftCertificate:
        return cls(
            request_id=application.request_id,
            guarantee_no=f"PGA-{application.request_id}",
            applicant=application.buyer,
            beneficiary=application.seller,
            trade_description=application.trade_description,
            collateral_description=application.collateral_description,
            trade_value=application.trade_value,
            guarantee_amount=application.guarantee_amount,
            collateral_value=application.collateral_value,
            issuance_fee=application.issuance_fee,
            financing_duration=application.financing_duration,
            contract_number=application.contract_number,
            payment_due_date=application.payment_due_date,
            created_at=at,
        )

    @property
    def is_approved(self) -> bool:
        return self.approved_at is not None

    def to_json(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "guarantee_no": self.guarantee_no,
            "applicant": self.applicant.to_json(),
            "beneficiary": self.beneficiary.to_json(),
            "trade_description": self.trade_description,
            "collateral_description": self.collateral_description,
            "trade_value": format_amount(self.trade_value),
            "guarantee_amount": format_amount(self.guarantee_amount),
            "collateral_value": format_amount(self.collateral_value),
            "issuance_fee": format_amount(self.issuance_fee),
            "financing_duration": self.financing_duration,
            "contract_number": self.contract_number,
            "payment_due_date": _iso(self.payment_due_date),
            "created_at": _iso(self.created_at),
            "status": self.status.value,
            "seller_approved_at": _iso(self.seller_approved_at),
            "approved_at": _iso(self.approved_at),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> DraftCertificate:
        return cls(
            request_id=data["request_id"],
            guarantee_no=data["guarantee_no"],
            applicant=BuyerParty.from_json(data["applicant"]),
            beneficiary=SellerParty.from_json(data["beneficiary"]),
            trade_description=data["trade_description"],
            collateral_description=data.get("collateral_description", ""),
            trade_value=Decimal(data["trade_value"]),
            guarantee_amount=Decimal(data["guarantee_amount"]),
            collateral_value=Decimal(data["collateral_value"]),
            issuance_fee=Decimal(data["issuance_fee"]),
            financing_duration=data["financing_duration"],
            contract_number=data.get("contract_number", ""),
            payment_due_date=_parse_date(data.get("payment_due_date")),
            created_at=datetime.fromisoformat(data["created_at"]),
            status=DraftStatus(data["status"]),
            seller_approved_at=_parse_datetime(data.get("seller_approved_at")),
            approved_at=_parse_datetime(data.get("approved_at")),
        )
