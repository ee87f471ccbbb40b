"""
Ledger operation types and the client protocol (``guarantee_kernel.domain.ledger``).

Responsibility
--------------
Describes what the kernel asks of the external ledger and what it gets
back.  The ledger client itself is an opaque collaborator: it signs,
submits and waits for inclusion, and hands the kernel a
``concurrent.futures.Future`` that resolves to a ``LedgerReceipt``.

Architecture position
---------------------
**Kernel domain layer** -- value objects and a ``Protocol``.  ZERO I/O.

Invariants enforced
-------------------
* Every operation carries an idempotency ``key``; the adapter reconciles a
  key at most once.
* Stage-moving operations name both ``expected_stage`` and ``target_stage``
  so reconciliation can compare-and-set without re-deriving intent.
"""

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from guarantee_kernel.domain.stages import Stage


class LedgerOperationKind(str, Enum):
    """Ledger calls the kernel issues, one per client method."""

    CREATE_GUARANTEE = "create_guarantee"
    CAST_VOTE = "cast_vote"
    SELLER_APPROVE = "seller_approve"
    PAY_ISSUANCE_FEE = "pay_issuance_fee"
    ISSUE_CERTIFICATE = "issue_certificate"
    CONFIRM_SHIPMENT = "confirm_shipment"
    CREATE_DELIVERY_AGREEMENT = "create_delivery_agreement"
    BUYER_CONSENT_TO_DELIVERY = "buyer_consent_to_delivery"
    RELEASE_PAYMENT = "release_payment"
    COMPLETE_GUARANTEE = "complete_guarantee"


@dataclass(frozen=True)
class LedgerOperation:
    """One submission to the ledger.

    ``target_stage`` is None for operations that do not advance the stage
    themselves (votes, delivery agreements).
    """

    request_id: str
    kind: LedgerOperationKind
    key: str
    actor: str
    expected_stage: Stage | None = None
    target_stage: Stage | None = None
    amount: Decimal | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def moves_stage(self) -> bool:
        return self.target_stage is not None


class ReceiptStatus(str, Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


@dataclass(frozen=True)
class LedgerReceipt:
    """Final ledger answer for one operation key."""

    operation_key: str
    status: ReceiptStatus
    tx_hash: str | None = None
    reason: str | None = None
    block_number: int | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def confirmed(self) -> bool:
        return self.status is ReceiptStatus.CONFIRMED


class LedgerOutcomeStatus(str, Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class LedgerOutcome:
    """What ``resolve`` observed within the caller's timeout."""

    status: LedgerOutcomeStatus
    operation: LedgerOperation
    receipt: LedgerReceipt | None = None
    # Transport error text when the client failed instead of answering.
    error: str | None = None

    @property
    def reason(self) -> str | None:
        return self.receipt.reason if self.receipt is not None else None


@runtime_checkable
class LedgerClient(Protocol):
    """External ledger, one method per operation kind.

    Each method returns immediately with a Future.  Abandoning the future
    does not cancel the underlying submission.
    """

    def create_guarantee(self, operation: LedgerOperation) -> Future[LedgerReceipt]: ...

    def cast_vote(self, operation: LedgerOperation) -> Future[LedgerReceipt]: ...

    def seller_approve(self, operation: LedgerOperation) -> Future[LedgerReceipt]: ...

    def pay_issuance_fee(self, operation: LedgerOperation) -> Future[LedgerReceipt]: ...

    def issue_certificate(self, operation: LedgerOperation) -> Future[LedgerReceipt]: ...

    def confirm_shipment(self, operation: LedgerOperation) -> Future[LedgerReceipt]: ...

    def create_delivery_agreement(
        self, operation: LedgerOperation
    ) -> Future[LedgerReceipt]: ...

    def buyer_consent_to_delivery(
        self, operation: LedgerOperation
    ) -> Future[LedgerReceipt]: ...

    def release_payment(self, operation: LedgerOperation) -> Future[LedgerReceipt]: ...

    def complete_guarantee(self, operation: LedgerOperation) -> Future[LedgerReceipt]: ...

    def get_receipt(self, operation_key: str) -> LedgerReceipt | None:
        """Out-of-band lookup; None while the ledger has no final answer."""
        ...

    def is_financier(self, address: str) -> bool: ...
