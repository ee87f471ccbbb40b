"""
guarantee_kernel.services.ledger_adapter -- Ledger synchronization adapter.

Responsibility:
    Submits operations to the external ledger, waits for them with a
    caller-supplied timeout, and reconciles confirmed outcomes into the
    registry.  This is the only writer of stage-advanced facts.

Architecture position:
    Kernel > Services.  Uses registry_service, voting_service and
    transaction_log.  The ledger client is injected and never imported.

Invariants enforced:
    - Only a CONFIRMED receipt changes the registry.  A revert or a
      timeout leaves it exactly as it was.
    - Reconciliation is idempotent per operation key: a duplicate or late
      confirmation for a stage already reached is a no-op.
    - At most one submission per key is in flight.  A timed-out submission
      stays registered until the ledger answers, either through the
      client's future (late confirmation) or through ``query``, or until
      the caller abandons it to retry.  An abandoned submission's late
      answer is still reconciled, once.
    - A transport failure is an unknown outcome, handled like a timeout:
      the transaction record stays pending and the key stays registered.
    - Binding approval at stage 2 requires the seller's approval and,
      unless disabled, a finalized ``approve`` ballot.  Whichever arrives
      last performs the 2 -> 3 advance.

Failure modes:
    - SubmissionPendingError when the key is already in flight.  Abandoning
      a submission whose resolve is still waiting raises it too.
    - StaleStageError from submit when the registry has moved past the
      operation's expected stage; nothing is sent.
    - StaleStageError propagates from reconcile only when another writer
      moved the record somewhere other than the target stage.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from guarantee_kernel.domain.application import (
    DraftCertificate,
    ProofOfShipment,
    normalize_address,
)
from guarantee_kernel.domain.clock import Clock, SystemClock
from guarantee_kernel.domain.ledger import (
    LedgerClient,
    LedgerOperation,
    LedgerOperationKind,
    LedgerOutcome,
    LedgerOutcomeStatus,
    LedgerReceipt,
    ReceiptStatus,
)
from guarantee_kernel.domain.stages import Stage
from guarantee_kernel.domain.transaction import GasPaymentMethod, TransactionStatus
from guarantee_kernel.domain.voting import Vote, VoteDecision
from guarantee_kernel.exceptions import (
    StaleStageError,
    SubmissionPendingError,
    VotingClosedError,
)
from guarantee_kernel.logging_config import LogContext, get_logger
from guarantee_kernel.services.registry_service import ApplicationRegistry
from guarantee_kernel.services.transaction_log import TransactionLog
from guarantee_kernel.services.voting_service import VotingService
from guarantee_kernel.utils.hashing import hash_payload
from guarantee_kernel.utils.idempotency import parse_operation_key

logger = get_logger("services.ledger_adapter")

DEFAULT_RESOLVE_TIMEOUT = 30.0


@dataclass
class PendingSubmission:
    """A submitted operation whose outcome the kernel has not applied yet."""

    operation: LedgerOperation
    future: Future
    submitted_at: datetime
    transaction_id: str | None = None
    timed_out: bool = False
    claimed: bool = False
    abandoned: bool = False
    outcome: LedgerOutcome | None = field(default=None, repr=False)

    @property
    def key(self) -> str:
        return self.operation.key


class LedgerSyncAdapter:
    """Single writer between ledger receipts and the registry."""

    def __init__(
        self,
        client: LedgerClient,
        registry: ApplicationRegistry,
        voting: VotingService,
        transactions: TransactionLog | None = None,
        clock: Clock | None = None,
        *,
        require_pool_approval: bool = True,
        default_timeout: float = DEFAULT_RESOLVE_TIMEOUT,
        token_symbol: str | None = None,
        network: str | None = None,
        gas_payment_method: GasPaymentMethod = GasPaymentMethod.SPONSORED,
    ) -> None:
        self._client = client
        self._registry = registry
        self._voting = voting
        self._transactions = transactions
        self._clock = clock or SystemClock()
        self._require_pool_approval = require_pool_approval
        self._default_timeout = default_timeout
        self._token_symbol = token_symbol
        self._network = network
        self._gas_payment_method = GasPaymentMethod(gas_payment_method)
        self._lock = threading.Lock()
        self._pending: dict[str, PendingSubmission] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    def is_financier(self, address: str) -> bool:
        return self._client.is_financier(normalize_address(address))

    def is_pending(self, operation_key: str) -> bool:
        with self._lock:
            return operation_key in self._pending

    def pending_for(self, request_id: str) -> list[PendingSubmission]:
        with self._lock:
            return [
                p for p in self._pending.values()
                if p.operation.request_id == request_id
            ]

    def unresolved(self) -> list[PendingSubmission]:
        """Submissions whose resolve timed out and that are still unanswered."""
        with self._lock:
            return [p for p in self._pending.values() if p.timed_out]

    # ------------------------------------------------------------------
    # Submit / resolve
    # ------------------------------------------------------------------

    def submit(self, operation: LedgerOperation) -> PendingSubmission:
        """
        Hand ``operation`` to the ledger client.

        Raises:
            SubmissionPendingError: an operation with the same key is in
                flight or timed out without an answer.
            StaleStageError: the Application is no longer at the
                operation's expected stage.
        """
        with self._lock:
            if operation.key in self._pending:
                raise SubmissionPendingError(operation.request_id, operation.key)
            # Reserve the key before calling out so a concurrent submit of
            # the same operation is refused.
            placeholder: Future = Future()
            pending = PendingSubmission(
                operation=operation,
                future=placeholder,
                submitted_at=self._clock.now(),
            )
            self._pending[operation.key] = pending

        # The previous holder of this key releases it only after its
        # outcome is in the registry, so a stale stage here means the
        # operation already happened.
        try:
            if operation.expected_stage is not None:
                current = self._registry.get(operation.request_id).current_stage
                if current != operation.expected_stage:
                    raise StaleStageError(
                        operation.request_id, int(operation.expected_stage), int(current)
                    )
        except Exception:
            with self._lock:
                self._pending.pop(operation.key, None)
            raise

        if self._transactions is not None:
            record = self._transactions.record_pending(
                operation.actor,
                operation.kind.value,
                to_address=operation.payload.get("to_address"),
                amount=operation.amount,
                token_symbol=self._token_symbol,
                gas_payment_method=self._gas_payment_method,
                network=self._network,
            )
            pending.transaction_id = record.id

        try:
            future = self._dispatch(operation)
        except Exception:
            with self._lock:
                self._pending.pop(operation.key, None)
            self._record_terminal(pending, TransactionStatus.FAILED, None)
            logger.error(
                "ledger_submit_failed",
                extra={"operation_key": operation.key, "kind": operation.kind.value},
                exc_info=True,
            )
            raise

        pending.future = future
        future.add_done_callback(lambda f: self._on_done(pending))
        logger.info(
            "ledger_submitted",
            extra={
                "request_id": operation.request_id,
                "operation_key": operation.key,
                "kind": operation.kind.value,
                "amount": operation.amount,
                "payload_hash": hash_payload(operation.payload),
            },
        )
        return pending

    def resolve(
        self, pending: PendingSubmission, timeout: float | None = None
    ) -> LedgerOutcome:
        """
        Wait up to ``timeout`` seconds for the ledger's answer.

        A TIMED_OUT outcome does not cancel the operation; the submission
        stays registered and is reconciled when the answer arrives.
        """
        limit = self._default_timeout if timeout is None else timeout
        wait([pending.future], timeout=limit)
        if not pending.future.done():
            with self._lock:
                pending.timed_out = True
            # Re-check after flagging: an answer landing in between is
            # applied here, one landing later by _on_done.
            if not pending.future.done():
                logger.warning(
                    "ledger_timed_out",
                    extra={
                        "request_id": pending.operation.request_id,
                        "operation_key": pending.key,
                        "timeout": limit,
                    },
                )
                return LedgerOutcome(LedgerOutcomeStatus.TIMED_OUT, pending.operation)
        receipt = self._receipt_of(pending)
        if receipt is None:
            with self._lock:
                pending.timed_out = True
            error = self._transport_error(pending)
            logger.warning(
                "ledger_outcome_unknown",
                extra={
                    "request_id": pending.operation.request_id,
                    "operation_key": pending.key,
                    "error": error,
                },
            )
            return LedgerOutcome(
                LedgerOutcomeStatus.TIMED_OUT, pending.operation, error=error
            )
        return self._finish(pending, receipt)

    def abandon(self, operation_key: str) -> PendingSubmission | None:
        """
        Stop waiting locally for an unresolved submission so it can be retried.

        The ledger operation itself is not cancelled.  If it answers later,
        the abandoned submission is still reconciled and its transaction
        record resolved.  Returns the abandoned submission, or None when no
        submission is registered under ``operation_key``.

        Raises:
            SubmissionPendingError: the submission has not timed out, or its
                answer is being applied right now.
        """
        with self._lock:
            pending = self._pending.get(operation_key)
            if pending is None:
                return None
            if not pending.timed_out or pending.claimed:
                raise SubmissionPendingError(pending.operation.request_id, operation_key)
            pending.abandoned = True
            del self._pending[operation_key]
        logger.warning(
            "ledger_submission_abandoned",
            extra={
                "request_id": pending.operation.request_id,
                "operation_key": operation_key,
                "submitted_at": pending.submitted_at,
            },
        )
        return pending

    def query(
        self,
        operation_key: str,
        operation: LedgerOperation | None = None,
    ) -> LedgerOutcome | None:
        """
        Ask the ledger out-of-band for the outcome of ``operation_key``.

        ``operation`` describes the operation when this process never
        submitted it (for instance after a restart).  Returns None while
        the ledger has no final answer.

        Raises:
            ValueError: malformed key, or an unknown key without
                ``operation``.
        """
        request_id, _ = parse_operation_key(operation_key)
        with self._lock:
            pending = self._pending.get(operation_key)
        receipt = self._client.get_receipt(operation_key)
        if receipt is None:
            logger.info(
                "ledger_query_unresolved",
                extra={"request_id": request_id, "operation_key": operation_key},
            )
            return None
        if pending is not None:
            return self._finish(pending, receipt)
        if operation is None:
            raise ValueError(
                f"No submission registered for {operation_key}; pass the operation"
            )
        return self._apply(operation, receipt)

    # ------------------------------------------------------------------
    # Outcome handling
    # ------------------------------------------------------------------

    def _dispatch(self, operation: LedgerOperation) -> Future:
        method = getattr(self._client, operation.kind.value)
        return method(operation)

    def _receipt_of(self, pending: PendingSubmission) -> LedgerReceipt | None:
        """
        Receipt from a done future.

        A cancelled future counts as a revert.  A future that failed with
        an exception gives None: the transport broke and the ledger may
        still have executed the operation.
        """
        if pending.future.cancelled():
            return LedgerReceipt(pending.key, ReceiptStatus.REVERTED, reason="cancelled")
        if pending.future.exception() is not None:
            return None
        return pending.future.result()

    @staticmethod
    def _transport_error(pending: PendingSubmission) -> str:
        exc = pending.future.exception()
        return str(exc) or type(exc).__name__

    def _owns(self, pending: PendingSubmission) -> bool:
        # Caller holds self._lock.
        if pending.claimed:
            return False
        return pending.abandoned or self._pending.get(pending.key) is pending

    def _on_done(self, pending: PendingSubmission) -> None:
        with self._lock:
            late = pending.timed_out and self._owns(pending)
        if not late:
            return
        receipt = self._receipt_of(pending)
        if receipt is None:
            logger.warning(
                "ledger_outcome_unknown",
                extra={
                    "operation_key": pending.key,
                    "error": self._transport_error(pending),
                },
            )
            return
        outcome = self._finish(pending, receipt)
        logger.info(
            "ledger_late_outcome_reconciled",
            extra={
                "operation_key": pending.key,
                "outcome": outcome.status.value,
                "abandoned": pending.abandoned,
            },
        )

    def _finish(self, pending: PendingSubmission, receipt: LedgerReceipt) -> LedgerOutcome:
        """Apply ``receipt`` exactly once for ``pending``."""
        with self._lock:
            owner = self._owns(pending)
            if owner:
                pending.claimed = True

        if not owner:
            # Another thread (late callback or query) already applied it.
            return pending.outcome or self._outcome_for(pending.operation, receipt)

        try:
            outcome = self._apply(pending.operation, receipt)
        finally:
            # Release the key only once the registry reflects the outcome.
            with self._lock:
                if self._pending.get(pending.key) is pending:
                    del self._pending[pending.key]
            # The ledger answered even when applying it lost a race.
            self._record_terminal(
                pending,
                TransactionStatus.SUCCESS if receipt.confirmed else TransactionStatus.FAILED,
                receipt.tx_hash,
            )
        pending.outcome = outcome
        return outcome

    def _outcome_for(self, operation: LedgerOperation, receipt: LedgerReceipt) -> LedgerOutcome:
        status = (
            LedgerOutcomeStatus.CONFIRMED if receipt.confirmed else LedgerOutcomeStatus.REVERTED
        )
        return LedgerOutcome(status, operation, receipt)

    def _apply(self, operation: LedgerOperation, receipt: LedgerReceipt) -> LedgerOutcome:
        if receipt.confirmed:
            logger.info(
                "ledger_confirmed",
                extra={"operation_key": operation.key, "tx_hash": receipt.tx_hash},
            )
            self.reconcile(operation, receipt)
        else:
            logger.warning(
                "ledger_reverted",
                extra={"operation_key": operation.key, "reason": receipt.reason},
            )
        return self._outcome_for(operation, receipt)

    def _record_terminal(
        self,
        pending: PendingSubmission,
        status: TransactionStatus,
        tx_hash: str | None,
    ) -> None:
        if self._transactions is None or pending.transaction_id is None:
            return
        self._transactions.resolve(
            pending.operation.actor, pending.transaction_id, status, tx_hash
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, operation: LedgerOperation, receipt: LedgerReceipt) -> None:
        """Write the confirmed effect of ``operation`` into the registry."""
        if not receipt.confirmed:
            return
        with LogContext.bind(
            request_id=operation.request_id, operation_key=operation.key
        ):
            kind = operation.kind
            if kind is LedgerOperationKind.CAST_VOTE:
                self._reconcile_vote(operation)
            elif kind is LedgerOperationKind.SELLER_APPROVE:
                self._reconcile_seller_decision(operation)
            elif kind is LedgerOperationKind.CREATE_DELIVERY_AGREEMENT:
                self._reconcile_delivery_agreement(operation)
            elif kind is LedgerOperationKind.CREATE_GUARANTEE:
                self._advance(operation.request_id, Stage.APPLIED, Stage.DRAFT_SENT)
                application = self._registry.get(operation.request_id)
                if application.current_stage is Stage.DRAFT_SENT:
                    self._registry.create_draft(
                        DraftCertificate.from_application(application, self._clock.now())
                    )
            else:
                self._advance(
                    operation.request_id,
                    operation.expected_stage,
                    operation.target_stage,
                    **self._evidence(operation),
                )

    def _evidence(self, operation: LedgerOperation) -> dict[str, Any]:
        now = self._clock.now()
        payload = operation.payload
        kind = operation.kind
        if kind is LedgerOperationKind.ISSUE_CERTIFICATE:
            return {
                "certificate_number": payload.get("certificate_number"),
                "certificate_issued_at": now,
            }
        if kind is LedgerOperationKind.CONFIRM_SHIPMENT:
            shipment = payload.get("proof_of_shipment")
            return {
                "proof_of_shipment": (
                    ProofOfShipment.from_json(shipment) if shipment else None
                ),
            }
        if kind is LedgerOperationKind.BUYER_CONSENT_TO_DELIVERY:
            return {"delivery_confirmed_date": now}
        if kind is LedgerOperationKind.COMPLETE_GUARANTEE:
            return {"completed_at": now}
        return {}

    def _advance(
        self,
        request_id: str,
        expected_from: Stage,
        target: Stage,
        **changes: Any,
    ) -> bool:
        """Compare-and-set the stage; True when this call moved it."""
        application = self._registry.get(request_id)
        if self._already_at(application.current_stage, target):
            logger.info(
                "reconcile_noop",
                extra={"stage": int(application.current_stage), "target_stage": int(target)},
            )
            return False
        try:
            self._registry.advance(request_id, expected_from, target, **changes)
        except StaleStageError:
            current = self._registry.get(request_id).current_stage
            if self._already_at(current, target):
                return False
            raise
        return True

    @staticmethod
    def _already_at(current: Stage, target: Stage) -> bool:
        if target is Stage.TERMINATED:
            return current is Stage.TERMINATED
        # A terminated application never resumes forward progress.
        return current is Stage.TERMINATED or current >= target

    def _reconcile_vote(self, operation: LedgerOperation) -> None:
        vote = Vote(
            application_id=operation.request_id,
            voter_address=operation.actor,
            decision=VoteDecision(operation.payload["decision"]),
            timestamp=self._clock.now(),
        )
        try:
            ballot = self._voting.cast(vote)
        except VotingClosedError:
            # The ledger accepted a vote the ballot no longer counts.
            return
        if ballot.decision is VoteDecision.APPROVE:
            self._bind_if_ready(operation.request_id)
        elif ballot.decision is VoteDecision.REJECT:
            self._terminate(operation.request_id)

    def _reconcile_seller_decision(self, operation: LedgerOperation) -> None:
        if not operation.payload.get("approve", True):
            self._terminate(operation.request_id)
            return
        application = self._registry.get(operation.request_id)
        if application.current_stage is not Stage.DRAFT_SENT:
            logger.info("reconcile_noop", extra={"stage": int(application.current_stage)})
            return
        self._registry.mark_seller_approved(operation.request_id, self._clock.now())
        self._bind_if_ready(operation.request_id)

    def _reconcile_delivery_agreement(self, operation: LedgerOperation) -> None:
        agreement_id = operation.payload["agreement_id"]
        application = self._registry.get(operation.request_id)
        if application.delivery_agreement_id == agreement_id:
            return
        self._registry.update(
            operation.request_id,
            Stage.GOODS_SHIPPED,
            delivery_agreement_id=agreement_id,
        )

    def _bind_if_ready(self, request_id: str) -> None:
        draft = self._registry.find_draft(request_id)
        if draft is None or draft.seller_approved_at is None:
            return
        if self._require_pool_approval and (
            self._voting.decision(request_id) is not VoteDecision.APPROVE
        ):
            logger.info("binding_awaits_pool_approval", extra={"request_id": request_id})
            return
        if self._advance(request_id, Stage.DRAFT_SENT, Stage.SELLER_APPROVED):
            self._registry.approve_draft(request_id, self._clock.now())

    def _terminate(self, request_id: str) -> None:
        application = self._registry.get(request_id)
        if application.current_stage > Stage.DRAFT_SENT:
            # Binding approval already landed; rejection is no longer legal.
            logger.warning(
                "termination_after_binding_ignored",
                extra={"stage": int(application.current_stage)},
            )
            return
        if self._advance(request_id, Stage.DRAFT_SENT, Stage.TERMINATED):
            self._registry.discard_draft(request_id)
