"""
Guarantee Orchestrator - Routes role actions through the lifecycle.

The Orchestrator ties together:
- Gate: table-driven role/stage authorization (pure)
- Settlement: fee, collateral and balance arithmetic (pure)
- Ledger adapter: submit, resolve and reconcile
- Registry: the current stage of every Application

A denied or failed action leaves the registry exactly as it was.  The
orchestrator itself never writes a stage reached through the ledger; it
reports whatever the adapter reconciled.
"""

import time
from collections.abc import Mapping
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import uuid4

from guarantee_kernel.domain.application import (
    Application,
    BuyerParty,
    ProofOfShipment,
    SellerParty,
    new_request_id,
    normalize_address,
)
from guarantee_kernel.domain.authorization import Action, Role, authorize, target_stage
from guarantee_kernel.domain.clock import Clock, SystemClock
from guarantee_kernel.domain.ledger import (
    LedgerOperation,
    LedgerOperationKind,
    LedgerOutcomeStatus,
)
from guarantee_kernel.domain.settlement import (
    DEFAULT_COLLATERAL_RATE_PCT,
    DEFAULT_FEE_RATE_PCT,
    DEFAULT_TOKEN_DECIMALS,
    SettlementQuote,
    parse_amount,
    quote,
)
from guarantee_kernel.domain.stages import TERMINAL_STAGES, Stage, next_stage
from guarantee_kernel.domain.voting import VoteDecision
from guarantee_kernel.exceptions import (
    InvalidVoteError,
    LedgerRevertedError,
    LedgerTimedOutError,
    NotFinancierError,
    StaleStageError,
    SubmissionPendingError,
    VotingClosedError,
    WrongRoleError,
)
from guarantee_kernel.logging_config import LogContext, get_logger
from guarantee_kernel.services.ledger_adapter import LedgerSyncAdapter
from guarantee_kernel.services.registry_service import ApplicationRegistry
from guarantee_kernel.services.voting_service import VotingService
from guarantee_kernel.utils.idempotency import (
    agreement_operation_key,
    stage_operation_key,
    vote_operation_key,
)

logger = get_logger("services.orchestrator")

DEFAULT_MAX_STALE_RETRIES = 3

# Ledger operation kind for each stage-moving action.
_ACTION_KINDS: dict[Action, LedgerOperationKind] = {
    Action.SEND_DRAFT: LedgerOperationKind.CREATE_GUARANTEE,
    Action.APPROVE_DRAFT: LedgerOperationKind.SELLER_APPROVE,
    Action.REJECT_DRAFT: LedgerOperationKind.SELLER_APPROVE,
    Action.PAY_ISSUANCE_FEE: LedgerOperationKind.PAY_ISSUANCE_FEE,
    Action.ISSUE_CERTIFICATE: LedgerOperationKind.ISSUE_CERTIFICATE,
    Action.CONFIRM_SHIPMENT: LedgerOperationKind.CONFIRM_SHIPMENT,
    Action.COUNTERSIGN_SHIPMENT: LedgerOperationKind.CONFIRM_SHIPMENT,
    Action.CONFIRM_DELIVERY: LedgerOperationKind.BUYER_CONSENT_TO_DELIVERY,
    Action.SETTLE_BALANCE: LedgerOperationKind.RELEASE_PAYMENT,
    Action.CLOSE_GUARANTEE: LedgerOperationKind.COMPLETE_GUARANTEE,
}

# Operation that would have moved an Application to each stage; used to
# look the ledger up after a timeout when no submission is registered.
_KIND_FOR_TARGET: dict[Stage, LedgerOperationKind] = {
    Stage.DRAFT_SENT: LedgerOperationKind.CREATE_GUARANTEE,
    Stage.SELLER_APPROVED: LedgerOperationKind.SELLER_APPROVE,
    Stage.FEE_PAID: LedgerOperationKind.PAY_ISSUANCE_FEE,
    Stage.CERTIFICATE_ISSUED: LedgerOperationKind.ISSUE_CERTIFICATE,
    Stage.GOODS_SHIPPED: LedgerOperationKind.CONFIRM_SHIPMENT,
    Stage.DELIVERY_CONFIRMED: LedgerOperationKind.BUYER_CONSENT_TO_DELIVERY,
    Stage.PAYMENT_COMPLETE: LedgerOperationKind.RELEASE_PAYMENT,
    Stage.CLOSED: LedgerOperationKind.COMPLETE_GUARANTEE,
}


class GuaranteeOrchestrator:
    """
    Entry point for every role action on a Pool Guarantee.

    ``perform`` authorizes, derives amounts, submits to the ledger and
    returns the stage the registry holds once the ledger has answered.
    Ledger failures are surfaced as typed errors and retried only when the
    caller asks (``retry=True``); lost compare-and-set races on local
    writes are retried up to ``max_stale_retries`` times.
    """

    def __init__(
        self,
        registry: ApplicationRegistry,
        adapter: LedgerSyncAdapter,
        voting: VotingService,
        clock: Clock | None = None,
        *,
        fee_rate_pct: Decimal = DEFAULT_FEE_RATE_PCT,
        collateral_rate_pct: Decimal = DEFAULT_COLLATERAL_RATE_PCT,
        token_decimals: int = DEFAULT_TOKEN_DECIMALS,
        max_stale_retries: int = DEFAULT_MAX_STALE_RETRIES,
        resolve_timeout: float | None = None,
    ):
        self._registry = registry
        self._adapter = adapter
        self._voting = voting
        self._clock = clock or SystemClock()
        self._fee_rate_pct = fee_rate_pct
        self._collateral_rate_pct = collateral_rate_pct
        self._decimals = token_decimals
        self._max_stale_retries = max_stale_retries
        self._resolve_timeout = resolve_timeout

    @property
    def registry(self) -> ApplicationRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def perform(
        self,
        role: Role | str,
        action: Action | str,
        request_id: str | None,
        payload: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
        retry: bool = False,
    ) -> Stage:
        """
        Perform ``action`` as ``role`` on the Application ``request_id``.

        ``retry=True`` is the explicit retry after ``LedgerTimedOutError``:
        an unresolved submission of the same operation is queried first,
        and abandoned and resubmitted when the ledger still has no answer.

        Returns:
            The Application's stage after the action.

        Raises:
            AuthorizationError: gate denial or party mismatch.  Nothing
                was submitted.
            SettlementError: amounts are invalid.
            SubmissionPendingError: the same operation is still in flight,
                or unresolved and ``retry`` is False.
            LedgerRevertedError / LedgerTimedOutError: ledger outcome.
            StaleStageError: a local write kept losing its race.
        """
        action = Action(action)
        role_name = role.value if isinstance(role, Role) else str(role)
        payload = dict(payload or {})
        actor = payload.get("actor")

        with LogContext.bind(
            request_id=request_id,
            role=role_name,
            action=action.value,
            actor=normalize_address(actor) if actor else None,
            trace_id=uuid4().hex,
        ):
            logger.info("action_started")
            t0 = time.monotonic()
            attempt = 0
            while True:
                try:
                    stage = self._perform_once(
                        role, action, request_id, payload, timeout, retry
                    )
                    break
                except StaleStageError as exc:
                    if attempt >= self._max_stale_retries:
                        logger.error(
                            "action_failed",
                            extra={"attempts": attempt + 1},
                            exc_info=True,
                        )
                        raise
                    attempt += 1
                    logger.warning(
                        "stale_stage_retry",
                        extra={"attempt": attempt, "actual_stage": exc.actual},
                    )
                except Exception:
                    logger.warning("action_failed", exc_info=True)
                    raise

            logger.info(
                "action_completed",
                extra={
                    "stage": int(stage),
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )
            return stage

    def submit_application(
        self,
        payload: Mapping[str, Any],
        request_id: str | None = None,
    ) -> Application:
        """
        Create a stage-1 Application from the buyer's request.

        ``payload`` keys: ``buyer`` (BuyerParty or dict), ``seller``
        (SellerParty, dict or wallet address), ``trade_description``,
        ``trade_value``, ``guarantee_amount``; optional
        ``collateral_description``, ``collateral_value``,
        ``financing_duration``, ``contract_number``, ``payment_due_date``.

        Raises:
            AlreadyTransitionedError: ``request_id`` is already registered.
            NegativeBalanceError: guarantee amount exceeds trade value.
            InvalidAmountError: malformed amounts.
        """
        now = self._clock.now()
        request_id = request_id or new_request_id(now)
        with LogContext.bind(request_id=request_id, role=Role.BUYER.value):
            existing = self._registry.find(request_id)
            authorize(
                Role.BUYER,
                Action.SUBMIT_APPLICATION,
                existing.current_stage if existing else None,
            ).raise_for_denial()

            buyer = _buyer_from(payload["buyer"])
            seller = _seller_from(payload["seller"])
            actor = payload.get("actor")
            if actor and normalize_address(actor) != normalize_address(buyer.wallet_address):
                raise WrongRoleError(
                    Role.BUYER.value,
                    Action.SUBMIT_APPLICATION.value,
                    "actor is not the applying buyer",
                )

            amounts = quote(
                payload["trade_value"],
                payload["guarantee_amount"],
                self._fee_rate_pct,
                self._collateral_rate_pct,
                self._decimals,
            )
            collateral = payload.get("collateral_value")
            due = payload.get("payment_due_date")

            terms: dict[str, Any] = {
                "collateral_description": payload.get("collateral_description", ""),
                "contract_number": payload.get("contract_number", ""),
                "payment_due_date": date.fromisoformat(due) if isinstance(due, str) else due,
            }
            if payload.get("financing_duration") is not None:
                terms["financing_duration"] = int(payload["financing_duration"])

            application = Application.create(
                request_id=request_id,
                buyer=buyer,
                seller=seller,
                trade_description=payload["trade_description"],
                trade_value=amounts.trade_value,
                guarantee_amount=amounts.guarantee_amount,
                issuance_fee=amounts.issuance_fee,
                collateral_value=(
                    parse_amount(collateral, self._decimals)
                    if collateral is not None
                    else amounts.collateral
                ),
                created_at=now,
                **terms,
            )
            self._registry.create(application)
            logger.info(
                "application_submitted",
                extra={
                    "guarantee_amount": application.guarantee_amount,
                    "issuance_fee": application.issuance_fee,
                },
            )
            return application

    def quote(self, request_id: str) -> SettlementQuote:
        """Settlement amounts for an existing Application at the configured rates."""
        application = self._registry.get(request_id)
        return quote(
            application.trade_value,
            application.guarantee_amount,
            self._fee_rate_pct,
            self._collateral_rate_pct,
            self._decimals,
        )

    def reconcile(self, request_id: str) -> Stage:
        """
        Ask the ledger for outcomes this process is still waiting on.

        Queries every registered submission for ``request_id``; when none
        is registered, looks up the operation that would move the
        Application to its next stage.  Returns the registry's stage.
        """
        with LogContext.bind(request_id=request_id, action="reconcile"):
            pending = self._adapter.pending_for(request_id)
            if pending:
                for submission in pending:
                    self._adapter.query(submission.key)
            else:
                for operation in self._candidate_operations(self._registry.get(request_id)):
                    self._adapter.query(operation.key, operation)
            stage = self._registry.get(request_id).current_stage
            logger.info("reconcile_completed", extra={"stage": int(stage)})
            return stage

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _perform_once(
        self,
        role: Role | str,
        action: Action,
        request_id: str | None,
        payload: dict[str, Any],
        timeout: float | None,
        retry: bool,
    ) -> Stage:
        if action is Action.SUBMIT_APPLICATION:
            _check_submitting_role(role)
            return self.submit_application(payload, request_id).current_stage

        application = self._registry.get(request_id)
        decision = authorize(role, action, application.current_stage)
        if not decision.allowed:
            logger.warning(
                "action_denied",
                extra={
                    "reason": decision.reason.value,
                    "stage": int(application.current_stage),
                },
            )
            decision.raise_for_denial()

        role = Role(role)
        self._check_party(role, action, application, payload)

        if action is Action.WITHDRAW_APPLICATION:
            in_flight = self._adapter.pending_for(application.request_id)
            if in_flight:
                raise SubmissionPendingError(application.request_id, in_flight[0].key)
            updated = self._registry.advance(
                application.request_id, Stage.APPLIED, Stage.TERMINATED
            )
            logger.info("application_withdrawn")
            return updated.current_stage

        operation = self._build_operation(role, action, application, payload)
        return self._submit(operation, timeout, retry)

    def _check_party(
        self,
        role: Role,
        action: Action,
        application: Application,
        payload: dict[str, Any],
    ) -> None:
        actor = payload.get("actor")
        if not actor:
            return
        buyer, seller = application.parties()
        expected = {Role.BUYER: buyer, Role.SELLER: seller}.get(role)
        if expected is not None and normalize_address(actor) != expected:
            raise WrongRoleError(
                role.value,
                action.value,
                f"actor is not the application's {role.value}",
            )

    def _actor(self, role: Role, application: Application, payload: dict[str, Any]) -> str:
        if payload.get("actor"):
            return normalize_address(payload["actor"])
        buyer, seller = application.parties()
        return {Role.BUYER: buyer, Role.SELLER: seller}.get(role, role.value)

    def _build_operation(
        self,
        role: Role,
        action: Action,
        application: Application,
        payload: dict[str, Any],
    ) -> LedgerOperation:
        request_id = application.request_id
        actor = self._actor(role, application, payload)
        stage = application.current_stage

        if action is Action.CAST_VOTE:
            return self._vote_operation(application, actor, payload)

        if action is Action.CREATE_DELIVERY_AGREEMENT:
            agreement_id = payload.get("agreement_id") or uuid4().hex
            return LedgerOperation(
                request_id=request_id,
                kind=LedgerOperationKind.CREATE_DELIVERY_AGREEMENT,
                key=agreement_operation_key(request_id, agreement_id),
                actor=actor,
                expected_stage=stage,
                payload={
                    "agreement_id": agreement_id,
                    "delivery_terms": payload.get("delivery_terms", ""),
                },
            )

        target = target_stage(action)
        amount: Decimal | None = None
        details: dict[str, Any] = {}

        if action is Action.SEND_DRAFT:
            amount = application.guarantee_amount
            details = {
                "to_address": application.seller.wallet_address,
                "trade_value": application.trade_value,
                "guarantee_amount": application.guarantee_amount,
                "collateral_value": application.collateral_value,
                "financing_duration": application.financing_duration,
            }
        elif action in (Action.APPROVE_DRAFT, Action.REJECT_DRAFT):
            details = {"approve": action is Action.APPROVE_DRAFT}
        elif action is Action.PAY_ISSUANCE_FEE:
            amounts = self.quote(request_id)
            amount = amounts.amount_due_at_fee_payment
            details = {
                "issuance_fee": amounts.issuance_fee,
                "collateral": amounts.collateral,
            }
        elif action is Action.ISSUE_CERTIFICATE:
            details = {
                "certificate_number": payload.get("certificate_number")
                or f"PGC-{request_id}",
            }
        elif action in (Action.CONFIRM_SHIPMENT, Action.COUNTERSIGN_SHIPMENT):
            shipment = payload.get("proof_of_shipment")
            if isinstance(shipment, ProofOfShipment):
                shipment = shipment.to_json()
            details = {"proof_of_shipment": shipment, "confirmed_by": role.value}
        elif action is Action.SETTLE_BALANCE:
            amount = self.quote(request_id).remaining_balance
            details = {"to_address": application.seller.wallet_address}

        return LedgerOperation(
            request_id=request_id,
            kind=_ACTION_KINDS[action],
            key=stage_operation_key(request_id, target),
            actor=actor,
            expected_stage=stage,
            target_stage=target,
            amount=amount,
            payload=details,
        )

    def _vote_operation(
        self,
        application: Application,
        voter: str,
        payload: dict[str, Any],
    ) -> LedgerOperation:
        if not payload.get("actor"):
            raise WrongRoleError(
                Role.FINANCIER.value, Action.CAST_VOTE.value, "voter address is required"
            )
        if not self._adapter.is_financier(voter):
            raise NotFinancierError(voter)
        try:
            decision = VoteDecision(payload.get("decision"))
        except ValueError:
            raise InvalidVoteError(
                application.request_id, payload.get("decision")
            ) from None
        ballot = self._voting.get_ballot(application.request_id)
        if ballot.is_finalized:
            raise VotingClosedError(application.request_id, ballot.decision.value)
        return LedgerOperation(
            request_id=application.request_id,
            kind=LedgerOperationKind.CAST_VOTE,
            key=vote_operation_key(application.request_id, voter, decision.value),
            actor=voter,
            expected_stage=application.current_stage,
            payload={"decision": decision.value},
        )

    def _submit(
        self, operation: LedgerOperation, timeout: float | None, retry: bool
    ) -> Stage:
        if self._adapter.is_pending(operation.key):
            if not retry:
                raise SubmissionPendingError(operation.request_id, operation.key)
            answered = self._adapter.query(operation.key)
            if answered is None:
                self._adapter.abandon(operation.key)
                logger.info("unresolved_submission_retried")
            elif answered.status is LedgerOutcomeStatus.CONFIRMED:
                return self._registry.get(operation.request_id).current_stage

        limit = timeout if timeout is not None else self._resolve_timeout
        if limit is None:
            limit = self._adapter.default_timeout

        with LogContext.bind(operation_key=operation.key):
            pending = self._adapter.submit(operation)
            outcome = self._adapter.resolve(pending, limit)

        if outcome.status is LedgerOutcomeStatus.REVERTED:
            raise LedgerRevertedError(
                operation.request_id, operation.key, outcome.reason or "reverted"
            )
        if outcome.status is LedgerOutcomeStatus.TIMED_OUT:
            raise LedgerTimedOutError(
                operation.request_id, operation.key, limit, cause=outcome.error
            )
        return self._registry.get(operation.request_id).current_stage

    def _candidate_operations(self, application: Application) -> list[LedgerOperation]:
        stage = application.current_stage
        if stage in TERMINAL_STAGES:
            return []
        target = next_stage(stage)
        request_id = application.request_id
        buyer, seller = application.parties()
        kind = _KIND_FOR_TARGET[target]
        candidates = [
            LedgerOperation(
                request_id=request_id,
                kind=kind,
                key=stage_operation_key(request_id, target),
                actor=seller if kind is LedgerOperationKind.SELLER_APPROVE else buyer,
                expected_stage=stage,
                target_stage=target,
                payload={"approve": True} if target is Stage.SELLER_APPROVED else {},
            )
        ]
        if stage is Stage.DRAFT_SENT:
            candidates.append(
                LedgerOperation(
                    request_id=request_id,
                    kind=LedgerOperationKind.SELLER_APPROVE,
                    key=stage_operation_key(request_id, Stage.TERMINATED),
                    actor=seller,
                    expected_stage=stage,
                    target_stage=Stage.TERMINATED,
                    payload={"approve": False},
                )
            )
        return candidates


def _check_submitting_role(role: Role | str) -> None:
    authorize(role, Action.SUBMIT_APPLICATION, None).raise_for_denial()


def _buyer_from(value: BuyerParty | Mapping[str, Any]) -> BuyerParty:
    if isinstance(value, BuyerParty):
        return value
    return BuyerParty.from_json(dict(value))


def _seller_from(value: SellerParty | Mapping[str, Any] | str) -> SellerParty:
    if isinstance(value, SellerParty):
        return value
    if isinstance(value, str):
        return SellerParty(wallet_address=value)
    return SellerParty.from_json(dict(value))
