"""
Role authorization gate (``guarantee_kernel.domain.authorization``).

Responsibility
--------------
Answers one question: may ``role`` perform ``action`` on an Application at
``stage``?  The answer comes from the declarative ``ACTION_RULES`` table,
never from the ledger or the registry.

Architecture position
---------------------
**Kernel domain layer** -- pure function over frozen data.  Depends only on
the stage model.

Invariants enforced
-------------------
* ``authorize`` is pure: identical (role, action, stage) input always yields
  an identical ``Authorization``.
* Every action maps to exactly one source stage; a denial names why
  (``WRONG_ROLE``, ``WRONG_STAGE``, ``ALREADY_TRANSITIONED``).
* Seller confirmation and logistics countersignature are alternative actors
  for the same 5 -> 6 transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from guarantee_kernel.domain.stages import Stage
from guarantee_kernel.exceptions import (
    AlreadyTransitionedError,
    WrongRoleError,
    WrongStageError,
)


class Role(str, Enum):
    """Parties that act on a Pool Guarantee."""

    BUYER = "buyer"
    SELLER = "seller"
    FINANCIER = "financier"
    LOGISTICS = "logistics"


class Action(str, Enum):
    """Role-initiated requests routed through the orchestrator."""

    SUBMIT_APPLICATION = "submit_application"
    SEND_DRAFT = "send_draft"
    WITHDRAW_APPLICATION = "withdraw_application"
    CAST_VOTE = "cast_vote"
    APPROVE_DRAFT = "approve_draft"
    REJECT_DRAFT = "reject_draft"
    PAY_ISSUANCE_FEE = "pay_issuance_fee"
    ISSUE_CERTIFICATE = "issue_certificate"
    CONFIRM_SHIPMENT = "confirm_shipment"
    COUNTERSIGN_SHIPMENT = "countersign_shipment"
    CREATE_DELIVERY_AGREEMENT = "create_delivery_agreement"
    CONFIRM_DELIVERY = "confirm_delivery"
    SETTLE_BALANCE = "settle_balance"
    CLOSE_GUARANTEE = "close_guarantee"


class DenyReason(str, Enum):
    """Why the gate refused an action."""

    WRONG_ROLE = "wrong_role"
    WRONG_STAGE = "wrong_stage"
    ALREADY_TRANSITIONED = "already_transitioned"


@dataclass(frozen=True)
class ActionRule:
    """One row of the authorization table.

    ``from_stage`` is None for the action that creates an Application.
    ``to_stage`` is None for actions that do not move the stage pointer
    themselves (votes, delivery agreements).
    """

    action: Action
    roles: frozenset[Role]
    from_stage: Stage | None
    to_stage: Stage | None


ACTION_RULES: dict[Action, ActionRule] = {
    rule.action: rule
    for rule in (
        ActionRule(Action.SUBMIT_APPLICATION, frozenset({Role.BUYER}), None, Stage.APPLIED),
        ActionRule(Action.SEND_DRAFT, frozenset({Role.BUYER}), Stage.APPLIED, Stage.DRAFT_SENT),
        ActionRule(Action.WITHDRAW_APPLICATION, frozenset({Role.BUYER}), Stage.APPLIED, Stage.TERMINATED),
        ActionRule(Action.CAST_VOTE, frozenset({Role.FINANCIER}), Stage.DRAFT_SENT, None),
        ActionRule(Action.APPROVE_DRAFT, frozenset({Role.SELLER}), Stage.DRAFT_SENT, Stage.SELLER_APPROVED),
        ActionRule(Action.REJECT_DRAFT, frozenset({Role.SELLER}), Stage.DRAFT_SENT, Stage.TERMINATED),
        ActionRule(Action.PAY_ISSUANCE_FEE, frozenset({Role.BUYER}), Stage.SELLER_APPROVED, Stage.FEE_PAID),
        ActionRule(Action.ISSUE_CERTIFICATE, frozenset({Role.FINANCIER}), Stage.FEE_PAID, Stage.CERTIFICATE_ISSUED),
        ActionRule(Action.CONFIRM_SHIPMENT, frozenset({Role.SELLER}), Stage.CERTIFICATE_ISSUED, Stage.GOODS_SHIPPED),
        ActionRule(Action.COUNTERSIGN_SHIPMENT, frozenset({Role.LOGISTICS}), Stage.CERTIFICATE_ISSUED, Stage.GOODS_SHIPPED),
        ActionRule(Action.CREATE_DELIVERY_AGREEMENT, frozenset({Role.LOGISTICS}), Stage.GOODS_SHIPPED, None),
        ActionRule(Action.CONFIRM_DELIVERY, frozenset({Role.BUYER}), Stage.GOODS_SHIPPED, Stage.DELIVERY_CONFIRMED),
        ActionRule(Action.SETTLE_BALANCE, frozenset({Role.BUYER}), Stage.DELIVERY_CONFIRMED, Stage.PAYMENT_COMPLETE),
        ActionRule(Action.CLOSE_GUARANTEE, frozenset({Role.FINANCIER}), Stage.PAYMENT_COMPLETE, Stage.CLOSED),
    )
}


@dataclass(frozen=True)
class Authorization:
    """Result of ``authorize``: allowed, or denied with a typed reason."""

    role: str
    action: Action
    stage: Stage | None
    allowed: bool
    reason: DenyReason | None = None
    required_stage: Stage | None = None

    def raise_for_denial(self) -> None:
        """Raise the typed error matching the denial; no-op when allowed."""
        if self.allowed:
            return
        stage = int(self.stage) if self.stage is not None else None
        if self.reason is DenyReason.WRONG_ROLE:
            raise WrongRoleError(self.role, self.action.value)
        if self.reason is DenyReason.ALREADY_TRANSITIONED:
            raise AlreadyTransitionedError(self.action.value, stage)
        required = int(self.required_stage) if self.required_stage is not None else None
        raise WrongStageError(self.action.value, stage, required)


def authorize(
    role: Role | str,
    action: Action | str,
    stage: Stage | int | None,
) -> Authorization:
    """Decide whether ``role`` may perform ``action`` at ``stage``.

    ``stage`` is None when no Application exists yet.  Unknown roles are
    denied with ``WRONG_ROLE``; unknown actions raise ``ValueError``.
    """
    action = Action(action)
    rule = ACTION_RULES[action]
    current = Stage(stage) if stage is not None else None
    role_name = role.value if isinstance(role, Role) else str(role)

    def deny(reason: DenyReason) -> Authorization:
        return Authorization(
            role=role_name,
            action=action,
            stage=current,
            allowed=False,
            reason=reason,
            required_stage=rule.from_stage,
        )

    try:
        resolved_role = Role(role)
    except ValueError:
        return deny(DenyReason.WRONG_ROLE)
    if resolved_role not in rule.roles:
        return deny(DenyReason.WRONG_ROLE)

    if rule.from_stage is None:
        if current is not None:
            return deny(DenyReason.ALREADY_TRANSITIONED)
    elif current is None or current is Stage.TERMINATED or current < rule.from_stage:
        return deny(DenyReason.WRONG_STAGE)
    elif current > rule.from_stage:
        return deny(DenyReason.ALREADY_TRANSITIONED)

    return Authorization(
        role=role_name,
        action=action,
        stage=current,
        allowed=True,
        required_stage=rule.from_stage,
    )


def target_stage(action: Action | str) -> Stage | None:
    """The stage an allowed action requests, or None for stage-neutral actions."""
    return ACTION_RULES[Action(action)].to_stage
