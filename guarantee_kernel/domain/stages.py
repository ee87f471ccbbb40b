"""
Pool Guarantee stage model (``guarantee_kernel.domain.stages``).

Responsibility
--------------
The canonical lifecycle of a Pool Guarantee Application and the only table
of legal stage transitions.  Every other component asks this module whether
a stage delta is legal instead of comparing status strings.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Forward progress is exactly one stage at a time (``to == from + 1``).
* The rejection transition to ``TERMINATED`` exists only from stages 1-2,
  before the seller's binding approval.
* ``CLOSED`` and ``TERMINATED`` have no outgoing edges.
"""

from __future__ import annotations

from enum import IntEnum

from guarantee_kernel.exceptions import InvalidTransitionError, TerminalStageError


class Stage(IntEnum):
    """Application lifecycle stages.

    ``TERMINATED`` sorts below every live stage; it is reached only by the
    early rejection edge and never by forward progress.
    """

    TERMINATED = 0
    APPLIED = 1
    DRAFT_SENT = 2
    SELLER_APPROVED = 3
    FEE_PAID = 4
    CERTIFICATE_ISSUED = 5
    GOODS_SHIPPED = 6
    DELIVERY_CONFIRMED = 7
    PAYMENT_COMPLETE = 8
    CLOSED = 9


STAGE_LABELS: dict[Stage, str] = {
    Stage.TERMINATED: "Terminated",
    Stage.APPLIED: "Applied",
    Stage.DRAFT_SENT: "Draft Sent",
    Stage.SELLER_APPROVED: "Seller Approved",
    Stage.FEE_PAID: "Fee Paid",
    Stage.CERTIFICATE_ISSUED: "Certificate Issued",
    Stage.GOODS_SHIPPED: "Goods Shipped",
    Stage.DELIVERY_CONFIRMED: "Delivery Confirmed",
    Stage.PAYMENT_COMPLETE: "Payment Complete",
    Stage.CLOSED: "Closed",
}

REJECTABLE_STAGES: frozenset[Stage] = frozenset({
    Stage.APPLIED,
    Stage.DRAFT_SENT,
})

TERMINAL_STAGES: frozenset[Stage] = frozenset({
    Stage.CLOSED,
    Stage.TERMINATED,
})


def _build_transitions() -> dict[Stage, frozenset[Stage]]:
    table: dict[Stage, frozenset[Stage]] = {}
    for stage in Stage:
        if stage in TERMINAL_STAGES:
            table[stage] = frozenset()
            continue
        targets = {Stage(stage + 1)}
        if stage in REJECTABLE_STAGES:
            targets.add(Stage.TERMINATED)
        table[stage] = frozenset(targets)
    return table


STAGE_TRANSITIONS: dict[Stage, frozenset[Stage]] = _build_transitions()


def next_stage(current: Stage | int) -> Stage:
    """Return the stage that follows ``current``.

    Raises:
        TerminalStageError: ``current`` is CLOSED or TERMINATED.
    """
    stage = Stage(current)
    if stage in TERMINAL_STAGES:
        raise TerminalStageError(int(stage))
    return Stage(stage + 1)


def is_valid_transition(from_stage: Stage | int, to_stage: Stage | int) -> bool:
    """True when ``from_stage -> to_stage`` is in the transition table."""
    try:
        source = Stage(from_stage)
        target = Stage(to_stage)
    except ValueError:
        return False
    return target in STAGE_TRANSITIONS[source]


def check_transition(from_stage: Stage | int, to_stage: Stage | int) -> None:
    """Raise ``InvalidTransitionError`` unless the transition is legal."""
    if not is_valid_transition(from_stage, to_stage):
        raise InvalidTransitionError(int(from_stage), int(to_stage))


def stage_label(stage: Stage | int) -> str:
    """Human-readable status label mirroring the stage."""
    return STAGE_LABELS[Stage(stage)]
