"""
Tests for the stage model.

Verifies the transition table: one step forward at a time, rejection only
before the seller's binding approval, and no edges out of terminal stages.
"""

import pytest

from guarantee_kernel.domain.stages import (
    STAGE_TRANSITIONS,
    TERMINAL_STAGES,
    Stage,
    check_transition,
    is_valid_transition,
    next_stage,
    stage_label,
)
from guarantee_kernel.exceptions import InvalidTransitionError, TerminalStageError


class TestNextStage:
    """next_stage walks the lifecycle one step at a time."""

    @pytest.mark.parametrize("stage", [s for s in Stage if s not in TERMINAL_STAGES])
    def test_next_is_one_more(self, stage):
        assert next_stage(stage) == stage + 1

    def test_accepts_plain_int(self):
        assert next_stage(4) is Stage.CERTIFICATE_ISSUED

    @pytest.mark.parametrize("stage", [Stage.CLOSED, Stage.TERMINATED])
    def test_terminal_stages_raise(self, stage):
        with pytest.raises(TerminalStageError) as exc_info:
            next_stage(stage)
        assert exc_info.value.stage == int(stage)
        assert exc_info.value.code == "TERMINAL_STAGE"


class TestTransitionTable:
    """is_valid_transition / check_transition."""

    def test_forward_steps_are_valid(self):
        for stage in range(1, 9):
            assert is_valid_transition(stage, stage + 1)

    def test_skipping_a_stage_is_invalid(self):
        assert not is_valid_transition(Stage.SELLER_APPROVED, Stage.CERTIFICATE_ISSUED)

    def test_backwards_is_invalid(self):
        assert not is_valid_transition(Stage.FEE_PAID, Stage.SELLER_APPROVED)

    def test_same_stage_is_invalid(self):
        assert not is_valid_transition(Stage.DRAFT_SENT, Stage.DRAFT_SENT)

    @pytest.mark.parametrize("stage", [Stage.APPLIED, Stage.DRAFT_SENT])
    def test_rejection_allowed_before_binding(self, stage):
        assert is_valid_transition(stage, Stage.TERMINATED)

    @pytest.mark.parametrize(
        "stage", [s for s in Stage if s >= Stage.SELLER_APPROVED]
    )
    def test_rejection_not_allowed_after_binding(self, stage):
        assert not is_valid_transition(stage, Stage.TERMINATED)

    def test_terminal_stages_have_no_edges(self):
        for stage in TERMINAL_STAGES:
            assert STAGE_TRANSITIONS[stage] == frozenset()

    def test_unknown_stage_values_are_invalid(self):
        assert not is_valid_transition(42, 43)

    def test_check_transition_raises_with_context(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            check_transition(Stage.APPLIED, Stage.FEE_PAID)
        assert exc_info.value.from_stage == 1
        assert exc_info.value.to_stage == 4

    def test_check_transition_passes_silently(self):
        check_transition(Stage.GOODS_SHIPPED, Stage.DELIVERY_CONFIRMED)


class TestStageLabels:
    def test_every_stage_has_a_label(self):
        for stage in Stage:
            assert stage_label(stage)

    def test_labels(self):
        assert stage_label(Stage.DRAFT_SENT) == "Draft Sent"
        assert stage_label(0) == "Terminated"
