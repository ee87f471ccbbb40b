"""
Hypothesis property tests for the lifecycle kernel.

Properties checked:
- Settlement: remaining + guarantee == trade for every token-precision pair
- Settlement: fees never exceed the guarantee for rates up to 100%
- Gate: authorize is a pure function of (role, action, stage)
- Stages: any sequence of legal transitions is monotonic until termination
- Voting: the tally is independent of vote order
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from hypothesis import HealthCheck, assume, given, settings
from hypothesis import strategies as st

from guarantee_kernel.domain.authorization import Action, Role, authorize
from guarantee_kernel.domain.settlement import (
    issuance_fee,
    parse_amount,
    remaining_balance,
)
from guarantee_kernel.domain.stages import (
    STAGE_TRANSITIONS,
    Stage,
    is_valid_transition,
)
from guarantee_kernel.domain.voting import Vote, VoteDecision, tally
from guarantee_kernel.exceptions import InvalidAmountError, NegativeBalanceError
from tests.fakes import FINANCIERS

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

amounts = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("999999999"),
    places=6,
    allow_nan=False,
    allow_infinity=False,
)
rates = st.decimals(min_value=Decimal("0"), max_value=Decimal("100"), places=4)
stages = st.sampled_from(list(Stage))
roles = st.sampled_from(list(Role))
actions = st.sampled_from(list(Action))


class TestSettlementProperties:
    @given(trade=amounts, guarantee=amounts)
    @settings(max_examples=300)
    def test_balance_plus_guarantee_is_trade(self, trade, guarantee):
        assume(guarantee <= trade)
        assert remaining_balance(trade, guarantee) + guarantee == trade

    @given(trade=amounts, guarantee=amounts)
    @settings(max_examples=200)
    def test_negative_balance_iff_guarantee_exceeds_trade(self, trade, guarantee):
        if guarantee > trade:
            with pytest.raises(NegativeBalanceError):
                remaining_balance(trade, guarantee)
        else:
            assert remaining_balance(trade, guarantee) >= 0

    @given(guarantee=amounts, rate=rates)
    @settings(max_examples=200)
    def test_fee_is_bounded_by_guarantee(self, guarantee, rate):
        fee = issuance_fee(guarantee, rate)
        assert Decimal("0") <= fee <= guarantee

    @given(value=st.floats(allow_nan=True, allow_infinity=True))
    @settings(max_examples=100)
    def test_floats_never_accepted(self, value):
        with pytest.raises(InvalidAmountError):
            parse_amount(value)

    @given(text=st.text(max_size=30))
    @settings(max_examples=200)
    def test_malformed_text_never_crashes(self, text):
        try:
            amount = parse_amount(text)
        except InvalidAmountError:
            return
        assert amount >= 0


class TestGateProperties:
    @given(role=roles, action=actions, stage=st.one_of(st.none(), stages))
    @settings(max_examples=300)
    def test_authorize_is_pure(self, role, action, stage):
        assert authorize(role, action, stage) == authorize(role, action, stage)

    @given(role=roles, action=actions)
    @settings(max_examples=100)
    def test_nothing_allowed_on_terminal_stages(self, role, action):
        for stage in (Stage.TERMINATED, Stage.CLOSED):
            assert not authorize(role, action, stage).allowed

    @given(action=actions, stage=stages)
    @settings(max_examples=200)
    def test_at_most_one_source_stage(self, action, stage):
        allowed_roles = [r for r in Role if authorize(r, action, stage).allowed]
        if allowed_roles:
            assert all(
                not authorize(r, action, other).allowed
                for r in allowed_roles
                for other in Stage
                if other != stage
            )


class TestStageProperties:
    @given(data=st.data())
    @settings(max_examples=200, suppress_health_check=[HealthCheck.too_slow])
    def test_random_walk_is_monotonic(self, data):
        stage = Stage.APPLIED
        path = [stage]
        while STAGE_TRANSITIONS[stage]:
            stage = data.draw(st.sampled_from(sorted(STAGE_TRANSITIONS[stage])))
            path.append(stage)
        forward = [s for s in path if s is not Stage.TERMINATED]
        assert forward == sorted(forward)
        assert len(forward) == len(set(forward))
        assert path[-1] in (Stage.TERMINATED, Stage.CLOSED)

    @given(a=stages, b=stages)
    @settings(max_examples=200)
    def test_no_transition_moves_backwards(self, a, b):
        if is_valid_transition(a, b) and b is not Stage.TERMINATED:
            assert b == a + 1


class TestVotingProperties:
    @given(
        data=st.data(),
        decisions=st.lists(
            st.tuples(
                st.sampled_from(FINANCIERS),
                st.sampled_from(list(VoteDecision)),
                st.integers(min_value=0, max_value=5),
            ),
            max_size=12,
        ),
        quorum=st.integers(min_value=1, max_value=4),
    )
    @settings(max_examples=200)
    def test_tally_is_order_independent(self, data, decisions, quorum):
        votes = [
            Vote("PG-1-AAAAAA", voter, decision, T0 + timedelta(seconds=offset))
            for voter, decision, offset in decisions
        ]
        shuffled = data.draw(st.permutations(votes))
        assert tally(votes, quorum) == tally(shuffled, quorum)

    @given(
        decisions=st.lists(st.sampled_from(list(VoteDecision)), min_size=1, max_size=3),
        quorum=st.integers(min_value=1, max_value=4),
    )
    @settings(max_examples=100)
    def test_decision_needs_quorum_and_majority(self, decisions, quorum):
        votes = [
            Vote("PG-1-AAAAAA", voter, decision, T0)
            for voter, decision in zip(FINANCIERS, decisions)
        ]
        result = tally(votes, quorum)
        if result.decision is not None:
            assert result.distinct_voters >= quorum
            assert result.approve_count != result.reject_count
