"""
Tests for the financier ballot tally.
"""

from datetime import datetime, timedelta, timezone

import pytest

from guarantee_kernel.domain.voting import Ballot, Vote, VoteDecision, tally
from guarantee_kernel.exceptions import VotingClosedError
from tests.fakes import FINANCIER_A, FINANCIER_B, FINANCIER_C

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _vote(voter, decision, seconds=0, rid="PG-1-AAAAAA"):
    return Vote(rid, voter, decision, T0 + timedelta(seconds=seconds))


class TestVote:
    def test_address_is_normalized(self):
        vote = _vote("  " + FINANCIER_A.upper() + " ", "approve")
        assert vote.voter_address == FINANCIER_A.lower()

    def test_decision_is_coerced(self):
        assert _vote(FINANCIER_A, "reject").decision is VoteDecision.REJECT

    def test_invalid_decision_raises(self):
        with pytest.raises(ValueError):
            _vote(FINANCIER_A, "abstain")

    def test_json_round_trip(self):
        vote = _vote(FINANCIER_B, "approve", 5)
        assert Vote.from_json(vote.to_json()) == vote


class TestTally:
    def test_empty(self):
        result = tally([])
        assert result.decision is None
        assert result.distinct_voters == 0

    def test_single_approve_meets_default_quorum(self):
        assert tally([_vote(FINANCIER_A, "approve")]).decision is VoteDecision.APPROVE

    def test_two_approve_one_reject(self):
        votes = [
            _vote(FINANCIER_A, "approve"),
            _vote(FINANCIER_B, "approve", 1),
            _vote(FINANCIER_C, "reject", 2),
        ]
        result = tally(votes, quorum=2)
        assert result.approve_count == 2
        assert result.reject_count == 1
        assert result.decision is VoteDecision.APPROVE

    def test_below_quorum_has_no_decision(self):
        result = tally([_vote(FINANCIER_A, "approve")], quorum=2)
        assert result.decision is None

    def test_tie_has_no_decision(self):
        votes = [_vote(FINANCIER_A, "approve"), _vote(FINANCIER_B, "reject")]
        assert tally(votes, quorum=2).decision is None

    def test_latest_vote_per_voter_wins(self):
        votes = [_vote(FINANCIER_A, "approve", 0), _vote(FINANCIER_A, "reject", 10)]
        result = tally(votes)
        assert result.distinct_voters == 1
        assert result.decision is VoteDecision.REJECT

    def test_order_independent(self):
        votes = [
            _vote(FINANCIER_A, "approve", 3),
            _vote(FINANCIER_A, "reject", 1),
            _vote(FINANCIER_B, "reject", 2),
            _vote(FINANCIER_C, "approve", 2),
        ]
        assert tally(votes, 2) == tally(list(reversed(votes)), 2)

    def test_same_timestamp_resolves_deterministically(self):
        a = _vote(FINANCIER_A, "approve")
        b = _vote(FINANCIER_A, "reject")
        assert tally([a, b]) == tally([b, a])


class TestBallot:
    def test_with_vote_replaces_prior_vote(self):
        ballot = Ballot("PG-1-AAAAAA").with_vote(_vote(FINANCIER_A, "approve"))
        ballot = ballot.with_vote(_vote(FINANCIER_A, "reject", 1))
        assert len(ballot.votes) == 1
        assert ballot.votes[0].decision is VoteDecision.REJECT

    def test_finalize_without_decision_stays_open(self):
        ballot = Ballot("PG-1-AAAAAA").with_vote(_vote(FINANCIER_A, "approve"))
        assert not ballot.finalize(2, T0).is_finalized

    def test_finalize_closes(self):
        ballot = Ballot("PG-1-AAAAAA").with_vote(_vote(FINANCIER_A, "approve"))
        closed = ballot.finalize(1, T0)
        assert closed.decision is VoteDecision.APPROVE
        assert closed.finalized_at == T0

    def test_closed_ballot_rejects_votes(self):
        closed = Ballot("PG-1-AAAAAA").with_vote(_vote(FINANCIER_A, "reject")).finalize(1, T0)
        with pytest.raises(VotingClosedError) as exc_info:
            closed.with_vote(_vote(FINANCIER_B, "approve"))
        assert exc_info.value.decision == "reject"

    def test_finalize_is_idempotent(self):
        closed = Ballot("PG-1-AAAAAA").with_vote(_vote(FINANCIER_A, "approve")).finalize(1, T0)
        assert closed.finalize(1, T0 + timedelta(hours=1)) is closed

    def test_json_round_trip(self):
        ballot = (
            Ballot("PG-1-AAAAAA")
            .with_vote(_vote(FINANCIER_A, "approve"))
            .with_vote(_vote(FINANCIER_B, "approve", 1))
            .finalize(2, T0)
        )
        assert Ballot.from_json(ballot.to_json()) == ballot
