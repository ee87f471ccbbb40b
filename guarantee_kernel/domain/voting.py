"""
Financier voting (``guarantee_kernel.domain.voting``).

Pure tally over a set of votes.  Storage, finalization and the financier
allow-list live in ``guarantee_kernel.services.voting_service``.

Invariants enforced
-------------------
* One vote per (application, voter); the latest vote wins.
* ``tally`` is order-independent: any permutation of the same vote set
  yields the same ``BallotResult``.
* A tie, or fewer than ``quorum`` distinct voters, yields no decision.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from guarantee_kernel.domain.application import normalize_address
from guarantee_kernel.exceptions import VotingClosedError


class VoteDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class Vote:
    """One financier's decision on one application."""

    application_id: str
    voter_address: str
    decision: VoteDecision
    timestamp: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "voter_address", normalize_address(self.voter_address))
        object.__setattr__(self, "decision", VoteDecision(self.decision))

    def to_json(self) -> dict[str, Any]:
        return {
            "application_id": self.application_id,
            "voter_address": self.voter_address,
            "decision": self.decision.value,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Vote:
        return cls(
            application_id=data["application_id"],
            voter_address=data["voter_address"],
            decision=VoteDecision(data["decision"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass(frozen=True)
class BallotResult:
    approve_count: int
    reject_count: int
    distinct_voters: int
    decision: VoteDecision | None


def _latest_per_voter(votes: Iterable[Vote]) -> dict[str, Vote]:
    # Ties on timestamp are broken by decision value so the result does not
    # depend on iteration order.
    latest: dict[str, Vote] = {}
    for vote in votes:
        current = latest.get(vote.voter_address)
        if current is None or (vote.timestamp, vote.decision.value) > (
            current.timestamp,
            current.decision.value,
        ):
            latest[vote.voter_address] = vote
    return latest


def tally(votes: Iterable[Vote], quorum: int = 1) -> BallotResult:
    """Count the latest vote per voter and decide by simple majority."""
    latest = _latest_per_voter(votes)
    approve = sum(1 for v in latest.values() if v.decision is VoteDecision.APPROVE)
    reject = len(latest) - approve

    decision: VoteDecision | None = None
    if len(latest) >= max(quorum, 1) and approve != reject:
        decision = VoteDecision.APPROVE if approve > reject else VoteDecision.REJECT

    return BallotResult(
        approve_count=approve,
        reject_count=reject,
        distinct_voters=len(latest),
        decision=decision,
    )


@dataclass(frozen=True)
class Ballot:
    """The stored vote set for one application.

    Once ``decision`` is set the ballot is closed and ``with_vote`` raises
    ``VotingClosedError``.
    """

    application_id: str
    votes: tuple[Vote, ...] = ()
    decision: VoteDecision | None = None
    finalized_at: datetime | None = None

    @property
    def is_finalized(self) -> bool:
        return self.decision is not None

    def with_vote(self, vote: Vote) -> Ballot:
        if self.is_finalized:
            raise VotingClosedError(self.application_id, self.decision.value)
        kept = tuple(v for v in self.votes if v.voter_address != vote.voter_address)
        return replace(self, votes=kept + (vote,))

    def finalize(self, quorum: int, at: datetime) -> Ballot:
        """Close the ballot if the tally now yields a decision."""
        if self.is_finalized:
            return self
        result = tally(self.votes, quorum)
        if result.decision is None:
            return self
        return replace(self, decision=result.decision, finalized_at=at)

    def to_json(self) -> dict[str, Any]:
        return {
            "application_id": self.application_id,
            "votes": [v.to_json() for v in self.votes],
            "decision": self.decision.value if self.decision else None,
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Ballot:
        decision = data.get("decision")
        finalized_at = data.get("finalized_at")
        return cls(
            application_id=data["application_id"],
            votes=tuple(Vote.from_json(v) for v in data.get("votes", ())),
            decision=VoteDecision(decision) if decision else None,
            finalized_at=datetime.fromisoformat(finalized_at) if finalized_at else None,
        )


__all__ = [
    "Ballot",
    "BallotResult",
    "Vote",
    "VoteDecision",
    "tally",
]
