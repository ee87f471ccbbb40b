"""
guarantee_kernel.services.voting_service -- Financier ballots.

Responsibility:
    Stores one Ballot per application, replaces repeat votes, and closes
    the ballot as soon as the tally yields a decision.

Architecture position:
    Kernel > Services.  May import from domain/ and db/.  Called by the
    ledger adapter when a vote is confirmed, never directly by roles.

Invariants enforced:
    - One vote per (application, voter), latest wins.
    - A finalized ballot accepts no further votes.
    - Only allow-listed financiers may vote (when a membership check is
      configured).

Failure modes:
    - NotFinancierError for a voter outside the allow-list.
    - VotingClosedError after finalization.
"""

from __future__ import annotations

from collections.abc import Callable

from guarantee_kernel.db.kv_store import KeyValueStore
from guarantee_kernel.domain.clock import Clock, SystemClock
from guarantee_kernel.domain.voting import Ballot, BallotResult, Vote, VoteDecision, tally
from guarantee_kernel.exceptions import NotFinancierError, VotingClosedError
from guarantee_kernel.logging_config import get_logger

logger = get_logger("services.voting")


def ballot_key(request_id: str) -> str:
    return f"ballot:{request_id}"


class VotingService:
    """Records financier votes and finalizes ballots."""

    def __init__(
        self,
        store: KeyValueStore,
        quorum: int = 1,
        clock: Clock | None = None,
        membership: Callable[[str], bool] | None = None,
    ) -> None:
        if quorum < 1:
            raise ValueError(f"quorum must be at least 1, got {quorum}")
        self._store = store
        self._quorum = quorum
        self._clock = clock or SystemClock()
        self._membership = membership

    @property
    def quorum(self) -> int:
        return self._quorum

    def get_ballot(self, request_id: str) -> Ballot:
        data = self._store.get(ballot_key(request_id))
        return Ballot.from_json(data) if data is not None else Ballot(request_id)

    def result(self, request_id: str) -> BallotResult:
        return tally(self.get_ballot(request_id).votes, self._quorum)

    def decision(self, request_id: str) -> VoteDecision | None:
        return self.get_ballot(request_id).decision

    def cast(self, vote: Vote) -> Ballot:
        """
        Store ``vote`` and finalize the ballot if it now has a decision.

        Raises:
            NotFinancierError: voter is not allow-listed.
            VotingClosedError: the ballot was already finalized.
        """
        if self._membership is not None and not self._membership(vote.voter_address):
            raise NotFinancierError(vote.voter_address)

        key = ballot_key(vote.application_id)
        while True:
            data, version = self._store.get_versioned(key)
            ballot = (
                Ballot.from_json(data) if data is not None else Ballot(vote.application_id)
            )
            try:
                updated = ballot.with_vote(vote).finalize(self._quorum, self._clock.now())
            except VotingClosedError:
                logger.warning(
                    "vote_rejected_ballot_closed",
                    extra={
                        "request_id": vote.application_id,
                        "voter": vote.voter_address,
                        "decision": vote.decision.value,
                    },
                )
                raise
            if self._store.compare_and_set(key, updated.to_json(), version):
                break

        logger.info(
            "vote_recorded",
            extra={
                "request_id": vote.application_id,
                "voter": vote.voter_address,
                "decision": vote.decision.value,
            },
        )
        if updated.is_finalized:
            result = tally(updated.votes, self._quorum)
            logger.info(
                "ballot_finalized",
                extra={
                    "request_id": vote.application_id,
                    "decision": updated.decision.value,
                    "approve_count": result.approve_count,
                    "reject_count": result.reject_count,
                },
            )
        return updated
