"""
Pure domain layer.

Stage model, authorization gate, settlement arithmetic, voting tally and
the value objects exchanged with the ledger.  Nothing here touches the
key-value store, the database or the ledger client.

All domain objects are immutable and deterministic.
"""

from guarantee_kernel.domain.application import (
    Application,
    BuyerParty,
    DraftCertificate,
    DraftStatus,
    ProofOfShipment,
    SellerParty,
    ShipmentDocument,
    new_request_id,
    normalize_address,
)
from guarantee_kernel.domain.authorization import (
    ACTION_RULES,
    Action,
    ActionRule,
    Authorization,
    DenyReason,
    Role,
    authorize,
    target_stage,
)
from guarantee_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from guarantee_kernel.domain.ledger import (
    LedgerClient,
    LedgerOperation,
    LedgerOperationKind,
    LedgerOutcome,
    LedgerOutcomeStatus,
    LedgerReceipt,
    ReceiptStatus,
)
from guarantee_kernel.domain.settlement import (
    SettlementQuote,
    collateral_split,
    format_amount,
    issuance_fee,
    parse_amount,
    quote,
    remaining_balance,
)
from guarantee_kernel.domain.stages import (
    STAGE_TRANSITIONS,
    Stage,
    check_transition,
    is_valid_transition,
    next_stage,
    stage_label,
)
from guarantee_kernel.domain.transaction import (
    GasPaymentMethod,
    TransactionRecord,
    TransactionStatus,
)
from guarantee_kernel.domain.voting import Ballot, BallotResult, Vote, VoteDecision, tally

__all__ = [
    # Stage model
    "Stage",
    "STAGE_TRANSITIONS",
    "next_stage",
    "is_valid_transition",
    "check_transition",
    "stage_label",
    # Authorization
    "Role",
    "Action",
    "ActionRule",
    "ACTION_RULES",
    "Authorization",
    "DenyReason",
    "authorize",
    "target_stage",
    # Records
    "Application",
    "BuyerParty",
    "SellerParty",
    "ProofOfShipment",
    "ShipmentDocument",
    "DraftCertificate",
    "DraftStatus",
    "new_request_id",
    "normalize_address",
    # Settlement
    "SettlementQuote",
    "issuance_fee",
    "collateral_split",
    "remaining_balance",
    "parse_amount",
    "format_amount",
    "quote",
    # Voting
    "Vote",
    "VoteDecision",
    "Ballot",
    "BallotResult",
    "tally",
    # Ledger
    "LedgerClient",
    "LedgerOperation",
    "LedgerOperationKind",
    "LedgerOutcome",
    "LedgerOutcomeStatus",
    "LedgerReceipt",
    "ReceiptStatus",
    # Transactions
    "TransactionRecord",
    "TransactionStatus",
    "GasPaymentMethod",
    # Clock
    "Clock",
    "SystemClock",
    "DeterministicClock",
]
