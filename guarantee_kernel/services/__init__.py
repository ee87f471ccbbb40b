"""Services for the guarantee kernel (write side)."""

from guarantee_kernel.services.ledger_adapter import LedgerSyncAdapter, PendingSubmission
from guarantee_kernel.services.orchestrator import GuaranteeOrchestrator
from guarantee_kernel.services.registry_service import ApplicationRegistry
from guarantee_kernel.services.transaction_log import TransactionLog
from guarantee_kernel.services.voting_service import VotingService

__all__ = [
    "ApplicationRegistry",
    "GuaranteeOrchestrator",
    "LedgerSyncAdapter",
    "PendingSubmission",
    "TransactionLog",
    "VotingService",
]
