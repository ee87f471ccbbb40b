"""
Config -> Kernel Bridges.

Functions that turn a ``GuaranteeConfig`` into wired kernel services.
These live in guarantee_config (the producer) because the kernel must
NEVER import guarantee_config.

Usage:
    from guarantee_config import get_active_config
    from guarantee_config.bridges import build_kernel

    kernel = build_kernel(get_active_config(), ledger_client)
    request_id = kernel.orchestrator.submit_application(payload).request_id
    kernel.orchestrator.perform("buyer", "send_draft", request_id)
"""

from __future__ import annotations

from dataclasses import dataclass

from guarantee_config.schema import GuaranteeConfig
from guarantee_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from guarantee_kernel.db.kv_store import InMemoryKeyValueStore, KeyValueStore, SqlKeyValueStore
from guarantee_kernel.domain.clock import Clock, SystemClock
from guarantee_kernel.domain.ledger import LedgerClient
from guarantee_kernel.domain.transaction import GasPaymentMethod
from guarantee_kernel.services.ledger_adapter import LedgerSyncAdapter
from guarantee_kernel.services.orchestrator import GuaranteeOrchestrator
from guarantee_kernel.services.registry_service import ApplicationRegistry
from guarantee_kernel.services.transaction_log import TransactionLog
from guarantee_kernel.services.voting_service import VotingService


@dataclass(frozen=True)
class GuaranteeKernel:
    """The wired service graph for one process."""

    config: GuaranteeConfig
    store: KeyValueStore
    registry: ApplicationRegistry
    voting: VotingService
    transactions: TransactionLog
    adapter: LedgerSyncAdapter
    orchestrator: GuaranteeOrchestrator


def build_store(config: GuaranteeConfig) -> KeyValueStore:
    """Create the key-value store named by ``config.storage``.

    The SQL backend initializes the module-level engine and creates the
    ``kv_records`` table if it does not exist.
    """
    storage = config.storage
    if storage.backend == "sql":
        init_engine_from_url(storage.database_url, echo=storage.echo)
        create_tables()
        return SqlKeyValueStore(get_session_factory())
    return InMemoryKeyValueStore()


def build_kernel(
    config: GuaranteeConfig,
    client: LedgerClient,
    clock: Clock | None = None,
    store: KeyValueStore | None = None,
) -> GuaranteeKernel:
    """Wire registry, voting, transaction log, adapter and orchestrator."""
    clock = clock or SystemClock()
    store = store if store is not None else build_store(config)

    registry = ApplicationRegistry(store, clock)
    voting = VotingService(
        store,
        quorum=config.voting.quorum,
        clock=clock,
        membership=client.is_financier,
    )
    transactions = TransactionLog(
        store, clock, limit=config.registry.transaction_history_limit
    )
    adapter = LedgerSyncAdapter(
        client,
        registry,
        voting,
        transactions,
        clock,
        require_pool_approval=config.voting.require_pool_approval,
        default_timeout=config.ledger.resolve_timeout_seconds,
        token_symbol=config.settlement.token_symbol,
        network=config.ledger.network,
        gas_payment_method=GasPaymentMethod(config.ledger.gas_payment_method),
    )
    orchestrator = GuaranteeOrchestrator(
        registry,
        adapter,
        voting,
        clock,
        fee_rate_pct=config.settlement.fee_rate_pct,
        collateral_rate_pct=config.settlement.collateral_rate_pct,
        token_decimals=config.settlement.token_decimals,
        max_stale_retries=config.orchestrator.max_stale_retries,
        resolve_timeout=config.ledger.resolve_timeout_seconds,
    )
    return GuaranteeKernel(
        config=config,
        store=store,
        registry=registry,
        voting=voting,
        transactions=transactions,
        adapter=adapter,
        orchestrator=orchestrator,
    )
