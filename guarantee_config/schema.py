"""
GuaranteeConfig schema.

Typed, frozen view of the YAML configuration.  The loader parses YAML into
these types; ``guarantee_config.bridges`` turns them into kernel services.
Every field has a default so a partial YAML file is a valid configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class SettlementConfig:
    """Rates are percentages of the guarantee amount."""

    fee_rate_pct: Decimal = Decimal("1")
    collateral_rate_pct: Decimal = Decimal("10")
    token_decimals: int = 6
    token_symbol: str = "USDC"


@dataclass(frozen=True)
class VotingConfig:
    quorum: int = 1
    # When False the seller's approval alone binds the draft.
    require_pool_approval: bool = True


@dataclass(frozen=True)
class LedgerConfig:
    resolve_timeout_seconds: float = 30.0
    network: str = "base-sepolia"
    gas_payment_method: str = "sponsored"


@dataclass(frozen=True)
class RegistryConfig:
    transaction_history_limit: int = 100


@dataclass(frozen=True)
class OrchestratorConfig:
    max_stale_retries: int = 3


@dataclass(frozen=True)
class StorageConfig:
    backend: str = "memory"  # memory | sql
    database_url: str | None = None
    echo: bool = False


@dataclass(frozen=True)
class GuaranteeConfig:
    """The complete runtime configuration."""

    config_id: str = "default"
    version: int = 1
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    voting: VotingConfig = field(default_factory=VotingConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    checksum: str = ""
