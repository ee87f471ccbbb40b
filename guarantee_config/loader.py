"""
Configuration Loader (``guarantee_config.loader``).

Responsibility
--------------
Loads a YAML file and parses it into the frozen ``guarantee_config.schema``
dataclasses.  Runtime callers go through
``guarantee_config.get_active_config()`` instead of calling this directly.

Invariants enforced
-------------------
* Missing sections and keys fall back to the schema defaults.
* A present key with the wrong type raises ``ValueError`` naming the key.
* Rates and amounts are parsed as ``Decimal``, never ``float``.
* ``compute_checksum`` is a deterministic SHA-256 of the parsed YAML.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Bad values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from guarantee_config.schema import (
    GuaranteeConfig,
    LedgerConfig,
    OrchestratorConfig,
    RegistryConfig,
    SettlementConfig,
    StorageConfig,
    VotingConfig,
)

_STORAGE_BACKENDS = ("memory", "sql")
_GAS_PAYMENT_METHODS = ("sponsored", "erc20", "native")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML document must be a mapping")
    return data


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"'{name}' must be a mapping, got {type(value).__name__}")
    return value


def _int(section: str, data: dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{section}.{key}' must be an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"'{section}.{key}' must be >= {minimum}, got {value}")
    return value


def _bool(section: str, data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{section}.{key}' must be a boolean, got {value!r}")
    return value


def _str(section: str, data: dict[str, Any], key: str, default: str | None) -> str | None:
    value = data.get(key, default)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"'{section}.{key}' must be a string, got {value!r}")
    return value


def _decimal(section: str, data: dict[str, Any], key: str, default: Decimal) -> Decimal:
    value = data.get(key, default)
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(
            f"'{section}.{key}' must be quoted or an integer (floats lose precision), "
            f"got {value!r}"
        )
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{section}.{key}' is not a decimal number: {value!r}") from None
    if not parsed.is_finite() or parsed < 0:
        raise ValueError(f"'{section}.{key}' must be a non-negative number, got {value!r}")
    return parsed


def _seconds(section: str, data: dict[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{section}.{key}' must be a positive number, got {value!r}")
    return float(value)


def parse_settlement(data: dict[str, Any]) -> SettlementConfig:
    d = SettlementConfig()
    return SettlementConfig(
        fee_rate_pct=_decimal("settlement", data, "fee_rate_pct", d.fee_rate_pct),
        collateral_rate_pct=_decimal(
            "settlement", data, "collateral_rate_pct", d.collateral_rate_pct
        ),
        token_decimals=_int("settlement", data, "token_decimals", d.token_decimals),
        token_symbol=_str("settlement", data, "token_symbol", d.token_symbol),
    )


def parse_voting(data: dict[str, Any]) -> VotingConfig:
    d = VotingConfig()
    return VotingConfig(
        quorum=_int("voting", data, "quorum", d.quorum, minimum=1),
        require_pool_approval=_bool(
            "voting", data, "require_pool_approval", d.require_pool_approval
        ),
    )


def parse_ledger(data: dict[str, Any]) -> LedgerConfig:
    d = LedgerConfig()
    method = _str("ledger", data, "gas_payment_method", d.gas_payment_method)
    if method not in _GAS_PAYMENT_METHODS:
        raise ValueError(
            f"'ledger.gas_payment_method' must be one of {_GAS_PAYMENT_METHODS}, got {method!r}"
        )
    return LedgerConfig(
        resolve_timeout_seconds=_seconds(
            "ledger", data, "resolve_timeout_seconds", d.resolve_timeout_seconds
        ),
        network=_str("ledger", data, "network", d.network),
        gas_payment_method=method,
    )


def parse_storage(data: dict[str, Any]) -> StorageConfig:
    d = StorageConfig()
    backend = _str("storage", data, "backend", d.backend)
    if backend not in _STORAGE_BACKENDS:
        raise ValueError(
            f"'storage.backend' must be one of {_STORAGE_BACKENDS}, got {backend!r}"
        )
    database_url = _str("storage", data, "database_url", d.database_url)
    if backend == "sql" and not database_url:
        raise ValueError("'storage.database_url' is required when backend is 'sql'")
    return StorageConfig(
        backend=backend,
        database_url=database_url,
        echo=_bool("storage", data, "echo", d.echo),
    )


def parse_config(data: dict[str, Any]) -> GuaranteeConfig:
    """
    Parse a full configuration mapping.

    Raises:
        ValueError: on a wrongly-typed or out-of-range value.
    """
    d = GuaranteeConfig()
    registry = _section(data, "registry")
    orchestrator = _section(data, "orchestrator")
    return GuaranteeConfig(
        config_id=_str("root", data, "config_id", d.config_id),
        version=_int("root", data, "version", d.version, minimum=1),
        settlement=parse_settlement(_section(data, "settlement")),
        voting=parse_voting(_section(data, "voting")),
        ledger=parse_ledger(_section(data, "ledger")),
        registry=RegistryConfig(
            transaction_history_limit=_int(
                "registry",
                registry,
                "transaction_history_limit",
                RegistryConfig().transaction_history_limit,
                minimum=1,
            ),
        ),
        orchestrator=OrchestratorConfig(
            max_stale_retries=_int(
                "orchestrator",
                orchestrator,
                "max_stale_retries",
                OrchestratorConfig().max_stale_retries,
            ),
        ),
        storage=parse_storage(_section(data, "storage")),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
