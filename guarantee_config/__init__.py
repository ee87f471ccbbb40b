"""
guarantee_config -- single public entrypoint for runtime configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a frozen ``GuaranteeConfig``.

Architecture position:
    Configuration -- sits above ``guarantee_kernel``.  The kernel MUST
    NEVER import from ``guarantee_config``; ``guarantee_config.bridges``
    translates the config into kernel services.

Failure modes:
    - ``FileNotFoundError`` -- the requested YAML file does not exist.
    - ``ValueError`` -- a value has the wrong type or is out of range.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``GUARANTEE_CONFIG_TRACE`` log entry with the config id, version and
    checksum, tying each lifecycle run to the exact configuration
    (fee and collateral rates, quorum) that governed it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from guarantee_config.loader import load_yaml_file, parse_config
from guarantee_config.schema import (
    GuaranteeConfig,
    LedgerConfig,
    OrchestratorConfig,
    RegistryConfig,
    SettlementConfig,
    StorageConfig,
    VotingConfig,
)

_logger = logging.getLogger("guarantee_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> GuaranteeConfig:
    """The ONLY public configuration entrypoint.

    Args:
        path: YAML file to load.  Defaults to the packaged defaults.yaml.

    Returns:
        GuaranteeConfig -- frozen, with ``checksum`` of the source YAML.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If a value fails validation.
    """
    source = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    config = parse_config(load_yaml_file(source))

    _logger.info(
        "GUARANTEE_CONFIG_TRACE",
        extra={
            "trace_type": "GUARANTEE_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source": str(source),
            "fee_rate_pct": config.settlement.fee_rate_pct,
            "collateral_rate_pct": config.settlement.collateral_rate_pct,
            "quorum": config.voting.quorum,
            "storage_backend": config.storage.backend,
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "GuaranteeConfig",
    "LedgerConfig",
    "OrchestratorConfig",
    "RegistryConfig",
    "SettlementConfig",
    "StorageConfig",
    "VotingConfig",
    "get_active_config",
]
