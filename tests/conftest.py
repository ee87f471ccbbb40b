"""
Pytest fixtures for the guarantee kernel test suite.

Provides:
- Deterministic clock and in-memory key-value store
- FakeLedgerClient (tests/fakes.py) standing in for the external ledger
- A fully wired kernel built through guarantee_config.bridges
- Structured log capture
- In-memory SQLite engine for the SQL-backed store
"""

import json
import logging
from dataclasses import replace
from io import StringIO

import pytest

from guarantee_config.bridges import build_kernel
from guarantee_config.schema import GuaranteeConfig
from guarantee_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from guarantee_kernel.db.kv_store import InMemoryKeyValueStore, SqlKeyValueStore
from guarantee_kernel.domain.clock import DeterministicClock
from guarantee_kernel.logging_config import StructuredFormatter, configure_logging
from tests.fakes import FakeLedgerClient, application_payload


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Route kernel logs through the JSON handler at DEBUG for the session."""
    configure_logging(level=logging.DEBUG)


@pytest.fixture
def captured_logs():
    """
    Capture guarantee_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.perform(...)
            logs = captured_logs()
            assert any(r["message"] == "stage_advanced" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("guarantee_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Core fixtures
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock()


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def ledger() -> FakeLedgerClient:
    return FakeLedgerClient()


@pytest.fixture
def make_kernel(clock, ledger):
    """
    Factory for a wired kernel with overridable settings.

    ``timeout`` is the resolve timeout in seconds; held operations time out
    after it, so keep it short.
    """

    def _make(
        *,
        quorum: int = 1,
        require_pool_approval: bool = True,
        timeout: float = 0.2,
        store=None,
        max_stale_retries: int = 3,
        **settlement,
    ):
        base = GuaranteeConfig()
        config = replace(
            base,
            voting=replace(
                base.voting,
                quorum=quorum,
                require_pool_approval=require_pool_approval,
            ),
            ledger=replace(base.ledger, resolve_timeout_seconds=timeout),
            orchestrator=replace(base.orchestrator, max_stale_retries=max_stale_retries),
            settlement=replace(base.settlement, **settlement),
        )
        return build_kernel(
            config,
            ledger,
            clock,
            store=store if store is not None else InMemoryKeyValueStore(),
        )

    return _make


@pytest.fixture
def kernel(make_kernel):
    return make_kernel()


@pytest.fixture
def orchestrator(kernel):
    return kernel.orchestrator


@pytest.fixture
def registry(kernel):
    return kernel.registry


@pytest.fixture
def submitted(orchestrator) -> str:
    """Request id of a freshly submitted stage-1 Application."""
    return orchestrator.submit_application(application_payload()).request_id


# =============================================================================
# SQL fixtures
# =============================================================================


@pytest.fixture
def sql_store():
    """SqlKeyValueStore over a private in-memory SQLite database."""
    init_engine_from_url("sqlite://")
    create_tables()
    yield SqlKeyValueStore(get_session_factory())
    drop_tables()
    reset_engine()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow_locks: mark test as racing threads on compare-and-set"
    )
