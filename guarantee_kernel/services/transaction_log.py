"""
guarantee_kernel.services.transaction_log -- Per-account transaction history.

Responsibility:
    Keeps the newest-first list of ledger submissions made on behalf of
    each account: written ``pending`` at submission, moved to ``success``
    or ``failed`` once the ledger answers.

Architecture position:
    Kernel > Services.  Written only by the ledger adapter.

Invariants enforced:
    - Append-only, newest first, bounded to ``limit`` entries per account.
    - A terminal record is never changed.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

from guarantee_kernel.db.kv_store import KeyValueStore
from guarantee_kernel.domain.application import normalize_address
from guarantee_kernel.domain.clock import Clock, SystemClock
from guarantee_kernel.domain.transaction import (
    GasPaymentMethod,
    TransactionRecord,
    TransactionStatus,
)
from guarantee_kernel.logging_config import get_logger

logger = get_logger("services.transaction_log")

DEFAULT_HISTORY_LIMIT = 100


def transactions_key(account: str) -> str:
    return f"transactions:{normalize_address(account)}"


class TransactionLog:
    """Bounded transaction history keyed by account address."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._limit = limit

    def history(self, account: str) -> list[TransactionRecord]:
        data = self._store.get(transactions_key(account)) or []
        return [TransactionRecord.from_json(item) for item in data]

    def record_pending(
        self,
        account: str,
        type: str,
        *,
        to_address: str | None = None,
        amount: Decimal | None = None,
        token_symbol: str | None = None,
        gas_payment_method: GasPaymentMethod = GasPaymentMethod.SPONSORED,
        network: str | None = None,
    ) -> TransactionRecord:
        record = TransactionRecord(
            id=str(uuid4()),
            timestamp=self._clock.now(),
            type=type,
            from_address=normalize_address(account),
            to_address=to_address,
            amount=amount,
            token_symbol=token_symbol,
            gas_payment_method=GasPaymentMethod(gas_payment_method),
            network=network,
        )
        key = transactions_key(account)
        while True:
            data, version = self._store.get_versioned(key)
            entries = [record.to_json()] + (data or [])
            if self._store.compare_and_set(key, entries[: self._limit], version):
                break
        logger.debug(
            "transaction_recorded",
            extra={"account": record.from_address, "tx_type": type, "tx_id": record.id},
        )
        return record

    def resolve(
        self,
        account: str,
        transaction_id: str,
        status: TransactionStatus,
        tx_hash: str | None = None,
    ) -> TransactionRecord | None:
        """
        Move a pending record to its terminal status.

        Returns None when the record has already been pushed out of the
        bounded history.

        Raises:
            ImmutabilityViolationError: the record is already terminal.
        """
        key = transactions_key(account)
        while True:
            data, version = self._store.get_versioned(key)
            entries = list(data or [])
            index = next(
                (i for i, item in enumerate(entries) if item["id"] == transaction_id),
                None,
            )
            if index is None:
                logger.warning(
                    "transaction_not_in_history",
                    extra={"account": normalize_address(account), "tx_id": transaction_id},
                )
                return None
            updated = TransactionRecord.from_json(entries[index]).resolved(status, tx_hash)
            entries[index] = updated.to_json()
            if self._store.compare_and_set(key, entries, version):
                return updated
