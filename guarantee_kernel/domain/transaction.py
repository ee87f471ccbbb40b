"""
Per-account transaction history records.

A ``TransactionRecord`` is written ``pending`` when a ledger operation is
submitted and moved to ``success`` or ``failed`` when it resolves.  Terminal
records are immutable.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from guarantee_kernel.exceptions import ImmutabilityViolationError


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class GasPaymentMethod(str, Enum):
    SPONSORED = "sponsored"
    ERC20 = "erc20"
    NATIVE = "native"


@dataclass(frozen=True)
class TransactionRecord:
    id: str
    timestamp: datetime
    type: str
    from_address: str
    status: TransactionStatus = TransactionStatus.PENDING
    to_address: str | None = None
    amount: Decimal | None = None
    token_symbol: str | None = None
    gas_payment_method: GasPaymentMethod = GasPaymentMethod.SPONSORED
    tx_hash: str | None = None
    network: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not TransactionStatus.PENDING

    def resolved(
        self, status: TransactionStatus, tx_hash: str | None = None
    ) -> TransactionRecord:
        """Return the terminal version of a pending record."""
        if self.is_terminal:
            raise ImmutabilityViolationError(
                "TransactionRecord", self.id, f"status is already {self.status.value}"
            )
        return replace(self, status=TransactionStatus(status), tx_hash=tx_hash or self.tx_hash)

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "amount": format(self.amount, "f") if self.amount is not None else None,
            "token_symbol": self.token_symbol,
            "gas_payment_method": self.gas_payment_method.value,
            "tx_hash": self.tx_hash,
            "network": self.network,
            "status": self.status.value,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> TransactionRecord:
        amount = data.get("amount")
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            type=data["type"],
            from_address=data["from_address"],
            to_address=data.get("to_address"),
            amount=Decimal(amount) if amount is not None else None,
            token_symbol=data.get("token_symbol"),
            gas_payment_method=GasPaymentMethod(data.get("gas_payment_method", "sponsored")),
            tx_hash=data.get("tx_hash"),
            network=data.get("network"),
            status=TransactionStatus(data["status"]),
        )
