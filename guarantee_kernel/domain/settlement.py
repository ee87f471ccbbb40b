"""
Settlement calculator (``guarantee_kernel.domain.settlement``).

Responsibility
--------------
Fixed-point arithmetic for the three derived amounts of a Pool Guarantee:
the issuance fee, the collateral share, and the balance the buyer still
owes the seller after the guarantee covers its part.

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ZERO I/O.

Invariants enforced
-------------------
* No floats.  Inputs are parsed from decimal strings, ints or ``Decimal``.
* Every result is quantized to the token's minimal unit with
  ``ROUND_HALF_UP``.
* ``remaining_balance(t, g) + g == t`` exactly for token-precision inputs.
* ``remaining_balance`` fails iff ``guarantee_amount > trade_value``.

Rates are parameters.  The product variants observed in the field charge
between 1% and 10%; the module defaults below are only defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from guarantee_kernel.exceptions import InvalidAmountError, NegativeBalanceError

# USD-pegged stable tokens settle with 6 decimals.
DEFAULT_TOKEN_DECIMALS = 6
DEFAULT_FEE_RATE_PCT = Decimal("1")
DEFAULT_COLLATERAL_RATE_PCT = Decimal("10")

_HUNDRED = Decimal(100)

AmountLike = str | int | Decimal


def _unit(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def quantize_amount(amount: Decimal, decimals: int = DEFAULT_TOKEN_DECIMALS) -> Decimal:
    """Round half-up to the token's minimal unit."""
    return amount.quantize(_unit(decimals), rounding=ROUND_HALF_UP)


def parse_amount(
    value: AmountLike,
    decimals: int = DEFAULT_TOKEN_DECIMALS,
) -> Decimal:
    """
    Parse a monetary value into a quantized, non-negative ``Decimal``.

    Raises:
        InvalidAmountError: float input, unparsable text, NaN/infinity,
            or a negative value.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError(repr(value), "floats are not accepted for money")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidAmountError(str(value), "not a decimal number") from None
    if not amount.is_finite():
        raise InvalidAmountError(str(value), "must be finite")
    if amount < 0:
        raise InvalidAmountError(str(value), "must not be negative")
    try:
        return quantize_amount(amount, decimals)
    except InvalidOperation:
        raise InvalidAmountError(str(value), "exceeds supported precision") from None


def parse_rate(value: AmountLike) -> Decimal:
    """Parse a percentage rate; same rules as amounts but not quantized."""
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError(repr(value), "floats are not accepted for rates")
    try:
        rate = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidAmountError(str(value), "not a decimal number") from None
    if not rate.is_finite() or rate < 0:
        raise InvalidAmountError(str(value), "rate must be a finite, non-negative percentage")
    return rate


def format_amount(amount: Decimal, decimals: int = DEFAULT_TOKEN_DECIMALS) -> str:
    """Render an amount as a fixed-precision decimal string."""
    return format(quantize_amount(amount, decimals), "f")


def issuance_fee(
    guarantee_amount: AmountLike,
    fee_rate_pct: AmountLike = DEFAULT_FEE_RATE_PCT,
    decimals: int = DEFAULT_TOKEN_DECIMALS,
) -> Decimal:
    """Fee the buyer pays for issuing the guarantee certificate."""
    amount = parse_amount(guarantee_amount, decimals)
    rate = parse_rate(fee_rate_pct)
    return quantize_amount(amount * rate / _HUNDRED, decimals)


def collateral_split(
    guarantee_amount: AmountLike,
    collateral_rate_pct: AmountLike = DEFAULT_COLLATERAL_RATE_PCT,
    decimals: int = DEFAULT_TOKEN_DECIMALS,
) -> Decimal:
    """Share of the guarantee the buyer posts as collateral."""
    amount = parse_amount(guarantee_amount, decimals)
    rate = parse_rate(collateral_rate_pct)
    return quantize_amount(amount * rate / _HUNDRED, decimals)


def remaining_balance(
    trade_value: AmountLike,
    guarantee_amount: AmountLike,
    decimals: int = DEFAULT_TOKEN_DECIMALS,
) -> Decimal:
    """
    Balance still due to the seller once the guarantee is applied.

    Raises:
        NegativeBalanceError: ``guarantee_amount > trade_value``.
    """
    trade = parse_amount(trade_value, decimals)
    guarantee = parse_amount(guarantee_amount, decimals)
    if guarantee > trade:
        raise NegativeBalanceError(
            format_amount(trade, decimals), format_amount(guarantee, decimals)
        )
    return trade - guarantee


@dataclass(frozen=True)
class SettlementQuote:
    """All derived amounts for one Application, computed together."""

    trade_value: Decimal
    guarantee_amount: Decimal
    issuance_fee: Decimal
    collateral: Decimal
    remaining_balance: Decimal
    fee_rate_pct: Decimal
    collateral_rate_pct: Decimal

    @property
    def amount_due_at_fee_payment(self) -> Decimal:
        """Fee plus collateral, paid together at stage 3 -> 4."""
        return self.issuance_fee + self.collateral


def quote(
    trade_value: AmountLike,
    guarantee_amount: AmountLike,
    fee_rate_pct: AmountLike = DEFAULT_FEE_RATE_PCT,
    collateral_rate_pct: AmountLike = DEFAULT_COLLATERAL_RATE_PCT,
    decimals: int = DEFAULT_TOKEN_DECIMALS,
) -> SettlementQuote:
    """Compute fee, collateral and remaining balance in one pass."""
    return SettlementQuote(
        trade_value=parse_amount(trade_value, decimals),
        guarantee_amount=parse_amount(guarantee_amount, decimals),
        issuance_fee=issuance_fee(guarantee_amount, fee_rate_pct, decimals),
        collateral=collateral_split(guarantee_amount, collateral_rate_pct, decimals),
        remaining_balance=remaining_balance(trade_value, guarantee_amount, decimals),
        fee_rate_pct=parse_rate(fee_rate_pct),
        collateral_rate_pct=parse_rate(collateral_rate_pct),
    )
