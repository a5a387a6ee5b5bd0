# app/core/escrow/commission.py
"""
Platform commission.

Rates are integer basis points (1000 bps = 10%). The split is
``commission = floor(amount * bps / 10000)`` and the helper receives the
remainder, so the two parts always add back to ``amount``.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Protocol

MAX_RATE_BPS = 10_000


@dataclass(frozen=True)
class CommissionSplit:
    amount: int
    rate_bps: int
    commission: int
    helper_amount: int


def validate_rate_bps(rate_bps: int) -> int:
    if isinstance(rate_bps, bool) or not isinstance(rate_bps, int):
        raise ValueError(f"Commission rate must be integer bps, got {rate_bps!r}")
    if not 0 <= rate_bps <= MAX_RATE_BPS:
        raise ValueError(f"Commission rate out of range: {rate_bps} bps")
    return rate_bps


def split_commission(amount: int, rate_bps: int) -> CommissionSplit:
    validate_rate_bps(rate_bps)
    if amount < 0:
        raise ValueError("Amount must not be negative")
    commission = amount * rate_bps // MAX_RATE_BPS
    return CommissionSplit(
        amount=amount,
        rate_bps=rate_bps,
        commission=commission,
        helper_amount=amount - commission,
    )


def percent_to_bps(value: str | int | Decimal) -> int:
    """
    Convert a stored percentage ("10", "12.5") to basis points.

    Fractions of a basis point are floored.
    """
    try:
        percent = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid commission percent: {value!r}") from exc
    bps = int((percent * 100).to_integral_value(rounding=ROUND_FLOOR))
    return validate_rate_bps(bps)


class CommissionRateProvider(Protocol):
    """Read at release time; implementations must not cache indefinitely."""

    async def current_rate_bps(self) -> int: ...

    async def set_rate_bps(self, rate_bps: int) -> None: ...


class StaticCommissionRate:
    """In-memory rate, for tests and single-instance deployments."""

    def __init__(self, rate_bps: int) -> None:
        self.rate_bps = validate_rate_bps(rate_bps)

    async def current_rate_bps(self) -> int:
        return self.rate_bps

    async def set_rate_bps(self, rate_bps: int) -> None:
        self.rate_bps = validate_rate_bps(rate_bps)
