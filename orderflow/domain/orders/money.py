from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from functools import total_ordering
from typing import Iterable


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


@total_ordering
@dataclass(frozen=True)
class Money:
    """Integer count of minor currency units plus an ISO currency code."""

    amount: int
    currency: str = "USD"

    def __post_init__(self) -> None:
        # bool is an int subclass; neither it nor float may carry money.
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise TypeError(f"money amount must be int minor units, got {type(self.amount).__name__}")
        if not self.currency or len(self.currency) != 3:
            raise ValueError(f"invalid currency code: {self.currency!r}")
        object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def zero(cls, currency: str = "USD") -> Money:
        return cls(0, currency)

    @classmethod
    def sum(cls, values: Iterable[Money], currency: str = "USD") -> Money:
        total = cls.zero(currency)
        for value in values:
            total = total + value
        return total

    def _check(self, other: Money) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"expected Money, got {type(other).__name__}")
        if other.currency != self.currency:
            raise ValueError(f"currency mismatch: {self.currency} vs {other.currency}")

    def __add__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __lt__(self, other: Money) -> bool:
        self._check(other)
        return self.amount < other.amount

    def scale(self, factor: int) -> Money:
        if isinstance(factor, bool) or not isinstance(factor, int):
            raise TypeError("money can only be scaled by an int")
        return Money(self.amount * factor, self.currency)

    def apply_rate(self, rate: Decimal) -> Money:
        """Multiply by a decimal rate, rounding once half-up."""
        if not isinstance(rate, Decimal):
            raise TypeError("rates must be Decimal")
        return Money(round_half_up(Decimal(self.amount) * rate), self.currency)

    def percent(self, pct: int | Decimal) -> Money:
        return self.apply_rate(Decimal(pct) / Decimal(100))

    def clamp(self, low: Money, high: Money) -> Money:
        self._check(low)
        self._check(high)
        return Money(max(low.amount, min(self.amount, high.amount)), self.currency)

    def allocate(self, weights: list[int]) -> list[Money]:
        """Split into parts proportional to ``weights`` that sum back exactly.

        Largest-remainder method; ties go to the earliest weight.
        """
        if not weights:
            return []
        total_weight = sum(weights)
        if total_weight <= 0:
            shares = [0] * len(weights)
            shares[0] = self.amount
            return [Money(share, self.currency) for share in shares]

        shares = []
        remainders = []
        for index, weight in enumerate(weights):
            share, remainder = divmod(self.amount * weight, total_weight)
            shares.append(share)
            remainders.append((remainder, -index))
        leftover = self.amount - sum(shares)
        for _, neg_index in sorted(remainders, reverse=True)[:leftover]:
            shares[-neg_index] += 1
        return [Money(share, self.currency) for share in shares]

    def is_zero(self) -> bool:
        return self.amount == 0

    def format(self) -> str:
        major = Decimal(self.amount) / Decimal(100)
        return f"{major:.2f} {self.currency}"

    def __str__(self) -> str:
        return self.format()
