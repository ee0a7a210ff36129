#!/usr/bin/env python3
"""
Money Primitive Type

Immutable amount wrapper that uses integer minor units (kobo/cents) internally.
The feed API speaks decimal amounts; everything in the engine compares and
sums integers so optimistic totals never drift from floating-point error.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

MINOR_UNITS_PER_MAJOR = 100


@dataclass(frozen=True)
class Money:
    """
    Immutable money value in minor units.

    Examples:
        >>> Money.from_decimal("500")
        Money(minor=50000)
        >>> str(Money.from_decimal(12.5))
        '12.50'
        >>> Money.from_decimal("12.345").to_decimal()
        Decimal('12.35')
    """

    minor: int

    @classmethod
    def from_minor(cls, minor: int) -> "Money":
        """Create Money from minor units."""
        return cls(minor=minor)

    @classmethod
    def from_decimal(cls, value: str | int | float | Decimal) -> "Money":
        """
        Parse a decimal amount as sent by the API or typed by the user.

        Floats are converted through ``str`` so ``0.1`` stays ``0.10``.

        Args:
            value: Amount in major units, e.g. ``"1,250.50"``, ``500`` or ``12.5``

        Returns:
            Money object rounded half-up to the nearest minor unit

        Raises:
            ValueError: If the value cannot be parsed as a number
        """
        if isinstance(value, float):
            value = str(value)
        if isinstance(value, str):
            value = value.strip().replace(",", "")
            if not value:
                raise ValueError("Empty amount")
        try:
            amount = Decimal(value)
        except InvalidOperation as e:
            raise ValueError(f"Invalid amount: {value!r}") from e
        if not amount.is_finite():
            raise ValueError(f"Invalid amount: {value!r}")

        minor = (amount * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return cls(minor=int(minor))

    def to_decimal(self) -> Decimal:
        """Get value in major units as an exact Decimal."""
        return (Decimal(self.minor) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))

    def to_api(self) -> float:
        """Get value as the JSON number the API expects."""
        return float(self.to_decimal())

    def is_positive(self) -> bool:
        return self.minor > 0

    def __add__(self, other: "Money") -> "Money":
        return Money(minor=self.minor + other.minor)

    def __sub__(self, other: "Money") -> "Money":
        return Money(minor=self.minor - other.minor)

    def __lt__(self, other: "Money") -> bool:
        return self.minor < other.minor

    def __le__(self, other: "Money") -> bool:
        return self.minor <= other.minor

    def __gt__(self, other: "Money") -> bool:
        return self.minor > other.minor

    def __ge__(self, other: "Money") -> bool:
        return self.minor >= other.minor

    def __str__(self) -> str:
        """Format as a plain two-decimal string with thousands separators."""
        return f"{self.to_decimal():,.2f}"

    def __repr__(self) -> str:
        return f"Money(minor={self.minor})"
