"""
Money Module

ISO 4217 currency codes with precision info, and an immutable Money value held
in integer minor units. NEVER uses float for monetary values; Decimal appears
only at the edges when parsing configuration or formatting for display.
"""

from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Union


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places
    CAD = ("CAD", 2)  # Canadian Dollar, 2 decimal places
    CHF = ("CHF", 2)  # Swiss Franc, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_per_major(self) -> int:
        """Number of minor units in one major unit (100 for USD, 1 for JPY)"""
        return 10 ** self.precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by ISO code"""
        for currency in cls:
            if currency.code == code.upper():
                return currency
        raise ValueError(f"Unsupported currency code: {code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation in integer minor units.
    """
    minor: int
    currency: Currency

    def __post_init__(self):
        if isinstance(self.minor, bool) or not isinstance(self.minor, int):
            raise TypeError(f"Money requires integer minor units, got {type(self.minor).__name__}")

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(0, currency)

    @classmethod
    def from_decimal(cls, amount: Union[Decimal, str, int], currency: Currency) -> 'Money':
        """Convert a major-unit amount ("12.34") to minor units, rounding half up"""
        if not isinstance(amount, Decimal):
            amount = Decimal(str(amount))
        scaled = (amount * currency.minor_per_major).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
        return cls(int(scaled), currency)

    def to_decimal(self) -> Decimal:
        """Major-unit Decimal for display and serialization"""
        return (Decimal(self.minor) / Decimal(self.currency.minor_per_major)).quantize(
            Decimal('0.1') ** self.currency.precision
        )

    def _check(self, other: 'Money') -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}")
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.minor + other.minor, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.minor - other.minor, self.currency)

    def __mul__(self, multiplier: int) -> 'Money':
        if not isinstance(multiplier, int):
            raise TypeError("Money can only be multiplied by an integer")
        return Money(self.minor * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.minor, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.minor), self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check(other)
        return self.minor < other.minor

    def __le__(self, other: 'Money') -> bool:
        self._check(other)
        return self.minor <= other.minor

    def __gt__(self, other: 'Money') -> bool:
        self._check(other)
        return self.minor > other.minor

    def __ge__(self, other: 'Money') -> bool:
        self._check(other)
        return self.minor >= other.minor

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.minor == 0

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.minor > 0

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.minor < 0

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.to_decimal():,.0f}"
        return f"{self.currency.code} {self.to_decimal():,.{self.currency.precision}f}"

    def to_dict(self) -> dict:
        return {"minor": self.minor, "currency": self.currency.code}

    @classmethod
    def from_dict(cls, data: dict) -> 'Money':
        return cls(int(data["minor"]), Currency.from_code(data["currency"]))


def sum_money(values: Iterable[Money], currency: Currency) -> Money:
    """Sum Money values, starting from zero in the given currency"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total
