"""
Currency Support Module

Handles ISO 4217 currency codes and exact Decimal amounts at each currency's
minor-unit precision. NEVER uses float for monetary values, and never
converts between currencies.
"""

from decimal import Decimal, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
from enum import Enum

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places
    CAD = ("CAD", 2)  # Canadian Dollar, 2 decimal places
    CHF = ("CHF", 2)  # Swiss Franc, 2 decimal places
    AUD = ("AUD", 2)  # Australian Dollar, 2 decimal places
    INR = ("INR", 2)  # Indian Rupee, 2 decimal places
    KWD = ("KWD", 3)  # Kuwaiti Dinar, 3 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount (one minor unit)"""
        return Decimal(1).scaleb(-self.precision)

    @classmethod
    def from_code(cls, code: Union[str, "Currency"]) -> "Currency":
        """
        Look up a currency by its ISO code

        Raises:
            ValueError: If the code is not a recognized currency
        """
        if isinstance(code, Currency):
            return code
        if not isinstance(code, str) or code.strip().upper() not in cls.__members__:
            raise ValueError(f"Unrecognized currency code: {code!r}")
        return cls[code.strip().upper()]


AmountLike = Union[Decimal, int, str]


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert a raw amount to a finite Decimal

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValueError("Amount must be a number, not a boolean")
    if isinstance(value, float):
        # Go through str so 0.1 becomes Decimal('0.1'), not its binary expansion
        value = str(value)
    try:
        result = value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return result


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and exact precision.

    Amounts with more fractional digits than the currency allows are
    rejected rather than rounded.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = to_decimal(self.amount)
        try:
            quantized = amount.quantize(self.currency.quantum)
        except InvalidOperation:
            # More significant digits than the decimal context can hold
            raise ValueError(f"{amount} is too large for {self.currency.code}")
        if quantized != amount:
            raise ValueError(
                f"{amount} has more than {self.currency.precision} decimal places "
                f"for {self.currency.code}"
            )
        object.__setattr__(self, 'amount', quantized)

    @classmethod
    def zero(cls, currency: Currency) -> "Money":
        return cls(Decimal(0), currency)

    def _check_currency(self, other: "Money", verb: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    def __abs__(self) -> "Money":
        return Money(abs(self.amount), self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"
