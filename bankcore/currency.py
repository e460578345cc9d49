"""
Money Module

Supported ISO 4217 currencies and the immutable Money value every balance,
amount and limit in the core is expressed in. Amounts are Decimal only and
always carry their currency; mixing currencies raises instead of converting.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from functools import total_ordering
from typing import Any, Dict, Union
from enum import Enum

getcontext().prec = 28


class Currency(Enum):
    """Supported currencies as (code, minor unit digits)"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    INR = ("INR", 2)
    CAD = ("CAD", 2)
    CHF = ("CHF", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01"""
        return Decimal(1).scaleb(-self.precision)


@total_ordering
@dataclass(frozen=True, eq=False)
class Money:
    """
    Decimal amount in a currency, rounded half-up to the currency's minor
    unit on construction. Comparing or combining two different currencies
    raises ValueError.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = self.amount if isinstance(self.amount, Decimal) else Decimal(str(self.amount))
        object.__setattr__(self, 'amount', amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal(0), currency)

    def _require_same(self, other: 'Money', verb: str) -> None:
        if other.currency is not self.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._require_same(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._require_same(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor: Union[Decimal, int, str]) -> 'Money':
        return Money(self.amount * Decimal(str(factor)), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if isinstance(other, Money):
            return (self.amount, self.currency) == (other.amount, other.currency)
        return NotImplemented

    def __lt__(self, other: 'Money') -> bool:
        self._require_same(other, "compare")
        return self.amount < other.amount

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def is_zero(self) -> bool:
        return self.amount.is_zero()

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def to_string(self) -> str:
        """e.g. "USD 1,234.50" """
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def to_dict(self) -> Dict[str, str]:
        return {'amount': str(self.amount), 'currency': self.currency.code}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Money':
        return cls(Decimal(data['amount']), Currency[data['currency']])

    __str__ = to_string


def parse_currency(code: str) -> Currency:
    """Look up a currency by ISO code, case-insensitively"""
    try:
        return Currency[code.upper()]
    except KeyError:
        raise ValueError(f"Unsupported currency: {code}") from None
