"""Shared data model for VIAC statement conversion.

All money and share quantities are ``Decimal`` values at a fixed scale of five
fractional digits; nothing in the conversion path touches ``float``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Tuple, Union


QUANT = Decimal("0.00001")
ZERO = Decimal("0.00000")
ONE = Decimal("1")
DEFAULT_CURRENCY = "CHF"


class ViacError(RuntimeError):
    pass


class ConfigError(ViacError):
    """Run-level failure: bad configuration, unreadable input or rate table."""


class UnrecognizedDocument(ViacError):
    pass


class UnparseableLine(ViacError):
    def __init__(self, message: str, context: Optional[str] = None, line: Optional[str] = None) -> None:
        self.context = context
        self.line = line
        text = message
        if context:
            text = f"{text} at {context}"
        if line:
            text = f"{text}: {line!r}"
        super().__init__(text)


class CurrencyConflict(ViacError):
    pass


class MissingExchangeRate(ViacError):
    pass


class InvalidReconciliation(ViacError):
    pass


# Warning codes; these never abort anything and end up in the run summary.
CLAMPED_SALE = "ClampedSale"
EMPTY_PORTFOLIO = "EmptyPortfolio"
MISSING_EXCHANGE_RATE = "MissingExchangeRate"


@dataclass(frozen=True)
class RunWarning:
    code: str
    message: str
    portfolio: Optional[str] = None
    isin: Optional[str] = None
    source: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class Language(str, Enum):
    GERMAN = "de"
    FRENCH = "fr"


class StatementType(str, Enum):
    ACCOUNT_STATEMENT = "account_statement"
    TRADE_ADVICE = "trade_advice"
    DIVIDEND_ADVICE = "dividend_advice"
    FEE_ADVICE = "fee_advice"
    INTEREST_ADVICE = "interest_advice"
    DEPOSIT_ADVICE = "deposit_advice"


class Kind(str, Enum):
    BUY = "Buy"
    SELL = "Sell"
    DEPOSIT = "Deposit"
    DIVIDEND = "Dividend"
    TAX_REFUND = "TaxRefund"
    FEE = "Fee"
    INTEREST = "Interest"

    @property
    def is_trade(self) -> bool:
        return self in (Kind.BUY, Kind.SELL)

    @property
    def references_security(self) -> bool:
        return self in (Kind.BUY, Kind.SELL, Kind.DIVIDEND)

    @property
    def cash_sign(self) -> int:
        # account perspective: money leaves the account on buys and fees
        return -1 if self in (Kind.BUY, Kind.FEE) else 1

    @property
    def order_type(self) -> str:
        return ORDER_TYPES[self]


# Transaction type names understood by the importing application.
ORDER_TYPES = {
    Kind.BUY: "BUY",
    Kind.SELL: "SELL",
    Kind.DEPOSIT: "DEPOSIT",
    Kind.DIVIDEND: "DIVIDENDS",
    Kind.TAX_REFUND: "TAX_REFUND",
    Kind.FEE: "FEES",
    Kind.INTEREST: "INTEREST",
}


def to_fixed(value: Union[Decimal, int, str]) -> Decimal:
    """Quantize to the working precision (5 digits, round-half-to-even)."""
    try:
        fixed = Decimal(value).quantize(QUANT, rounding=ROUND_HALF_EVEN)
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal value: {value!r}") from exc
    if fixed == 0:
        return ZERO
    return fixed


def decimal_to_text(value: Decimal) -> str:
    return format(to_fixed(value), "f")


@dataclass(frozen=True)
class Source:
    path: str
    page: int = 1
    line: int = 0

    def __str__(self) -> str:
        if self.line:
            return f"{self.path} page {self.page} line {self.line}"
        return self.path


@dataclass
class Security:
    isin: str
    name: str
    currency: str
    target_currency: Optional[str] = None


@dataclass(frozen=True)
class RawLine:
    page: int
    line_no: int
    date_token: str
    description: str
    amount_token: str
    currency: Optional[str] = None
    balance_token: Optional[str] = None
    portfolio: Optional[str] = None
    account_number: Optional[str] = None
    default_currency: str = DEFAULT_CURRENCY
    section_isin: Optional[str] = None
    section_name: Optional[str] = None

    @property
    def context(self) -> str:
        return f"page {self.page} line {self.line_no}"


@dataclass(frozen=True)
class Transaction:
    kind: Kind
    date: date
    portfolio: str
    amount: Decimal
    currency: str
    language: Language
    isin: Optional[str] = None
    security_name: Optional[str] = None
    quantity: Optional[Decimal] = None
    reported_quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    trade_currency: Optional[str] = None
    gross_amount: Optional[Decimal] = None
    taxes: Decimal = ZERO
    exchange_rate: Optional[Decimal] = None
    account_number: Optional[str] = None
    description: str = field(default="", compare=False)
    source: Optional[Source] = field(default=None, compare=False)
    order: Tuple[int, int] = field(default=(0, 0), compare=False)

    def __post_init__(self) -> None:
        if self.amount * self.kind.cash_sign < 0:
            raise ValueError(f"{self.kind.value} amount has the wrong sign: {self.amount}")

    @property
    def sort_key(self) -> Tuple[date, Tuple[int, int]]:
        return self.date, self.order

    @property
    def origin(self) -> str:
        return str(self.source) if self.source is not None else "<unknown>"
