"""Security currencies and optional conversion to a target currency.

The rate table is the ECB historical reference-rate file (``eurofxref-hist``),
loaded once and never mutated; cross rates go through EUR.
"""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from bisect import bisect_right
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from viac_model import (
    MISSING_EXCHANGE_RATE,
    ONE,
    ConfigError,
    CurrencyConflict,
    MissingExchangeRate,
    RunWarning,
    Security,
    Transaction,
    to_fixed,
)


logger = logging.getLogger(__name__)

EURO = "EUR"
RATE_Q = Decimal("0.0000000001")

# quote unit -> (currency, units per currency)
SUBUNITS: Mapping[str, Tuple[str, Decimal]] = MappingProxyType({"GBX": ("GBP", Decimal(100))})

Series = Tuple[Tuple[date, ...], Tuple[Decimal, ...]]


@dataclass(frozen=True)
class ExchangeRateTable:
    """Read-only ``currency -> (dates, units per EUR)`` series."""

    series: Mapping[str, Series]

    @classmethod
    def from_csv_text(cls, text: str, source: str = "<rates>") -> "ExchangeRateTable":
        reader = csv.reader(io.StringIO(text))
        try:
            header = [col.strip() for col in next(reader)]
        except StopIteration:
            raise ConfigError(f"Exchange-rate table {source} is empty")
        if not header or header[0] != "Date":
            raise ConfigError(f"Exchange-rate table {source} has no Date column")

        points: Dict[str, List[Tuple[date, Decimal]]] = {col: [] for col in header[1:] if col}
        for row_no, row in enumerate(reader, start=2):
            if not row or not row[0].strip():
                continue
            try:
                day = date.fromisoformat(row[0].strip())
            except ValueError:
                raise ConfigError(f"Invalid date {row[0]!r} in {source} row {row_no}")
            for col, raw in zip(header[1:], row[1:]):
                value = raw.strip()
                if not col or not value or value == "N/A":
                    continue
                try:
                    rate = Decimal(value)
                except InvalidOperation:
                    raise ConfigError(f"Invalid rate {value!r} for {col} in {source} row {row_no}")
                if rate <= 0:
                    raise ConfigError(f"Non-positive rate {value!r} for {col} in {source} row {row_no}")
                points[col].append((day, rate))

        series: Dict[str, Series] = {}
        for currency, values in points.items():
            values.sort(key=lambda item: item[0])
            series[currency] = (tuple(d for d, _ in values), tuple(r for _, r in values))
        logger.info("Loaded exchange rates for %s currencies from %s", len(series), source)
        return cls(series=MappingProxyType(series))

    @classmethod
    def load(cls, path: Path) -> "ExchangeRateTable":
        if not path.exists():
            raise ConfigError(f"Exchange-rate table not found: {path}")
        try:
            if path.suffix.lower() == ".zip":
                with zipfile.ZipFile(path) as archive:
                    members = [name for name in archive.namelist() if name.lower().endswith(".csv")]
                    if not members:
                        raise ConfigError(f"No CSV file inside {path}")
                    text = archive.read(members[0]).decode("utf-8")
            else:
                text = path.read_text(encoding="utf-8")
        except (OSError, zipfile.BadZipFile, UnicodeDecodeError) as exc:
            raise ConfigError(f"Cannot read exchange-rate table {path}: {exc}") from exc
        return cls.from_csv_text(text, source=str(path))

    def per_euro(self, currency: str, on: date) -> Decimal:
        if currency == EURO:
            return ONE
        found = self.series.get(currency)
        if found is None:
            raise MissingExchangeRate(f"No exchange rates for {currency}")
        dates, rates = found
        idx = bisect_right(dates, on)
        if idx == 0:
            raise MissingExchangeRate(f"No {currency} rate on or before {on.isoformat()}")
        return rates[idx - 1]

    def rate(self, base: str, quote: str, on: date) -> Decimal:
        """Units of ``quote`` for one unit of ``base`` on the latest quoted day <= ``on``."""
        if base == quote:
            return ONE
        return (self.per_euro(quote, on) / self.per_euro(base, on)).quantize(RATE_Q)


class CurrencyResolver:
    """Fixes one currency per ISIN and converts amounts to a target currency.

    ``isin_currency`` pins the quote currency of single securities, e.g. GBX
    for a London listing booked in GBP. Trades of a pinned ISIN are expressed
    in that currency and are left out of the target conversion.
    """

    def __init__(
        self,
        target_currency: Optional[str] = None,
        rates: Optional[ExchangeRateTable] = None,
        isin_currency: Optional[Mapping[str, str]] = None,
    ) -> None:
        if target_currency is not None and rates is None:
            raise ConfigError("Currency conversion needs an exchange-rate table")
        self.target_currency = target_currency
        self.rates = rates
        self.isin_currency: Dict[str, str] = dict(isin_currency or {})
        self.securities: Dict[str, Security] = {}

    def _observe(self, tx: Transaction, first_seen: Dict[str, Transaction]) -> None:
        if tx.isin is None or not tx.kind.is_trade:
            return
        currency = tx.trade_currency or tx.currency
        known = first_seen.get(tx.isin)
        if known is None:
            first_seen[tx.isin] = tx
            return
        known_currency = known.trade_currency or known.currency
        if known_currency != currency:
            raise CurrencyConflict(
                f"{tx.isin} traded in {known_currency} ({known.origin}) and {currency} ({tx.origin})"
            )

    def register(self, documents: Sequence[Tuple[str, Sequence[Transaction]]]) -> Dict[str, CurrencyConflict]:
        """Build the security list; returns conflicts keyed by document path.

        A document with a conflicting trade is excluded as a whole and the
        remaining documents are checked again until no conflict is left.
        """
        conflicts: Dict[str, CurrencyConflict] = {}
        while True:
            active = [(key, txs) for key, txs in documents if key not in conflicts]
            ordered = sorted(
                ((key, tx) for key, txs in active for tx in txs),
                key=lambda item: item[1].sort_key,
            )
            first_seen: Dict[str, Transaction] = {}
            new_conflict = False
            for key, tx in ordered:
                if key in conflicts:
                    continue
                try:
                    self._observe(tx, first_seen)
                except CurrencyConflict as exc:
                    logger.error("%s: %s", key, exc)
                    conflicts[key] = exc
                    new_conflict = True
            if not new_conflict:
                break

        self.securities = {}
        for _key, tx in ordered:
            if tx.isin is None:
                continue
            seen = first_seen.get(tx.isin)
            security = self.securities.get(tx.isin)
            if security is None:
                if seen is not None:
                    currency = seen.trade_currency or seen.currency
                else:
                    # never traded: fall back to the payout currency
                    currency = tx.trade_currency or tx.currency
                security = Security(
                    isin=tx.isin,
                    name=tx.security_name or "",
                    currency=currency,
                    target_currency=self.isin_currency.get(tx.isin, self.target_currency),
                )
                self.securities[tx.isin] = security
            elif not security.name and tx.security_name:
                security.name = tx.security_name
        for security in self.securities.values():
            if not security.name:
                security.name = security.isin
        return conflicts

    def security(self, isin: str) -> Security:
        return self.securities[isin]

    def quote_rate(self, base: str, quote: str, on: date) -> Decimal:
        """Like ``ExchangeRateTable.rate`` but aware of quote units such as GBX."""
        unit = SUBUNITS.get(quote)
        if unit is not None and unit[0] == base:
            return unit[1]
        held = SUBUNITS.get(base)
        if held is not None and held[0] == quote:
            return (ONE / held[1]).quantize(RATE_Q)
        if self.rates is None:
            raise MissingExchangeRate(f"No exchange-rate table to quote {base} in {quote}")
        if held is not None:
            return (self.rates.rate(held[0], quote, on) / held[1]).quantize(RATE_Q)
        if unit is not None:
            return self.rates.rate(base, unit[0], on) * unit[1]
        return self.rates.rate(base, quote, on)

    def _kept(self, tx: Transaction, exc: MissingExchangeRate) -> RunWarning:
        warning = RunWarning(
            code=MISSING_EXCHANGE_RATE,
            message=f"{tx.kind.value} on {tx.date.isoformat()} kept in {tx.currency}: {exc}",
            portfolio=tx.portfolio,
            isin=tx.isin,
            source=tx.origin,
        )
        logger.warning("%s", warning)
        return warning

    def _rebased(self, tx: Transaction, currency: str) -> Tuple[Transaction, Optional[RunWarning]]:
        try:
            rate = self.quote_rate(tx.currency, currency, tx.date)
        except MissingExchangeRate as exc:
            return tx, self._kept(tx, exc)

        def scaled(value: Optional[Decimal]) -> Optional[Decimal]:
            return to_fixed(value * rate) if value is not None else None

        converted = replace(
            tx,
            amount=to_fixed(tx.amount * rate),
            currency=currency,
            price=scaled(tx.price),
            gross_amount=scaled(tx.gross_amount),
            taxes=to_fixed(tx.taxes * rate),
            exchange_rate=rate,
        )
        return converted, None

    def convert(self, tx: Transaction) -> Tuple[Transaction, Optional[RunWarning]]:
        """Return ``tx`` in its pinned or target currency, or unchanged with a warning."""
        if tx.kind.is_trade and tx.isin in self.isin_currency:
            pinned = self.isin_currency[tx.isin]
            if tx.currency == pinned:
                return tx, None
            return self._rebased(tx, pinned)
        target = self.target_currency
        if target is None or self.rates is None or tx.currency == target:
            return tx, None
        return self._rebased(tx, target)

    def convert_all(self, transactions: Iterable[Transaction]) -> Tuple[List[Transaction], List[RunWarning]]:
        out: List[Transaction] = []
        warnings: List[RunWarning] = []
        for tx in transactions:
            converted, warning = self.convert(tx)
            out.append(converted)
            if warning is not None:
                warnings.append(warning)
        return out, warnings
