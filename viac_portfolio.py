"""Group reconciled transactions into per-portfolio tables and write them out."""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from viac_model import (
    EMPTY_PORTFOLIO,
    ZERO,
    ConfigError,
    RunWarning,
    Security,
    Transaction,
    decimal_to_text,
)


logger = logging.getLogger(__name__)

SECURITIES_COLUMNS = ("ISIN", "Name", "Currency")
ACCOUNT_COLUMNS = ("Date", "Kind", "Amount", "Currency")
PORTFOLIO_COLUMNS = ("Date", "ISIN", "Quantity", "Price", "Currency")

TABLE_NAMES = {
    "securities": "Securities",
    "account": "Account",
    "portfolio": "Portfolio",
}
OUTPUT_FORMATS = ("csv", "json")


@dataclass(frozen=True)
class SecurityRow:
    isin: str
    name: str
    currency: str

    def cells(self) -> Tuple[str, ...]:
        return (self.isin, self.name, self.currency)


@dataclass(frozen=True)
class AccountRow:
    date: str
    kind: str
    amount: str
    currency: str

    def cells(self) -> Tuple[str, ...]:
        return (self.date, self.kind, self.amount, self.currency)


@dataclass(frozen=True)
class PortfolioRow:
    date: str
    isin: str
    quantity: str
    price: str
    currency: str

    def cells(self) -> Tuple[str, ...]:
        return (self.date, self.isin, self.quantity, self.price, self.currency)


@dataclass
class PortfolioTables:
    portfolio: str
    securities: List[SecurityRow] = field(default_factory=list)
    account: List[AccountRow] = field(default_factory=list)
    trades: List[PortfolioRow] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.securities or self.account or self.trades)

    def table(self, name: str) -> Tuple[Tuple[str, ...], List[Tuple[str, ...]]]:
        if name == "securities":
            return SECURITIES_COLUMNS, [row.cells() for row in self.securities]
        if name == "account":
            return ACCOUNT_COLUMNS, [row.cells() for row in self.account]
        if name == "portfolio":
            return PORTFOLIO_COLUMNS, [row.cells() for row in self.trades]
        raise KeyError(name)


def _trade_row(tx: Transaction) -> PortfolioRow:
    return PortfolioRow(
        date=tx.date.isoformat(),
        isin=tx.isin or "",
        quantity=decimal_to_text(tx.quantity if tx.quantity is not None else ZERO),
        price=decimal_to_text(tx.price) if tx.price is not None else "",
        currency=tx.currency,
    )


def _account_row(tx: Transaction) -> AccountRow:
    return AccountRow(
        date=tx.date.isoformat(),
        kind=tx.kind.order_type,
        amount=decimal_to_text(tx.amount),
        currency=tx.currency,
    )


def aggregate(
    portfolio_ids: Iterable[str],
    transactions: Sequence[Transaction],
    securities: Mapping[str, Security],
) -> Tuple[Dict[str, PortfolioTables], List[RunWarning]]:
    """Split transactions into the three tables of each portfolio.

    ``portfolio_ids`` lists every portfolio seen during parsing, so a portfolio
    whose transactions were all rejected still yields an (empty) entry.
    A security is listed in its converted currency only while every trade of
    it was converted; otherwise its own currency is kept.
    """
    tables: Dict[str, PortfolioTables] = {pid: PortfolioTables(portfolio=pid) for pid in portfolio_ids}
    seen_isins: Dict[str, List[str]] = {}
    trade_currencies: Dict[str, Set[str]] = {}

    for tx in sorted(transactions, key=lambda t: t.sort_key):
        target = tables.setdefault(tx.portfolio, PortfolioTables(portfolio=tx.portfolio))
        if tx.kind.is_trade:
            target.trades.append(_trade_row(tx))
            if tx.isin is not None:
                trade_currencies.setdefault(tx.isin, set()).add(tx.currency)
        else:
            target.account.append(_account_row(tx))
        if tx.isin is not None:
            isins = seen_isins.setdefault(tx.portfolio, [])
            if tx.isin not in isins:
                isins.append(tx.isin)

    warnings: List[RunWarning] = []
    for pid in sorted(tables):
        target = tables[pid]
        for isin in seen_isins.get(pid, []):
            security = securities.get(isin)
            if security is None:
                continue
            currency = security.target_currency or security.currency
            if trade_currencies.get(isin, {currency}) - {currency}:
                currency = security.currency
            target.securities.append(SecurityRow(isin=isin, name=security.name, currency=currency))
        if target.is_empty:
            warning = RunWarning(
                code=EMPTY_PORTFOLIO,
                message=f"Portfolio {pid} has no exportable rows",
                portfolio=pid,
            )
            logger.warning("%s", warning)
            warnings.append(warning)
    return {pid: tables[pid] for pid in sorted(tables)}, warnings


_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_portfolio_name(portfolio: str) -> str:
    return _UNSAFE_CHARS_RE.sub("_", portfolio).strip("_") or "portfolio"


def render_csv(columns: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    writer.writerows(rows)
    return buffer.getvalue()


def render_json(columns: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    records = [dict(zip(columns, row)) for row in rows]
    return json.dumps(records, ensure_ascii=False, indent=2) + "\n"


def write_tables(
    tables: Mapping[str, PortfolioTables],
    output_dir: Path,
    prefix: str = "VIAC",
    fmt: str = "csv",
) -> List[Path]:
    if fmt not in OUTPUT_FORMATS:
        raise ConfigError(f"Unsupported output format: {fmt}")
    render = render_csv if fmt == "csv" else render_json
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"Cannot create output directory {output_dir}: {exc}") from exc

    written: List[Path] = []
    for pid, portfolio in tables.items():
        if portfolio.is_empty:
            continue
        for name, suffix in TABLE_NAMES.items():
            columns, rows = portfolio.table(name)
            path = output_dir / f"{prefix}_{safe_portfolio_name(pid)}_{suffix}.{fmt}"
            path.write_text(render(columns, rows), encoding="utf-8")
            written.append(path)
            logger.info("Wrote %s rows to %s", len(rows), path)
    return written
