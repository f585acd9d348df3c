#!/usr/bin/env python3
"""Parse VIAC account statements and advices (German or French) from PDF text.

A document is classified by anchor phrases, account statements are cut into
dated column rows, and every row is mapped to a typed Transaction through an
ordered per-language keyword table. Single-transaction advices are read field
by field from their labelled blocks instead.

Lines that fail are reported and skipped; only an unrecognised document is
rejected as a whole.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Pattern, Sequence, Tuple, Union

from pypdf import PdfReader

from viac_model import (
    DEFAULT_CURRENCY,
    ZERO,
    Kind,
    Language,
    RawLine,
    Source,
    StatementType,
    Transaction,
    UnparseableLine,
    UnrecognizedDocument,
    to_fixed,
)


logger = logging.getLogger(__name__)

VIAC_AUTHOR = "VIAC"

ISIN_RE = re.compile(r"\bISIN\b\s*:?\s*(?P<isin>[A-Z]{2}[A-Z0-9]{9}\d)\b")
BARE_ISIN_RE = re.compile(r"^[A-Z]{2}[A-Z0-9]{9}\d$")
CCY_RE = re.compile(r"^[A-Z]{3}$")
PAGE_FOOTER_RE = re.compile(r"^(?:Seite|Page)\s+\d+\s*(?:/|von|de|sur)\s*\d+$", re.IGNORECASE)


def squeeze_ws(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


@dataclass(frozen=True)
class LocaleRules:
    """Everything language-specific: number/date formats and keyword tables."""

    language: Language
    date_pattern: str
    date_formats: Tuple[str, ...]
    decimal_sep: str
    group_seps: str
    kind_patterns: Tuple[Tuple[Kind, Pattern[str]], ...]
    ignore_re: Pattern[str]
    trade_template: str
    fx_template: str
    portfolio_label: str
    contract_label: str
    account_currency_re: Pattern[str]

    @property
    def number_pattern(self) -> str:
        groups = re.escape(self.group_seps)
        return rf"\d{{1,3}}(?:[{groups}]\d{{3}})+(?:[.,]\d+)?|\d+(?:[.,]\d+)?"

    @property
    def signed_number_pattern(self) -> str:
        return rf"[-+]?(?:{self.number_pattern})-?"

    @property
    def line_re(self) -> Pattern[str]:
        num = self.signed_number_pattern
        return re.compile(
            rf"^\s*(?P<date>{self.date_pattern})\s+(?P<desc>\S.*?)\s{{2,}}(?P<amount>{num})"
            rf"(?:\s+(?P<ccy>[A-Z]{{3}}))?(?:\s{{2,}}(?P<balance>{num})(?:\s+[A-Z]{{3}})?)?\s*$"
        )

    @property
    def date_start_re(self) -> Pattern[str]:
        return re.compile(rf"^\s*{self.date_pattern}\b")

    @property
    def trade_re(self) -> Pattern[str]:
        return re.compile(self.trade_template.format(num=self.number_pattern), re.IGNORECASE)

    @property
    def fx_re(self) -> Pattern[str]:
        return re.compile(self.fx_template.format(num=self.number_pattern), re.IGNORECASE)

    @property
    def portfolio_re(self) -> Pattern[str]:
        return re.compile(rf"^{self.portfolio_label}\s*:?\s+(?P<value>\d[\d.\-/]*)$")

    @property
    def contract_re(self) -> Pattern[str]:
        return re.compile(rf"^{self.contract_label}\s*:?\s+(?P<value>\d[\d.\-/]*)$")


# Ordered: the first matching pattern wins. Compound descriptions such as a
# withholding tax refund on a dividend must resolve to the more specific kind,
# and "Verkauf" is listed before "Kauf".
GERMAN_KIND_PATTERNS: Tuple[Tuple[Kind, Pattern[str]], ...] = (
    (Kind.TAX_REFUND, re.compile(r"\bSteuerrückerstattung\b|\bRückerstattung\s+Quellensteuer\b", re.IGNORECASE)),
    (Kind.SELL, re.compile(r"\bVerkauf\b", re.IGNORECASE)),
    (Kind.BUY, re.compile(r"\bKauf\b", re.IGNORECASE)),
    (Kind.DIVIDEND, re.compile(r"\bDividende\b|\bDividendenausschüttung\b|\bAusschüttung\b", re.IGNORECASE)),
    (Kind.DEPOSIT, re.compile(r"\bEinlage\b|\bEinzahlung\b|\bZahlungseingang\b", re.IGNORECASE)),
    (Kind.FEE, re.compile(r"\bGebühren\b|\bGebühr\b|\bVerwaltungsgebühr\b", re.IGNORECASE)),
    (Kind.INTEREST, re.compile(r"\bZinsen\b|\bZinsgutschrift\b", re.IGNORECASE)),
)

FRENCH_KIND_PATTERNS: Tuple[Tuple[Kind, Pattern[str]], ...] = (
    (Kind.TAX_REFUND, re.compile(r"\bRemboursement\s+d['’]imp[ôo]t\b", re.IGNORECASE)),
    (Kind.SELL, re.compile(r"\bVente\b", re.IGNORECASE)),
    (Kind.BUY, re.compile(r"\bAchat\b", re.IGNORECASE)),
    (Kind.DIVIDEND, re.compile(r"\bDividendes?\b", re.IGNORECASE)),
    (Kind.DEPOSIT, re.compile(r"\bApport\b|\bVersement\b", re.IGNORECASE)),
    (Kind.FEE, re.compile(r"\bFrais\b|\bCommission\b", re.IGNORECASE)),
    (Kind.INTEREST, re.compile(r"\bInt[ée]r[êe]ts?\b", re.IGNORECASE)),
)


LOCALES: Dict[Language, LocaleRules] = {
    Language.GERMAN: LocaleRules(
        language=Language.GERMAN,
        date_pattern=r"\d{2}\.\d{2}\.\d{4}",
        date_formats=("%d.%m.%Y",),
        decimal_sep=".",
        group_seps="'’",
        kind_patterns=GERMAN_KIND_PATTERNS,
        ignore_re=re.compile(r"^(?:Saldovortrag|Saldo|Übertrag|Total)\b", re.IGNORECASE),
        trade_template=(
            r"\b(?:Kauf|Verkauf)\s+(?P<qty>{num})\s+(?:Anteile|Anteil|Ant\.?|Stk\.?)\s+"
            r"(?:zu|@)\s+(?:(?P<ccy>[A-Z]{{3}})\s+)?(?P<price>{num})"
        ),
        fx_template=r"\bUmrechnungskurs\s+(?P<base>[A-Z]{{3}})/(?P<quote>[A-Z]{{3}})\s+(?P<rate>{num})",
        portfolio_label="Portfolio",
        contract_label="Vertrag",
        account_currency_re=re.compile(r"^(?:Kontowährung|Währung)\s*:?\s+(?P<ccy>[A-Z]{3})$"),
    ),
    Language.FRENCH: LocaleRules(
        language=Language.FRENCH,
        date_pattern=r"\d{2}[./]\d{2}[./]\d{4}",
        date_formats=("%d.%m.%Y", "%d/%m/%Y"),
        decimal_sep=",",
        group_seps=" \u00a0\u202f'’",
        kind_patterns=FRENCH_KIND_PATTERNS,
        ignore_re=re.compile(r"^(?:Solde|Report|Total)\b", re.IGNORECASE),
        trade_template=(
            r"\b(?:Achat|Vente)\s+(?P<qty>{num})\s+parts?\s+"
            r"(?:à|a|@)\s+(?:(?P<ccy>[A-Z]{{3}})\s+)?(?P<price>{num})"
        ),
        fx_template=r"\bTaux\s+de\s+conversion\s+(?P<base>[A-Z]{{3}})/(?P<quote>[A-Z]{{3}})\s+(?P<rate>{num})",
        portfolio_label="Portefeuille",
        contract_label="Contrat",
        account_currency_re=re.compile(r"^(?:Monnaie\s+du\s+compte|Monnaie)\s*:?\s+(?P<ccy>[A-Z]{3})$"),
    ),
}


LANGUAGE_ANCHORS: Dict[Language, Tuple[str, ...]] = {
    Language.GERMAN: (
        "Kontoauszug",
        "Börsenabrechnung",
        "Dividendenausschüttung",
        "Verwaltungsgebühr",
        "Zinsgutschrift",
        "Zahlungseingang",
        "der WIR Bank",
        "Valuta",
    ),
    Language.FRENCH: (
        "Relevé de compte",
        "Opération de bourse",
        "Avis de dividende",
        "Avis de versement",
        "de la Banque WIR",
        "Portefeuille",
        "Valeur",
    ),
}

# (anchor, statement type, kind for single-transaction advices); checked in order.
STATEMENT_ANCHORS: Dict[Language, Tuple[Tuple[str, StatementType, Optional[Kind]], ...]] = {
    Language.GERMAN: (
        ("Kontoauszug", StatementType.ACCOUNT_STATEMENT, None),
        ("Börsenabrechnung - Verkauf", StatementType.TRADE_ADVICE, Kind.SELL),
        ("Börsenabrechnung - Kauf", StatementType.TRADE_ADVICE, Kind.BUY),
        ("Rückerstattung Quellensteuer", StatementType.DIVIDEND_ADVICE, Kind.TAX_REFUND),
        ("Dividendenausschüttung", StatementType.DIVIDEND_ADVICE, Kind.DIVIDEND),
        ("Verwaltungsgebühr", StatementType.FEE_ADVICE, Kind.FEE),
        ("Zinsgutschrift", StatementType.INTEREST_ADVICE, Kind.INTEREST),
        ("Zahlungseingang", StatementType.DEPOSIT_ADVICE, Kind.DEPOSIT),
    ),
    Language.FRENCH: (
        ("Relevé de compte", StatementType.ACCOUNT_STATEMENT, None),
        ("Opération de bourse - Vente", StatementType.TRADE_ADVICE, Kind.SELL),
        ("Opération de bourse - Achat", StatementType.TRADE_ADVICE, Kind.BUY),
        ("Remboursement d'impôt à la source", StatementType.DIVIDEND_ADVICE, Kind.TAX_REFUND),
        ("Avis de dividende", StatementType.DIVIDEND_ADVICE, Kind.DIVIDEND),
        ("Commission", StatementType.FEE_ADVICE, Kind.FEE),
        ("Intérêts", StatementType.INTEREST_ADVICE, Kind.INTEREST),
        ("Avis de versement", StatementType.DEPOSIT_ADVICE, Kind.DEPOSIT),
    ),
}

REJECTED_ANCHORS = ("Korrektur Dividendenausschüttung", "Correction de l'avis de dividende")


@dataclass(frozen=True)
class Classification:
    language: Language
    statement_type: StatementType
    kind: Optional[Kind] = None


def detect_language(text: str) -> Language:
    hits = {
        language: sum(1 for anchor in anchors if anchor in text)
        for language, anchors in LANGUAGE_ANCHORS.items()
    }
    german, french = hits[Language.GERMAN], hits[Language.FRENCH]
    if german == 0 and french == 0:
        raise UnrecognizedDocument("No German or French anchor phrase found")
    return Language.FRENCH if french > german else Language.GERMAN


def classify_document(pages: Sequence[str], author: Optional[str] = None) -> Classification:
    if not pages:
        raise UnrecognizedDocument("Document has no pages")
    if author and author.strip() != VIAC_AUTHOR:
        raise UnrecognizedDocument(f"PDF author is {author!r}, not {VIAC_AUTHOR}")

    first = "\n".join(squeeze_ws(ln) for ln in pages[0].splitlines())
    language = detect_language(first)
    for rejected in REJECTED_ANCHORS:
        if rejected in first:
            raise UnrecognizedDocument(f"Unsupported document type ({rejected})")
    for anchor, statement_type, kind in STATEMENT_ANCHORS[language]:
        if anchor in first:
            return Classification(language=language, statement_type=statement_type, kind=kind)
    raise UnrecognizedDocument(f"No statement type anchor found for language {language.value}")


def fixed_or_unparseable(value: Union[Decimal, str], context: str) -> Decimal:
    try:
        return to_fixed(value)
    except ValueError as exc:
        raise UnparseableLine(str(exc), context)


def parse_decimal(raw: str, rules: LocaleRules, context: str) -> Decimal:
    token = raw.strip()
    negative = False
    if token[:1] in ("-", "+"):
        negative = token[0] == "-"
        token = token[1:]
    elif token.endswith("-"):
        negative = True
        token = token[:-1]
    for sep in rules.group_seps:
        token = token.replace(sep, "")
    alternate = "," if rules.decimal_sep == "." else "."
    if rules.decimal_sep in token:
        token = token.replace(rules.decimal_sep, ".")
    elif alternate in token:
        token = token.replace(alternate, ".")
    if not re.fullmatch(r"\d+(?:\.\d+)?", token):
        raise UnparseableLine(f"Invalid number token {raw!r}", context)
    value = fixed_or_unparseable(token, context)
    return -value if negative else value


def parse_date(raw: str, rules: LocaleRules, context: str) -> date:
    for fmt in rules.date_formats:
        try:
            return datetime.strptime(raw.strip(), fmt).date()
        except ValueError:
            continue
    raise UnparseableLine(f"Invalid date token {raw!r}", context)


def match_kind(description: str, language: Language) -> Optional[Kind]:
    for kind, pattern in LOCALES[language].kind_patterns:
        if pattern.search(description):
            return kind
    return None


def _security_header(line: str) -> Optional[Tuple[str, str]]:
    m = ISIN_RE.search(line)
    if not m:
        return None
    name = squeeze_ws(line[: m.start()] + " " + line[m.end() :]).strip(" -–|:")
    return m.group("isin"), name


def extract_lines(pages: Sequence[str], language: Language) -> Iterator[RawLine]:
    """Yield one RawLine per dated statement row.

    Calling it again restarts from the first page. Portfolio and security
    headers are tracked across pages; indented text directly under a row is
    merged into that row's description.
    """
    rules = LOCALES[language]
    line_re = rules.line_re
    date_start_re = rules.date_start_re

    portfolio: Optional[str] = None
    account_number: Optional[str] = None
    default_currency = DEFAULT_CURRENCY
    section_isin: Optional[str] = None
    section_name: Optional[str] = None

    for page_no, text in enumerate(pages, start=1):
        pending: Optional[RawLine] = None
        for line_no, raw in enumerate(text.splitlines(), start=1):
            expanded = raw.replace("\t", "  ").rstrip()
            line = squeeze_ws(expanded)
            if not line or PAGE_FOOTER_RE.match(line):
                if pending is not None:
                    yield pending
                    pending = None
                continue

            m_row = line_re.match(expanded)
            if m_row:
                if pending is not None:
                    yield pending
                pending = RawLine(
                    page=page_no,
                    line_no=line_no,
                    date_token=m_row.group("date"),
                    description=squeeze_ws(m_row.group("desc")),
                    amount_token=m_row.group("amount"),
                    currency=m_row.group("ccy"),
                    balance_token=m_row.group("balance"),
                    portfolio=portfolio,
                    account_number=account_number,
                    default_currency=default_currency,
                    section_isin=section_isin,
                    section_name=section_name,
                )
                continue

            m_portfolio = rules.portfolio_re.match(line)
            m_contract = rules.contract_re.match(line)
            m_currency = rules.account_currency_re.match(line)
            if m_portfolio or m_contract or m_currency:
                if pending is not None:
                    yield pending
                    pending = None
                if m_portfolio:
                    portfolio = m_portfolio.group("value")
                    section_isin = section_name = None
                elif m_contract:
                    account_number = m_contract.group("value")
                else:
                    default_currency = m_currency.group("ccy")
                continue

            indented = expanded[:1].isspace()
            header = None if indented else _security_header(line)
            if header is not None:
                if pending is not None:
                    yield pending
                    pending = None
                section_isin, section_name = header
                logger.debug("page %s line %s: security section %s", page_no, line_no, section_isin)
                continue

            if pending is not None and indented and not date_start_re.match(line):
                pending = replace(pending, description=f"{pending.description} {line}")
                continue

            if pending is not None:
                yield pending
                pending = None
            logger.debug("page %s line %s: dropped %r", page_no, line_no, line)

        if pending is not None:
            yield pending


def _inline_security_name(description: str, isin_match: re.Match, anchors: Sequence[Optional[re.Match]]) -> Optional[str]:
    start = 0
    for anchor in anchors:
        if anchor is not None and anchor.end() <= isin_match.start():
            start = max(start, anchor.end())
    name = squeeze_ws(description[start : isin_match.start()]).strip(" -–|:,")
    return name or None


def parse_line(
    raw: RawLine,
    language: Language,
    path: str = "<text>",
    doc_index: int = 0,
) -> Optional[Transaction]:
    """Map one statement row to a Transaction.

    Returns ``None`` for informational rows (carried balances, totals).
    Raises UnparseableLine when the row is not a known transaction or a
    required field is missing.
    """
    rules = LOCALES[language]
    context = raw.context
    description = raw.description
    if rules.ignore_re.match(description):
        return None

    kind = match_kind(description, language)
    if kind is None:
        raise UnparseableLine("No transaction pattern matches", context, description)
    if raw.portfolio is None:
        raise UnparseableLine(f"{kind.value} outside any portfolio section", context, description)

    tx_date = parse_date(raw.date_token, rules, context)
    magnitude = abs(parse_decimal(raw.amount_token, rules, context))
    currency = raw.currency or raw.default_currency

    m_kind = None
    for candidate, pattern in rules.kind_patterns:
        if candidate is kind:
            m_kind = pattern.search(description)
            break
    m_trade = rules.trade_re.search(description) if kind.is_trade else None
    m_fx = rules.fx_re.search(description)

    isin: Optional[str] = None
    security_name: Optional[str] = None
    if kind.references_security:
        m_isin = ISIN_RE.search(description)
        if m_isin:
            isin = m_isin.group("isin")
            security_name = _inline_security_name(description, m_isin, (m_kind, m_trade, m_fx))
            if security_name is None and raw.section_isin == isin:
                security_name = raw.section_name
        else:
            isin, security_name = raw.section_isin, raw.section_name
        if isin is None:
            raise UnparseableLine(f"{kind.value} without security reference", context, description)

    quantity: Optional[Decimal] = None
    reported: Optional[Decimal] = None
    price: Optional[Decimal] = None
    trade_currency: Optional[str] = None
    gross: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    if kind.is_trade:
        if m_trade is None:
            raise UnparseableLine(f"{kind.value} without quantity and price", context, description)
        reported = abs(parse_decimal(m_trade.group("qty"), rules, context))
        price = abs(parse_decimal(m_trade.group("price"), rules, context))
        trade_currency = m_trade.group("ccy") or currency
        gross = magnitude
        if trade_currency != currency:
            if m_fx is None or m_fx.group("base") != trade_currency or m_fx.group("quote") != currency:
                raise UnparseableLine(
                    f"Price in {trade_currency} but booked in {currency} without exchange rate",
                    context,
                    description,
                )
            exchange_rate = parse_decimal(m_fx.group("rate"), rules, context)
            price = fixed_or_unparseable(price * exchange_rate, context)
        if kind is Kind.SELL:
            reported = -reported
        quantity = reported

    return Transaction(
        kind=kind,
        date=tx_date,
        portfolio=raw.portfolio,
        amount=magnitude * kind.cash_sign,
        currency=currency,
        language=language,
        isin=isin,
        security_name=security_name,
        quantity=quantity,
        reported_quantity=reported,
        price=price,
        trade_currency=trade_currency,
        gross_amount=gross,
        exchange_rate=exchange_rate,
        account_number=raw.account_number,
        description=description,
        source=Source(path=path, page=raw.page, line=raw.line_no),
        order=(doc_index, raw.page * 100000 + raw.line_no),
    )


@dataclass(frozen=True)
class AdviceLabels:
    price: str
    dividend_rate: str
    gross: str
    exchange_rate: str
    stamp_duty: str
    value_date_re: Pattern[str]
    interest_date_re: Pattern[str]
    interest_amount: str
    quantity_marker: Optional[str]


ADVICE_LABELS: Dict[Language, AdviceLabels] = {
    Language.GERMAN: AdviceLabels(
        price="Kurs:",
        dividend_rate="Ausschüttung:",
        gross="Betrag",
        exchange_rate="Umrechnungskurs",
        stamp_duty="Stempelsteuer",
        value_date_re=re.compile(r"^Valuta\s+(?P<date>\d{2}\.\d{2}\.\d{4})$"),
        interest_date_re=re.compile(r"^Am\s+(?P<date>\d{2}\.\d{2}\.\d{4})\s+haben wir Ihrem Konto gutgeschrieben:?$"),
        interest_amount="Verrechneter Betrag",
        quantity_marker="Ant",
    ),
    Language.FRENCH: AdviceLabels(
        price="Cours:",
        dividend_rate="Dividende distribué:",
        gross="Montant",
        exchange_rate="Taux de conversion",
        stamp_duty="Droits de timbre",
        value_date_re=re.compile(r"^Valeur\s+(?P<date>\d{2}\.\d{2}\.\d{4})$"),
        interest_date_re=re.compile(
            r"^Nous avons crédité le\s+(?P<date>\d{2}\.\d{2}\.\d{4})\s+les intérêts suivants:?$"
        ),
        interest_amount="Montant crédité",
        quantity_marker=None,
    ),
}


@dataclass
class AdviceReader:
    """Label-driven field lookup over the squeezed lines of an advice's first page."""

    lines: List[str]
    rules: LocaleRules
    labels: AdviceLabels
    path: str

    def context(self, idx: int) -> str:
        return f"{self.path} page 1 line {idx + 1}"

    def value_after(self, label: str) -> Optional[str]:
        inline = re.compile(rf"^{re.escape(label)}\s*:?\s+(?P<value>\S+)$")
        for idx, line in enumerate(self.lines):
            if line in (label, f"{label}:") and idx + 1 < len(self.lines):
                return self.lines[idx + 1]
            m = inline.match(line)
            if m:
                return m.group("value")
        return None

    def _money(self, text: str, idx: int) -> Optional[Tuple[str, Decimal]]:
        m = re.fullmatch(rf"(?P<ccy>[A-Z]{{3}})\s+(?P<num>{self.rules.signed_number_pattern})", text)
        if m:
            return m.group("ccy"), parse_decimal(m.group("num"), self.rules, self.context(idx))
        return None

    def money_following(self, idx: int) -> Optional[Tuple[str, Decimal]]:
        number_re = re.compile(rf"^{self.rules.signed_number_pattern}$")
        currency: Optional[str] = None
        for j in range(idx + 1, min(idx + 5, len(self.lines))):
            candidate = self.lines[j]
            money = self._money(candidate, j)
            if money is not None:
                return money
            if CCY_RE.match(candidate):
                currency = candidate
            elif currency is not None and number_re.match(candidate):
                return currency, parse_decimal(candidate, self.rules, self.context(j))
        return None

    def money(self, title: str) -> Optional[Tuple[str, Decimal]]:
        for idx, line in enumerate(self.lines):
            if line == title:
                found = self.money_following(idx)
                if found is not None:
                    return found
            elif line.startswith(title + " "):
                found = self._money(line[len(title) :].strip(), idx)
                if found is not None:
                    return found
        return None

    def exchange_rate(self) -> Optional[Tuple[str, str, Decimal, Tuple[str, Decimal]]]:
        label = re.escape(self.labels.exchange_rate)
        head_re = re.compile(
            rf"^{label}\s+(?P<base>[A-Z]{{3}})/(?P<quote>[A-Z]{{3}})(?:\s+(?P<rate>{self.rules.number_pattern}))?$"
        )
        for idx, line in enumerate(self.lines):
            m = head_re.match(line)
            if not m:
                continue
            rate_idx = idx
            rate_raw = m.group("rate")
            if rate_raw is None and idx + 1 < len(self.lines):
                rate_idx = idx + 1
                rate_raw = self.lines[rate_idx]
            if rate_raw is None:
                raise UnparseableLine("Exchange rate value missing", self.context(idx), line)
            rate = parse_decimal(rate_raw, self.rules, self.context(rate_idx))
            converted = self.money_following(rate_idx)
            if converted is None:
                raise UnparseableLine("Converted amount missing after exchange rate", self.context(idx), line)
            return m.group("base"), m.group("quote"), rate, converted
        return None

    def dated_money(self, date_re: Pattern[str], title: Optional[str] = None) -> Tuple[date, Tuple[str, Decimal]]:
        for idx, line in enumerate(self.lines):
            m = date_re.match(line)
            if not m:
                continue
            value_date = parse_date(m.group("date"), self.rules, self.context(idx))
            booked = self.money(title) if title else self.money_following(idx)
            if booked is None:
                raise UnparseableLine("Booked amount missing", self.context(idx), line)
            return value_date, booked
        raise UnparseableLine("Value date missing", self.path)

    def security(self) -> Tuple[str, str, Decimal]:
        for idx, line in enumerate(self.lines):
            if not line.startswith("ISIN"):
                continue
            rest = line[4:].strip(" :")
            isin = rest if BARE_ISIN_RE.match(rest) else (self.lines[idx + 1] if idx + 1 < len(self.lines) else "")
            if not BARE_ISIN_RE.match(isin):
                raise UnparseableLine("Invalid ISIN", self.context(idx), line)
            marker = self.labels.quantity_marker
            if marker is not None:
                for j, candidate in enumerate(self.lines):
                    if candidate.rstrip(".") == marker and 0 < j < len(self.lines) - 1:
                        qty = parse_decimal(self.lines[j - 1], self.rules, self.context(j - 1))
                        return isin, self.lines[j + 1], abs(qty)
                raise UnparseableLine(f"Share count before {marker!r} missing", self.context(idx))
            if idx < 2:
                raise UnparseableLine("Share count and name missing before ISIN", self.context(idx))
            qty = parse_decimal(self.lines[idx - 2], self.rules, self.context(idx - 2))
            return isin, self.lines[idx - 1], abs(qty)
        raise UnparseableLine("ISIN missing", self.path)


def parse_advice(
    pages: Sequence[str],
    classification: Classification,
    path: str = "<text>",
    doc_index: int = 0,
) -> Transaction:
    language = classification.language
    kind = classification.kind
    if kind is None:
        raise UnparseableLine("Advice without transaction kind", path)
    rules = LOCALES[language]
    labels = ADVICE_LABELS[language]
    reader = AdviceReader(
        lines=[squeeze_ws(ln) for ln in pages[0].splitlines() if squeeze_ws(ln)],
        rules=rules,
        labels=labels,
        path=path,
    )

    portfolio = reader.value_after(rules.portfolio_label)
    if not portfolio:
        raise UnparseableLine("Portfolio number missing", path)
    account_number = reader.value_after(rules.contract_label)

    if kind is Kind.INTEREST:
        value_date, booked = reader.dated_money(labels.interest_date_re, labels.interest_amount)
    else:
        value_date, booked = reader.dated_money(labels.value_date_re)
    booked_ccy, booked_amount = booked
    booked_amount = abs(booked_amount)

    isin = name = None
    reported = quantity = price = gross = exchange_rate = None
    trade_currency: Optional[str] = None
    taxes = ZERO
    if statement_has_security(classification):
        isin, name, reported = reader.security()
        gross_money = reader.money(labels.gross)
        if gross_money is None:
            raise UnparseableLine(f"{labels.gross!r} amount missing", path)
        gross_ccy, gross = gross_money[0], abs(gross_money[1])
        fx = reader.exchange_rate()
        if fx is not None:
            base, quote, exchange_rate, _converted = fx
            if base != gross_ccy or quote != booked_ccy:
                raise UnparseableLine(f"Exchange rate {base}/{quote} does not match {gross_ccy}/{booked_ccy}", path)
            gross = fixed_or_unparseable(gross * exchange_rate, path)
        elif gross_ccy != booked_ccy:
            raise UnparseableLine(f"Gross in {gross_ccy} but booked in {booked_ccy} without exchange rate", path)

        if kind.is_trade:
            price_money = reader.money(labels.price)
            if price_money is None:
                raise UnparseableLine(f"{labels.price!r} missing", path)
            trade_currency, price = price_money[0], abs(price_money[1])
            if exchange_rate is not None:
                price = fixed_or_unparseable(price * exchange_rate, path)
            stamp = reader.money(labels.stamp_duty)
            if stamp is not None:
                taxes = abs(stamp[1])
            quantity = reported if kind is Kind.BUY else -reported
            reported = quantity
        else:
            rate_money = reader.money(labels.dividend_rate)
            trade_currency = rate_money[0] if rate_money is not None else gross_ccy

    if kind is Kind.TAX_REFUND:
        # refunds are account bookings; the security stays on the dividend
        isin = name = None

    return Transaction(
        kind=kind,
        date=value_date,
        portfolio=portfolio,
        amount=booked_amount * kind.cash_sign,
        currency=booked_ccy,
        language=language,
        isin=isin,
        security_name=name,
        quantity=quantity,
        reported_quantity=reported,
        price=price,
        trade_currency=trade_currency,
        gross_amount=gross,
        taxes=taxes,
        exchange_rate=exchange_rate,
        account_number=account_number,
        description=classification.statement_type.value,
        source=Source(path=path),
        order=(doc_index, 0),
    )


def statement_has_security(classification: Classification) -> bool:
    return classification.statement_type in (StatementType.TRADE_ADVICE, StatementType.DIVIDEND_ADVICE)


@dataclass
class ParsedDocument:
    path: str
    language: Language
    statement_type: StatementType
    transactions: List[Transaction] = field(default_factory=list)
    errors: List[UnparseableLine] = field(default_factory=list)
    lines_seen: int = 0

    @property
    def partially_parsed(self) -> bool:
        return bool(self.errors)


def parse_document(
    pages: Sequence[str],
    path: str = "<text>",
    author: Optional[str] = None,
    doc_index: int = 0,
) -> ParsedDocument:
    classification = classify_document(pages, author)
    logger.debug("%s: %s %s", path, classification.language.value, classification.statement_type.value)
    document = ParsedDocument(
        path=path,
        language=classification.language,
        statement_type=classification.statement_type,
    )

    if classification.statement_type is not StatementType.ACCOUNT_STATEMENT:
        document.lines_seen = 1
        try:
            document.transactions.append(parse_advice(pages, classification, path, doc_index))
        except UnparseableLine as exc:
            logger.warning("%s: %s", path, exc)
            document.errors.append(exc)
        return document

    for raw in extract_lines(pages, classification.language):
        document.lines_seen += 1
        try:
            tx = parse_line(raw, classification.language, path, doc_index)
        except UnparseableLine as exc:
            logger.warning("%s: %s", path, exc)
            document.errors.append(exc)
            continue
        if tx is not None:
            document.transactions.append(tx)
    return document


def read_pdf_text(pdf_path: Path) -> Tuple[List[str], Optional[str]]:
    reader = PdfReader(str(pdf_path))
    if not reader.pages:
        raise UnrecognizedDocument("PDF has no pages")
    author = reader.metadata.author if reader.metadata is not None else None
    pages: List[str] = []
    for page_idx, page in enumerate(reader.pages, start=1):
        # Layout extraction keeps the statement columns apart.
        text = page.extract_text(extraction_mode="layout") or page.extract_text() or ""
        logger.debug("=== %s page %s ===\n%s", pdf_path.name, page_idx, text)
        pages.append(text)
    return pages, author


def parse_statement(pdf_path: Path, doc_index: int = 0) -> ParsedDocument:
    pages, author = read_pdf_text(pdf_path)
    return parse_document(pages, path=str(pdf_path), author=author, doc_index=doc_index)
