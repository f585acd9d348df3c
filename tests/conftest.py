"""Pytest configuration for the VIAC converter tests.

Statement fixtures are plain page texts shaped like the layout-mode output of
the PDF reader, so no binary PDFs are needed.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from viac_model import Kind, Language, Source, Transaction

PROJECT_ROOT = Path(__file__).parent.parent

ISIN_SPI = "CH0123456789"
ISIN_SP500 = "IE00B5BMR087"


def page(*lines: str) -> str:
    return "\n".join(lines) + "\n"


GERMAN_STATEMENT = page(
    "Kontoauszug                                          der WIR Bank",
    "Vertrag 1234567",
    "Portfolio 1",
    "Kontowährung CHF",
    "",
    "Datum       Beschreibung                               Betrag           Saldo",
    "02.01.2023  Einzahlung                               1'000.00 CHF     1'000.00",
    "            Überweisung Säule 3a",
    "UBS ETF SPI                                ISIN CH0123456789",
    "05.01.2023  Kauf 10.000 Ant. zu CHF 100.00           1'000.00 CHF         0.00",
    "20.03.2023  Dividende                                   12.50 CHF        12.50",
    "31.03.2023  Verwaltungsgebühr                            1.25 CHF        11.25",
    "31.03.2023  Zinsen                                       0.10 CHF        11.35",
    "15.06.2023  Verkauf 10.000 Ant. zu CHF 110.00        1'100.00 CHF     1'111.35",
    "",
    "Seite 1 von 1",
)

FRENCH_STATEMENT = page(
    "Relevé de compte                                     de la Banque WIR",
    "Contrat 1234567",
    "Portefeuille 1",
    "Monnaie du compte CHF",
    "",
    "Date        Description                                Montant          Solde",
    "02.01.2023  Versement                                1 000,00 CHF     1 000,00",
    "            Virement pilier 3a",
    "UBS ETF SPI                                ISIN CH0123456789",
    "05.01.2023  Achat 10,000 parts à CHF 100,00          1 000,00 CHF         0,00",
    "20.03.2023  Dividende                                   12,50 CHF        12,50",
    "31.03.2023  Frais de gestion                             1,25 CHF        11,25",
    "31.03.2023  Intérêts                                     0,10 CHF        11,35",
    "15.06.2023  Vente 10,000 parts à CHF 110,00          1 100,00 CHF     1 111,35",
    "",
    "Page 1 de 1",
)

GERMAN_BUY_ADVICE = page(
    "Börsenabrechnung - Kauf",
    "der WIR Bank",
    "Vertrag 1234567",
    "Portfolio 1",
    "10.000",
    "Ant.",
    "UBS ETF SPI",
    "ISIN: CH0123456789",
    "Kurs: CHF 100.00",
    "Betrag CHF 1'000.00",
    "Stempelsteuer CHF 1.50",
    "Valuta 05.01.2023",
    "CHF 1'001.50",
)

FRENCH_BUY_ADVICE = page(
    "Opération de bourse - Achat",
    "de la Banque WIR",
    "Contrat 1234567",
    "Portefeuille 1",
    "10,000",
    "UBS ETF SPI",
    "ISIN: CH0123456789",
    "Cours: CHF 100,00",
    "Montant CHF 1 000,00",
    "Droits de timbre CHF 1,50",
    "Valeur 05.01.2023",
    "CHF 1 001,50",
)

GERMAN_FX_DIVIDEND_ADVICE = page(
    "Dividendenausschüttung",
    "der WIR Bank",
    "Portfolio 1",
    "25.000",
    "Ant.",
    "iShares Core S&P 500",
    "ISIN: IE00B5BMR087",
    "Ausschüttung: USD 1.50",
    "Betrag",
    "USD",
    "37.50",
    "Umrechnungskurs USD/CHF 0.90",
    "CHF 33.75",
    "Valuta 20.03.2023",
    "CHF 33.75",
)

GERMAN_INTEREST_ADVICE = page(
    "Zinsgutschrift",
    "der WIR Bank",
    "Portfolio 1",
    "Am 31.03.2023 haben wir Ihrem Konto gutgeschrieben:",
    "Verrechneter Betrag CHF 0.10",
)

CORRECTION_ADVICE = page(
    "Korrektur Dividendenausschüttung",
    "der WIR Bank",
    "Portfolio 1",
)

ECB_RATES_CSV = (
    "Date,USD,CHF,\n"
    "2023-01-04,1.0600,0.9900,\n"
    "2023-01-03,1.0500,0.9800,\n"
    "2023-01-02,1.0700,N/A,\n"
)


def make_tx(
    kind: Kind,
    day: date,
    amount: str,
    *,
    portfolio: str = "1",
    currency: str = "CHF",
    isin: Optional[str] = None,
    price: Optional[str] = None,
    quantity: Optional[str] = None,
    gross: Optional[str] = None,
    trade_currency: Optional[str] = None,
    order: int = 0,
    path: str = "doc.pdf",
) -> Transaction:
    """Build a Transaction with the cash sign applied by kind."""
    value = abs(Decimal(amount)) * kind.cash_sign
    return Transaction(
        kind=kind,
        date=day,
        portfolio=portfolio,
        amount=value,
        currency=currency,
        language=Language.GERMAN,
        isin=isin,
        price=Decimal(price) if price is not None else None,
        quantity=Decimal(quantity) if quantity is not None else None,
        reported_quantity=Decimal(quantity) if quantity is not None else None,
        gross_amount=Decimal(gross) if gross is not None else None,
        trade_currency=trade_currency,
        source=Source(path=path, page=1, line=order),
        order=(0, order),
    )


@pytest.fixture
def german_statement() -> List[str]:
    return [GERMAN_STATEMENT]


@pytest.fixture
def french_statement() -> List[str]:
    return [FRENCH_STATEMENT]


@pytest.fixture
def statement_texts() -> Dict[str, str]:
    """File name -> page text for a small input directory."""
    return {
        "2023_statement.pdf": GERMAN_STATEMENT,
        "advice_interest.pdf": GERMAN_INTEREST_ADVICE,
        "correction.pdf": CORRECTION_ADVICE,
    }


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Run without VIAC_* variables and away from any project .env file."""
    import os

    for name in list(os.environ):
        if name.startswith("VIAC_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path
