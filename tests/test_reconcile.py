"""Tests for share quantity reconciliation."""

from __future__ import annotations

import random
from datetime import date, timedelta
from decimal import Decimal

import pytest

from tests.conftest import ISIN_SP500, ISIN_SPI, make_tx
from viac_model import CLAMPED_SALE, QUANT, ZERO, InvalidReconciliation, Kind
from viac_reconcile import ShareReconciler


def buy(day: date, gross: str, price: str, order: int = 0, **kwargs):
    return make_tx(Kind.BUY, day, gross, isin=kwargs.pop("isin", ISIN_SPI), price=price, gross=gross, order=order, **kwargs)


def sell(day: date, gross: str, price: str, order: int = 0, **kwargs):
    return make_tx(Kind.SELL, day, gross, isin=kwargs.pop("isin", ISIN_SPI), price=price, gross=gross, order=order, **kwargs)


class TestAdjustedQuantity:
    """Tests for quantity = gross amount / price."""

    def test_exact_division(self) -> None:
        """1000 at 100 is exactly 10 shares."""
        tx = make_tx(Kind.BUY, date(2023, 1, 5), "1000.00000", isin=ISIN_SPI, price="100.00000")
        assert ShareReconciler.adjusted_quantity(tx) == Decimal("10.00000")

    def test_uses_gross_before_fees(self) -> None:
        """Stamp duty does not buy shares."""
        tx = make_tx(Kind.BUY, date(2023, 1, 5), "1001.50", isin=ISIN_SPI, price="100", gross="1000")
        assert ShareReconciler.adjusted_quantity(tx) == Decimal("10.00000")

    def test_rounds_half_even(self) -> None:
        """The quotient is rounded to five digits."""
        tx = buy(date(2023, 1, 5), "100", "3")
        assert ShareReconciler.adjusted_quantity(tx) == Decimal("33.33333")

    def test_missing_price(self) -> None:
        """A trade without a price cannot be reconciled."""
        tx = make_tx(Kind.BUY, date(2023, 1, 5), "100", isin=ISIN_SPI)
        with pytest.raises(InvalidReconciliation):
            ShareReconciler.adjusted_quantity(tx)

    def test_zero_amount(self) -> None:
        """A buy that yields no shares is invalid."""
        tx = buy(date(2023, 1, 5), "0", "100")
        with pytest.raises(InvalidReconciliation):
            ShareReconciler.adjusted_quantity(tx)


class TestReconcile:
    """Tests for the chronological holding walk."""

    def test_oversized_sale_clamped(self) -> None:
        """An oversized sale is clamped to the holding."""
        txs = [
            buy(date(2023, 1, 5), "1000.00000", "100.00000"),
            sell(date(2023, 6, 15), "1000.00300", "100.00000"),
        ]
        result = ShareReconciler().reconcile(txs)
        assert result.transactions[1].quantity == Decimal("-10.00000")
        assert result.holdings[("1", ISIN_SPI)] == ZERO
        assert [w.code for w in result.warnings] == [CLAMPED_SALE]
        assert result.warnings[0].isin == ISIN_SPI

    def test_partial_sale(self) -> None:
        """A smaller sale leaves the rest of the holding."""
        txs = [buy(date(2023, 1, 5), "1000", "100"), sell(date(2023, 2, 1), "440", "110")]
        result = ShareReconciler().reconcile(txs)
        assert result.transactions[1].quantity == Decimal("-4.00000")
        assert result.holdings[("1", ISIN_SPI)] == Decimal("6.00000")
        assert result.warnings == []

    def test_dust_residual_snaps_to_zero(self) -> None:
        """A sale leaving less than the dust threshold liquidates fully."""
        txs = [buy(date(2023, 1, 5), "1000", "100"), sell(date(2023, 2, 1), "999.995", "100")]
        result = ShareReconciler().reconcile(txs)
        assert result.transactions[1].quantity == Decimal("-10.00000")
        assert result.holdings[("1", ISIN_SPI)] == ZERO
        assert result.warnings[0].code == CLAMPED_SALE

    def test_dust_threshold_zero_keeps_residual(self) -> None:
        """With snapping disabled the residual stays."""
        txs = [buy(date(2023, 1, 5), "1000", "100"), sell(date(2023, 2, 1), "999.995", "100")]
        result = ShareReconciler(dust_threshold=ZERO).reconcile(txs)
        assert result.holdings[("1", ISIN_SPI)] == Decimal("0.00005")

    def test_no_clamp_rejects_oversized_sale(self) -> None:
        """With clamping off the sale is rejected and the holding kept."""
        txs = [buy(date(2023, 1, 5), "1000", "100"), sell(date(2023, 2, 1), "1000.003", "100")]
        result = ShareReconciler(clamp_oversized_sales=False).reconcile(txs)
        assert len(result.transactions) == 1
        assert len(result.rejected) == 1
        assert result.holdings[("1", ISIN_SPI)] == Decimal("10.00000")

    def test_sale_without_holding(self) -> None:
        """Selling what was never bought is clamped to zero and kept."""
        tx = make_tx(Kind.SELL, date(2023, 2, 1), "100.00", isin=ISIN_SPI, price="10.00", quantity="-10")
        result = ShareReconciler().reconcile([tx])
        (sold,) = result.transactions
        assert sold.quantity == ZERO
        assert result.rejected == []
        assert [w.code for w in result.warnings] == [CLAMPED_SALE]
        assert result.holdings[("1", ISIN_SPI)] == ZERO

    def test_sale_without_holding_rejected_without_clamp(self) -> None:
        """With clamping off an uncovered sale is rejected."""
        result = ShareReconciler(clamp_oversized_sales=False).reconcile([sell(date(2023, 2, 1), "100", "10")])
        assert result.transactions == []
        assert isinstance(result.rejected[0][1], InvalidReconciliation)

    def test_chronological_order(self) -> None:
        """Input order does not matter, dates do."""
        txs = [sell(date(2023, 2, 1), "500", "100"), buy(date(2023, 1, 5), "1000", "100")]
        result = ShareReconciler().reconcile(txs)
        assert [tx.kind for tx in result.transactions] == [Kind.BUY, Kind.SELL]
        assert result.holdings[("1", ISIN_SPI)] == Decimal("5.00000")

    def test_same_day_ties_keep_document_order(self) -> None:
        """Same-date trades follow their position in the document."""
        day = date(2023, 1, 5)
        txs = [sell(day, "1000", "100", order=2), buy(day, "1000", "100", order=1)]
        result = ShareReconciler().reconcile(txs)
        assert result.rejected == []
        assert result.holdings[("1", ISIN_SPI)] == ZERO

    def test_holdings_per_portfolio_and_security(self) -> None:
        """Holdings do not leak between portfolios or securities."""
        txs = [
            buy(date(2023, 1, 5), "1000", "100", portfolio="1"),
            buy(date(2023, 1, 5), "500", "50", portfolio="2"),
            buy(date(2023, 1, 5), "300", "30", isin=ISIN_SP500),
            sell(date(2023, 2, 1), "2000", "100", portfolio="2"),
        ]
        result = ShareReconciler().reconcile(txs)
        assert result.holdings[("1", ISIN_SPI)] == Decimal("10.00000")
        assert result.holdings[("2", ISIN_SPI)] == ZERO
        assert result.holdings[("1", ISIN_SP500)] == Decimal("10.00000")
        assert len(result.warnings) == 1

    def test_cash_transactions_pass_through(self) -> None:
        """Dividends, deposits and fees keep their values."""
        dividend = make_tx(Kind.DIVIDEND, date(2023, 3, 1), "5", isin=ISIN_SPI)
        fee = make_tx(Kind.FEE, date(2023, 3, 1), "1")
        result = ShareReconciler().reconcile([dividend, fee])
        assert result.transactions == [dividend, fee]
        assert result.holdings == {}

    def test_disabled_passes_reported_quantities(self) -> None:
        """Without adjustment the printed quantities are exported."""
        txs = [
            make_tx(Kind.BUY, date(2023, 1, 5), "1000", isin=ISIN_SPI, price="99.9", quantity="10.01"),
            make_tx(Kind.SELL, date(2023, 2, 1), "1100", isin=ISIN_SPI, price="100", quantity="-11"),
        ]
        result = ShareReconciler(enabled=False).reconcile(txs)
        assert [tx.quantity for tx in result.transactions] == [Decimal("10.01"), Decimal("-11")]
        assert result.holdings[("1", ISIN_SPI)] == Decimal("-0.99")
        assert result.warnings == []


class TestReconcileProperties:
    """Properties over generated trade sequences."""

    @pytest.mark.parametrize("seed", range(10))
    def test_holding_never_negative_and_liquidation_exact(self, seed) -> None:
        """Running holdings stay >= 0 and a final full sale ends at zero."""
        rng = random.Random(seed)
        day = date(2023, 1, 1)
        txs = []
        for i in range(30):
            day += timedelta(days=1)
            price = Decimal(rng.randint(1000, 20000)) / 100
            gross = Decimal(rng.randint(100, 500000)) / 100
            maker = buy if rng.random() < 0.6 else sell
            txs.append(maker(day, str(gross), str(price), order=i))
        txs.append(sell(day + timedelta(days=1), "10000000", "1", order=99))

        result = ShareReconciler().reconcile(txs)
        running = ZERO
        for tx in result.transactions:
            running += tx.quantity
            assert running >= 0
        assert running == ZERO
        assert result.holdings[("1", ISIN_SPI)] == ZERO

    @pytest.mark.parametrize("seed", range(10))
    def test_buy_quantity_times_price_matches_amount(self, seed) -> None:
        """quantity x price reproduces the gross amount within rounding of the quantity."""
        rng = random.Random(seed)
        for _ in range(50):
            price = Decimal(rng.randint(1, 500000)) / 1000
            gross = Decimal(rng.randint(1, 10000000)) / 100
            quantity = ShareReconciler.adjusted_quantity(buy(date(2023, 1, 5), str(gross), str(price)))
            assert abs(quantity * price - gross) <= price * QUANT / 2

    @pytest.mark.parametrize("price", ["0.50000", "1.00000", "1.25000", "2.00000"])
    def test_buy_within_one_unit_for_small_prices(self, price) -> None:
        """For prices up to 2 the product is within one unit of the amount."""
        rng = random.Random(price)
        unit = Decimal(price)
        for _ in range(100):
            gross = Decimal(rng.randint(1, 10000000)) / 100
            quantity = ShareReconciler.adjusted_quantity(buy(date(2023, 1, 5), str(gross), price))
            assert abs((quantity * unit).quantize(QUANT) - gross) <= QUANT
