"""Share quantity reconciliation.

Statements print share counts with fewer digits than the cash amounts, so the
printed ``quantity * price`` rarely equals the booked amount and per-share
price charts jump around after import. The reconciler derives the quantity
from ``gross amount / price`` instead and keeps every holding non-negative,
ending a full liquidation at exactly zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from viac_model import (
    CLAMPED_SALE,
    QUANT,
    ZERO,
    InvalidReconciliation,
    Kind,
    RunWarning,
    Transaction,
    decimal_to_text,
)


logger = logging.getLogger(__name__)

DEFAULT_DUST_THRESHOLD = Decimal("0.00010")

HoldingKey = Tuple[str, str]


@dataclass
class HoldingState:
    portfolio: str
    isin: str
    quantity: Decimal = ZERO


@dataclass
class ReconciliationResult:
    transactions: List[Transaction] = field(default_factory=list)
    holdings: Dict[HoldingKey, Decimal] = field(default_factory=dict)
    warnings: List[RunWarning] = field(default_factory=list)
    rejected: List[Tuple[Transaction, InvalidReconciliation]] = field(default_factory=list)


class ShareReconciler:
    """Recompute Buy/Sell quantities per (portfolio, security) in date order.

    ``clamp_oversized_sales`` selects what happens when a sale is larger than
    the holding: clamp it to the holding (default) or reject the sale.
    ``dust_threshold`` snaps a residual holding below it to zero.
    """

    def __init__(
        self,
        enabled: bool = True,
        clamp_oversized_sales: bool = True,
        dust_threshold: Decimal = DEFAULT_DUST_THRESHOLD,
    ) -> None:
        self.enabled = enabled
        self.clamp_oversized_sales = clamp_oversized_sales
        self.dust_threshold = dust_threshold

    @staticmethod
    def adjusted_quantity(tx: Transaction) -> Decimal:
        """Unsigned share count implied by the gross amount and the printed price."""
        if tx.price is None or tx.price <= 0:
            raise InvalidReconciliation(f"{tx.kind.value} without a positive price at {tx.origin}")
        gross = tx.gross_amount if tx.gross_amount is not None else abs(tx.amount)
        quantity = (abs(gross) / tx.price).quantize(QUANT, rounding=ROUND_HALF_EVEN)
        if quantity <= 0:
            raise InvalidReconciliation(
                f"{tx.kind.value} of {decimal_to_text(gross)} at {decimal_to_text(tx.price)} "
                f"gives no shares at {tx.origin}"
            )
        return quantity

    def reconcile(self, transactions: Sequence[Transaction]) -> ReconciliationResult:
        result = ReconciliationResult()
        index: Dict[HoldingKey, int] = {}
        states: List[HoldingState] = []

        for tx in sorted(transactions, key=lambda t: t.sort_key):
            if not tx.kind.is_trade or tx.isin is None:
                result.transactions.append(tx)
                continue
            key = (tx.portfolio, tx.isin)
            slot = index.get(key)
            if slot is None:
                slot = index[key] = len(states)
                states.append(HoldingState(portfolio=tx.portfolio, isin=tx.isin))
            state = states[slot]
            try:
                adjusted, warning = self._apply(tx, state)
            except InvalidReconciliation as exc:
                logger.error("%s", exc)
                result.rejected.append((tx, exc))
                continue
            if warning is not None:
                logger.warning("%s", warning)
                result.warnings.append(warning)
            result.transactions.append(adjusted)

        result.holdings = {(state.portfolio, state.isin): state.quantity for state in states}
        return result

    def _apply(self, tx: Transaction, state: HoldingState) -> Tuple[Transaction, Optional[RunWarning]]:
        if not self.enabled:
            delta = tx.reported_quantity if tx.reported_quantity is not None else (tx.quantity or ZERO)
            state.quantity += delta
            return replace(tx, quantity=delta), None

        quantity = self.adjusted_quantity(tx)
        if tx.kind is Kind.BUY:
            state.quantity += quantity
            return replace(tx, quantity=quantity), None

        held = state.quantity
        warning: Optional[RunWarning] = None
        if quantity > held:
            if not self.clamp_oversized_sales:
                raise InvalidReconciliation(
                    f"Sale of {decimal_to_text(quantity)} {tx.isin} exceeds holding "
                    f"{decimal_to_text(held)} at {tx.origin}"
                )
            warning = self._clamped(tx, quantity, held, "exceeds")
            quantity = held
        elif 0 < held - quantity < self.dust_threshold:
            warning = self._clamped(tx, quantity, held, "nearly empties")
            quantity = held
        state.quantity = held - quantity
        return replace(tx, quantity=-quantity if quantity else ZERO), warning

    @staticmethod
    def _clamped(tx: Transaction, quantity: Decimal, held: Decimal, reason: str) -> RunWarning:
        return RunWarning(
            code=CLAMPED_SALE,
            message=(
                f"Sale of {decimal_to_text(quantity)} {tx.isin} on {tx.date.isoformat()} {reason} "
                f"holding {decimal_to_text(held)}; sold {decimal_to_text(held)}"
            ),
            portfolio=tx.portfolio,
            isin=tx.isin,
            source=tx.origin,
        )
