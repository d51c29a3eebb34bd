"""Per-position quantity and cost-basis state driven by transactions.

The valuation loop owns a :class:`PositionBook` and one :class:`HistoryCursor`
per instrument. Transactions mutate the book; each day the book is priced
through the cursors and converted into the display currency.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .currency import Currency, RatesLike, convert_currency
from .models import (
    DivPolicy,
    Holding,
    PortfolioPolicy,
    PositionState,
    PriceHistory,
    Transaction,
    TransactionType,
)

logger = logging.getLogger(__name__)

QTY_EPSILON = 1e-9

PolicyLike = Union[PortfolioPolicy, DivPolicy, str]


class PositionBook:
    """Keyed arena of open positions, iterated in sorted key order."""

    def __init__(self) -> None:
        self._positions: Dict[str, PositionState] = {}
        self._ticker_keys: Dict[str, str] = {}

    def get(self, key: str) -> Optional[PositionState]:
        return self._positions.get(key)

    def store(self, key: str, ticker_key: str, state: PositionState) -> None:
        """Keep ``state`` while it holds a quantity, otherwise drop the position."""

        if state.qty > QTY_EPSILON:
            self._positions[key] = state
            self._ticker_keys[key] = ticker_key
        else:
            self._positions.pop(key, None)
            self._ticker_keys.pop(key, None)

    def ticker_key(self, key: str) -> str:
        return self._ticker_keys[key]

    def keys(self) -> List[str]:
        return sorted(self._positions)

    def items(self) -> Iterator[Tuple[str, PositionState]]:
        for key in self.keys():
            yield key, self._positions[key]

    def __contains__(self, key: object) -> bool:
        return key in self._positions

    def __len__(self) -> int:
        return len(self._positions)


@dataclass(frozen=True)
class CashEffects:
    """Display-currency cash effects of the transactions applied on one day."""

    net_flow: float = 0.0
    dividends: float = 0.0
    fees: float = 0.0
    other_gains: float = 0.0

    def __add__(self, other: "CashEffects") -> "CashEffects":
        return CashEffects(
            net_flow=self.net_flow + other.net_flow,
            dividends=self.dividends + other.dividends,
            fees=self.fees + other.fees,
            other_gains=self.other_gains + other.other_gains,
        )


@dataclass
class ValuationContext:
    """Read-only inputs shared by every valuation step of one computation."""

    display_currency: str
    exchange_rates: RatesLike
    holdings_by_key: Dict[str, Holding] = field(default_factory=dict)
    policies: Mapping[str, PolicyLike] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        display_currency: str,
        exchange_rates: RatesLike,
        holdings: List[Holding],
        policies: Optional[Mapping[str, PolicyLike]] = None,
    ) -> "ValuationContext":
        return cls(
            display_currency=display_currency,
            exchange_rates=exchange_rates,
            holdings_by_key={h.ticker_key: h for h in holdings},
            policies=policies or {},
        )

    def to_display(self, amount: float, currency: Optional[str]) -> float:
        return convert_currency(amount, currency or Currency.USD, self.display_currency, self.exchange_rates)


def resolve_stock_currency(
    existing: Optional[PositionState],
    holding: Optional[Holding],
    txn: Transaction,
) -> str:
    """Currency a position's cost basis is tracked in.

    Falls back in order: the open position's currency, the holding metadata,
    the transaction currency, then USD.
    """

    if existing is not None:
        return existing.stock_currency
    if holding is not None and holding.stock_currency:
        return holding.stock_currency
    if txn.currency:
        return txn.currency
    return Currency.USD.value


def resolve_div_policy(policies: Mapping[str, PolicyLike], portfolio_id: str) -> Optional[DivPolicy]:
    policy = policies.get(portfolio_id)
    if policy is None:
        return None
    if isinstance(policy, PortfolioPolicy):
        return policy.div_policy
    if isinstance(policy, DivPolicy):
        return policy
    try:
        return DivPolicy(str(policy).strip().lower())
    except ValueError:
        logger.warning("Unknown dividend policy %r for portfolio %s; treating as reinvested", policy, portfolio_id)
        return None


def resolve_transaction_value(txn: Transaction, qty: float) -> float:
    """Gross value if given; the price itself for quantity-less dividends and
    fees; otherwise quantity times price."""

    if txn.gross_value:
        return txn.gross_value
    price = txn.price or 0.0
    if txn.normalized_type() in (TransactionType.DIVIDEND.value, TransactionType.FEE.value) and abs(qty) < QTY_EPSILON:
        return price
    return qty * price


def apply_transaction(book: PositionBook, txn: Transaction, ctx: ValuationContext) -> CashEffects:
    """Mutate the position for ``txn`` and return its cash effects."""

    ticker_key = txn.ticker_key
    state_key = txn.state_key
    existing = book.get(state_key)
    stock_currency = resolve_stock_currency(existing, ctx.holdings_by_key.get(ticker_key), txn)
    state = existing or PositionState(qty=0.0, cost_basis=0.0, stock_currency=stock_currency)

    txn_type = txn.normalized_type()
    qty = txn.qty or 0.0
    if txn_type == TransactionType.DIVIDEND.value and qty > 0:
        if resolve_div_policy(ctx.policies, txn.portfolio_id) == DivPolicy.CASH_TAXED:
            qty = 0.0

    value = resolve_transaction_value(txn, qty)
    txn_currency = txn.currency or Currency.USD.value
    cost_to_add = convert_currency(value, txn_currency, state.stock_currency, ctx.exchange_rates)

    effects = CashEffects()
    if txn_type == TransactionType.BUY.value:
        state.qty += qty
        state.cost_basis += cost_to_add
        effects = CashEffects(net_flow=ctx.to_display(value, txn_currency))
    elif txn_type == TransactionType.SELL.value:
        avg_cost = state.cost_basis / state.qty if state.qty > 0 else 0.0
        state.qty -= qty
        state.cost_basis -= qty * avg_cost
        proceeds = ctx.to_display(value, txn_currency)
        cost_of_sold = ctx.to_display(qty * avg_cost, state.stock_currency)
        effects = CashEffects(net_flow=-proceeds, other_gains=proceeds - cost_of_sold)
    elif txn_type == TransactionType.DIVIDEND.value:
        dividend = ctx.to_display(value, txn_currency)
        effects = CashEffects(dividends=dividend, other_gains=dividend)
        # DRIP: reinvested shares are acquired at the dividend value
        if qty > 0:
            state.qty += qty
            state.cost_basis += cost_to_add
    elif txn_type == TransactionType.FEE.value:
        fee = ctx.to_display(value, txn_currency)
        effects = CashEffects(fees=fee, other_gains=-fee)
    else:
        logger.debug("Ignoring transaction of unknown type %s for %s", txn_type, state_key)

    book.store(state_key, ticker_key, state)
    return effects


class HistoryCursor:
    """Forward-only pointer into one instrument's ascending price history."""

    def __init__(self, history: Optional[PriceHistory]):
        self.history = history
        points = history.historical if history is not None else []
        self._points = points
        self._timestamps = [p.timestamp for p in points]
        self.index = 0

    @property
    def currency(self) -> Optional[str]:
        return self.history.currency if self.history is not None else None

    def price_at(self, ts: datetime) -> Optional[float]:
        """Latest usable price dated at or before ``ts``.

        Prefers the adjusted close. Returns ``None`` when no point is dated at
        or before ``ts`` or the resolved price is not positive.
        """

        if not self._points:
            return None
        while self.index + 1 < len(self._points) and self._timestamps[self.index + 1] <= ts:
            self.index += 1
        if self._timestamps[self.index] > ts:
            return None
        point = self._points[self.index]
        price = point.adj_close or point.price
        if not price or price <= 0:
            return None
        return price


def value_positions(
    book: PositionBook,
    cursors: Mapping[str, HistoryCursor],
    ts: datetime,
    ctx: ValuationContext,
) -> Tuple[float, float]:
    """Return ``(holdings_value, cost_basis)`` in display currency at ``ts``.

    Positions without a usable price on ``ts`` are left out of both sums.
    """

    total_value = 0.0
    total_cost = 0.0
    for key, state in book.items():
        cursor = cursors.get(book.ticker_key(key))
        if cursor is None:
            continue
        price = cursor.price_at(ts)
        if price is None:
            continue
        price_currency = cursor.currency or state.stock_currency
        total_value += ctx.to_display(state.qty * price, price_currency)
        total_cost += ctx.to_display(state.cost_basis, state.stock_currency)
    return total_value, total_cost


__all__ = [
    "CashEffects",
    "HistoryCursor",
    "PositionBook",
    "QTY_EPSILON",
    "ValuationContext",
    "apply_transaction",
    "resolve_div_policy",
    "resolve_stock_currency",
    "resolve_transaction_value",
    "value_positions",
]
