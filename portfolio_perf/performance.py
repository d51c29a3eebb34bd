"""Daily valuation and time-weighted-return accumulation.

The computation is a fold over an ascending axis of UTC days. Each step
applies the transactions dated on or before the day, prices the open
positions, and compounds the day's return into the TWR index:

* with a positive opening value ``V0``::

      r = ((V1 - F) - V0 + D - C) / V0

* on inception (``V0`` is zero but money flowed in) the same numerator is
  divided by the inflow ``F`` so the first day's move is not lost;
* otherwise ``r = 0``.

``F`` is the day's net external flow (buys minus sale proceeds), ``D`` the
dividends and ``C`` the fees, all in display currency.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .config import get_settings
from .core.telemetry import get_tracer
from .currency import RatesLike
from .history import HistoryFetcher, fetch_histories, history_dates
from .models import (
    DataPoint,
    Holding,
    PerformancePoint,
    PerformanceResult,
    PriceHistory,
    Transaction,
    utc_midnight,
)
from .transactions import is_transaction_list, normalize_transactions
from .valuation import (
    CashEffects,
    HistoryCursor,
    PolicyLike,
    PositionBook,
    ValuationContext,
    apply_transaction,
    value_positions,
)

logger = logging.getLogger(__name__)

VALUE_EPSILON = 1e-6


@dataclass(frozen=True)
class FoldState:
    """Loop-carried scalars between two consecutive days."""

    txn_index: int = 0
    prev_holdings_value: float = 0.0
    twr_index: float = 1.0
    other_gains: float = 0.0


@dataclass
class FoldContext:
    """Inputs of one computation plus the position book and cursors it owns."""

    transactions: List[Transaction]
    txn_days: List[datetime]
    book: PositionBook
    cursors: Dict[str, HistoryCursor]
    valuation: ValuationContext

    @classmethod
    def build(
        cls,
        transactions: List[Transaction],
        history_map: Mapping[str, Optional[PriceHistory]],
        valuation: ValuationContext,
    ) -> "FoldContext":
        return cls(
            transactions=transactions,
            txn_days=[utc_midnight(t.date) for t in transactions],
            book=PositionBook(),
            cursors={key: HistoryCursor(history) for key, history in history_map.items()},
            valuation=valuation,
        )


def twr_day_return(
    prev_holdings_value: float,
    holdings_value: float,
    effects: CashEffects,
) -> float:
    market_gain = (holdings_value - effects.net_flow) - prev_holdings_value
    total_gain = market_gain + effects.dividends - effects.fees
    if prev_holdings_value > VALUE_EPSILON:
        return total_gain / prev_holdings_value
    if effects.net_flow > VALUE_EPSILON:
        return total_gain / effects.net_flow
    return 0.0


def step_day(state: FoldState, ts: datetime, ctx: FoldContext) -> Tuple[FoldState, PerformancePoint]:
    """Advance the fold by one day and emit that day's point."""

    effects = CashEffects()
    index = state.txn_index
    while index < len(ctx.transactions) and ctx.txn_days[index] <= ts:
        effects = effects + apply_transaction(ctx.book, ctx.transactions[index], ctx.valuation)
        index += 1

    holdings_value, cost_basis = value_positions(ctx.book, ctx.cursors, ts, ctx.valuation)
    day_return = twr_day_return(state.prev_holdings_value, holdings_value, effects)
    other_gains = state.other_gains + effects.other_gains

    next_state = replace(
        state,
        txn_index=index,
        prev_holdings_value=holdings_value,
        twr_index=state.twr_index * (1 + day_return),
        other_gains=other_gains,
    )
    point = PerformancePoint(
        date=ts,
        holdings_value=holdings_value,
        cost_basis=cost_basis,
        gains_value=(holdings_value - cost_basis) + other_gains,
        twr=next_state.twr_index,
    )
    return next_state, point


def build_time_axis(
    history_map: Mapping[str, Optional[PriceHistory]],
    first_txn_date: datetime,
) -> List[datetime]:
    """History days on or after the first transaction's UTC day."""

    start = utc_midnight(first_txn_date)
    return [ts for ts in history_dates(history_map.values()) if ts >= start]


def run_fold(axis: Sequence[datetime], ctx: FoldContext) -> List[PerformancePoint]:
    state = FoldState()
    points: List[PerformancePoint] = []
    for ts in axis:
        state, point = step_day(state, ts, ctx)
        points.append(point)
    return points


def _referenced_instruments(transactions: Sequence[Transaction]) -> List[Tuple[str, str]]:
    seen: Dict[str, Tuple[str, str]] = {}
    for txn in transactions:
        if txn.exchange:
            seen[txn.ticker_key] = (txn.ticker, txn.exchange)
    return list(seen.values())


async def compute_performance(
    holdings: Sequence[Holding],
    transactions: Sequence[Transaction],
    display_currency: str,
    exchange_rates: RatesLike,
    portfolio_policies: Optional[Mapping[str, PolicyLike]] = None,
    *,
    fetch_history: HistoryFetcher,
) -> PerformanceResult:
    """Compute the daily performance series of the given transactions.

    Price histories for every instrument referenced by a transaction are
    fetched concurrently through ``fetch_history``; a failed fetch maps to
    ``None`` in the returned ``history_map``. Invalid or empty input, or no
    history dates on/after the first transaction, yield an empty result.
    """

    if not is_transaction_list(transactions):
        logger.warning("compute_performance received invalid transactions: %r", transactions)
        return PerformanceResult()

    ordered = normalize_transactions(holdings, transactions)
    if not ordered:
        return PerformanceResult()

    tracer = get_tracer()
    with tracer.start_as_current_span("portfolio_perf.compute_performance") as span:
        instruments = _referenced_instruments(ordered)
        span.set_attribute("portfolio_perf.transactions", len(ordered))
        span.set_attribute("portfolio_perf.instruments", len(instruments))

        history_map = await fetch_histories(instruments, fetch_history)
        axis = build_time_axis(history_map, ordered[0].date)
        if not axis:
            logger.info("No price history on or after %s; nothing to compute", ordered[0].date)
            return PerformanceResult()

        valuation = ValuationContext.build(
            display_currency, exchange_rates, list(holdings), portfolio_policies
        )
        points = run_fold(axis, FoldContext.build(ordered, history_map, valuation))
        span.set_attribute("portfolio_perf.points", len(points))

    logger.debug(
        "Computed %d performance points for %d instruments in %s",
        len(points),
        len(instruments),
        display_currency,
    )
    return PerformanceResult(points=points, history_map=history_map)


def compute_performance_sync(
    holdings: Sequence[Holding],
    transactions: Sequence[Transaction],
    display_currency: Optional[str] = None,
    exchange_rates: RatesLike = None,
    portfolio_policies: Optional[Mapping[str, PolicyLike]] = None,
    *,
    fetch_history: HistoryFetcher,
) -> PerformanceResult:
    """Blocking wrapper around :func:`compute_performance` for scripts and jobs."""

    return asyncio.run(
        compute_performance(
            holdings,
            transactions,
            display_currency or get_settings().display_currency,
            exchange_rates,
            portfolio_policies,
            fetch_history=fetch_history,
        )
    )


def points_to_frame(points: Sequence[PerformancePoint]) -> pd.DataFrame:
    """Date-indexed frame of the performance series."""

    columns = ["holdings_value", "cost_basis", "gains_value", "twr"]
    if not points:
        return pd.DataFrame(columns=columns, index=pd.DatetimeIndex([], name="date", tz="UTC"))
    frame = pd.DataFrame(
        [
            {
                "date": p.date,
                "holdings_value": p.holdings_value,
                "cost_basis": p.cost_basis,
                "gains_value": p.gains_value,
                "twr": p.twr,
            }
            for p in points
        ]
    ).set_index("date")
    frame.index = pd.to_datetime(frame.index, utc=True)
    return frame[columns]


def performance_series(points: Sequence[PerformancePoint]) -> List[DataPoint]:
    """The TWR index as a value series, for comparison against a benchmark."""

    return [DataPoint(timestamp=p.date, value=p.twr) for p in points]


__all__ = [
    "FoldContext",
    "FoldState",
    "VALUE_EPSILON",
    "build_time_axis",
    "compute_performance",
    "compute_performance_sync",
    "performance_series",
    "points_to_frame",
    "run_fold",
    "step_day",
    "twr_day_return",
]
