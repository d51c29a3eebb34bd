"""Price-history sources and payload adapters.

The engine never fetches market data itself. Callers hand in a fetch callable
(sync or async) returning a :class:`PriceHistory`, a ``{"historical": [...]}``
mapping, an OHLC :class:`pandas.DataFrame`, or ``None``. This module coerces
those payloads and runs the per-instrument fan-out.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Dict,
    Iterable,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)

import pandas as pd

from .models import HistoricalPricePoint, PriceHistory, utc_midnight

logger = logging.getLogger(__name__)

HistoryPayload = Union[PriceHistory, Mapping[str, Any], pd.DataFrame, None]


class HistoryFetcher(Protocol):
    """Pluggable per-instrument history provider."""

    def __call__(
        self, ticker: str, exchange: str
    ) -> Union[HistoryPayload, Awaitable[HistoryPayload]]:
        ...


def _point_from_mapping(raw: Mapping[str, Any]) -> HistoricalPricePoint:
    adj_close = raw.get("adj_close", raw.get("adjClose"))
    return HistoricalPricePoint(
        date=raw["date"],
        price=float(raw.get("price", raw.get("close", 0.0)) or 0.0),
        adj_close=float(adj_close) if adj_close is not None else None,
    )


def history_from_frame(df: pd.DataFrame, currency: Optional[str] = None) -> PriceHistory:
    """Build a history from a date-indexed OHLC frame.

    Understands the ``Close``/``Adj Close`` column names produced by the
    market-data loaders as well as lower-case ``price``/``adj_close``.
    """

    if df.empty:
        return PriceHistory(currency=currency)
    frame = df.sort_index()
    close_col = next((c for c in ("Close", "close", "price") if c in frame.columns), None)
    adj_col = next((c for c in ("Adj Close", "adj_close", "adjClose") if c in frame.columns), None)
    if close_col is None and adj_col is None:
        raise ValueError("Price frame needs a close or adjusted close column.")

    points: List[HistoricalPricePoint] = []
    for index, row in frame.iterrows():
        day = pd.Timestamp(index).to_pydatetime()
        close_value = row[close_col] if close_col else row[adj_col]
        adj_value = row[adj_col] if adj_col else None
        if pd.isna(close_value) and (adj_value is None or pd.isna(adj_value)):
            continue
        points.append(
            HistoricalPricePoint(
                date=day,
                price=0.0 if pd.isna(close_value) else float(close_value),
                adj_close=None if adj_value is None or pd.isna(adj_value) else float(adj_value),
            )
        )
    return PriceHistory(historical=points, currency=currency)


def coerce_history(payload: HistoryPayload) -> Optional[PriceHistory]:
    """Normalize any accepted payload shape into a :class:`PriceHistory`."""

    if payload is None:
        return None
    if isinstance(payload, PriceHistory):
        return payload
    if isinstance(payload, pd.DataFrame):
        return history_from_frame(payload)
    if isinstance(payload, Mapping):
        raw_points = payload.get("historical") or []
        points = [
            p if isinstance(p, HistoricalPricePoint) else _point_from_mapping(p)
            for p in raw_points
        ]
        return PriceHistory(
            historical=points,
            dividends=list(payload.get("dividends") or []),
            splits=list(payload.get("splits") or []),
            currency=payload.get("currency"),
        )
    raise TypeError(f"Unsupported history payload: {type(payload).__name__}")


async def _fetch_one(fetch: HistoryFetcher, ticker: str, exchange: str) -> Optional[PriceHistory]:
    try:
        result = fetch(ticker, exchange)
        if inspect.isawaitable(result):
            result = await result
        return coerce_history(result)
    except Exception as exc:  # noqa: BLE001
        logger.warning("History fetch failed for %s:%s: %s", exchange, ticker, exc)
        return None


async def fetch_histories(
    instruments: Sequence[Tuple[str, str]],
    fetch: HistoryFetcher,
) -> Dict[str, Optional[PriceHistory]]:
    """Fetch every ``(ticker, exchange)`` concurrently, keyed ``exchange:ticker``.

    A failing instrument maps to ``None``.
    """

    results = await asyncio.gather(
        *(_fetch_one(fetch, ticker, exchange) for ticker, exchange in instruments)
    )
    return {
        f"{exchange}:{ticker}": history
        for (ticker, exchange), history in zip(instruments, results)
    }


class InMemoryHistorySource:
    """Simple history source for tests and examples."""

    def __init__(
        self,
        histories: Mapping[str, Iterable[Union[HistoricalPricePoint, Mapping[str, Any]]]],
        currencies: Optional[Mapping[str, str]] = None,
    ):
        self._histories: Dict[str, List[HistoricalPricePoint]] = {}
        for key, points in histories.items():
            normalized = [
                p if isinstance(p, HistoricalPricePoint) else _point_from_mapping(p)
                for p in points
            ]
            self._histories[key] = sorted(normalized, key=lambda p: p.timestamp)
        self._currencies = dict(currencies or {})
        self.calls: List[str] = []

    def __call__(self, ticker: str, exchange: str) -> Optional[PriceHistory]:
        key = f"{exchange}:{ticker}"
        self.calls.append(key)
        if key not in self._histories:
            return None
        return PriceHistory(historical=list(self._histories[key]), currency=self._currencies.get(key))


class CachingHistorySource:
    """Cache wrapper to avoid refetching the same instrument."""

    def __init__(self, delegate: HistoryFetcher):
        self.delegate = delegate
        self._cache: MutableMapping[str, Optional[PriceHistory]] = {}

    async def __call__(self, ticker: str, exchange: str) -> Optional[PriceHistory]:
        key = f"{exchange}:{ticker}"
        if key not in self._cache:
            result = self.delegate(ticker, exchange)
            if inspect.isawaitable(result):
                result = await result
            self._cache[key] = coerce_history(result)
        return self._cache[key]

    def clear(self) -> None:
        self._cache.clear()


def history_dates(histories: Iterable[Optional[PriceHistory]]) -> List[datetime]:
    """Every distinct UTC calendar day present in any history, ascending."""

    days = set()
    for history in histories:
        if history is None:
            continue
        for point in history.historical:
            days.add(utc_midnight(point.date))
    return sorted(days)


__all__ = [
    "CachingHistorySource",
    "HistoryFetcher",
    "HistoryPayload",
    "InMemoryHistorySource",
    "coerce_history",
    "fetch_histories",
    "history_dates",
    "history_from_frame",
]
