"""Domain models used by the performance and analysis engines."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

DateLike = Union[date, datetime, str]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class TransactionType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"
    FEE = "FEE"


class DivPolicy(str, Enum):
    """How a portfolio treats dividend transactions that carry a quantity."""

    CASH_TAXED = "cash_taxed"
    ACCUMULATE_TAX_FREE = "accumulate_tax_free"
    HYBRID_RSU = "hybrid_rsu"


def as_utc_datetime(value: DateLike) -> datetime:
    """Return ``value`` as a timezone-aware UTC datetime.

    Plain dates map to UTC midnight, naive datetimes are read as UTC and ISO
    strings are parsed first.
    """

    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def utc_midnight(value: DateLike) -> datetime:
    """Truncate ``value`` to midnight of its UTC calendar day."""

    return as_utc_datetime(value).replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class Transaction:
    """A normalized trade, dividend or fee event."""

    date: DateLike
    portfolio_id: str
    ticker: str
    exchange: Optional[str]
    type: Union[TransactionType, str]
    qty: float = 0.0
    price: float = 0.0
    gross_value: Optional[float] = None
    currency: Optional[str] = None
    vest_date: Optional[DateLike] = None

    def normalized_type(self) -> str:
        """Return the upper-cased transaction type for consistent comparisons."""

        if isinstance(self.type, TransactionType):
            return self.type.value
        return str(self.type).upper()

    @property
    def effective_date(self) -> DateLike:
        """Vesting date when present, otherwise the transaction date."""

        return self.vest_date or self.date

    @property
    def ticker_key(self) -> str:
        return f"{self.exchange}:{self.ticker}"

    @property
    def state_key(self) -> str:
        return f"{self.portfolio_id}:{self.exchange}:{self.ticker}"


@dataclass(frozen=True)
class Holding:
    """Static metadata for a position, used to resolve its tracking currency."""

    portfolio_id: str
    ticker: str
    exchange: str
    stock_currency: Optional[str] = None

    @property
    def ticker_key(self) -> str:
        return f"{self.exchange}:{self.ticker}"


@dataclass(frozen=True)
class PortfolioPolicy:
    div_policy: DivPolicy = DivPolicy.ACCUMULATE_TAX_FREE


@dataclass
class PositionState:
    """Mutable per-position quantity and cost basis owned by the valuation loop."""

    qty: float
    cost_basis: float
    stock_currency: str


@dataclass(frozen=True)
class HistoricalPricePoint:
    date: DateLike
    price: float
    adj_close: Optional[float] = None

    @property
    def timestamp(self) -> datetime:
        return as_utc_datetime(self.date)


@dataclass(frozen=True)
class PriceHistory:
    """Price history for one instrument, sorted ascending by date."""

    historical: List[HistoricalPricePoint] = field(default_factory=list)
    dividends: List[Dict[str, Any]] = field(default_factory=list)
    splits: List[Dict[str, Any]] = field(default_factory=list)
    currency: Optional[str] = None


@dataclass(frozen=True)
class PerformancePoint:
    """Portfolio totals in display currency at the end of one active day."""

    date: datetime
    holdings_value: float
    cost_basis: float
    gains_value: float
    twr: float


@dataclass(frozen=True)
class PerformanceResult:
    points: List[PerformancePoint] = field(default_factory=list)
    history_map: Dict[str, Optional[PriceHistory]] = field(default_factory=dict)


@dataclass(frozen=True)
class PeriodReturn:
    perf: float = 0.0
    gain: float = 0.0


@dataclass(frozen=True)
class DataPoint:
    timestamp: datetime
    value: float


@dataclass(frozen=True)
class SeriesPair:
    x: float
    y: float
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SeriesTriple:
    x: float
    y: float
    z: float
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class AnalysisMetrics:
    """Regression statistics of a subject series against a benchmark."""

    alpha: float
    beta: float
    downside_beta: float
    downside_alpha: float
    sharpe_ratio: float
    r_squared: float
    correlation: float


__all__ = [
    "AnalysisMetrics",
    "DataPoint",
    "DateLike",
    "DivPolicy",
    "EPOCH",
    "HistoricalPricePoint",
    "Holding",
    "PerformancePoint",
    "PerformanceResult",
    "PeriodReturn",
    "PortfolioPolicy",
    "PositionState",
    "PriceHistory",
    "SeriesPair",
    "SeriesTriple",
    "Transaction",
    "TransactionType",
    "as_utc_datetime",
    "utc_midnight",
]
