"""Statistical comparison of a price series against a benchmark.

Series are aligned by UTC calendar day, turned into simple returns, and
regressed with ordinary least squares (benchmark returns as ``x``, subject
returns as ``y``). All degenerate cases (too few observations, zero
variance) resolve to ``None`` or ``0`` rather than raising.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import get_settings
from .core.telemetry import get_tracer
from .models import (
    AnalysisMetrics,
    DataPoint,
    HistoricalPricePoint,
    SeriesPair,
    SeriesTriple,
    as_utc_datetime,
)
from .periods import shift_months

logger = logging.getLogger(__name__)


def _day_key(timestamp: datetime) -> date:
    return as_utc_datetime(timestamp).date()


def synchronize_series(series_x: Sequence[DataPoint], series_y: Sequence[DataPoint]) -> List[SeriesPair]:
    """Pairs for the UTC days present in both series, in ``series_x`` order."""

    if not series_x or not series_y:
        return []
    by_day: Dict[date, float] = {_day_key(p.timestamp): p.value for p in series_y}
    pairs: List[SeriesPair] = []
    for point in series_x:
        key = _day_key(point.timestamp)
        if key in by_day:
            pairs.append(SeriesPair(x=point.value, y=by_day[key], timestamp=point.timestamp))
    return pairs


def synchronize_three_series(
    series_x: Sequence[DataPoint],
    series_y: Sequence[DataPoint],
    series_z: Sequence[DataPoint],
) -> List[SeriesTriple]:
    if not series_x or not series_y or not series_z:
        return []
    y_by_day = {_day_key(p.timestamp): p.value for p in series_y}
    z_by_day = {_day_key(p.timestamp): p.value for p in series_z}
    triples: List[SeriesTriple] = []
    for point in series_x:
        key = _day_key(point.timestamp)
        if key in y_by_day and key in z_by_day:
            triples.append(
                SeriesTriple(x=point.value, y=y_by_day[key], z=z_by_day[key], timestamp=point.timestamp)
            )
    return triples


def synchronize(
    series_a: Sequence[DataPoint],
    series_b: Sequence[DataPoint],
    series_c: Optional[Sequence[DataPoint]] = None,
) -> Union[List[SeriesPair], List[SeriesTriple]]:
    if series_c is None:
        return synchronize_series(series_a, series_b)
    return synchronize_three_series(series_a, series_b, series_c)


def normalize_to_start(points: Sequence[HistoricalPricePoint]) -> List[DataPoint]:
    """Rebase a price series so its first point is 1.0 (adjusted close preferred)."""

    if not points:
        return []
    first = points[0]
    base = first.adj_close or first.price or 1
    return [
        DataPoint(timestamp=p.timestamp, value=(p.adj_close or p.price) / base)
        for p in points
    ]


def calculate_returns(pairs: Sequence[SeriesPair]) -> List[SeriesPair]:
    """Step-over-step simple returns; a step off a zero price is skipped."""

    returns: List[SeriesPair] = []
    for prev, curr in zip(pairs, pairs[1:]):
        if prev.x == 0 or prev.y == 0:
            continue
        returns.append(
            SeriesPair(
                x=(curr.x - prev.x) / prev.x,
                y=(curr.y - prev.y) / prev.y,
                timestamp=curr.timestamp,
            )
        )
    return returns


def calculate_returns_triples(triples: Sequence[SeriesTriple]) -> List[SeriesTriple]:
    returns: List[SeriesTriple] = []
    for prev, curr in zip(triples, triples[1:]):
        if prev.x == 0 or prev.y == 0 or prev.z == 0:
            continue
        returns.append(
            SeriesTriple(
                x=(curr.x - prev.x) / prev.x,
                y=(curr.y - prev.y) / prev.y,
                z=(curr.z - prev.z) / prev.z,
                timestamp=curr.timestamp,
            )
        )
    return returns


def _is_constant(values: np.ndarray) -> bool:
    return values.size == 0 or np.ptp(values) == 0


def _ols_terms(x: np.ndarray, y: np.ndarray) -> Tuple[float, float, float]:
    """Return the OLS numerator and the ``x``/``y`` sums of squares, each scaled by ``n``.

    A constant series contributes exactly zero variance and covariance.
    """

    n = len(x)
    sum_x = x.sum()
    sum_y = y.sum()
    numerator = float(n * np.dot(x, y) - sum_x * sum_y)
    term_x = float(n * np.dot(x, x) - sum_x ** 2)
    term_y = float(n * np.dot(y, y) - sum_y ** 2)
    if _is_constant(x):
        numerator = term_x = 0.0
    if _is_constant(y):
        numerator = term_y = 0.0
    return numerator, term_x, term_y


def _slope(x: np.ndarray, y: np.ndarray) -> float:
    if len(x) < 2:
        return 0.0
    numerator, term_x, _ = _ols_terms(x, y)
    return 0.0 if term_x == 0 else numerator / term_x


def compute_slope(pairs: Sequence[SeriesPair]) -> float:
    """OLS slope of ``y`` on ``x``; 0 with fewer than two pairs or flat ``x``."""

    x = np.array([p.x for p in pairs], dtype=float)
    y = np.array([p.y for p in pairs], dtype=float)
    return _slope(x, y)


def compute_metrics(
    pairs: Sequence[SeriesPair],
    risk_free_returns: Optional[Sequence[float]] = None,
    *,
    periods_per_year: Optional[int] = None,
) -> Optional[AnalysisMetrics]:
    """Regression metrics over benchmark/subject return pairs.

    Inputs must be returns, not prices. ``risk_free_returns`` (same length
    as ``pairs``) turns alpha and Sharpe into excess-return figures. Beta and
    correlation always use raw returns; alpha uses the excess-return beta.
    Returns ``None`` with fewer than two pairs.
    """

    n = len(pairs)
    if n < 2:
        return None
    if risk_free_returns is not None and len(risk_free_returns) != n:
        logger.warning(
            "Risk-free returns length mismatch (%d vs %d pairs); ignoring risk-free leg",
            len(risk_free_returns),
            n,
        )
        risk_free_returns = None
    if periods_per_year is None:
        periods_per_year = get_settings().trading_days_per_year

    x = np.array([p.x for p in pairs], dtype=float)
    y = np.array([p.y for p in pairs], dtype=float)
    rf = np.zeros(n) if risk_free_returns is None else np.asarray(risk_free_returns, dtype=float)
    ex_x = x - rf
    ex_y = y - rf

    mean_ex_x = float(ex_x.mean())
    mean_ex_y = float(ex_y.mean())

    # sample variance of excess subject returns
    variance_ex_y = (float(np.dot(ex_y, ex_y)) - n * mean_ex_y * mean_ex_y) / (n - 1)
    if variance_ex_y <= 0 or _is_constant(ex_y):
        sharpe_ratio = 0.0
    else:
        sharpe_ratio = (mean_ex_y / math.sqrt(variance_ex_y)) * math.sqrt(periods_per_year)

    numerator, term_x, term_y = _ols_terms(x, y)
    corr_denom_sq = term_x * term_y
    correlation = 0.0 if corr_denom_sq <= 0 else numerator / math.sqrt(corr_denom_sq)
    beta = 0.0 if term_x == 0 else numerator / term_x

    excess_beta = _slope(ex_x, ex_y)
    alpha = mean_ex_y - excess_beta * mean_ex_x

    downside = x < 0
    downside_beta = beta if downside.sum() < 2 else _slope(x[downside], y[downside])
    downside_alpha = mean_ex_y - downside_beta * mean_ex_x

    return AnalysisMetrics(
        alpha=alpha,
        beta=beta,
        downside_beta=downside_beta,
        downside_alpha=downside_alpha,
        sharpe_ratio=sharpe_ratio,
        r_squared=correlation ** 2,
        correlation=correlation,
    )


def cumulative_alpha(metrics: AnalysisMetrics, observations: int) -> AnalysisMetrics:
    """Scale the per-period alphas to a window total of ``observations`` returns."""

    return replace(
        metrics,
        alpha=metrics.alpha * observations,
        downside_alpha=metrics.downside_alpha * observations,
    )


def annualize_alpha(metrics: AnalysisMetrics, periods_per_year: Optional[int] = None) -> AnalysisMetrics:
    if periods_per_year is None:
        periods_per_year = get_settings().trading_days_per_year
    return replace(metrics, alpha=metrics.alpha * periods_per_year)


RANGES = ("1M", "3M", "6M", "YTD", "1Y", "3Y", "5Y", "ALL")

_RANGE_MONTHS = {"1M": 1, "3M": 3, "6M": 6, "1Y": 12, "3Y": 36, "5Y": 60}


def filter_by_range(
    points: Sequence[HistoricalPricePoint],
    range_name: str,
    *,
    now: Optional[datetime] = None,
    min_date: Optional[datetime] = None,
) -> List[HistoricalPricePoint]:
    """Points on or after the start of a display range ending today.

    ``ALL`` keeps everything, or everything from ``min_date`` when given.
    Unknown range names keep everything.
    """

    if not points:
        return []
    key = range_name.upper()
    if key not in RANGES:
        logger.debug("Unknown range %r; keeping all points", range_name)
        return list(points)
    if key == "ALL":
        if min_date is None:
            return list(points)
        start = as_utc_datetime(min_date)
    else:
        today = as_utc_datetime(now or datetime.now(timezone.utc)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        if key == "YTD":
            start = today.replace(month=1, day=1)
        else:
            start = shift_months(today, -_RANGE_MONTHS[key])
    return [p for p in points if p.timestamp >= start]


@dataclass(frozen=True)
class ComparisonResult:
    metrics: AnalysisMetrics
    observations: int

    @property
    def cumulative(self) -> AnalysisMetrics:
        return cumulative_alpha(self.metrics, self.observations)


def compare_series(
    main: Sequence[HistoricalPricePoint],
    benchmark: Sequence[HistoricalPricePoint],
    risk_free: Optional[Sequence[HistoricalPricePoint]] = None,
) -> Optional[ComparisonResult]:
    """Regress ``main`` against ``benchmark`` on their common days.

    The benchmark is clipped to start no earlier than ``main``. A
    ``risk_free`` price (or index-level) series, when given, is aligned on the
    same days and its returns feed the excess-return figures.
    """

    if len(main) < 2 or not benchmark:
        return None

    tracer = get_tracer()
    with tracer.start_as_current_span("portfolio_perf.compare_series") as span:
        start = main[0].timestamp
        main_points = normalize_to_start(main)
        bench_points = normalize_to_start([p for p in benchmark if p.timestamp >= start])

        if risk_free is None:
            returns = calculate_returns(synchronize_series(bench_points, main_points))
            rf_returns = None
        else:
            rf_points = normalize_to_start([p for p in risk_free if p.timestamp >= start])
            triples = calculate_returns_triples(
                synchronize_three_series(bench_points, main_points, rf_points)
            )
            returns = [SeriesPair(x=t.x, y=t.y, timestamp=t.timestamp) for t in triples]
            rf_returns = [t.z for t in triples]

        span.set_attribute("portfolio_perf.observations", len(returns))
        metrics = compute_metrics(returns, rf_returns)
        if metrics is None:
            logger.info("Not enough overlapping observations to compare series (%d)", len(returns))
            return None
        return ComparisonResult(metrics=metrics, observations=len(returns))


__all__ = [
    "ComparisonResult",
    "RANGES",
    "annualize_alpha",
    "calculate_returns",
    "calculate_returns_triples",
    "compare_series",
    "compute_metrics",
    "compute_slope",
    "cumulative_alpha",
    "filter_by_range",
    "normalize_to_start",
    "synchronize",
    "synchronize_series",
    "synchronize_three_series",
]
