"""Portfolio performance and benchmark-analysis engine."""

from .analysis import compare_series, compute_metrics, synchronize
from .currency import ExchangeRates, convert_currency
from .models import (
    AnalysisMetrics,
    DataPoint,
    DivPolicy,
    HistoricalPricePoint,
    Holding,
    PerformancePoint,
    PerformanceResult,
    PriceHistory,
    Transaction,
    TransactionType,
)
from .performance import compute_performance, compute_performance_sync
from .periods import Period, extract_period_returns

__all__ = [
    "AnalysisMetrics",
    "DataPoint",
    "DivPolicy",
    "ExchangeRates",
    "HistoricalPricePoint",
    "Holding",
    "PerformancePoint",
    "PerformanceResult",
    "Period",
    "PriceHistory",
    "Transaction",
    "TransactionType",
    "compare_series",
    "compute_metrics",
    "compute_performance",
    "compute_performance_sync",
    "convert_currency",
    "extract_period_returns",
    "synchronize",
]
