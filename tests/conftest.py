import asyncio
import inspect
import pathlib
import sys
from datetime import datetime, timezone

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portfolio_perf.config import get_settings  # noqa: E402
from portfolio_perf.models import HistoricalPricePoint, PerformancePoint  # noqa: E402


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used in the suite."""

    config.addinivalue_line("markers", "asyncio: mark test as running in an asyncio event loop")


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute async test functions without requiring pytest-asyncio."""

    test_function = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_function):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            argnames = pyfuncitem._fixtureinfo.argnames
            loop.run_until_complete(test_function(**{name: pyfuncitem.funcargs[name] for name in argnames}))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def price_points(rows) -> list[HistoricalPricePoint]:
    return [HistoricalPricePoint(date=day, price=float(price)) for day, price in rows]


def make_point(day: str, twr: float, gains_value: float = 0.0) -> PerformancePoint:
    return PerformancePoint(
        date=datetime.fromisoformat(day).replace(tzinfo=timezone.utc),
        holdings_value=1000.0,
        cost_basis=900.0,
        gains_value=gains_value,
        twr=twr,
    )
