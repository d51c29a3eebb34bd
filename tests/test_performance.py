from __future__ import annotations

import math

import pytest

from conftest import price_points, utc
from portfolio_perf import (
    DivPolicy,
    Holding,
    Transaction,
    compute_performance,
    compute_performance_sync,
)
from portfolio_perf.history import InMemoryHistorySource
from portfolio_perf.performance import (
    FoldContext,
    FoldState,
    performance_series,
    points_to_frame,
    step_day,
    twr_day_return,
)
from portfolio_perf.valuation import CashEffects, ValuationContext

RATES = {"current": {"USD": 1, "ILS": 4}, "ago1m": {"USD": 1, "ILS": 3.5}}


def _history_source() -> InMemoryHistorySource:
    return InMemoryHistorySource(
        {
            "NASDAQ:AAPL": price_points(
                [
                    (utc(2024, 1, 1), 100),
                    (utc(2024, 1, 2), 102),
                    (utc(2024, 1, 3), 105),
                    (utc(2024, 1, 4), 110),
                    (utc(2024, 1, 5), 108),
                ]
            ),
            "TASE:123": price_points(
                [
                    (utc(2024, 1, 1), 1000),
                    (utc(2024, 1, 2), 1000),
                    (utc(2024, 1, 3), 1100),
                    (utc(2024, 1, 5), 1200),
                ]
            ),
        }
    )


def _aapl_holding() -> Holding:
    return Holding(portfolio_id="p1", ticker="AAPL", exchange="NASDAQ", stock_currency="USD")


def _txn(day, txn_type, qty, price, **kwargs) -> Transaction:
    defaults = {"portfolio_id": "p1", "ticker": "AAPL", "exchange": "NASDAQ"}
    defaults.update(kwargs)
    return Transaction(date=day, type=txn_type, qty=qty, price=price, **defaults)


def _point_on(points, day):
    return next(p for p in points if p.date == day)


async def test_buy_and_hold_values_position_from_buy_date():
    source = _history_source()
    result = await compute_performance(
        [_aapl_holding()],
        [_txn("2024-01-02", "BUY", 10, 102)],
        "USD",
        RATES,
        fetch_history=source,
    )

    assert [p.date for p in result.points] == [utc(2024, 1, d) for d in (2, 3, 4, 5)]
    first = _point_on(result.points, utc(2024, 1, 2))
    assert first.holdings_value == pytest.approx(1020)
    assert first.gains_value == pytest.approx(0)
    assert first.twr == pytest.approx(1.0)

    second = _point_on(result.points, utc(2024, 1, 3))
    assert second.holdings_value == pytest.approx(1050)
    assert second.gains_value == pytest.approx(30)
    assert second.twr == pytest.approx(1050 / 1020)

    # only instruments referenced by transactions are fetched
    assert source.calls == ["NASDAQ:AAPL"]
    assert set(result.history_map) == {"NASDAQ:AAPL"}


async def test_display_currency_conversion():
    result = await compute_performance(
        [_aapl_holding()],
        [_txn("2024-01-02", "BUY", 10, 102)],
        "ILS",
        RATES,
        fetch_history=_history_source(),
    )
    first = _point_on(result.points, utc(2024, 1, 2))
    assert first.holdings_value == pytest.approx(4080)
    assert first.cost_basis == pytest.approx(4080)
    assert first.gains_value == pytest.approx(0)


async def test_partial_sell_realizes_gain_at_average_cost():
    txns = [
        _txn("2024-01-02", "BUY", 10, 102),
        _txn("2024-01-04", "SELL", 5, 110),
    ]
    result = await compute_performance([_aapl_holding()], txns, "USD", RATES, fetch_history=_history_source())

    before = _point_on(result.points, utc(2024, 1, 3))
    assert before.gains_value == pytest.approx(30)

    after = _point_on(result.points, utc(2024, 1, 4))
    assert after.holdings_value == pytest.approx(550)
    assert after.cost_basis == pytest.approx(510)
    # unrealized 40 + realized (550 - 510)
    assert after.gains_value == pytest.approx(80)
    # the sale proceeds leave as a flow, so TWR keeps tracking the price
    assert after.twr == pytest.approx(110 / 102)


async def test_dividend_counts_as_income_in_gain_and_twr():
    source = InMemoryHistorySource(
        {"NASDAQ:DIV": price_points([(utc(2024, 1, 1), 100), (utc(2024, 1, 2), 100)])}
    )
    txns = [
        _txn("2024-01-01T00:00:00Z", "BUY", 10, 100, ticker="DIV"),
        _txn("2024-01-02T00:00:00Z", "DIVIDEND", 0, 50, ticker="DIV"),
    ]
    result = await compute_performance([], txns, "USD", RATES, fetch_history=source)

    day_two = _point_on(result.points, utc(2024, 1, 2))
    assert day_two.holdings_value == pytest.approx(1000)
    assert day_two.gains_value == pytest.approx(50)
    assert day_two.twr == pytest.approx(1.05)


async def test_fee_reduces_gain_and_twr():
    source = InMemoryHistorySource(
        {"NASDAQ:FEE": price_points([(utc(2024, 1, 1), 100), (utc(2024, 1, 2), 100)])}
    )
    txns = [
        _txn("2024-01-01", "BUY", 10, 100, ticker="FEE"),
        _txn("2024-01-02", "FEE", 0, 5, ticker="FEE"),
    ]
    result = await compute_performance([], txns, "USD", RATES, fetch_history=source)

    day_two = _point_on(result.points, utc(2024, 1, 2))
    assert day_two.gains_value == pytest.approx(-5)
    assert day_two.twr == pytest.approx(0.995)


async def test_intraday_round_trip_realizes_gain_without_twr_move():
    source = InMemoryHistorySource(
        {"NASDAQ:DAY": price_points([(utc(2024, 1, 1), 105), (utc(2024, 1, 2), 105)])}
    )
    txns = [
        _txn("2024-01-01T10:00:00", "BUY", 10, 100, ticker="DAY"),
        _txn("2024-01-01T14:00:00", "SELL", 10, 110, ticker="DAY"),
    ]
    result = await compute_performance([], txns, "USD", RATES, fetch_history=source)

    day_one = _point_on(result.points, utc(2024, 1, 1))
    assert day_one.holdings_value == pytest.approx(0)
    assert day_one.gains_value == pytest.approx(100)
    assert day_one.twr == pytest.approx(1.0)


async def test_constant_rates_show_no_currency_gain():
    source = InMemoryHistorySource(
        {"LSE:EURSTOCK": price_points([(utc(2024, 1, 1), 100), (utc(2024, 1, 2), 100)])}
    )
    holdings = [Holding(portfolio_id="p1", ticker="EURSTOCK", exchange="LSE", stock_currency="EUR")]
    txns = [_txn("2024-01-01", "BUY", 1, 100, ticker="EURSTOCK", exchange="LSE", currency="EUR")]
    result = await compute_performance(
        holdings, txns, "USD", {"current": {"USD": 1, "EUR": 1.1}}, fetch_history=source
    )

    day_two = _point_on(result.points, utc(2024, 1, 2))
    assert day_two.holdings_value == pytest.approx(100 / 1.1)
    assert day_two.gains_value == pytest.approx(0)


@pytest.mark.parametrize(
    ("policy", "expected_value"),
    [(DivPolicy.CASH_TAXED, 1000.0), (DivPolicy.ACCUMULATE_TAX_FREE, 1100.0)],
)
async def test_drip_quantity_depends_on_div_policy(policy, expected_value):
    source = InMemoryHistorySource(
        {"NASDAQ:DRIP": price_points([(utc(2024, 1, 1), 100), (utc(2024, 1, 2), 100)])}
    )
    txns = [
        _txn("2024-01-01", "BUY", 10, 100, ticker="DRIP"),
        _txn("2024-01-02", "DIVIDEND", 1, 100, ticker="DRIP", gross_value=100),
    ]
    result = await compute_performance(
        [], txns, "USD", RATES, {"p1": policy}, fetch_history=source
    )

    day_two = _point_on(result.points, utc(2024, 1, 2))
    assert day_two.holdings_value == pytest.approx(expected_value)
    assert day_two.cost_basis == pytest.approx(expected_value)
    assert day_two.gains_value == pytest.approx(100)


async def test_vesting_date_replaces_grant_date():
    txns = [_txn("2024-01-01", "BUY", 10, 0, vest_date="2024-01-03")]
    result = await compute_performance([_aapl_holding()], txns, "USD", RATES, fetch_history=_history_source())

    assert result.points[0].date == utc(2024, 1, 3)
    assert result.points[0].holdings_value == pytest.approx(1050)


async def test_failed_fetch_is_isolated():
    good = _history_source()

    async def flaky(ticker: str, exchange: str):
        if ticker == "BROKEN":
            raise RuntimeError("upstream unavailable")
        return good(ticker, exchange)

    txns = [
        _txn("2024-01-02", "BUY", 10, 102),
        _txn("2024-01-02", "BUY", 5, 50, ticker="BROKEN"),
    ]
    result = await compute_performance([_aapl_holding()], txns, "USD", RATES, fetch_history=flaky)

    assert result.history_map["NASDAQ:BROKEN"] is None
    assert result.history_map["NASDAQ:AAPL"] is not None
    # the unpriced position is left out of the day's value
    first = _point_on(result.points, utc(2024, 1, 2))
    assert first.holdings_value == pytest.approx(1020)


async def test_invalid_transactions_return_empty_result():
    result = await compute_performance([], None, "USD", RATES, fetch_history=_history_source())
    assert result.points == []
    assert result.history_map == {}


async def test_no_history_after_first_transaction_returns_empty():
    txns = [_txn("2025-01-01", "BUY", 1, 100)]
    result = await compute_performance([], txns, "USD", RATES, fetch_history=_history_source())
    assert result.points == []
    assert result.history_map == {}


async def test_twr_compounds_market_moves_without_flows():
    prices = [100, 110, 99, 120, 126]
    source = InMemoryHistorySource(
        {"NASDAQ:T": price_points([(utc(2024, 2, i + 1), p) for i, p in enumerate(prices)])}
    )
    txns = [_txn("2024-02-01", "BUY", 3, 100, ticker="T")]
    result = await compute_performance([], txns, "USD", RATES, fetch_history=source)

    expected = 1.0
    for prev, curr, point in zip(prices, prices[1:], result.points[1:]):
        expected *= 1 + (curr - prev) / prev
        assert point.twr == pytest.approx(expected)
    assert result.points[-1].twr == pytest.approx(prices[-1] / prices[0])


def test_sync_wrapper_uses_configured_display_currency(monkeypatch):
    monkeypatch.setenv("PORTFOLIO_PERF_DISPLAY_CURRENCY", "ILS")
    result = compute_performance_sync(
        [_aapl_holding()],
        [_txn("2024-01-02", "BUY", 10, 102)],
        exchange_rates=RATES,
        fetch_history=_history_source(),
    )
    assert result.points[0].holdings_value == pytest.approx(4080)


def test_twr_day_return_branches():
    assert twr_day_return(1000, 1100, CashEffects()) == pytest.approx(0.1)
    # inception: the inflow is the denominator
    assert twr_day_return(0, 1100, CashEffects(net_flow=1000)) == pytest.approx(0.1)
    # nothing held and money leaving
    assert twr_day_return(0, 0, CashEffects(net_flow=-100)) == 0.0
    assert twr_day_return(1000, 1000, CashEffects(dividends=20, fees=5)) == pytest.approx(0.015)


def test_step_day_is_a_pure_transition_of_fold_state():
    source = _history_source()
    history_map = {"NASDAQ:AAPL": source("AAPL", "NASDAQ")}
    txns = [_txn("2024-01-02", "BUY", 10, 102)]
    ctx = FoldContext.build(txns, history_map, ValuationContext.build("USD", RATES, [_aapl_holding()]))

    start = FoldState()
    state, point = step_day(start, utc(2024, 1, 2), ctx)
    assert start == FoldState()
    assert state.txn_index == 1
    assert state.prev_holdings_value == pytest.approx(1020)
    assert point.twr == pytest.approx(1.0)

    state, point = step_day(state, utc(2024, 1, 3), ctx)
    assert state.txn_index == 1
    assert point.twr == pytest.approx(1050 / 1020)


async def test_points_convert_to_frame_and_series():
    result = await compute_performance(
        [_aapl_holding()], [_txn("2024-01-02", "BUY", 10, 102)], "USD", RATES, fetch_history=_history_source()
    )
    frame = points_to_frame(result.points)
    assert list(frame.columns) == ["holdings_value", "cost_basis", "gains_value", "twr"]
    assert len(frame) == 4
    assert frame["holdings_value"].iloc[-1] == pytest.approx(1080)

    series = performance_series(result.points)
    assert [s.value for s in series] == [p.twr for p in result.points]
    assert all(not math.isnan(s.value) for s in series)


def test_empty_points_frame_has_columns():
    frame = points_to_frame([])
    assert frame.empty
    assert list(frame.columns) == ["holdings_value", "cost_basis", "gains_value", "twr"]
