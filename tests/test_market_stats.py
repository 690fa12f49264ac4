import pytest

from market_stats import calculate_token_stats, candles_to_frame, convert_to_chart_data
from models import OHLCVCandle, TokenStats


def candle(time, close, volume=0.0, low=None):
    return OHLCVCandle(time=time, open=close, high=close, low=close if low is None else low,
                       close=close, volume=volume, count=1)


CANDLES = [
    candle("2024-05-01T12:00:00Z", 0.00000003, volume=40_000_000_000),
    candle("2024-05-01T12:00:15Z", 0.00000004, volume=2_500_000_000),
    candle("2024-05-01T12:00:30Z", 0.00000005, volume=500_000_000),
]


def test_candles_to_frame_adds_unix_time():
    frame = candles_to_frame(CANDLES)

    assert list(frame["ts"]) == [1714564800, 1714564815, 1714564830]
    assert candles_to_frame([]).empty


def test_chart_points_are_scaled_to_usd():
    points = convert_to_chart_data(CANDLES, sol_price=150.0)

    assert [p.time for p in points] == [1714564800, 1714564815, 1714564830]
    assert points[0].close == pytest.approx(0.00000003 * 150 * 1_000_000)


def test_chart_drops_non_positive_candles():
    candles = CANDLES + [candle("2024-05-01T12:00:45Z", 0.0), candle("2024-05-01T12:01:00Z", 0.00000006, low=-1.0)]

    assert len(convert_to_chart_data(candles, sol_price=150.0)) == 3


@pytest.mark.parametrize("candles, sol_price", [([], 150.0), (CANDLES, 0.0)])
def test_chart_without_data(candles, sol_price):
    assert convert_to_chart_data(candles, sol_price) == []


def test_token_stats_from_candles():
    stats = calculate_token_stats(CANDLES, sol_price=150.0)

    assert stats.price == pytest.approx(0.00000005 * 150)
    assert stats.liquidity == pytest.approx(43.0)
    assert stats.bonding_curve_progress == pytest.approx(43.0 / 85 * 100)
    assert stats.global_fees_paid == pytest.approx(430_000_000)
    assert stats.market_cap == pytest.approx(0.00000005 * 150 * 1_000_000)
    assert stats.supply == 1_000_000_000


def test_token_stats_progress_is_capped():
    stats = calculate_token_stats([candle("2024-05-01T12:00:00Z", 0.0000001, volume=200_000_000_000)], 150.0)

    assert stats.bonding_curve_progress == 100.0


def test_token_stats_without_data():
    assert calculate_token_stats([], 150.0) == TokenStats()
    assert calculate_token_stats(CANDLES, 0.0) == TokenStats()
