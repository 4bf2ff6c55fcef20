"""Unit tests for indicator math and IndicatorSet computation."""

from __future__ import annotations

import random

import pytest

from conftest import make_candles, rally_then_drop_closes
from crypto_signals.data import indicators as ind
from crypto_signals.data.market_feed import Candle, Timeframe
from crypto_signals.errors import DataInsufficient


def random_walk(n: int, seed: int = 7) -> list[float]:
    rng = random.Random(seed)
    price = 100.0
    closes = []
    for _ in range(n):
        price *= 1 + rng.gauss(0, 0.02)
        closes.append(price)
    return closes


class TestPrimitives:
    def test_ema_series_seeded_with_sma(self):
        assert ind.ema_series([1.0, 2.0, 3.0, 4.0], 2) == pytest.approx([1.5, 2.5, 3.5])

    def test_sma_requires_enough_values(self):
        with pytest.raises(ValueError):
            ind.sma([1.0, 2.0], 3)

    def test_rsi_extremes(self):
        rising = [float(i) for i in range(1, 40)]
        flat = [100.0] * 40
        assert ind.rsi(rising) == 100.0
        assert ind.rsi(flat) == 50.0

    def test_rsi_after_sharp_drop(self):
        assert ind.rsi(rally_then_drop_closes()) == pytest.approx(24.53, abs=0.05)

    def test_macd_needs_slow_plus_signal_history(self):
        with pytest.raises(ValueError):
            ind.macd([100.0] * 30)

    def test_stochastic_flat_window_reads_mid(self):
        flat = [100.0] * 20
        assert ind.stochastic(flat, flat, flat).k == 50.0

    def test_volume_ratio_zero_baseline_raises(self):
        with pytest.raises(ZeroDivisionError):
            ind.volume_ratio([0.0] * 21, [100.0] * 21)

    def test_log_returns_skip_non_positive(self):
        assert len(ind.log_returns([100.0, 0.0, 101.0, 102.0])) == 1


class TestRanges:
    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_oscillators_stay_in_bounds(self, seed):
        candles = make_candles(random_walk(120, seed))
        result = ind.compute_indicator_set(candles, Timeframe.H1)

        assert 0.0 <= result.rsi <= 100.0
        assert 0.0 <= result.stochastic.k <= 100.0
        assert 0.0 <= result.stochastic.d <= 100.0
        assert result.bollinger.upper >= result.bollinger.middle >= result.bollinger.lower
        assert result.atr >= 0.0
        assert result.failed == ()


class TestIndicatorSet:
    def test_deterministic_for_same_input(self):
        candles = make_candles(random_walk(80))
        assert ind.compute_indicator_set(candles, "1h") == ind.compute_indicator_set(candles, "1h")

    def test_insufficient_candles_raise(self):
        candles = make_candles(random_walk(10))
        with pytest.raises(DataInsufficient) as exc_info:
            ind.compute_indicator_set(candles, Timeframe.H4, symbol="BTC/USDT")
        assert exc_info.value.available == 10
        assert exc_info.value.required == 50

    def test_bullish_stack_after_rally(self):
        result = ind.compute_indicator_set(make_candles(rally_then_drop_closes()), Timeframe.H1)

        assert result.ema.short > result.ema.medium > result.ema.long
        assert result.ema.short == pytest.approx(273.6, abs=0.1)
        assert result.close == 216.0
        assert result.close < result.bollinger.lower

    def test_failing_indicator_is_isolated(self):
        candles = make_candles(random_walk(60), volumes=[0.0] * 60)
        result = ind.compute_indicator_set(candles, Timeframe.H1)

        assert result.volume is None
        assert result.failed == ("volume",)
        assert result.rsi is not None

    def test_lookbacks_follow_timeframe(self):
        assert ind.MA_LOOKBACKS[Timeframe.M1] == (5, 13, 34)
        assert ind.MA_LOOKBACKS[Timeframe.D1] == (9, 21, 50)
        assert set(ind.MA_LOOKBACKS) == set(Timeframe)


class TestCandle:
    def test_rejects_high_below_body(self):
        with pytest.raises(ValueError):
            Candle(ts=None, open=10.0, high=9.0, low=8.0, close=9.5, volume=1.0)

    def test_rejects_negative_volume(self):
        with pytest.raises(ValueError):
            Candle(ts=None, open=10.0, high=11.0, low=9.0, close=10.0, volume=-1.0)
