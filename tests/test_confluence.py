"""Tests for vote scoring, regime weighting, simplified signals and time decay."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_candles, rally_then_drop_closes
from crypto_signals.data.indicators import IndicatorSet, MovingAverages, compute_indicator_set
from crypto_signals.data.market_feed import Timeframe
from crypto_signals.edge.regime_detector import MarketRegime
from crypto_signals.strategy.confluence import (
    CATEGORY_WEIGHTS,
    REGIME_MULTIPLIERS,
    ConfluenceEngine,
    IndicatorCategory,
    Vote,
    macd_vote,
    rsi_vote,
    score_votes,
)
from crypto_signals.strategy.signal import DECAY_RATES, DataQuality, Direction, decay_confidence

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine() -> ConfluenceEngine:
    return ConfluenceEngine()


def bare_indicators(**overrides) -> IndicatorSet:
    fields = dict(
        close=100.0,
        rsi=None,
        macd=None,
        ema=None,
        sma=None,
        bollinger=None,
        atr=2.0,
        stochastic=None,
        volume=None,
    )
    fields.update(overrides)
    return IndicatorSet(**fields)


class TestWeightTables:
    def test_tables_cover_every_category_and_regime(self):
        assert set(CATEGORY_WEIGHTS) == set(IndicatorCategory)
        assert set(REGIME_MULTIPLIERS) == set(MarketRegime)
        assert sum(CATEGORY_WEIGHTS.values()) == pytest.approx(1.0)
        for multipliers in REGIME_MULTIPLIERS.values():
            assert set(multipliers) == set(IndicatorCategory)

    def test_every_timeframe_has_a_decay_rate(self):
        assert set(DECAY_RATES) == set(Timeframe)
        assert all(0 < rate < 1 for rate in DECAY_RATES.values())


class TestVotes:
    def test_rsi_oversold_votes_long(self):
        vote = rsi_vote(20.0)
        assert vote.direction is Direction.LONG
        assert vote.strength == pytest.approx(85.0)

    def test_rsi_mid_range_is_neutral(self):
        assert rsi_vote(50.0).direction is Direction.NEUTRAL

    def test_macd_full_strength_when_aligned_and_expanding(self):
        vote = macd_vote(value=2.0, signal=1.0, histogram=1.0, prev_histogram=0.5)
        assert vote.direction is Direction.LONG
        assert vote.strength == 100.0


class TestScoring:
    def test_score_inside_band_is_neutral(self):
        votes = [Vote("rsi", IndicatorCategory.MOMENTUM, Direction.LONG, 10.0, "weak")]
        result = score_votes(votes, MarketRegime.NORMAL)
        assert result.score == pytest.approx(55.0)
        assert result.direction is Direction.NEUTRAL

    def test_score_outside_band_picks_direction(self):
        votes = [Vote("rsi", IndicatorCategory.MOMENTUM, Direction.LONG, 12.0, "weak")]
        assert score_votes(votes, MarketRegime.NORMAL).direction is Direction.LONG

    def test_regime_shifts_the_decision(self):
        votes = [
            Vote("ema", IndicatorCategory.TREND, Direction.LONG, 100.0, "trend up"),
            Vote("rsi", IndicatorCategory.MOMENTUM, Direction.SHORT, 100.0, "overbought"),
        ]
        assert score_votes(votes, MarketRegime.NORMAL).direction is Direction.NEUTRAL
        assert score_votes(votes, MarketRegime.TRENDING).direction is Direction.LONG
        assert score_votes(votes, MarketRegime.RANGING).direction is Direction.SHORT

    def test_no_votes_is_neutral_fifty(self):
        result = score_votes([], MarketRegime.VOLATILE)
        assert result.direction is Direction.NEUTRAL
        assert result.confidence == 50.0


class TestSynthesize:
    def test_oversold_in_bullish_stack_goes_long(self, engine):
        indicators = compute_indicator_set(make_candles(rally_then_drop_closes()), Timeframe.H1)
        signal = engine.synthesize(
            indicators, MarketRegime.NORMAL, Timeframe.H1, symbol="BTC/USDT", entry_price=216.0, now=NOW
        )

        assert indicators.rsi < 30
        assert signal.direction is Direction.LONG
        assert signal.confidence >= 65
        assert signal.stop_loss < signal.entry_price < signal.take_profit
        assert signal.data_quality is DataQuality.FULL
        assert "regime NORMAL" in signal.reasoning
        assert signal.reasoning[-1].startswith("score")

    def test_same_input_same_signal(self, engine):
        indicators = compute_indicator_set(make_candles(rally_then_drop_closes()), Timeframe.H1)
        first = engine.synthesize(indicators, MarketRegime.NORMAL, "1h", symbol="BTC/USDT", entry_price=216.0, now=NOW)
        second = engine.synthesize(indicators, MarketRegime.NORMAL, "1h", symbol="BTC/USDT", entry_price=216.0, now=NOW)
        assert first == second

    def test_failed_indicator_is_excluded(self, engine):
        indicators = bare_indicators(
            ema=MovingAverages(short=105.0, medium=100.0, long=90.0),
            failed=("rsi",),
        )
        signal = engine.synthesize(
            indicators, MarketRegime.NORMAL, Timeframe.H4, symbol="ETH/USDT", entry_price=100.0, now=NOW
        )

        assert signal.direction is Direction.LONG
        assert signal.confidence == 100.0
        assert "rsi excluded: computation error" in signal.reasoning

    def test_neutral_signal_gets_half_atr_band(self, engine):
        signal = engine.synthesize(
            bare_indicators(), MarketRegime.NORMAL, Timeframe.H1, symbol="BTC/USDT", entry_price=100.0, now=NOW
        )
        assert signal.direction is Direction.NEUTRAL
        assert signal.stop_loss == pytest.approx(99.0)
        assert signal.take_profit == pytest.approx(101.0)


class TestSimplified:
    def test_short_history_gives_capped_signal(self, engine):
        candles = make_candles([100.0 + i for i in range(10)])
        signal = engine.generate("BTC/USDT", Timeframe.W1, candles, entry_price=120.0, now=NOW)

        assert signal.data_quality is DataQuality.INSUFFICIENT
        assert signal.confidence <= 60
        assert signal.direction is Direction.LONG
        assert signal.indicators is None

    def test_no_candles_does_not_raise(self, engine):
        signal = engine.synthesize_simplified("BTC/USDT", "1M", [], entry_price=50_000.0, now=NOW)
        assert signal.direction is Direction.NEUTRAL
        assert signal.stop_loss < signal.entry_price < signal.take_profit

    def test_generate_uses_full_path_with_enough_history(self, engine):
        signal = engine.generate(
            "BTC/USDT", "1h", make_candles(rally_then_drop_closes()), entry_price=216.0, regime=MarketRegime.NORMAL
        )
        assert signal.data_quality is DataQuality.FULL
        assert signal.direction is Direction.LONG


class TestDecay:
    def test_no_decay_inside_window(self):
        assert decay_confidence(80.0, Timeframe.H1, 3600) == 80.0

    def test_per_minute_decay_after_window(self):
        assert decay_confidence(80.0, "1h", 3600 + 600) == pytest.approx(80.0 * 0.99**10)

    def test_short_timeframes_decay_faster(self):
        assert decay_confidence(80.0, "1m", 60 + 600) < decay_confidence(80.0, "1d", 86400 + 600)

    def test_signal_decayed_confidence(self, engine):
        signal = engine.synthesize_simplified("BTC/USDT", "5m", [], entry_price=100.0, now=NOW)
        later = NOW + timedelta(minutes=15)
        assert signal.decayed_confidence(later) == pytest.approx(signal.confidence * 0.97**10)

    def test_signal_serializes_plain_values(self, engine):
        signal = engine.synthesize_simplified("BTC/USDT", "4h", [], entry_price=100.0, now=NOW)
        payload = signal.to_dict()

        assert payload["timeframe"] == "4h"
        assert payload["direction"] == "NEUTRAL"
        assert payload["data_quality"] == DataQuality.INSUFFICIENT.value
        assert payload["generated_at"] == NOW.isoformat()
        assert isinstance(payload["reasoning"], list)
