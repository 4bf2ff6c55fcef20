"""Tests for the calculation scheduler and configuration wiring."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import FakeProvider, ManualClock
from crypto_signals.data.circuit_breaker import GuardedMarketDataProvider
from crypto_signals.data.market_feed import Timeframe
from crypto_signals.data.price_cache import PriceCache
from crypto_signals.engine import CalculationScheduler, EngineConfig, build_scheduler
from crypto_signals.errors import DataUnavailable
from crypto_signals.logging.metrics import summarize_cycle
from crypto_signals.persistence.signal_store import InMemorySignalStore
from crypto_signals.risk.assessment import RiskAssessor
from crypto_signals.risk.monte_carlo import MonteCarloRiskEngine
from crypto_signals.risk.position_sizer import PositionSizer
from crypto_signals.strategy.confluence import ConfluenceEngine
from crypto_signals.strategy.timeframe_coordinator import MultiTimeframeCoordinator

SETTINGS = Path(__file__).resolve().parents[1] / "crypto_signals" / "config" / "settings.yaml"


class FailingStore(InMemorySignalStore):
    async def save_signal(self, signal):
        raise ConnectionError("store offline")


class ExplodingCoordinator(MultiTimeframeCoordinator):
    async def run(self, snapshot):
        if snapshot.symbol == "ETH/USDT":
            raise RuntimeError("unexpected exchange payload")
        return await super().run(snapshot)


def make_scheduler(
    provider: FakeProvider, clock: ManualClock, store=None, symbols=("BTC/USDT", "ETH/USDT"), coordinator=None
):
    cache = PriceCache(provider.fetch_price, clock=clock)
    coordinator = coordinator or MultiTimeframeCoordinator(
        provider, ConfluenceEngine(), timeframes=[Timeframe.H1, Timeframe.D1]
    )
    assessor = RiskAssessor(MonteCarloRiskEngine(iterations=100, seed=11), PositionSizer(0.01), clock=clock)
    return CalculationScheduler(
        cache=cache,
        coordinator=coordinator,
        store=store if store is not None else InMemorySignalStore(),
        symbols=symbols,
        assessor=assessor,
        min_gap=30,
        clock=clock,
    )


class TestTrigger:
    @pytest.mark.asyncio
    async def test_second_trigger_inside_gap_is_rejected(self, provider, clock):
        scheduler = make_scheduler(provider, clock)

        first = await scheduler.trigger("manual")
        second = await scheduler.trigger("manual")

        assert first is not None
        assert second is None
        assert scheduler.cycles == 1
        assert scheduler.rate_limited == 1

    @pytest.mark.asyncio
    async def test_trigger_allowed_after_gap(self, provider, clock):
        scheduler = make_scheduler(provider, clock)
        await scheduler.trigger()
        clock.advance(31)

        assert await scheduler.trigger() is not None
        assert scheduler.cycles == 2

    @pytest.mark.asyncio
    async def test_overlapping_trigger_is_rejected(self, rally_candles, clock):
        provider = FakeProvider(
            candles={Timeframe.H1: rally_candles, Timeframe.D1: rally_candles},
            prices={"BTC/USDT": 216.0, "ETH/USDT": 216.0},
            delay=0.01,
        )
        scheduler = make_scheduler(provider, clock)

        reports = await asyncio.gather(scheduler.trigger("timer"), scheduler.trigger("manual"))

        assert sum(r is not None for r in reports) == 1
        assert scheduler.overlap_rejections == 1
        assert scheduler.is_calculating is False

    @pytest.mark.asyncio
    async def test_cycle_fills_book_store_and_listeners(self, provider, clock):
        store = InMemorySignalStore()
        scheduler = make_scheduler(provider, clock, store=store)
        heard = []
        scheduler.add_listener(heard.append)

        report = await scheduler.trigger()

        assert set(report.signals) == {"BTC/USDT", "ETH/USDT"}
        assert len(store.signals) == 4
        assert len(heard) == 4
        assert set(scheduler.get_signals("BTC/USDT")) == {Timeframe.H1, Timeframe.D1}
        assert list(scheduler.get_signals("BTC/USDT", "1h")) == [Timeframe.H1]

        metrics = summarize_cycle(report)
        assert metrics["signals"] == 4
        assert metrics["symbols_failed"] == 0

    @pytest.mark.asyncio
    async def test_removed_listener_hears_nothing(self, provider, clock):
        scheduler = make_scheduler(provider, clock)
        heard = []
        scheduler.add_listener(heard.append)

        assert scheduler.remove_listener(heard.append) is True
        assert scheduler.remove_listener(heard.append) is False
        await scheduler.trigger()

        assert heard == []


class TestIsolation:
    @pytest.mark.asyncio
    async def test_symbol_failure_keeps_previous_signals(self, provider, clock):
        scheduler = make_scheduler(provider, clock)
        await scheduler.trigger()
        previous = scheduler.get_signals("ETH/USDT")

        provider.failing_prices.add("ETH/USDT")
        clock.advance(61)
        report = await scheduler.trigger()

        assert "ETH/USDT" in report.failures
        assert "BTC/USDT" in report.signals
        assert scheduler.get_signals("ETH/USDT") == previous

        health = scheduler.symbol_health("ETH/USDT")
        assert scheduler.is_stale("ETH/USDT") is True
        assert scheduler.is_stale("BTC/USDT") is False
        assert health.last_success_at is not None
        assert "unavailable" in health.last_error
        assert scheduler.get_status()["stale_symbols"] == ["ETH/USDT"]

    @pytest.mark.asyncio
    async def test_recovered_symbol_is_no_longer_stale(self, provider, clock):
        scheduler = make_scheduler(provider, clock)
        provider.failing_prices.add("ETH/USDT")
        await scheduler.trigger()
        assert scheduler.is_stale("ETH/USDT")

        provider.failing_prices.discard("ETH/USDT")
        clock.advance(61)
        await scheduler.trigger()

        assert not scheduler.is_stale("ETH/USDT")
        assert scheduler.symbol_health("ETH/USDT").last_failure_at is not None
        assert scheduler.get_status()["stale_symbols"] == []

    @pytest.mark.asyncio
    async def test_unexpected_symbol_error_does_not_abort_cycle(self, provider, clock):
        coordinator = ExplodingCoordinator(provider, ConfluenceEngine(), timeframes=[Timeframe.H1, Timeframe.D1])
        scheduler = make_scheduler(provider, clock, coordinator=coordinator)

        report = await scheduler.trigger()

        assert "RuntimeError" in report.failures["ETH/USDT"]
        assert set(scheduler.get_signals("BTC/USDT")) == {Timeframe.H1, Timeframe.D1}
        assert scheduler.is_calculating is False

    @pytest.mark.asyncio
    async def test_provider_error_for_one_symbol_keeps_others(self, provider, clock):
        provider.candle_errors["ETH/USDT"] = RuntimeError("unexpected exchange payload")
        scheduler = make_scheduler(provider, clock)

        report = await scheduler.trigger()

        assert "ETH/USDT" in report.failures
        assert set(report.signals) == {"BTC/USDT"}
        assert scheduler.get_signals("BTC/USDT")

    @pytest.mark.asyncio
    async def test_hanging_upstream_does_not_wedge_scheduler(self, provider, clock):
        provider.hanging_timeframes.update({Timeframe.H1, Timeframe.D1})
        coordinator = MultiTimeframeCoordinator(
            provider, ConfluenceEngine(), timeframes=[Timeframe.H1, Timeframe.D1], fetch_timeout=0.05
        )
        scheduler = make_scheduler(provider, clock, coordinator=coordinator)

        report = await scheduler.trigger()

        assert set(report.failures) == {"BTC/USDT", "ETH/USDT"}
        assert scheduler.is_calculating is False
        clock.advance(31)
        assert await scheduler.trigger() is not None
        assert scheduler.overlap_rejections == 0

    @pytest.mark.asyncio
    async def test_unpriced_symbol_fails_closed(self, provider, clock):
        scheduler = make_scheduler(provider, clock, symbols=("BTC/USDT", "DOGE/USDT"))
        report = await scheduler.trigger()

        assert "DOGE/USDT" in report.failures
        assert scheduler.get_signals("DOGE/USDT") == {}

    @pytest.mark.asyncio
    async def test_store_failure_is_logged_not_raised(self, provider, clock):
        scheduler = make_scheduler(provider, clock, store=FailingStore())
        report = await scheduler.trigger()

        assert report is not None
        assert scheduler.get_status()["total_signals"] == 4


class TestRiskAndStatus:
    @pytest.mark.asyncio
    async def test_assess_risk_persists(self, provider, clock):
        store = InMemorySignalStore()
        scheduler = make_scheduler(provider, clock, store=store)
        await scheduler.trigger()

        assessment = await scheduler.assess_risk("BTC/USDT", "1h", balance=5_000.0)

        assert assessment.symbol == "BTC/USDT"
        assert assessment.position_size > 0
        assert store.assessments == [assessment]

    @pytest.mark.asyncio
    async def test_assess_risk_without_signal(self, provider, clock):
        scheduler = make_scheduler(provider, clock)
        with pytest.raises(DataUnavailable):
            await scheduler.assess_risk("BTC/USDT", "4h")

    @pytest.mark.asyncio
    async def test_status_fields(self, provider, clock):
        scheduler = make_scheduler(provider, clock)
        await scheduler.trigger()
        await scheduler.trigger()

        status = scheduler.get_status()
        assert status["is_running"] is False
        assert status["is_calculating"] is False
        assert status["total_symbols"] == 2
        assert status["total_signals"] == 4
        assert status["rate_limited"] == 1
        assert status["last_calculation_time"] is not None

    @pytest.mark.asyncio
    async def test_start_runs_first_cycle_immediately(self, provider, clock):
        scheduler = make_scheduler(provider, clock)
        scheduler.start()
        for _ in range(100):
            if scheduler.cycles:
                break
            await asyncio.sleep(0.01)

        assert scheduler.cycles == 1
        assert scheduler.get_status()["is_running"] is True
        await scheduler.stop()
        assert scheduler.get_status()["is_running"] is False


class TestConfig:
    def test_packaged_settings_load(self):
        config = EngineConfig.from_yaml(SETTINGS)
        assert config.section("engine")["interval_seconds"] == 240
        assert "1M" in config.section("market")["timeframes"]

    def test_build_scheduler_from_settings(self, provider):
        scheduler = build_scheduler(EngineConfig.from_yaml(SETTINGS), provider=provider)

        assert scheduler.interval == 240
        assert scheduler.min_gap == 30
        assert len(scheduler.symbols) == 5
        assert len(scheduler.coordinator.timeframes) == 10
        assert scheduler.coordinator.fetch_timeout == 10
        assert isinstance(scheduler.coordinator.provider, GuardedMarketDataProvider)
        assert scheduler.coordinator.provider.breaker.failure_threshold == 5
