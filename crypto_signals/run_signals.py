"""Entry point for running the signal scheduler against live market data."""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path
import signal

from crypto_signals.data.market_feed import CcxtMarketDataProvider, LivePriceStream
from crypto_signals.data.price_cache import PriceSnapshot
from crypto_signals.engine import EngineConfig, build_scheduler
from crypto_signals.logging.feed_log import get_feed_logger


def config_path() -> Path:
    override = os.environ.get("CRYPTO_SIGNALS_CONFIG")
    if override:
        return Path(override)
    return Path(__file__).parent / "config" / "settings.yaml"


async def run(config: EngineConfig) -> None:
    market_cfg = config.section("market")
    provider = CcxtMarketDataProvider(exchange_id=market_cfg.get("exchange", "binance"))
    scheduler = build_scheduler(config, provider=provider)
    feed_logger = get_feed_logger()

    def on_price(snapshot: PriceSnapshot) -> None:
        feed_logger.debug("tick symbol=%s price=%.8g", snapshot.symbol, snapshot.price)

    subscriptions = [scheduler.cache.subscribe(symbol, on_price) for symbol in scheduler.symbols]
    stream = LivePriceStream(scheduler.cache, scheduler.symbols) if market_cfg.get("live_stream", True) else None
    stream_task = asyncio.create_task(stream.connect()) if stream is not None else None

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    print("Signal engine started. Press CTRL+C to stop.")
    scheduler.cache.start()
    scheduler.start()
    try:
        await stop.wait()
        print("\nGraceful shutdown initiated...")
    finally:
        await scheduler.stop()
        await scheduler.cache.stop()
        if stream is not None and stream_task is not None:
            stream.stop()
            stream_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stream_task
        for subscription in subscriptions:
            subscription.cancel()
        await provider.close()

    print("=== RUN SUMMARY ===")
    for k, v in scheduler.get_status().items():
        print(f"{k}: {v}")
    breaker = getattr(scheduler.coordinator.provider, "breaker", None)
    if breaker is not None:
        print(f"upstream: {breaker.status()}")


def main() -> None:
    asyncio.run(run(EngineConfig.from_yaml(config_path())))
    print("Signal engine stopped cleanly.")


if __name__ == "__main__":
    main()
