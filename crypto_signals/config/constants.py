"""Project-wide constants for the signal engine."""

from __future__ import annotations

DEFAULT_EXCHANGE = "binance"
DEFAULT_SYMBOLS = ("BTC/USDT", "ETH/USDT", "BNB/USDT", "SOL/USDT", "XRP/USDT")

# Scheduler behavior
DEFAULT_CYCLE_INTERVAL_SECONDS = 240.0
DEFAULT_MIN_CYCLE_GAP_SECONDS = 30.0
DEFAULT_MAX_CONCURRENT_SYMBOLS = 5
DEFAULT_MAX_CONCURRENT_FETCHES = 10

# Price cache behavior
DEFAULT_REFRESH_INTERVAL_SECONDS = 240.0
DEFAULT_MIN_REFETCH_SECONDS = 60.0
DEFAULT_FRESHNESS_SECONDS = 30.0
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0

# Upstream circuit breaker
DEFAULT_BREAKER_FAILURE_THRESHOLD = 5
DEFAULT_BREAKER_COOLDOWN_SECONDS = 30.0
DEFAULT_BREAKER_HALF_OPEN_SUCCESSES = 3

# Indicator engine
MIN_CANDLES = 50
DEFAULT_CANDLE_LIMIT = 200

# Confluence
BASE_CONFIDENCE = 50.0
NEUTRAL_BAND = 5.0
SIMPLIFIED_CONFIDENCE_CAP = 60.0

# Risk
DEFAULT_ACCOUNT_BALANCE = 10_000.0
DEFAULT_RISK_PER_TRADE_PCT = 0.01
DEFAULT_MC_ITERATIONS = 1000
DEFAULT_MC_HORIZON = 24
DEFAULT_RISK_CACHE_TTL_SECONDS = 60.0
MIN_ATR_PCT = 0.001

# Precision controls for emitted values
PRICE_DECIMALS = 8
CONFIDENCE_DECIMALS = 2
QTY_DECIMALS = 6
