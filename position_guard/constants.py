"""
System-wide constants for the position guard.

Centralizes magic numbers used across modules. Runtime-tunable values live in
MonitorConfig; these are the defaults it falls back to.
"""
from decimal import Decimal

# Scheduling
MONITOR_INTERVAL_SECONDS = 10

# Fill price resolution (1s + 5 * 0.5s = ~3.5s upper bound)
INITIAL_FILL_WAIT_SECONDS = 1.0
FILL_POLL_ATTEMPTS = 5
FILL_POLL_INTERVAL_SECONDS = 0.5

# Fees (per leg, taker)
DEFAULT_FEE_RATE = Decimal("0.0005")

# Ledger reconciliation tolerances (absolute)
RECONCILE_PRICE_TOLERANCE = Decimal("0.01")
RECONCILE_PNL_TOLERANCE = Decimal("0.5")
RECONCILE_FEE_TOLERANCE = Decimal("0.1")

# Logging
STATUS_LOG_EVERY_N_CHECKS = 10

# Exchange
DEFAULT_SETTLE_CURRENCY = "USDT"
DEFAULT_API_TIMEOUT_MS = 30000

# Strategy
DEFAULT_TRADING_STRATEGY = "balanced"

# Trade ledger
TRADE_TYPE_OPEN = "open"
TRADE_TYPE_CLOSE = "close"
TRADE_STATUS_FILLED = "filled"
TRADE_STATUS_PENDING = "pending"

# Order status reported by the gateway once an order is done
ORDER_STATUS_FINISHED = "finished"
