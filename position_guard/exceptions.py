"""
Custom exception hierarchy for the position guard.

Hierarchy:

    PositionGuardError (base)
    ├── OperationalError  : transient/retryable (exchange, network, timeouts)
    │   └── APIError      : exchange returned an error
    │       ├── AuthenticationError
    │       └── RateLimitError
    ├── DataError         : bad data, skip symbol, don't halt
    │   ├── ValidationError
    │   └── OrderExecutionError
    │       └── PositionAlreadyClosedError
    └── ConfigurationError: monitor cannot start with the active profile

Rules:
    - OperationalError: catch, log, let the next tick retry
    - DataError: catch, log, skip this symbol, continue loop
    - ConfigurationError: refuse to start, operator must fix config
    - Everything else inside a tick: caught and logged by the monitor loop,
      never allowed to stop subsequent ticks.
"""


class PositionGuardError(Exception):
    """Base exception for all position guard errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(PositionGuardError):
    """Transient/retryable error: exchange API, network, timeouts.

    Treatment: catch, log, continue to next tick.
    """
    pass


class APIError(OperationalError):
    """API-specific operational error (exchange returned error)."""
    pass


class AuthenticationError(APIError):
    """Raised when API authentication fails."""
    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded."""
    pass


# ============ DATA (bad input, skip symbol) ============

class DataError(PositionGuardError):
    """Bad data: zero/non-finite prices, unknown contract, malformed rows.

    Treatment: catch, log, skip this symbol, continue loop.
    """
    pass


class ValidationError(DataError):
    """Raised when a position snapshot fails validation."""
    pass


class OrderExecutionError(DataError):
    """Raised when the exchange rejects a closing order."""
    pass


class PositionAlreadyClosedError(OrderExecutionError):
    """Reduce-only order rejected because nothing is left to reduce.

    The close executor treats this as success: the position is already flat.
    """
    pass


# ============ CONFIGURATION ============

class ConfigurationError(PositionGuardError):
    """The active strategy profile lacks the tiers a monitor needs."""
    pass

