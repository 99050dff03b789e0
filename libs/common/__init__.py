"""Common utilities and exceptions."""

from libs.common.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitOpenError,
    CircuitState,
    CircuitStats,
    get_circuit_breaker,
)
from libs.common.exceptions import (
    ConfigurationError,
    DataQualityError,
    TradingPlatformError,
)

__all__ = [
    "TradingPlatformError",
    "DataQualityError",
    "ConfigurationError",
    "CircuitBreaker",
    "CircuitBreakerOptions",
    "CircuitOpenError",
    "CircuitState",
    "CircuitStats",
    "get_circuit_breaker",
]
