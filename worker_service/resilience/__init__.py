"""Protection around unreliable collaborators."""

from .circuit_breaker import BreakerConfig, BreakerRegistry, BreakerState, CircuitBreaker
from .rate_limiter import TokenBucket

__all__ = [
    "BreakerConfig",
    "BreakerRegistry",
    "BreakerState",
    "CircuitBreaker",
    "TokenBucket",
]
