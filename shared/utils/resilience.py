"""
shared/utils/resilience.py
Circuit breakers for downstream services (payment gateway, delivery providers).
"""

import logging

from pybreaker import CircuitBreaker, CircuitBreakerListener

logger = logging.getLogger(__name__)


class LoggingListener(CircuitBreakerListener):
    """Logs breaker state changes and failures."""

    def state_change(self, cb, old_state, new_state):
        logger.warning(
            "Circuit breaker '%s' changed state: %s → %s",
            cb.name, getattr(old_state, "name", old_state), getattr(new_state, "name", new_state),
        )

    def failure(self, cb, exc):
        logger.warning("Circuit breaker '%s' recorded failure: %s", cb.name, exc)


class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self, fail_max: int = 5, reset_timeout: int = 60):
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout
        self.breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(self, service_name: str) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=self.fail_max,            # Open after N consecutive failures
                reset_timeout=self.reset_timeout,  # Try again after this many seconds
                listeners=[LoggingListener()],
                name=service_name,
            )
        return self.breakers[service_name]

    def reset_all(self) -> None:
        for breaker in self.breakers.values():
            breaker.close()


circuit_breaker_manager = CircuitBreakerManager()
