"""
shared/utils/circuit_breaker.py
Circuit breakers for downstream providers (Stripe).
An open breaker raises pybreaker.CircuitBreakerError, which main.py maps to 503.
"""

import logging

from pybreaker import CircuitBreaker, CircuitBreakerListener

logger = logging.getLogger(__name__)


class _LoggingListener(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        logger.warning(f"Circuit breaker '{cb.name}': {old_state.name} -> {new_state.name}")


class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self, fail_max: int = 5, reset_timeout: int = 60):
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout
        self.breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(self, service_name: str, exclude: tuple = ()) -> CircuitBreaker:
        """
        Get or create a circuit breaker for a service.
        Exceptions listed in `exclude` are client errors and do not count as failures.
        """
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=self.fail_max,
                reset_timeout=self.reset_timeout,
                exclude=list(exclude),
                listeners=[_LoggingListener()],
                name=service_name,
            )
        return self.breakers[service_name]


circuit_breaker_manager = CircuitBreakerManager()
