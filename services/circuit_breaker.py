"""
Circuit Breaker Pattern for External API Calls
Stops hammering the payout provider while it is failing
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, Type

from utils.exceptions import ProviderUnavailableError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls due to failures
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """
    In-process circuit breaker for one external service

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests blocked
    - HALF_OPEN: Testing recovery; 3 consecutive successes close the circuit
    """

    HALF_OPEN_SUCCESSES_TO_CLOSE = 3

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        expected_exception: Tuple[Type[BaseException], ...] = (ProviderUnavailableError,),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_successes = 0
        self.last_failure_time: Optional[datetime] = None
        self.stats = {
            "total_calls": 0,
            "successful_calls": 0,
            "failed_calls": 0,
            "blocked_calls": 0,
        }
        self._lock = asyncio.Lock()

    async def async_call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute async function with circuit breaker protection"""
        async with self._lock:
            self.stats["total_calls"] += 1
            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self.state = CircuitState.HALF_OPEN
                    self.half_open_successes = 0
                    logger.info(f"🔌 CIRCUIT_HALF_OPEN: {self.name}")
                else:
                    self.stats["blocked_calls"] += 1
                    raise ProviderUnavailableError(
                        f"{self.name} temporarily unavailable", details={"circuit": self.name}
                    )

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            await self._on_failure()
            raise
        await self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        elapsed = (datetime.utcnow() - self.last_failure_time).total_seconds()
        return elapsed >= self.recovery_timeout

    async def _on_success(self):
        async with self._lock:
            self.stats["successful_calls"] += 1
            if self.state == CircuitState.HALF_OPEN:
                self.half_open_successes += 1
                if self.half_open_successes >= self.HALF_OPEN_SUCCESSES_TO_CLOSE:
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    self.half_open_successes = 0
                    logger.info(f"✅ CIRCUIT_CLOSED: {self.name} recovered")
            else:
                self.failure_count = 0

    async def _on_failure(self):
        async with self._lock:
            self.stats["failed_calls"] += 1
            self.failure_count += 1
            self.last_failure_time = datetime.utcnow()
            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                self.half_open_successes = 0
                logger.warning(f"⚠️ CIRCUIT_REOPENED: {self.name} failed in HALF_OPEN")
            elif self.failure_count >= self.failure_threshold and self.state == CircuitState.CLOSED:
                self.state = CircuitState.OPEN
                logger.error(f"🚨 CIRCUIT_OPEN: {self.name} after {self.failure_count} failures")

    def reset(self):
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_successes = 0
        self.last_failure_time = None
        logger.info(f"🔄 CIRCUIT_RESET: {self.name}")

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "half_open_successes": self.half_open_successes,
            "last_failure": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "stats": dict(self.stats),
        }


# Global circuit breakers for external services
circuit_breakers: Dict[str, CircuitBreaker] = {
    "razorpay": CircuitBreaker("razorpay", failure_threshold=3, recovery_timeout=120),
}


def with_circuit_breaker(service_name: str):
    """
    Decorator to apply circuit breaker to async functions

    Usage:
        @with_circuit_breaker('razorpay')
        async def call_provider():
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            breaker = circuit_breakers.get(service_name)
            if not breaker:
                logger.warning(f"No circuit breaker configured for {service_name}")
                return await func(*args, **kwargs)
            return await breaker.async_call(func, *args, **kwargs)

        return wrapper
    return decorator


def get_all_breaker_states() -> Dict[str, Dict[str, Any]]:
    return {name: breaker.get_state() for name, breaker in circuit_breakers.items()}


def reset_circuit_breaker(service_name: str) -> bool:
    breaker = circuit_breakers.get(service_name)
    if breaker is None:
        return False
    breaker.reset()
    return True
