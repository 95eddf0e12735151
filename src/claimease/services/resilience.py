"""Retry and circuit breaking for calls to OpenAI and Stripe."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import ParamSpec, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when a call is rejected because its circuit is open."""

    pass


@dataclass
class CircuitBreaker:
    """Stops calling a failing provider for ``recovery_timeout`` seconds.

    After the timeout one probe call is let through (half-open). Success
    closes the circuit, failure opens it again.
    """

    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    clock: Callable[[], float] = time.monotonic

    state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    failure_count: int = field(default=0, init=False)
    opened_at: float = field(default=0.0, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Run ``func`` unless the circuit is open."""
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self.clock() - self.opened_at < self.recovery_timeout:
                    raise CircuitOpenError(f"Circuit breaker '{self.name}' is open")
                logger.info(f"Circuit '{self.name}' half-open, probing")
                self.state = CircuitState.HALF_OPEN

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self._record_failure(e)
            raise

        await self._record_success()
        return result

    async def _record_success(self) -> None:
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit '{self.name}' recovered")
            self.state = CircuitState.CLOSED
            self.failure_count = 0

    async def _record_failure(self, error: Exception) -> None:
        async with self._lock:
            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                logger.warning(
                    f"Circuit '{self.name}' opened after {self.failure_count} failures: {error}"
                )
                self.state = CircuitState.OPEN
                self.opened_at = self.clock()

    def reset(self) -> None:
        """Close the circuit and forget past failures."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = 0.0


_circuit_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Get or create a circuit breaker by name."""
    if name not in _circuit_breakers:
        _circuit_breakers[name] = CircuitBreaker(name=name)
    return _circuit_breakers[name]


openai_circuit = get_circuit_breaker("openai")
stripe_circuit = get_circuit_breaker("stripe")


def retrying(
    retry_on: tuple[type[BaseException], ...],
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 10.0,
) -> AsyncRetrying:
    """Exponential backoff for transient provider errors.

    Usage:
        async for attempt in retrying(RETRYABLE):
            with attempt:
                ...
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
