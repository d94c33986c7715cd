"""Circuit breaker for the external embedding and completion services.

When a service keeps failing, calls are rejected immediately for a cool-down
period instead of waiting on timeouts for every request. Callers translate
``CircuitBreakerError`` into their own degraded-dependency outcome.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking calls
    HALF_OPEN = "half_open"  # Probing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Failures before opening
    success_threshold: int = 2  # Successes before closing
    timeout: float = 60.0  # Seconds to wait before half-open
    call_timeout: float = 30.0  # Max seconds per call
    half_open_max_calls: int = 3  # Concurrent probes allowed while half-open


@dataclass
class CircuitBreakerStats:
    """Statistics for circuit breaker."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    last_failure_time: datetime | None = None
    last_state_change: datetime = field(default_factory=lambda: datetime.now(UTC))
    consecutive_failures: int = 0
    consecutive_successes: int = 0


class CircuitBreakerError(Exception):
    """Raised when circuit breaker is open and blocks a call."""

    def __init__(self, message: str, state: CircuitState) -> None:
        super().__init__(message)
        self.state = state


class CircuitBreaker:
    """Circuit breaker protecting one external service.

    States:
        - CLOSED: Normal operation, calls pass through
        - OPEN: Service is failing, calls are blocked
        - HALF_OPEN: A limited number of probe calls test recovery
    """

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> None:
        """Initialize circuit breaker.

        Args:
            service_name: Name of the protected service
            config: Circuit breaker configuration
        """
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats()
        self._half_open_in_flight = 0
        self._lock = asyncio.Lock()

        logger.info(
            f"Circuit breaker created for '{service_name}' "
            f"(failure_threshold={self.config.failure_threshold})"
        )

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        """Get circuit statistics."""
        return self._stats

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Execute coroutine function with circuit breaker protection.

        Args:
            func: Coroutine function to call
            *args: Function arguments
            **kwargs: Function keyword arguments

        Returns:
            Function result

        Raises:
            CircuitBreakerError: If circuit is open
            TimeoutError: If call times out
            Exception: If function raises any exception
        """
        probing = await self._check_circuit_state()

        try:
            result = await asyncio.wait_for(
                func(*args, **kwargs),
                timeout=self.config.call_timeout,
            )
        except TimeoutError:
            await self._record_failure(probing)
            logger.warning(
                f"⏱️ Call to '{self.service_name}' timed out after {self.config.call_timeout}s"
            )
            raise
        except Exception as e:
            await self._record_failure(probing)
            logger.error(f"❌ Call to '{self.service_name}' failed: {e.__class__.__name__}: {e}")
            raise

        await self._record_success(probing)
        return result

    async def _check_circuit_state(self) -> bool:
        """Reject the call if the circuit is open.

        Returns:
            True if this call is a half-open probe

        Raises:
            CircuitBreakerError: If circuit is OPEN or half-open probes are exhausted
        """
        async with self._lock:
            if self._state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    logger.info(f"⚡ Circuit '{self.service_name}' entering HALF_OPEN state")
                    self._transition(CircuitState.HALF_OPEN)
                    self._stats.consecutive_successes = 0
                else:
                    self._stats.rejected_calls += 1
                    raise CircuitBreakerError(
                        f"Circuit '{self.service_name}' is OPEN - rejecting call",
                        self._state,
                    )

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.config.half_open_max_calls:
                    self._stats.rejected_calls += 1
                    raise CircuitBreakerError(
                        f"Circuit '{self.service_name}' is probing - rejecting call",
                        self._state,
                    )
                self._half_open_in_flight += 1
                return True

            return False

    async def _record_success(self, probing: bool) -> None:
        async with self._lock:
            if probing:
                self._half_open_in_flight -= 1
            self._stats.successful_calls += 1
            self._stats.total_calls += 1
            self._stats.consecutive_failures = 0

            if self._state == CircuitState.HALF_OPEN:
                self._stats.consecutive_successes += 1
                if self._stats.consecutive_successes >= self.config.success_threshold:
                    logger.info(f"✅ Circuit '{self.service_name}' CLOSED (service recovered)")
                    self._transition(CircuitState.CLOSED)

    async def _record_failure(self, probing: bool) -> None:
        async with self._lock:
            if probing:
                self._half_open_in_flight -= 1
            self._stats.failed_calls += 1
            self._stats.total_calls += 1
            self._stats.consecutive_failures += 1
            self._stats.consecutive_successes = 0
            self._stats.last_failure_time = datetime.now(UTC)

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"⚠️ Circuit '{self.service_name}' HALF_OPEN failed - back to OPEN")
                self._transition(CircuitState.OPEN)

            elif (
                self._state == CircuitState.CLOSED
                and self._stats.consecutive_failures >= self.config.failure_threshold
            ):
                logger.error(
                    f"🔴 Circuit '{self.service_name}' OPEN "
                    f"({self._stats.consecutive_failures} consecutive failures)"
                )
                self._transition(CircuitState.OPEN)

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt reset."""
        if self._stats.last_failure_time is None:
            return True

        elapsed = (datetime.now(UTC) - self._stats.last_failure_time).total_seconds()
        return elapsed >= self.config.timeout

    def _transition(self, state: CircuitState) -> None:
        self._state = state
        self._stats.last_state_change = datetime.now(UTC)

    def get_stats_summary(self) -> dict[str, Any]:
        """Get summary of circuit statistics.

        Returns:
            Dictionary with statistics
        """
        return {
            "service_name": self.service_name,
            "state": self._state.value,
            "total_calls": self._stats.total_calls,
            "successful_calls": self._stats.successful_calls,
            "failed_calls": self._stats.failed_calls,
            "rejected_calls": self._stats.rejected_calls,
            "consecutive_failures": self._stats.consecutive_failures,
            "success_rate": (
                self._stats.successful_calls / self._stats.total_calls
                if self._stats.total_calls > 0
                else 0
            ),
            "last_failure_time": (
                self._stats.last_failure_time.isoformat() if self._stats.last_failure_time else None
            ),
            "last_state_change": self._stats.last_state_change.isoformat(),
        }


class CircuitBreakerRegistry:
    """Registry for the circuit breakers of one application."""

    def __init__(self) -> None:
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create_breaker(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Get or create circuit breaker for a service.

        Args:
            service_name: Name of the service
            config: Optional circuit breaker configuration

        Returns:
            CircuitBreaker instance
        """
        if service_name not in self._breakers:
            self._breakers[service_name] = CircuitBreaker(service_name, config)

        return self._breakers[service_name]

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        """Get statistics for all circuit breakers.

        Returns:
            Dictionary mapping service names to stats
        """
        return {name: breaker.get_stats_summary() for name, breaker in self._breakers.items()}
