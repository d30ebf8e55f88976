"""
Retry and circuit breaking for proof engine calls.

Proof engines are remote, slow and fallible. This module provides:
- Per-attempt timeouts
- Exponential backoff with jitter, for operations the engine documents as idempotent
- Circuit breaker so a failing prover is not hammered
"""
from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if recovered


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 0
    initial_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1  # Random jitter as fraction of delay
    timeout_seconds: float = 30.0  # Per-attempt timeout


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5  # Failures before opening
    success_threshold: int = 2  # Successes to close from half-open
    timeout_seconds: float = 60.0  # Time before trying again after open


@dataclass
class RetryResult(Generic[T]):
    """Result of a retried operation."""
    success: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    total_time_seconds: float = 0.0
    timed_out: bool = False
    circuit_open: bool = False


class RetryDelayCalculator:
    """Exponential backoff with jitter."""

    def __init__(self, config: RetryConfig):
        self._config = config

    def calculate_delay(self, attempt: int) -> float:
        base_delay = self._config.initial_delay_seconds * (
            self._config.backoff_multiplier ** attempt
        )
        jitter = base_delay * self._config.jitter_factor * random.uniform(-1, 1)
        return min(base_delay + jitter, self._config.max_delay_seconds)


class CircuitBreaker:
    """
    Circuit breaker implementation.

    Opens after repeated failures, then lets a probe through once the
    cool-down has elapsed.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
    ):
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_state_transition()
            return self._state

    def _check_state_transition(self) -> None:
        if self._state == CircuitState.OPEN and self._last_failure_time:
            elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
            if elapsed >= self._config.timeout_seconds:
                logger.info("Circuit breaker %s: OPEN -> HALF_OPEN", self._name)
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0

    def allow_request(self) -> bool:
        with self._lock:
            self._check_state_transition()
            return self._state != CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self._config.success_threshold:
                    logger.info("Circuit breaker %s: HALF_OPEN -> CLOSED", self._name)
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
            elif self._state == CircuitState.CLOSED:
                self._failure_count = max(0, self._failure_count - 1)

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)

            if self._state == CircuitState.HALF_OPEN:
                logger.warning("Circuit breaker %s: HALF_OPEN -> OPEN (failure during recovery)", self._name)
                self._state = CircuitState.OPEN
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self._config.failure_threshold
            ):
                logger.warning(
                    "Circuit breaker %s: CLOSED -> OPEN (threshold %d reached)",
                    self._name,
                    self._config.failure_threshold,
                )
                self._state = CircuitState.OPEN

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self._name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "last_failure": self._last_failure_time.isoformat() if self._last_failure_time else None,
        }


class RetryableClient:
    """
    Wraps async operations with timeouts, optional retries and a circuit breaker.

    Usage:
        client = RetryableClient("prover")
        result = await client.execute(lambda: http.post("/proofs", json=body))
    """

    def __init__(
        self,
        name: str,
        retry_config: Optional[RetryConfig] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
    ):
        self._name = name
        self._retry_config = retry_config or RetryConfig()
        self._delay_calculator = RetryDelayCalculator(self._retry_config)
        self._circuit_breaker = CircuitBreaker(name, circuit_config)

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    async def execute(
        self,
        func: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> RetryResult[T]:
        """
        Run `func` until it succeeds or attempts are exhausted.

        Args:
            func: Zero-argument coroutine factory
            max_retries: Overrides the configured retry count; pass 0 for
                non-idempotent operations
            timeout_seconds: Overrides the configured per-attempt timeout

        Returns:
            RetryResult with operation outcome
        """
        if not self._circuit_breaker.allow_request():
            logger.warning("Circuit breaker open for %s", self._name)
            return RetryResult(success=False, error=RuntimeError("Circuit breaker open"), circuit_open=True)

        retries = self._retry_config.max_retries if max_retries is None else max_retries
        timeout = timeout_seconds or self._retry_config.timeout_seconds
        start_time = time.monotonic()
        last_exception: Optional[BaseException] = None
        timed_out = False

        for attempt in range(retries + 1):
            try:
                value = await asyncio.wait_for(func(), timeout=timeout)
                self._circuit_breaker.record_success()
                return RetryResult(
                    success=True,
                    value=value,
                    attempts=attempt + 1,
                    total_time_seconds=time.monotonic() - start_time,
                )
            except asyncio.TimeoutError as e:
                last_exception = e
                timed_out = True
                logger.warning(
                    "%s: request timeout (attempt %d/%d)", self._name, attempt + 1, retries + 1
                )
            except Exception as e:
                last_exception = e
                timed_out = False
                logger.warning("%s: request failed (attempt %d): %s", self._name, attempt + 1, e)

            if attempt < retries:
                delay = self._delay_calculator.calculate_delay(attempt)
                logger.info("%s: retrying in %.2fs", self._name, delay)
                await asyncio.sleep(delay)

        self._circuit_breaker.record_failure()
        return RetryResult(
            success=False,
            error=last_exception,
            attempts=retries + 1,
            total_time_seconds=time.monotonic() - start_time,
            timed_out=timed_out,
        )
