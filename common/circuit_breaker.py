"""
Circuit breakers guarding the ledger node and the price oracle.

While a collaborator keeps failing the breaker opens and callers get a
CircuitBreakerException right away instead of waiting on another timeout.
After ``reset_timeout`` a limited number of probe calls are let through.
"""
import asyncio
import functools
import time
from enum import Enum
from typing import Callable, Any
from dataclasses import dataclass
import logging

from common.error_handling import ErrorCodes, UpstreamUnavailableError

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5    # consecutive failures that open the circuit
    reset_timeout: float = 60.0   # seconds open before probing
    success_threshold: int = 3    # probe successes that close it again
    timeout: float = 10.0         # per-call limit

class CircuitBreakerException(UpstreamUnavailableError):
    code = ErrorCodes.CIRCUIT_BREAKER_OPEN

class CircuitBreaker:
    """Wraps sync or async callables. Sync callables run in the default executor."""

    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self._state = CircuitState.CLOSED
        self.failures = 0
        self.probe_successes = 0
        self.opened_at = 0.0
        self.total_calls = 0
        self.total_rejected = 0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and time.monotonic() - self.opened_at >= self.config.reset_timeout:
            self._state = CircuitState.HALF_OPEN
            self.probe_successes = 0
            logger.info(f"Circuit {self.name}: probing after {self.config.reset_timeout:.0f}s open")
        return self._state

    def _open(self):
        self._state = CircuitState.OPEN
        self.opened_at = time.monotonic()
        logger.warning(f"Circuit {self.name} opened after {self.failures} failure(s)")

    def _on_success(self):
        if self._state == CircuitState.HALF_OPEN:
            self.probe_successes += 1
            if self.probe_successes < self.config.success_threshold:
                return
            self._state = CircuitState.CLOSED
            logger.info(f"Circuit {self.name} closed, {self.probe_successes} probe(s) succeeded")
        self.failures = 0

    def _on_failure(self):
        self.failures += 1
        if self._state == CircuitState.HALF_OPEN or self.failures >= self.config.failure_threshold:
            self._open()

    async def _invoke(self, func: Callable, *args, **kwargs) -> Any:
        if asyncio.iscoroutinefunction(func):
            return await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.timeout)
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, functools.partial(func, *args, **kwargs)),
            timeout=self.config.timeout,
        )

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == CircuitState.OPEN:
            self.total_rejected += 1
            raise CircuitBreakerException(f"{self.name} is unavailable (circuit open)")

        self.total_calls += 1
        try:
            result = await self._invoke(func, *args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def status(self) -> dict:
        """Snapshot for the health endpoint."""
        state = self.state
        retry_in = None
        if state == CircuitState.OPEN:
            retry_in = max(self.config.reset_timeout - (time.monotonic() - self.opened_at), 0.0)
        return {
            "name": self.name,
            "state": state.value,
            "consecutive_failures": self.failures,
            "calls": self.total_calls,
            "rejected": self.total_rejected,
            "retry_in_seconds": retry_in,
        }

# The node is polled constantly, so it gets a shorter open window
LEDGER_CB_CONFIG = CircuitBreakerConfig(failure_threshold=5, reset_timeout=30.0, success_threshold=2, timeout=15.0)

PRICE_CB_CONFIG = CircuitBreakerConfig(failure_threshold=3, reset_timeout=60.0, success_threshold=1, timeout=10.0)
