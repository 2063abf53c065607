from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Generic, TypeVar

from app.infra.metrics import metrics


logger = logging.getLogger("app.circuit")

T = TypeVar("T")

STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"


class CircuitBreakerOpenError(RuntimeError):
    pass


class CircuitBreaker(Generic[T]):
    """Failure-window breaker guarding calls to an external service.

    After ``failure_threshold`` failures inside ``window_seconds`` the circuit
    opens and calls fail fast with :class:`CircuitBreakerOpenError`. Once
    ``recovery_time`` has passed a limited number of probe calls are let
    through; one success closes the circuit again.

    ``timeout_seconds`` bounds every call. A timeout counts as a failure.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = None if timeout_seconds is None else max(0.01, timeout_seconds)
        self._state = STATE_CLOSED
        self._opened_at = 0.0
        self._failures: Deque[float] = deque()
        self._half_open_calls = 0
        self._lock = asyncio.Lock()
        metrics.record_circuit_state(self.name, self._state)

    @property
    def state(self) -> str:
        return self._state

    def seconds_until_retry(self) -> float:
        if self._state != STATE_OPEN:
            return 0.0
        return max(0.0, self.recovery_time - (time.monotonic() - self._opened_at))

    async def call(
        self,
        fn: Callable[..., T | Awaitable[T]],
        *args: Any,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> T:
        await self._acquire()
        timeout = self.timeout_seconds if timeout_seconds is None else max(0.01, timeout_seconds)
        try:
            result = await self._resolve(fn(*args, **kwargs), timeout)
        except Exception as exc:  # noqa: BLE001
            await self._on_failure()
            logger.warning(
                "circuit_failure",
                extra={"extra": {"name": self.name, "state": self._state, "error": type(exc).__name__}},
            )
            raise
        await self._on_success()
        return result

    def reset(self) -> None:
        self._failures.clear()
        self._half_open_calls = 0
        self._transition(STATE_CLOSED)

    @staticmethod
    async def _resolve(result: Any, timeout: float | None) -> Any:
        if isinstance(result, concurrent.futures.Future):
            result = asyncio.wrap_future(result)
        elif not inspect.isawaitable(result):
            return result
        if timeout is None:
            return await result
        return await asyncio.wait_for(result, timeout=timeout)

    def _transition(self, state: str) -> None:
        self._state = state
        metrics.record_circuit_state(self.name, state)

    async def _acquire(self) -> None:
        async with self._lock:
            if self._state == STATE_OPEN:
                if time.monotonic() - self._opened_at < self.recovery_time:
                    raise CircuitBreakerOpenError(f"circuit_open:{self.name}")
                self._half_open_calls = 0
                self._transition(STATE_HALF_OPEN)
            if self._state == STATE_HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(f"circuit_half_open_limit:{self.name}")
                self._half_open_calls += 1

    async def _on_failure(self) -> None:
        async with self._lock:
            now = time.monotonic()
            self._failures.append(now)
            while self._failures and self._failures[0] < now - self.window_seconds:
                self._failures.popleft()
            if self._state == STATE_HALF_OPEN or len(self._failures) >= self.failure_threshold:
                self._opened_at = now
                self._half_open_calls = 0
                self._transition(STATE_OPEN)
                logger.warning("circuit_opened", extra={"extra": {"name": self.name}})

    async def _on_success(self) -> None:
        async with self._lock:
            self._failures.clear()
            self._half_open_calls = 0
            if self._state != STATE_CLOSED:
                logger.info("circuit_closed", extra={"extra": {"name": self.name}})
            self._transition(STATE_CLOSED)
