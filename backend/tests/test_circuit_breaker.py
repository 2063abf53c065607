import asyncio

import anyio
import pytest

from app.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError


def _fail():
    raise RuntimeError("fail")


@pytest.mark.anyio
async def test_circuit_opens_after_failures():
    breaker = CircuitBreaker(name="stripe-test", failure_threshold=2, recovery_time=0.1, window_seconds=10)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(lambda: "ok")

    await anyio.sleep(0.11)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    assert breaker.state == "open"


@pytest.mark.anyio
async def test_circuit_half_open_allows_success_and_closes():
    breaker = CircuitBreaker(name="stripe-probe", failure_threshold=1, recovery_time=0.05)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    await anyio.sleep(0.12)
    result = await breaker.call(lambda: "success")

    assert result == "success"
    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_circuit_timeout_marks_failure_and_opens():
    breaker = CircuitBreaker(
        name="stripe-timeout",
        failure_threshold=1,
        recovery_time=1.0,
        window_seconds=10,
        timeout_seconds=0.01,
    )

    with pytest.raises(TimeoutError):
        await breaker.call(lambda: asyncio.sleep(0.2))

    assert breaker.state == "open"
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(lambda: "ok")


@pytest.mark.anyio
async def test_success_clears_failure_window():
    breaker = CircuitBreaker(name="stripe-window", failure_threshold=2, recovery_time=1.0, window_seconds=10)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    assert await breaker.call(lambda: "ok") == "ok"
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    assert breaker.state == "closed"
