import pytest

from aurelia.common.circuit_breaker import CircuitBreaker, CircuitOpenError


@pytest.mark.asyncio
async def test_opens_after_threshold_and_rejects():
    cb = CircuitBreaker("razorpay", failure_threshold=2, recovery_timeout=60)
    for _ in range(2):
        await cb.before_call()
        await cb.after_call(False)

    assert cb.state == "OPEN"
    with pytest.raises(CircuitOpenError):
        await cb.before_call()


@pytest.mark.asyncio
async def test_half_open_allows_a_single_probe():
    cb = CircuitBreaker("razorpay", failure_threshold=1, recovery_timeout=0)
    await cb.before_call()
    await cb.after_call(False)

    await cb.before_call()
    assert cb.state == "HALF_OPEN"
    with pytest.raises(CircuitOpenError):
        await cb.before_call()

    await cb.after_call(True)
    assert cb.state == "CLOSED"


@pytest.mark.asyncio
async def test_failed_probe_reopens():
    cb = CircuitBreaker("razorpay", failure_threshold=3, recovery_timeout=0)
    for _ in range(3):
        await cb.before_call()
        await cb.after_call(False)

    await cb.before_call()
    await cb.after_call(False)
    assert cb.state == "OPEN"
