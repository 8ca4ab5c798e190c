import sys

sys.path.insert(0, '.')

import asyncio

import pytest

from risk.circuit_breaker import BreakerState, CircuitBreaker
from risk.errors import CircuitOpenError, QuoteAPIError, TransientIOError


KEY = 'quotes:NSE_FNO'


def _open(breaker, key=KEY):
    for _ in range(breaker.threshold):
        breaker.record_failure(key)


def test_breaker_opens_after_threshold_and_rejects_without_calling():
    breaker = CircuitBreaker(threshold=10, cooldown=60.0)
    calls = {'count': 0}

    async def flaky():
        calls['count'] += 1
        raise QuoteAPIError(503, 'unavailable')

    async def run():
        for _ in range(10):
            with pytest.raises(TransientIOError):
                await breaker.call(KEY, flaky)
        assert breaker.state(KEY) == BreakerState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(KEY, flaky)

    asyncio.run(run())
    assert calls['count'] == 10


def test_unexpected_errors_are_wrapped_as_transient():
    breaker = CircuitBreaker(threshold=3)

    async def broken():
        raise ValueError("bad payload")

    async def run():
        with pytest.raises(TransientIOError):
            await breaker.call(KEY, broken)

    asyncio.run(run())
    assert breaker.failures(KEY) == 1


def test_success_resets_consecutive_failures():
    breaker = CircuitBreaker(threshold=3)
    breaker.record_failure(KEY)
    breaker.record_failure(KEY)
    breaker.record_success(KEY)
    breaker.record_failure(KEY)
    assert breaker.state(KEY) == BreakerState.CLOSED
    assert breaker.failures(KEY) == 1


def test_half_open_allows_a_single_trial():
    breaker = CircuitBreaker(threshold=2, cooldown=60.0)
    _open(breaker)
    assert not breaker.allow(KEY)

    # Force cooldown expiry
    breaker._states[KEY].opened_at -= 61
    assert breaker.allow(KEY)
    assert breaker.state(KEY) == BreakerState.HALF_OPEN
    assert not breaker.allow(KEY)

    breaker.record_success(KEY)
    assert breaker.state(KEY) == BreakerState.CLOSED
    assert breaker.allow(KEY)


def test_failed_trial_reopens_with_fresh_cooldown():
    breaker = CircuitBreaker(threshold=2, cooldown=60.0)
    _open(breaker)
    breaker._states[KEY].opened_at -= 61
    assert breaker.allow(KEY)

    breaker.record_failure(KEY)
    assert breaker.state(KEY) == BreakerState.OPEN
    assert not breaker.allow(KEY)


def test_keys_are_independent():
    breaker = CircuitBreaker(threshold=1)
    breaker.record_failure('quotes:NSE_FNO')
    assert not breaker.allow('quotes:NSE_FNO')
    assert breaker.allow('quotes:BSE_FNO')
    assert breaker.allow('orders:NSE_FNO')


def test_overall_state_reports_worst_key():
    breaker = CircuitBreaker(threshold=1, cooldown=60.0)
    assert breaker.overall_state() == 'closed'
    breaker.record_failure('orders:NSE_FNO')
    assert breaker.overall_state() == 'open'
    breaker._states['orders:NSE_FNO'].opened_at -= 61
    breaker.allow('orders:NSE_FNO')
    assert breaker.overall_state() == 'half_open'
    snapshot = breaker.snapshot()
    assert snapshot['orders:NSE_FNO']['state'] == 'half_open'


def test_cancelled_trial_frees_the_slot():
    breaker = CircuitBreaker(threshold=1, cooldown=60.0)
    breaker.record_failure(KEY)
    breaker._states[KEY].opened_at -= 61

    async def hang():
        await asyncio.sleep(10)

    async def run():
        task = asyncio.create_task(breaker.call(KEY, hang))
        await asyncio.sleep(0)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(run())
    assert breaker.state(KEY) == BreakerState.HALF_OPEN
    assert breaker.allow(KEY)
