from types import SimpleNamespace

import pytest

from reservation_service import breaker as breaker_module
from reservation_service.breaker import CircuitBreaker, CircuitBreakerOpen


@pytest.fixture
def cb(fake_redis):
    return CircuitBreaker("verifier-test", failure_threshold=2, reset_timeout_seconds=30, redis=fake_redis)


async def test_opens_after_threshold(cb):
    await cb.allow_request()
    await cb.record_failure()
    await cb.allow_request()
    await cb.record_failure()

    with pytest.raises(CircuitBreakerOpen):
        await cb.allow_request()
    assert (await cb.status())["state"] == "OPEN"


async def test_success_resets_failures(cb):
    await cb.record_failure()
    await cb.record_success()
    await cb.record_failure()
    await cb.allow_request()
    assert (await cb.status())["failures"] == 1


async def test_half_open_trial_call(cb, monkeypatch):
    clock = [1000.0]
    monkeypatch.setattr(breaker_module, "time", SimpleNamespace(time=lambda: clock[0]))

    await cb.open()
    with pytest.raises(CircuitBreakerOpen):
        await cb.allow_request()

    clock[0] += 31
    await cb.allow_request()
    assert (await cb.status())["state"] == "HALF_OPEN"

    # failed trial call re-opens immediately
    await cb.record_failure()
    assert (await cb.status())["state"] == "OPEN"


async def test_successful_trial_call_closes(cb, monkeypatch):
    clock = [1000.0]
    monkeypatch.setattr(breaker_module, "time", SimpleNamespace(time=lambda: clock[0]))
    await cb.open()
    clock[0] += 31
    await cb.allow_request()
    await cb.record_success()
    assert (await cb.status()) == {"name": "verifier-test", "state": "CLOSED", "failures": 0}
