from __future__ import annotations

import math
import threading
from datetime import timedelta

import pytest

from keylimiter import ManualClock, RateLimiter, new_rate_limiter


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def limiter(clock: ManualClock) -> RateLimiter:
    return RateLimiter(10, 20, timedelta(minutes=10), clock=clock)


def test_full_burst_at_birth(limiter: RateLimiter):
    assert all(limiter.allow("u1") for _ in range(20))
    assert limiter.allow("u1") is False


def test_worked_example(limiter: RateLimiter, clock: ManualClock):
    for _ in range(20):
        assert limiter.allow("u1")
    assert not limiter.allow("u1")

    clock.set(1.0)
    assert limiter.get_tokens("u1") == pytest.approx(10.0)

    clock.set(1.5)
    assert limiter.allow("u1")
    assert limiter.get_tokens("u1") == pytest.approx(14.0)


def test_linear_refill_is_capped(limiter: RateLimiter, clock: ManualClock):
    assert limiter.allow_n("k", 20)
    assert limiter.get_tokens("k") == 0.0

    clock.advance(0.25)
    assert limiter.get_tokens("k") == pytest.approx(2.5)

    clock.advance(60)
    assert limiter.get_tokens("k") == 20.0


def test_denied_call_debits_nothing(limiter: RateLimiter):
    assert limiter.allow_n("k", 15)
    assert limiter.allow_n("k", 6) is False
    assert limiter.get_tokens("k") == pytest.approx(5.0)
    assert limiter.allow_n("k", 5)
    assert limiter.get_tokens("k") == 0.0


def test_fractional_costs(limiter: RateLimiter):
    assert limiter.allow_n("k", 19.5)
    assert limiter.allow("k") is False
    assert limiter.allow_n("k", 0.5)
    assert limiter.get_tokens("k") == 0.0


@pytest.mark.parametrize("n", [0, -1, -0.5])
def test_allow_n_rejects_non_positive(limiter: RateLimiter, n):
    with pytest.raises(ValueError):
        limiter.allow_n("k", n)
    assert "k" not in limiter


def test_clock_going_backwards_never_drains(limiter: RateLimiter, clock: ManualClock):
    clock.set(100.0)
    assert limiter.allow_n("k", 10)
    clock.set(50.0)
    assert limiter.get_tokens("k") == pytest.approx(10.0)
    clock.set(51.0)
    assert limiter.get_tokens("k") == pytest.approx(20.0)


def test_tokens_stay_within_bounds(limiter: RateLimiter, clock: ManualClock):
    for step in range(200):
        clock.advance(0.037)
        if step % 3:
            limiter.allow_n("k", 1 + step % 7)
        else:
            limiter.allow("k")
        tokens = limiter.get_tokens("k")
        assert 0.0 <= tokens <= limiter.capacity


def test_reset_key_absent_is_noop(limiter: RateLimiter):
    limiter.reset_key("missing")
    assert len(limiter) == 0


def test_reset_key_restores_capacity(limiter: RateLimiter):
    limiter.allow_n("a", 20)
    limiter.allow_n("b", 20)
    limiter.reset_key("a")
    assert "a" not in limiter
    assert "b" in limiter
    assert limiter.get_tokens("a") == 20.0
    assert limiter.get_tokens("b") == 0.0


def test_reset_drops_everything(limiter: RateLimiter):
    for key in ("a", "b", "c"):
        limiter.allow_n(key, 20)
    limiter.reset()
    assert len(limiter) == 0
    for key in ("a", "b", "c", "d"):
        assert limiter.get_tokens(key) == 20.0


def test_idle_bucket_evicted_on_sweep_boundary(clock: ManualClock):
    limiter = RateLimiter(1, 5, 10, cleanup_every=3, clock=clock)
    limiter.allow_n("idle", 5)

    clock.set(11.0)
    limiter.allow("busy")
    assert "idle" in limiter

    limiter.allow("busy")
    assert "idle" not in limiter
    assert "busy" in limiter
    assert limiter.get_tokens("idle") == 5.0


def test_bucket_at_expiration_is_kept(clock: ManualClock):
    limiter = RateLimiter(1, 5, 10, cleanup_every=1, clock=clock)
    limiter.allow("a")
    clock.set(10.0)
    limiter.allow("b")
    assert "a" in limiter
    clock.set(10.5)
    limiter.allow("b")
    assert "a" not in limiter


def test_get_tokens_extends_bucket_life(clock: ManualClock):
    limiter = RateLimiter(1, 5, 10, cleanup_every=1, clock=clock)
    limiter.allow("k")
    clock.set(8.0)
    limiter.get_tokens("k")
    clock.set(15.0)
    limiter.allow("other")
    assert "k" in limiter


def test_cleanup_on_demand(clock: ManualClock):
    limiter = RateLimiter(1, 5, 10, clock=clock)
    limiter.allow("a")
    limiter.allow("b")
    clock.set(5.0)
    limiter.allow("b")
    clock.set(12.0)
    assert limiter.cleanup() == 1
    assert "a" not in limiter
    assert "b" in limiter


def test_retry_after(limiter: RateLimiter):
    assert limiter.retry_after("k") == 0.0
    limiter.allow_n("k", 20)
    assert limiter.retry_after("k") == pytest.approx(0.1)
    assert limiter.retry_after("k", 5) == pytest.approx(0.5)
    assert math.isinf(limiter.retry_after("k", 21))


def test_concurrent_allow_n_never_overdraws(clock: ManualClock):
    limiter = RateLimiter(1, 100, 60, clock=clock)
    results: list[bool] = []
    results_lock = threading.Lock()
    start = threading.Barrier(50)

    def worker():
        start.wait()
        ok = limiter.allow_n("shared", 3)
        with results_lock:
            results.append(ok)

    threads = [threading.Thread(target=worker) for _ in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 33
    assert limiter.get_tokens("shared") == pytest.approx(1.0)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"rate": 0, "capacity": 1, "expiration": 1},
        {"rate": 1, "capacity": 0, "expiration": 1},
        {"rate": 1, "capacity": 1, "expiration": -1},
        {"rate": 1, "capacity": 1, "expiration": 1, "cleanup_every": 0},
    ],
)
def test_constructor_rejects_bad_config(kwargs):
    with pytest.raises(ValueError):
        RateLimiter(**kwargs)


def test_new_rate_limiter_defaults():
    limiter = new_rate_limiter(10, 20, timedelta(minutes=10))
    assert limiter.rate == 10.0
    assert limiter.capacity == 20.0
    assert limiter.expiration == 600.0
    assert limiter.cleanup_every == 100


def test_decide_reports_balance_and_wait(limiter: RateLimiter):
    first = limiter.decide("k", 15)
    assert first.allowed
    assert first.tokens == pytest.approx(5.0)
    assert first.retry_after == 0.0

    denied = limiter.decide("k", 8)
    assert not denied.allowed
    assert denied.tokens == pytest.approx(5.0)
    assert denied.retry_after == pytest.approx(0.3)

    assert math.isinf(limiter.decide("k", 25).retry_after)
