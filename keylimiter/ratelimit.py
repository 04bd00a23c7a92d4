"""In-memory token bucket rate limiter keyed by string."""

from __future__ import annotations

import logging
import math
import threading
import zlib
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Union

from . import clock as clock_mod
from .clock import Clock
from .metrics import BUCKETS, DECISIONS, EVICTIONS

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_EVERY = 100

Duration = Union[float, int, timedelta]


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


@dataclass(frozen=True)
class Decision:
    """Outcome of one admission check.

    ``tokens`` is the balance left after any debit; ``retry_after`` is the wait
    in seconds before the same request could pass (0.0 when allowed).
    """

    allowed: bool
    tokens: float
    retry_after: float = 0.0


class Bucket:
    __slots__ = ("tokens", "updated", "requested")

    def __init__(self, capacity: float, now: float) -> None:
        self.tokens = float(capacity)
        self.updated = now
        self.requested = now

    def __repr__(self) -> str:
        return (
            f"Bucket(tokens={self.tokens!r}, updated={self.updated!r}, "
            f"requested={self.requested!r})"
        )


class RateLimiter:
    """Per-key token bucket limiter.

    Buckets are created full on first reference and refilled lazily on every
    access, so idle keys cost nothing between calls. Every ``cleanup_every``
    calls the limiter evicts buckets that have not been requested for longer
    than ``expiration`` seconds.

    A single lock guards the bucket map and the call counter; each public
    method holds it for its whole duration.
    """

    def __init__(
        self,
        rate: float,
        capacity: float,
        expiration: Duration,
        cleanup_every: int = DEFAULT_CLEANUP_EVERY,
        clock: Optional[Clock] = None,
    ) -> None:
        rate = float(rate)
        capacity = float(capacity)
        expiration_s = _seconds(expiration)
        if not rate > 0:
            raise ValueError(f"rate must be positive, got {rate!r}")
        if not capacity > 0:
            raise ValueError(f"capacity must be positive, got {capacity!r}")
        if expiration_s < 0:
            raise ValueError(f"expiration must not be negative, got {expiration_s!r}")
        if int(cleanup_every) < 1:
            raise ValueError(f"cleanup_every must be at least 1, got {cleanup_every!r}")

        self._rate = rate
        self._capacity = capacity
        self._expiration = expiration_s
        self._cleanup_every = int(cleanup_every)
        self._clock = clock or clock_mod.monotonic
        self._lock = threading.Lock()
        self._buckets: Dict[str, Bucket] = {}
        self._calls = 0
        # stripes of a ShardedRateLimiter leave sweeping to the wrapper
        self._auto_sweep = True

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def capacity(self) -> float:
        return self._capacity

    @property
    def expiration(self) -> float:
        return self._expiration

    @property
    def cleanup_every(self) -> int:
        return self._cleanup_every

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._buckets

    # Callers must hold self._lock for everything below until the public API.

    def _touch(self, key: str, now: float) -> Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = Bucket(self._capacity, now)
            self._buckets[key] = bucket
            BUCKETS.inc()
            logger.debug("created bucket for %r", key)
        else:
            # clamp: a clock stepping backwards must not drain the bucket
            elapsed = max(0.0, now - bucket.updated)
            bucket.tokens = min(self._capacity, bucket.tokens + elapsed * self._rate)
            bucket.updated = now
        bucket.requested = now
        return bucket

    def _tick(self, now: float) -> None:
        if not self._auto_sweep:
            return
        self._calls += 1
        if self._calls >= self._cleanup_every:
            self._calls = 0
            self._sweep(now)

    def _sweep(self, now: float) -> int:
        stale: List[str] = [
            key
            for key, bucket in self._buckets.items()
            if now - bucket.requested > self._expiration
        ]
        for key in stale:
            del self._buckets[key]
        if stale:
            BUCKETS.dec(len(stale))
            EVICTIONS.inc(len(stale))
            logger.debug(
                "evicted %d idle buckets, %d live", len(stale), len(self._buckets)
            )
        return len(stale)

    def _wait(self, tokens: float, n: float) -> float:
        if tokens >= n:
            return 0.0
        if n > self._capacity:
            return math.inf
        return (n - tokens) / self._rate

    def _decide(self, key: str, n: float) -> Decision:
        with self._lock:
            now = self._clock()
            bucket = self._touch(key, now)
            if bucket.tokens >= n:
                bucket.tokens -= n
                decision = Decision(True, bucket.tokens)
            else:
                decision = Decision(False, bucket.tokens, self._wait(bucket.tokens, n))
            self._tick(now)
        DECISIONS.labels("allowed" if decision.allowed else "denied").inc()
        return decision

    def _clear(self) -> int:
        dropped = len(self._buckets)
        self._buckets.clear()
        self._calls = 0
        return dropped

    def allow(self, key: str) -> bool:
        """Return True and consume one token when ``key`` may proceed."""

        return self._decide(key, 1.0).allowed

    def allow_n(self, key: str, n: float) -> bool:
        """Consume ``n`` tokens for ``key`` if all of them are available.

        The check and the debit happen under one lock acquisition, so
        concurrent callers never overdraw a bucket. A denied call debits
        nothing. ``n`` must be positive.
        """

        return self.decide(key, n).allowed

    def decide(self, key: str, n: float = 1.0) -> Decision:
        """Like :meth:`allow_n`, but also report the balance and the wait.

        The wait is computed in the same critical section as the decision,
        and the call counts once towards the cleanup cadence.
        """

        if not n > 0:
            raise ValueError(f"n must be positive, got {n!r}")
        return self._decide(key, float(n))

    def get_tokens(self, key: str) -> float:
        """Refill ``key`` and return its token count without consuming any.

        Like the consuming calls, this creates a missing bucket, extends the
        bucket's life and counts towards the cleanup cadence. The value can
        be stale as soon as the lock is released.
        """

        with self._lock:
            now = self._clock()
            tokens = self._touch(key, now).tokens
            self._tick(now)
        return tokens

    def retry_after(self, key: str, n: float = 1.0) -> float:
        """Seconds until ``n`` tokens will be available for ``key``.

        Returns 0.0 when they are available now and ``math.inf`` when ``n``
        exceeds the capacity.
        """

        if not n > 0:
            raise ValueError(f"n must be positive, got {n!r}")
        if n > self._capacity:
            return math.inf
        with self._lock:
            now = self._clock()
            tokens = self._touch(key, now).tokens
            self._tick(now)
        return self._wait(tokens, n)

    def reset(self) -> None:
        """Drop every bucket, as if the limiter had just been created."""

        with self._lock:
            dropped = self._clear()
        if dropped:
            BUCKETS.dec(dropped)
        logger.info("rate limiter reset, dropped %d buckets", dropped)

    def reset_key(self, key: str) -> None:
        """Drop the bucket for ``key``; no-op when there is none."""

        with self._lock:
            removed = self._buckets.pop(key, None)
        if removed is not None:
            BUCKETS.dec()

    def cleanup(self) -> int:
        """Run the idle-bucket sweep now. Returns the number of evictions."""

        with self._lock:
            now = self._clock()
            return self._sweep(now)


class ShardedRateLimiter:
    """Token bucket limiter striped over independent locks.

    Keys hash to one of ``shards`` :class:`RateLimiter` instances, so callers
    on different stripes never contend. A key always lands on the same
    stripe, which keeps check-and-debit atomic per key. Calls on every stripe
    feed one shared counter, and each rollover sweeps all stripes.
    ``reset`` holds every stripe lock at once.
    """

    def __init__(
        self,
        rate: float,
        capacity: float,
        expiration: Duration,
        cleanup_every: int = DEFAULT_CLEANUP_EVERY,
        clock: Optional[Clock] = None,
        shards: int = 16,
    ) -> None:
        if int(shards) < 1:
            raise ValueError(f"shards must be at least 1, got {shards!r}")
        self._shards = [
            RateLimiter(rate, capacity, expiration, cleanup_every, clock)
            for _ in range(int(shards))
        ]
        for shard in self._shards:
            shard._auto_sweep = False
        self._calls_lock = threading.Lock()
        self._calls = 0

    @property
    def rate(self) -> float:
        return self._shards[0].rate

    @property
    def capacity(self) -> float:
        return self._shards[0].capacity

    @property
    def expiration(self) -> float:
        return self._shards[0].expiration

    @property
    def cleanup_every(self) -> int:
        return self._shards[0].cleanup_every

    @property
    def shards(self) -> int:
        return len(self._shards)

    def shard_for(self, key: str) -> RateLimiter:
        # surrogatepass: keys decoded with surrogateescape are still valid keys
        digest = zlib.crc32(key.encode("utf-8", "surrogatepass"))
        return self._shards[digest % len(self._shards)]

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key in self.shard_for(key)

    def _tick(self) -> None:
        with self._calls_lock:
            self._calls += 1
            if self._calls < self.cleanup_every:
                return
            self._calls = 0
        self.cleanup()

    def allow(self, key: str) -> bool:
        allowed = self.shard_for(key).allow(key)
        self._tick()
        return allowed

    def allow_n(self, key: str, n: float) -> bool:
        return self.decide(key, n).allowed

    def decide(self, key: str, n: float = 1.0) -> Decision:
        decision = self.shard_for(key).decide(key, n)
        self._tick()
        return decision

    def get_tokens(self, key: str) -> float:
        tokens = self.shard_for(key).get_tokens(key)
        self._tick()
        return tokens

    def retry_after(self, key: str, n: float = 1.0) -> float:
        wait = self.shard_for(key).retry_after(key, n)
        self._tick()
        return wait

    def reset(self) -> None:
        # stripe locks are always taken in index order
        with ExitStack() as stack:
            for shard in self._shards:
                stack.enter_context(shard._lock)
            with self._calls_lock:
                self._calls = 0
            dropped = sum(shard._clear() for shard in self._shards)
        if dropped:
            BUCKETS.dec(dropped)
        logger.info("sharded rate limiter reset, dropped %d buckets", dropped)

    def reset_key(self, key: str) -> None:
        self.shard_for(key).reset_key(key)

    def cleanup(self) -> int:
        return sum(shard.cleanup() for shard in self._shards)


def new_rate_limiter(
    rate: float, capacity: int, expiration: Duration
) -> RateLimiter:
    """Build a limiter with the default sweep cadence of 100 calls."""

    return RateLimiter(rate, capacity, expiration, DEFAULT_CLEANUP_EVERY)
