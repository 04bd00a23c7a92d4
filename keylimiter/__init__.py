"""keylimiter package initialization."""

from .clock import ManualClock
from .ratelimit import (
    Bucket,
    Decision,
    RateLimiter,
    ShardedRateLimiter,
    new_rate_limiter,
)

__version__ = "0.1.0"

__all__ = [
    "Bucket",
    "Decision",
    "ManualClock",
    "RateLimiter",
    "ShardedRateLimiter",
    "new_rate_limiter",
    "__version__",
]
