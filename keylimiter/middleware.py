"""Starlette middleware enforcing a per-client request budget."""

from __future__ import annotations

import math
from typing import Callable, Optional, Union

from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from .config import Settings, limiter_from_settings, settings
from .logging_setup import RequestLogMiddleware, init_logging
from .metrics import router as metrics_router
from .ratelimit import RateLimiter, ShardedRateLimiter

KeyFunc = Callable[[Request], str]


def client_host(request: Request) -> str:
    """Key requests by the peer address."""

    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests with 429 once their key runs out of tokens."""

    def __init__(
        self,
        app: ASGIApp,
        limiter: Union[RateLimiter, ShardedRateLimiter],
        key_func: KeyFunc = client_host,
        cost: float = 1,
    ) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.key_func = key_func
        self.cost = cost

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        key = self.key_func(request)
        decision = self.limiter.decide(key, self.cost)
        if not decision.allowed:
            wait = decision.retry_after
            retry = max(1, math.ceil(wait)) if math.isfinite(wait) else 3600
            return JSONResponse(
                {"detail": "rate limit"},
                status_code=429,
                headers={"Retry-After": str(retry)},
            )
        return await call_next(request)


def install(
    app: FastAPI,
    cfg: Optional[Settings] = None,
    key_func: KeyFunc = client_host,
) -> Optional[Union[RateLimiter, ShardedRateLimiter]]:
    """Wire logging, ``/metrics`` and, when enabled, rate limiting into ``app``.

    Returns the limiter so the host can reset or inspect it, or None when
    ``RATE_LIMIT_ENABLED`` is off.
    """

    cfg = cfg or settings
    init_logging(cfg.LOG_LEVEL)
    app.include_router(metrics_router())
    limiter = None
    if cfg.RATE_LIMIT_ENABLED:
        limiter = limiter_from_settings(cfg)
        app.add_middleware(RateLimitMiddleware, limiter=limiter, key_func=key_func)
    # added last so it wraps the limiter and logs 429s too
    app.add_middleware(RequestLogMiddleware)
    return limiter
