from __future__ import annotations

import os
from typing import Any, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from .clock import Clock
from .ratelimit import RateLimiter, ShardedRateLimiter

load_dotenv()


class Settings(BaseModel):
    RATE_LIMIT_ENABLED: bool = Field(default=False)
    RATE_LIMIT_RPS: float = Field(default=5.0, gt=0)
    RATE_LIMIT_BURST: int = Field(default=20, gt=0)
    RATE_LIMIT_EXPIRATION_SECONDS: float = Field(default=600.0, ge=0)
    RATE_LIMIT_CLEANUP_EVERY: int = Field(default=100, ge=1)
    RATE_LIMIT_SHARDS: int = Field(default=1, ge=1)  # >1 stripes the lock
    LOG_LEVEL: str = Field(default="INFO")


def _load_settings(existing: Settings | None = None) -> Settings:
    values: dict[str, Any] = {}
    for name, field in Settings.model_fields.items():
        env_value = os.getenv(name)
        if env_value is None:
            if existing is not None and hasattr(existing, name):
                values[name] = getattr(existing, name)
                continue
            values[name] = field.get_default(call_default_factory=True)
        else:
            values[name] = env_value

    try:
        return Settings(**values)
    except ValidationError as exc:
        invalid = [
            str(error["loc"][0]) for error in exc.errors() if error.get("loc")
        ]
        joined = ", ".join(sorted(set(invalid)))
        raise RuntimeError(
            f"Invalid rate limit environment variables: {joined}"
        ) from exc


settings = _load_settings()


def reload_settings() -> Settings:
    global settings
    fresh = _load_settings(settings)
    settings.__dict__.update(fresh.__dict__)
    return settings


def limiter_from_settings(
    cfg: Optional[Settings] = None, clock: Optional[Clock] = None
) -> Union[RateLimiter, ShardedRateLimiter]:
    cfg = cfg or settings
    if cfg.RATE_LIMIT_SHARDS > 1:
        return ShardedRateLimiter(
            cfg.RATE_LIMIT_RPS,
            cfg.RATE_LIMIT_BURST,
            cfg.RATE_LIMIT_EXPIRATION_SECONDS,
            cfg.RATE_LIMIT_CLEANUP_EVERY,
            clock,
            shards=cfg.RATE_LIMIT_SHARDS,
        )
    return RateLimiter(
        cfg.RATE_LIMIT_RPS,
        cfg.RATE_LIMIT_BURST,
        cfg.RATE_LIMIT_EXPIRATION_SECONDS,
        cfg.RATE_LIMIT_CLEANUP_EVERY,
        clock,
    )
