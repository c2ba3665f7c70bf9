"""
Scheduler configuration

All environment-sourced settings for the scheduled messaging API live here,
read once into a SchedulerConfig and handed to routes, jobs and services.
Tests build their own SchedulerConfig instead of touching os.environ.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends

try:
    from typing import Annotated
except ImportError:
    from typing_extensions import Annotated


DEFAULT_QSTASH_URL = "https://qstash.upstash.io"
DEFAULT_HTTP_TIMEOUT = 30.0


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class SchedulerConfig:
    """Settings for the scheduled messaging endpoints and the recurring job."""
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None

    # Shared secret: callers send it as a Bearer token, endpoints compare against it
    scheduler_api_key: Optional[str] = None

    stream_api_key: Optional[str] = None
    stream_api_secret: Optional[str] = None

    # Public base URL of this API (QStash callbacks, relay sends)
    app_url: Optional[str] = None

    qstash_token: Optional[str] = None
    qstash_url: str = DEFAULT_QSTASH_URL

    claim_before_send: bool = False
    http_timeout: float = DEFAULT_HTTP_TIMEOUT

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        timeout_raw = os.environ.get("SCHEDULER_HTTP_TIMEOUT")
        try:
            http_timeout = float(timeout_raw) if timeout_raw else DEFAULT_HTTP_TIMEOUT
        except ValueError:
            http_timeout = DEFAULT_HTTP_TIMEOUT

        return cls(
            supabase_url=os.environ.get("SUPABASE_URL"),
            supabase_service_key=os.environ.get("SUPABASE_SERVICE_KEY"),
            scheduler_api_key=os.environ.get("SCHEDULER_API_KEY"),
            stream_api_key=os.environ.get("STREAM_API_KEY"),
            stream_api_secret=os.environ.get("STREAM_API_SECRET"),
            app_url=os.environ.get("APP_URL"),
            qstash_token=os.environ.get("QSTASH_TOKEN"),
            qstash_url=os.environ.get("QSTASH_URL", DEFAULT_QSTASH_URL),
            claim_before_send=_env_flag("SCHEDULER_CLAIM_BEFORE_SEND"),
            http_timeout=http_timeout,
        )

    def api_url(self, path: str) -> str:
        """Absolute URL of one of this API's own endpoints."""
        if not self.app_url:
            raise ValueError("APP_URL must be set")
        base = self.app_url.rstrip("/")
        if not base.startswith("http"):
            base = f"https://{base}"
        return f"{base}/{path.lstrip('/')}"


@lru_cache()
def get_scheduler_config() -> SchedulerConfig:
    return SchedulerConfig.from_env()


# Type alias for dependency injection
Config = Annotated[SchedulerConfig, Depends(get_scheduler_config)]
