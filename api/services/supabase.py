"""
Supabase client configuration
"""
from __future__ import annotations

from functools import lru_cache

from supabase import create_client, Client
from fastapi import Depends

# Python 3.9 compatible Annotated import
try:
    from typing import Annotated
except ImportError:
    from typing_extensions import Annotated

from services.config import SchedulerConfig, get_scheduler_config


def create_service_client(config: SchedulerConfig) -> Client:
    """Create a Supabase client with the service key (bypasses RLS)."""
    if not config.supabase_url:
        raise ValueError("SUPABASE_URL must be set")
    if not config.supabase_service_key:
        raise ValueError("SUPABASE_SERVICE_KEY must be set")
    return create_client(config.supabase_url, config.supabase_service_key)


@lru_cache()
def get_service_client() -> Client:
    """Shared service client for the API process."""
    return create_service_client(get_scheduler_config())


# Type alias for dependency injection
ServiceClient = Annotated[Client, Depends(get_service_client)]
