"""
Shared-secret authentication for scheduler endpoints.

QStash callbacks, the recurring-messages cron job and other internal callers
send `Authorization: Bearer <SCHEDULER_API_KEY>`. No end-user JWTs here.
"""
from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

try:
    from typing import Annotated
except ImportError:
    from typing_extensions import Annotated

from services.config import Config

logger = logging.getLogger(__name__)


def is_valid_scheduler_token(authorization: Optional[str], expected_key: Optional[str]) -> bool:
    """Constant-time check of an Authorization header against the shared secret."""
    if not expected_key or not authorization:
        return False
    return hmac.compare_digest(authorization.encode(), f"Bearer {expected_key}".encode())


def verify_scheduler_key(config: Config, authorization: Optional[str] = Header(None)) -> None:
    """
    FastAPI dependency: reject the request unless it carries the scheduler key.
    With no key configured every request is rejected.
    """
    if not is_valid_scheduler_token(authorization, config.scheduler_api_key):
        logger.warning("Unauthorized request to scheduler endpoint")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


# Type alias for dependency injection
SchedulerAuth = Annotated[None, Depends(verify_scheduler_key)]
