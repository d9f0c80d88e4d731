"""
API key authentication.

Each route group is protected by its own key, sent in the
``x-ins-auth-key`` header:

    Route group       Setting
    ──────────────    ──────────────────
    /api/v1/messages  MESSAGES_API_KEY
    /api/v1/scheduler SCHEDULER_API_KEY

Usage:
    router = APIRouter(dependencies=[Depends(require_api_key("MESSAGES_API_KEY"))])
"""

from __future__ import annotations

import logging
import secrets
from typing import Awaitable, Callable, Optional

from fastapi import Security
from fastapi.security import APIKeyHeader

from backend.app.core.config import settings
from backend.app.core.errors import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-ins-auth-key"

_api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def require_api_key(setting_name: str) -> Callable[..., Awaitable[None]]:
    """Build a dependency that checks the request key against ``settings.<setting_name>``."""

    async def verify_api_key(api_key: Optional[str] = Security(_api_key_header)) -> None:
        expected = getattr(settings, setting_name, "")
        if not expected:
            logger.error("%s is not configured", setting_name)
            raise ConfigurationError("API key not configured", setting=setting_name)
        if not api_key or not secrets.compare_digest(api_key.encode(), expected.encode()):
            raise AuthenticationError()

    return verify_api_key
