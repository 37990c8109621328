# bangbuy/api/dependencies/auth.py
"""
Caller identity and cron authorisation dependencies.

Authentication happens upstream: the gateway verifies the session and passes
the user's id in ``X-User-Id``. This service trusts that header as given.
"""

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from ...core.config import settings
from ...core.exceptions import UnauthorizedException

logger = logging.getLogger(__name__)


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """
    Return the calling user's id.

    Raises:
        HTTPException: 401 when the identity header is missing or blank
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise UnauthorizedException(
            "Missing caller identity", code="MISSING_USER_ID"
        ).to_http_exception()
    return user_id


def verify_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    """
    Require ``Authorization: Bearer <CRON_SECRET>`` when a cron secret is configured.
    """
    secret = settings.get_cron_secret()
    if secret is None:
        if settings.environment == "production":
            logger.error("[CRON] CRON_SECRET is not configured; rejecting trigger")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Cron trigger is not configured",
            )
        return

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), secret):
        logger.warning("[CRON] Rejected trigger with invalid credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
