"""
HTTP Basic auth for the operator endpoints.

Webhooks are not covered here: Shopify deliveries are authenticated by their
HMAC signature in the webhook processor.
"""

import logging
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from cardsync.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

security = HTTPBasic()

DEV_DEFAULT_PASSWORD = "changeme"


def _expected_password(settings: Settings) -> str:
    if settings.BASIC_AUTH_PASSWORD:
        return settings.BASIC_AUTH_PASSWORD
    if settings.ENVIRONMENT == "production":
        # No password in production is a deployment error
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Basic auth password not configured",
        )
    return DEV_DEFAULT_PASSWORD


def _matches(provided: str, expected: str) -> bool:
    return secrets.compare_digest(provided.encode("utf8"), expected.encode("utf8"))


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    """Return the operator's username, or 401 with a Basic challenge."""
    settings = get_settings()
    expected_password = _expected_password(settings)

    # Both comparisons always run
    username_ok = _matches(credentials.username, settings.BASIC_AUTH_USERNAME)
    password_ok = _matches(credentials.password, expected_password)

    if not (username_ok and password_ok):
        logger.warning("Rejected operator login for user %r", credentials.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def require_auth():
    """
    Router-level dependency.
    Usage: app.include_router(router, dependencies=[require_auth()])
    """
    return Depends(get_current_username)
