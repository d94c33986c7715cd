"""Kripa admin authentication.

Bearer token authentication for the admin-facing stats endpoint. The token
comes from ``KRIPA_ADMIN_TOKEN`` (``KripaConfig.admin_token``).
"""

from __future__ import annotations

import logging
import secrets

from fastapi import HTTPException, Request, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

__all__ = [
    "require_admin_token",
    "validate_token",
]

bearer = HTTPBearer(auto_error=False)


def validate_token(token: str, expected: str) -> bool:
    """Validate an admin token.

    Args:
        token: Token presented by the client
        expected: Configured admin token

    Returns:
        True if token is valid, False otherwise
    """
    if not expected:
        logger.warning("Authentication check attempted but no admin token configured")
        return False

    # Constant-time comparison to prevent timing attacks
    return secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


async def require_admin_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(bearer),
) -> None:
    """FastAPI dependency protecting admin endpoints.

    With no token configured, access is open only in debug mode.

    Raises:
        HTTPException: 401 when the token is missing or invalid
    """
    settings = request.app.state.config
    expected = settings.admin_token

    if not expected and settings.debug:
        return

    if credentials is None or not validate_token(credentials.credentials, expected):
        logger.warning(f"Access denied to {request.url.path}: missing or invalid admin token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
