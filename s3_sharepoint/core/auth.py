"""HTTP Basic authentication for gateway callers.

When BASIC_AUTH_USERNAME and BASIC_AUTH_PASSWORD are set, every object
route requires matching credentials. Without them (allowed only outside
production) the routes are open.
"""

import secrets
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from s3_sharepoint.config import Settings, get_settings
from s3_sharepoint.core.exceptions import InvalidCredentialsError
from s3_sharepoint.core.logging import get_logger

logger = get_logger(__name__)

basic_scheme = HTTPBasic(auto_error=False, realm="s3-sharepoint")


def _matches(supplied: str, expected: str) -> bool:
    # Use constant-time comparison to prevent timing attacks
    return secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


async def require_basic_auth(
    request: Request,
    credentials: Annotated[HTTPBasicCredentials | None, Depends(basic_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> str | None:
    """Verify the caller's Basic credentials.

    Returns:
        Authenticated username, or None when authentication is disabled

    Raises:
        InvalidCredentialsError: If credentials are missing or wrong
    """
    if not settings.is_basic_auth_enabled:
        return None

    if credentials is None:
        logger.warning("basic_auth_missing", path=request.url.path)
        raise InvalidCredentialsError("Missing Basic credentials")

    # Evaluate both comparisons so timing does not reveal which one failed
    username_ok = _matches(credentials.username, settings.basic_auth_username)
    password_ok = _matches(credentials.password, settings.basic_auth_password)
    if not (username_ok and password_ok):
        logger.warning(
            "basic_auth_rejected",
            path=request.url.path,
            username=credentials.username[:32],
        )
        raise InvalidCredentialsError("Invalid Basic credentials")

    return credentials.username
