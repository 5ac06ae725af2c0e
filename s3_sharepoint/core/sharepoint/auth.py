"""MSAL token management for SharePoint/Graph API authentication.

Provides app-only (client credentials) token acquisition with a process-wide
cache shared by every request:

- The cached token is returned without locking while it is outside the
  refresh margin.
- Inside the margin (or when absent) a single caller refreshes it under an
  asyncio.Lock. Other callers keep using the old token while it has not
  expired, or wait for the refresh to finish.
- Failed acquisitions are retried with exponential backoff and never replace
  the cached value. Callers that waited on a failed acquisition get its
  error instead of starting their own; later requests try again.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import msal

from s3_sharepoint.config import Settings, get_settings
from s3_sharepoint.core.logging import get_logger
from s3_sharepoint.core.sharepoint.exceptions import SharePointAuthenticationError

logger = get_logger(__name__)

# Graph API scope for app-only access
GRAPH_DEFAULT_SCOPE = ["https://graph.microsoft.com/.default"]

# Azure AD app tokens live for an hour unless the response says otherwise
DEFAULT_TOKEN_LIFETIME_SECONDS = 3599


@dataclass(frozen=True)
class AccessToken:
    """Bearer token plus its absolute expiry instant (UTC)."""

    value: str = field(repr=False)
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the token can no longer be used."""
        return (now or datetime.now(UTC)) >= self.expires_at

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        """Check whether the token expires in less than ``seconds``."""
        return (now or datetime.now(UTC)) + timedelta(seconds=seconds) >= self.expires_at


class SharePointAuthService:
    """MSAL-based authentication service for SharePoint/Graph API.

    Attributes:
        _msal_app: MSAL ConfidentialClientApplication instance
        _settings: Application settings
        _token: Cached token shared by all requests
        _lock: Guards refreshes so only one acquisition runs at a time
        _acquisitions: Number of finished acquisitions, successful or not
        _last_error: Failure of the most recent acquisition, if it failed
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize MSAL client with SharePoint configuration.

        The token cache starts empty; the first get_token() call fills it.
        """
        self._settings = settings or get_settings()
        self._msal_app: msal.ConfidentialClientApplication | None = None
        self._token: AccessToken | None = None
        self._lock = asyncio.Lock()
        self._acquisitions = 0
        self._last_error: SharePointAuthenticationError | None = None

        if self.is_configured:
            self._msal_app = self._create_msal_app()
            logger.info(
                "sharepoint_auth_initialized",
                tenant_id=self._settings.sharepoint_tenant_id[:8] + "...",
            )
        else:
            logger.warning(
                "sharepoint_auth_not_configured",
                reason="missing_required_settings",
            )

    def _create_msal_app(self) -> msal.ConfidentialClientApplication:
        """Create and configure MSAL ConfidentialClientApplication."""
        client_id = self._settings.sharepoint_client_id
        authority = (
            f"https://login.microsoftonline.com/{self._settings.sharepoint_tenant_id}"
        )

        logger.debug(
            "sharepoint_msal_app_creating",
            authority=authority,
            client_id=client_id[:8] + "...",
        )

        return msal.ConfidentialClientApplication(
            client_id=client_id,
            client_credential=self._settings.sharepoint_client_secret,
            authority=authority,
        )

    @property
    def is_configured(self) -> bool:
        """Check if SharePoint authentication is properly configured."""
        return self._settings.is_sharepoint_configured

    @property
    def _margin(self) -> int:
        return self._settings.token_refresh_margin_seconds

    async def get_token(self) -> AccessToken:
        """Return a usable access token, refreshing it if needed.

        Returns:
            AccessToken valid for at least the refresh margin, or the
            previous still-valid token while another caller refreshes

        Raises:
            SharePointAuthenticationError: If acquisition fails after retries
                or SharePoint is not configured
        """
        token = self._token
        if token is not None and not token.expires_within(self._margin):
            return token

        if token is not None and not token.is_expired() and self._lock.locked():
            logger.debug("sharepoint_token_refresh_in_flight_reusing_current")
            return token

        acquisitions_seen = self._acquisitions
        async with self._lock:
            # Another caller may have refreshed while we waited
            token = self._token
            if token is not None and not token.expires_within(self._margin):
                return token
            self._raise_if_failed_since(acquisitions_seen)
            return await self._refresh()

    async def force_refresh(self, stale: AccessToken | None) -> AccessToken:
        """Replace a token the upstream rejected.

        Only refreshes when ``stale`` is still the cached token, so a burst
        of 401 responses for the same token triggers a single acquisition.

        Args:
            stale: Token that was rejected by the upstream

        Returns:
            Fresh AccessToken
        """
        acquisitions_seen = self._acquisitions
        async with self._lock:
            current = self._token
            if (
                current is not None
                and current is not stale
                and not current.expires_within(self._margin)
            ):
                return current

            self._raise_if_failed_since(acquisitions_seen)
            logger.warning("sharepoint_token_rejected_refreshing")
            self._token = None
            if self._msal_app is not None:
                # MSAL would otherwise hand back its cached copy of the same token
                self._msal_app.token_cache = msal.TokenCache()
            return await self._refresh()

    def _raise_if_failed_since(self, acquisitions_seen: int) -> None:
        """Re-raise the failure of an acquisition that ran while we waited."""
        if self._acquisitions != acquisitions_seen and self._last_error is not None:
            logger.debug("sharepoint_token_reusing_failed_acquisition")
            raise self._last_error

    async def _refresh(self) -> AccessToken:
        """Acquire a new token and record the outcome for waiting callers.

        Must be called with the lock held.
        """
        try:
            token = await self._acquire_with_retries()
        except SharePointAuthenticationError as e:
            self._last_error = e
            raise
        finally:
            self._acquisitions += 1
        self._last_error = None
        return token

    async def _acquire_with_retries(self) -> AccessToken:
        """Acquire a new token with bounded exponential backoff."""
        if not self.is_configured or self._msal_app is None:
            logger.error("sharepoint_app_token_failed", reason="not_configured")
            raise SharePointAuthenticationError(
                "SharePoint authentication is not configured"
            )

        attempts = max(1, self._settings.auth_retry_attempts)
        for attempt in range(attempts):
            try:
                token = await asyncio.to_thread(self._acquire_token_for_client)
            except SharePointAuthenticationError as e:
                if attempt + 1 < attempts:
                    delay = 2**attempt
                    logger.warning(
                        "sharepoint_app_token_retrying",
                        attempt=attempt + 1,
                        max_attempts=attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error(
                    "sharepoint_app_token_exhausted",
                    attempts=attempts,
                    error=str(e),
                )
                raise

            self._token = token
            return token

        raise SharePointAuthenticationError(
            f"Failed to acquire app_only token after {attempts} attempts"
        )

    def _acquire_token_for_client(self) -> AccessToken:
        """Run the client credentials flow (blocking, called in a thread)."""
        logger.debug("sharepoint_app_token_acquiring_new")
        try:
            result = self._msal_app.acquire_token_for_client(
                scopes=GRAPH_DEFAULT_SCOPE,
            )
        except Exception as e:
            # MSAL surfaces transport failures as requests/ValueError exceptions
            raise SharePointAuthenticationError(
                f"Token request failed: {type(e).__name__}: {e}"
            ) from e
        return self._handle_auth_result(result)

    def _handle_auth_result(self, result: dict[str, Any] | None) -> AccessToken:
        """Process MSAL authentication result.

        Args:
            result: MSAL result dictionary containing access_token or error

        Returns:
            AccessToken with absolute expiry

        Raises:
            SharePointAuthenticationError: If result is None or contains error
        """
        if result is None:
            logger.error("sharepoint_app_only_token_failed", reason="null_result")
            raise SharePointAuthenticationError(
                "Failed to acquire app_only token: no result from MSAL"
            )

        if "error" in result:
            error_code = result.get("error", "unknown")
            error_description = result.get("error_description") or "No description"

            logger.error(
                "sharepoint_app_only_token_failed",
                error_code=error_code,
                error_description=error_description[:100],
            )
            raise SharePointAuthenticationError(
                f"Failed to acquire app_only token: {error_code} - {error_description}"
            )

        access_token = result.get("access_token")
        if not access_token:
            logger.error(
                "sharepoint_app_only_token_failed",
                reason="missing_access_token",
            )
            raise SharePointAuthenticationError(
                "Failed to acquire app_only token: access_token not in response"
            )

        expires_in = int(result.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        expires_at = datetime.now(UTC) + timedelta(seconds=expires_in)

        logger.info(
            "sharepoint_app_only_token_acquired",
            expires_in=expires_in,
            token_type=result.get("token_type"),
        )

        return AccessToken(value=access_token, expires_at=expires_at)


# Module-level singleton for efficiency
_auth_service: SharePointAuthService | None = None


def get_sharepoint_auth() -> SharePointAuthService:
    """Get the SharePoint authentication service singleton.

    Returns:
        SharePointAuthService instance
    """
    global _auth_service
    if _auth_service is None:
        _auth_service = SharePointAuthService()
    return _auth_service


def reset_sharepoint_auth() -> None:
    """Reset the SharePoint authentication service singleton.

    Used primarily for testing to ensure clean state between tests.
    """
    global _auth_service
    _auth_service = None
