"""Tests for SharePoint authentication service."""

import asyncio
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from s3_sharepoint.core.sharepoint.auth import (
    GRAPH_DEFAULT_SCOPE,
    AccessToken,
    SharePointAuthService,
    get_sharepoint_auth,
    reset_sharepoint_auth,
)
from s3_sharepoint.core.sharepoint.exceptions import SharePointAuthenticationError
from tests.fixtures.fake_drive import make_settings


def _token_result(value: str = "mock_token_12345", expires_in: int = 3600) -> dict:
    return {"access_token": value, "expires_in": expires_in, "token_type": "Bearer"}


class TestAccessToken:
    """Tests for AccessToken expiry checks."""

    def test_not_expired_before_expiry(self):
        now = datetime(2024, 1, 1, tzinfo=UTC)
        token = AccessToken("t", now + timedelta(seconds=10))
        assert token.is_expired(now) is False
        assert token.is_expired(now + timedelta(seconds=10)) is True

    def test_expires_within_margin(self):
        now = datetime(2024, 1, 1, tzinfo=UTC)
        token = AccessToken("t", now + timedelta(seconds=100))
        assert token.expires_within(300, now) is True
        assert token.expires_within(60, now) is False

    def test_repr_hides_value(self):
        token = AccessToken("secret-value", datetime(2024, 1, 1, tzinfo=UTC))
        assert "secret-value" not in repr(token)


class TestSharePointAuthServiceInit:
    """Tests for SharePointAuthService initialization."""

    @pytest.fixture(autouse=True)
    def reset_singleton(self):
        """Reset the singleton before each test."""
        reset_sharepoint_auth()
        yield
        reset_sharepoint_auth()

    def test_init_creates_msal_app_when_configured(self):
        """Initialization creates MSAL ConfidentialClientApplication when configured."""
        settings = make_settings(
            sharepoint_client_id="test-client-id-12345678",
            sharepoint_client_secret="test-client-secret",
            sharepoint_tenant_id="test-tenant-id-12345678",
        )

        with patch("msal.ConfidentialClientApplication") as mock_msal_class:
            service = SharePointAuthService(settings)

            mock_msal_class.assert_called_once_with(
                client_id="test-client-id-12345678",
                client_credential="test-client-secret",
                authority="https://login.microsoftonline.com/test-tenant-id-12345678",
            )
            assert service._msal_app is not None
            assert service.is_configured is True

    def test_init_with_missing_config_does_not_create_msal_app(self):
        """Missing config prevents MSAL app creation."""
        settings = make_settings(sharepoint_client_secret="")

        with patch("msal.ConfidentialClientApplication") as mock_msal_class:
            service = SharePointAuthService(settings)

            mock_msal_class.assert_not_called()
            assert service._msal_app is None
            assert service.is_configured is False

    def test_get_sharepoint_auth_returns_singleton(self):
        """get_sharepoint_auth returns the same instance until reset."""
        with (
            patch(
                "s3_sharepoint.core.sharepoint.auth.get_settings",
                return_value=make_settings(),
            ),
            patch("msal.ConfidentialClientApplication"),
        ):
            first = get_sharepoint_auth()
            assert get_sharepoint_auth() is first
            reset_sharepoint_auth()
            assert get_sharepoint_auth() is not first


class TestGetToken:
    """Tests for cached app-only token acquisition."""

    @pytest.fixture
    def mock_configured_service(self):
        """Create a configured SharePointAuthService with a mocked MSAL app."""
        with patch("msal.ConfidentialClientApplication") as mock_msal_class:
            mock_app = MagicMock()
            mock_msal_class.return_value = mock_app
            service = SharePointAuthService(make_settings(auth_retry_attempts=3))
            yield service, mock_app

    @pytest.mark.asyncio
    async def test_get_token_returns_token(self, mock_configured_service):
        """Successful token acquisition returns access token."""
        service, mock_app = mock_configured_service
        mock_app.acquire_token_for_client.return_value = _token_result()

        token = await service.get_token()

        assert token.value == "mock_token_12345"
        assert token.expires_at > datetime.now(UTC) + timedelta(seconds=3500)
        mock_app.acquire_token_for_client.assert_called_once_with(
            scopes=GRAPH_DEFAULT_SCOPE
        )

    @pytest.mark.asyncio
    async def test_cached_token_reused(self, mock_configured_service):
        """A token outside the refresh margin is served from the cache."""
        service, mock_app = mock_configured_service
        mock_app.acquire_token_for_client.return_value = _token_result()

        first = await service.get_token()
        second = await service.get_token()

        assert first is second
        assert mock_app.acquire_token_for_client.call_count == 1

    @pytest.mark.asyncio
    async def test_token_inside_margin_refreshed(self, mock_configured_service):
        """A token close to expiry is replaced."""
        service, mock_app = mock_configured_service
        service._token = AccessToken("old", datetime.now(UTC) + timedelta(seconds=60))
        mock_app.acquire_token_for_client.return_value = _token_result("new")

        token = await service.get_token()

        assert token.value == "new"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_acquisition(self, mock_configured_service):
        """N concurrent get_token calls with no cached token acquire once."""
        service, mock_app = mock_configured_service

        def slow_acquire(scopes):
            time.sleep(0.05)
            return _token_result()

        mock_app.acquire_token_for_client.side_effect = slow_acquire

        tokens = await asyncio.gather(*(service.get_token() for _ in range(10)))

        assert mock_app.acquire_token_for_client.call_count == 1
        assert {token.value for token in tokens} == {"mock_token_12345"}

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_failed_acquisition(self, mock_configured_service):
        """Callers waiting on a failing acquisition get its error without retrying."""
        service, mock_app = mock_configured_service

        def failing_acquire(scopes):
            time.sleep(0.01)
            return {"error": "invalid_client", "error_description": "bad secret"}

        mock_app.acquire_token_for_client.side_effect = failing_acquire

        with patch("asyncio.sleep", new_callable=AsyncMock):
            results = await asyncio.gather(
                *(service.get_token() for _ in range(5)), return_exceptions=True
            )

        assert all(isinstance(r, SharePointAuthenticationError) for r in results)
        assert mock_app.acquire_token_for_client.call_count == 3

    @pytest.mark.asyncio
    async def test_request_after_failed_acquisition_retries(self, mock_configured_service):
        """A new request after a failure starts a fresh acquisition."""
        service, mock_app = mock_configured_service
        mock_app.acquire_token_for_client.side_effect = [
            {"error": "invalid_client"},
            {"error": "invalid_client"},
            {"error": "invalid_client"},
            _token_result("recovered"),
        ]

        with patch("asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(SharePointAuthenticationError):
                await service.get_token()
            token = await service.get_token()

        assert token.value == "recovered"
        assert mock_app.acquire_token_for_client.call_count == 4

    @pytest.mark.asyncio
    async def test_callers_reuse_valid_token_during_refresh(self, mock_configured_service):
        """While one caller refreshes, others keep the unexpired old token."""
        service, mock_app = mock_configured_service
        service._token = AccessToken("old", datetime.now(UTC) + timedelta(seconds=60))

        def slow_acquire(scopes):
            time.sleep(0.05)
            return _token_result("new")

        mock_app.acquire_token_for_client.side_effect = slow_acquire

        tokens = await asyncio.gather(*(service.get_token() for _ in range(5)))

        assert mock_app.acquire_token_for_client.call_count == 1
        assert tokens[0].value == "new"
        assert {token.value for token in tokens[1:]} == {"old"}

    @pytest.mark.asyncio
    async def test_get_token_raises_on_error_response(self, mock_configured_service):
        """MSAL error response raises SharePointAuthenticationError after retries."""
        service, mock_app = mock_configured_service
        mock_app.acquire_token_for_client.return_value = {
            "error": "invalid_client",
            "error_description": "Client secret is invalid",
        }

        with (
            patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
            pytest.raises(SharePointAuthenticationError, match="invalid_client"),
        ):
            await service.get_token()

        assert mock_app.acquire_token_for_client.call_count == 3
        assert [call.args[0] for call in mock_sleep.call_args_list] == [1, 2]
        assert service._token is None

    @pytest.mark.asyncio
    async def test_get_token_retries_then_succeeds(self, mock_configured_service):
        """A transient failure is retried with backoff."""
        service, mock_app = mock_configured_service
        mock_app.acquire_token_for_client.side_effect = [
            ConnectionError("network down"),
            _token_result(),
        ]

        with patch("asyncio.sleep", new_callable=AsyncMock):
            token = await service.get_token()

        assert token.value == "mock_token_12345"
        assert mock_app.acquire_token_for_client.call_count == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_token(self, mock_configured_service):
        """A failed refresh does not overwrite the cached token."""
        service, mock_app = mock_configured_service
        old = AccessToken("old", datetime.now(UTC) + timedelta(seconds=60))
        service._token = old
        mock_app.acquire_token_for_client.return_value = None

        with (
            patch("asyncio.sleep", new_callable=AsyncMock),
            pytest.raises(SharePointAuthenticationError, match="no result"),
        ):
            await service.get_token()

        assert service._token is old

    @pytest.mark.asyncio
    async def test_missing_access_token_raises(self, mock_configured_service):
        service, mock_app = mock_configured_service
        mock_app.acquire_token_for_client.return_value = {"token_type": "Bearer"}

        with (
            patch("asyncio.sleep", new_callable=AsyncMock),
            pytest.raises(SharePointAuthenticationError, match="access_token not in"),
        ):
            await service.get_token()

    @pytest.mark.asyncio
    async def test_not_configured_raises(self):
        """Unconfigured service raises SharePointAuthenticationError."""
        service = SharePointAuthService(make_settings(sharepoint_tenant_id=""))

        with pytest.raises(SharePointAuthenticationError, match="not configured"):
            await service.get_token()


class TestForceRefresh:
    """Tests for replacing a token rejected by Graph."""

    @pytest.fixture
    def mock_configured_service(self):
        with patch("msal.ConfidentialClientApplication") as mock_msal_class:
            mock_app = MagicMock()
            mock_msal_class.return_value = mock_app
            service = SharePointAuthService(make_settings())
            yield service, mock_app

    @pytest.mark.asyncio
    async def test_force_refresh_replaces_stale_token(self, mock_configured_service):
        service, mock_app = mock_configured_service
        stale = AccessToken("stale", datetime.now(UTC) + timedelta(hours=1))
        service._token = stale
        mock_app.acquire_token_for_client.return_value = _token_result("fresh")

        token = await service.force_refresh(stale)

        assert token.value == "fresh"
        assert service._token is token

    @pytest.mark.asyncio
    async def test_force_refresh_clears_msal_cache(self, mock_configured_service):
        """MSAL's own cache is dropped so it cannot return the stale token."""
        service, mock_app = mock_configured_service
        stale = AccessToken("stale", datetime.now(UTC) + timedelta(hours=1))
        service._token = stale
        original_cache = mock_app.token_cache
        mock_app.acquire_token_for_client.return_value = _token_result("fresh")

        await service.force_refresh(stale)

        assert mock_app.token_cache is not original_cache

    @pytest.mark.asyncio
    async def test_burst_of_rejections_refreshes_once(self, mock_configured_service):
        """Several callers rejecting the same token trigger one acquisition."""
        service, mock_app = mock_configured_service
        stale = AccessToken("stale", datetime.now(UTC) + timedelta(hours=1))
        service._token = stale
        mock_app.acquire_token_for_client.return_value = _token_result("fresh")

        tokens = await asyncio.gather(*(service.force_refresh(stale) for _ in range(4)))

        assert mock_app.acquire_token_for_client.call_count == 1
        assert {token.value for token in tokens} == {"fresh"}
