"""
Tests for the Strava OAuth client.

Uses httpx.MockTransport so no request leaves the process.
"""

from urllib.parse import parse_qs

import httpx
import pytest

from runclub.errors import UpstreamAuthError, UpstreamError
from runclub.services.strava_oauth import StravaOAuthClient, get_strava_oauth_client

TOKEN_URL = "https://www.strava.com/oauth/token"


def _client(handler) -> StravaOAuthClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StravaOAuthClient("123", "secret", token_url=TOKEN_URL, http_client=http_client)


class TestRefresh:
    """Test successful refreshes."""

    @pytest.mark.asyncio
    async def test_posts_refresh_grant(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={
                "access_token": "new-access",
                "refresh_token": "new-refresh",
                "expires_at": 2000000000,
                "token_type": "Bearer",
            })

        credential = await _client(handler).refresh("old-refresh")

        assert seen["url"] == TOKEN_URL
        assert seen["form"]["grant_type"] == ["refresh_token"]
        assert seen["form"]["refresh_token"] == ["old-refresh"]
        assert seen["form"]["client_id"] == ["123"]
        assert credential.access_token == "new-access"
        assert credential.refresh_token == "new-refresh"
        assert credential.expires_at == 2000000000

    @pytest.mark.asyncio
    async def test_keeps_refresh_token_when_not_rotated(self):
        def handler(request):
            return httpx.Response(200, json={"access_token": "new-access", "expires_at": 2000000000})

        credential = await _client(handler).refresh("old-refresh")

        assert credential.refresh_token == "old-refresh"


class TestRevocation:
    """Responses that mean the refresh token is dead."""

    @pytest.mark.asyncio
    async def test_401(self):
        client = _client(lambda request: httpx.Response(401, json={"message": "Authorization Error"}))
        with pytest.raises(UpstreamAuthError):
            await client.refresh("dead")

    @pytest.mark.asyncio
    async def test_400_invalid_grant(self):
        client = _client(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(UpstreamAuthError):
            await client.refresh("dead")

    @pytest.mark.asyncio
    async def test_400_invalid_refresh_token(self):
        body = {
            "message": "Bad Request",
            "errors": [{"resource": "RefreshToken", "field": "refresh_token", "code": "invalid"}],
        }
        client = _client(lambda request: httpx.Response(400, json=body))
        with pytest.raises(UpstreamAuthError) as exc_info:
            await client.refresh("dead")
        assert exc_info.value.status_code == 400


class TestTransientFailures:
    """Everything else is transient."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    async def test_error_status(self, status):
        client = _client(lambda request: httpx.Response(status, json={"message": "nope"}))
        with pytest.raises(UpstreamError) as exc_info:
            await client.refresh("token")
        assert not isinstance(exc_info.value, UpstreamAuthError)
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_400_without_revocation_marker(self):
        client = _client(lambda request: httpx.Response(400, text="bad request"))
        with pytest.raises(UpstreamError) as exc_info:
            await client.refresh("token")
        assert not isinstance(exc_info.value, UpstreamAuthError)

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UpstreamError, match="refresh failed"):
            await _client(handler).refresh("token")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(UpstreamError):
            await _client(handler).refresh("token")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(UpstreamError, match="invalid JSON"):
            await client.refresh("token")

    @pytest.mark.asyncio
    async def test_missing_access_token(self):
        client = _client(lambda request: httpx.Response(200, json={"refresh_token": "r"}))
        with pytest.raises(UpstreamError, match="no access token"):
            await client.refresh("token")

    @pytest.mark.asyncio
    async def test_malformed_expiry(self):
        client = _client(
            lambda request: httpx.Response(200, json={"access_token": "new", "expires_at": "soon"})
        )
        with pytest.raises(UpstreamError, match="malformed token") as exc_info:
            await client.refresh("token")
        assert not isinstance(exc_info.value, UpstreamAuthError)


class TestFactory:
    """Test the settings-backed factory."""

    def test_from_settings(self, monkeypatch):
        monkeypatch.setenv("STRAVA_CLIENT_ID", "42")
        monkeypatch.setenv("STRAVA_CLIENT_SECRET", "shh")
        from runclub.config import get_settings
        get_settings.cache_clear()

        try:
            client = get_strava_oauth_client()
        finally:
            get_settings.cache_clear()

        assert client.client_id == "42"
        assert client.is_configured is True
