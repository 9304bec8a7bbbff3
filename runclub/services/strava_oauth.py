"""
Strava OAuth client.

Only the token refresh call is implemented. Failures are split into
revocation (the refresh token will never work again) and everything else,
which callers treat as transient.
"""

import logging

import httpx
from pydantic import ValidationError as PydanticValidationError

from runclub.config import get_settings
from runclub.errors import UpstreamAuthError, UpstreamError
from runclub.schemas.credential import Credential

logger = logging.getLogger(__name__)

# Error markers Strava returns for a dead refresh token
REVOCATION_MARKERS = ("invalid_grant", "invalid")


class StravaOAuthClient:
    """
    Refreshes Strava access tokens.

    API Documentation: https://developers.strava.com/docs/authentication/
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str = "https://www.strava.com/oauth/token",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.timeout = timeout
        self._http_client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def refresh(self, refresh_token: str) -> Credential:
        """
        Exchange a refresh token for a new credential.

        Args:
            refresh_token: Current refresh token

        Returns:
            New Credential; keeps ``refresh_token`` if Strava did not rotate it

        Raises:
            UpstreamAuthError: If the refresh token is revoked or invalid
            UpstreamError: On network errors, rate limiting or server errors
        """
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }

        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    self.token_url, data=data, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.token_url, data=data, timeout=self.timeout)
        except httpx.RequestError as e:
            raise UpstreamError(f"Strava token refresh failed: {str(e)}")

        if response.status_code == 401:
            raise UpstreamAuthError("Strava rejected the refresh token", status_code=401)
        if response.status_code == 400 and _is_revocation(response):
            raise UpstreamAuthError("Strava refresh token is invalid", status_code=400)
        if response.status_code == 429:
            raise UpstreamError("Strava rate limit exceeded", status_code=429)
        if response.status_code != 200:
            raise UpstreamError(
                f"Strava token refresh error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamError(f"Strava returned invalid JSON: {e}", status_code=200)

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise UpstreamError("Strava response has no access token", status_code=200)

        try:
            credential = Credential.from_token_response(payload, previous_refresh_token=refresh_token)
        except PydanticValidationError as e:
            raise UpstreamError(f"Strava returned a malformed token: {e}", status_code=200) from e

        logger.debug(f"Strava token refreshed, expires at {credential.expires_at}")
        return credential


def _is_revocation(response: httpx.Response) -> bool:
    try:
        body = response.json()
    except ValueError:
        return False
    text = str(body).lower()
    return any(marker in text for marker in REVOCATION_MARKERS)


def get_strava_oauth_client() -> StravaOAuthClient:
    """Build a client from the application settings."""
    settings = get_settings()
    if not settings.strava_oauth_configured:
        logger.warning("Strava OAuth not configured. Set STRAVA_CLIENT_ID and STRAVA_CLIENT_SECRET in .env")
    return StravaOAuthClient(
        client_id=settings.strava_client_id,
        client_secret=settings.strava_client_secret,
        token_url=settings.strava_token_url,
        timeout=settings.strava_request_timeout,
    )
