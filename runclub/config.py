"""
Application configuration using pydantic-settings.
Loads values from .env file in project root.
"""

import re
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database settings
    database_url: str = "sqlite:///data/runclub.db"
    debug: bool = False
    log_level: str = "INFO"

    # Encryption settings (for OAuth token storage)
    # 32-byte AES key as 64 hex characters
    encryption_key: str = ""

    # Strava OAuth settings
    strava_client_id: str = ""
    strava_client_secret: str = ""
    strava_token_url: str = "https://www.strava.com/oauth/token"
    strava_request_timeout: float = 30.0

    # Legacy file-backed member registry
    legacy_members_path: str = "data/members.json"

    # Token lifecycle
    token_refresh_margin_seconds: int = 3600
    deactivate_on_revocation: bool = True
    token_refresh_enabled: bool = True
    token_refresh_interval_minutes: int = 60

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, value: str) -> str:
        """Accept an empty key (encryption disabled) or exactly 64 hex chars."""
        value = value.strip()
        if value and not _HEX_KEY_PATTERN.match(value):
            raise ValueError("ENCRYPTION_KEY must be 64 hexadecimal characters (32 bytes)")
        return value

    @property
    def encryption_configured(self) -> bool:
        """Check if encryption key is configured."""
        return bool(self.encryption_key)

    @property
    def strava_oauth_configured(self) -> bool:
        """Check if Strava OAuth is properly configured."""
        return bool(self.strava_client_id and self.strava_client_secret)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
