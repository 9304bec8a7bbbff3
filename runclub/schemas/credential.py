"""
Pydantic schemas for OAuth credentials and their encrypted form.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Credential(BaseModel):
    """
    OAuth access/refresh token pair with an expiry.

    ``expires_at`` is epoch seconds (UTC). A missing expiry is treated as
    already expired so the token gets refreshed rather than trusted.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    token_type: str = "Bearer"

    def is_expired(self, now: float, margin_seconds: int = 0) -> bool:
        """True unless the token stays valid for more than ``margin_seconds``."""
        if self.expires_at is None:
            return True
        return self.expires_at <= now + margin_seconds

    def to_payload(self) -> dict[str, Any]:
        """Plain dict in the shape stored inside the encrypted blob."""
        return self.model_dump()

    @classmethod
    def from_token_response(
        cls, data: dict[str, Any], previous_refresh_token: str | None = None
    ) -> "Credential":
        """
        Build a credential from a provider token response.

        Providers may omit ``refresh_token`` when it did not rotate; the
        previous one is kept in that case.
        """
        return cls(
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=data.get("expires_at"),
            token_type=data.get("token_type") or "Bearer",
        )


class EncryptedBlob(BaseModel):
    """
    AES-256-GCM ciphertext with its nonce and authentication tag.

    All three values are hex strings. The serialized field names
    (``encrypted``, ``iv``, ``authTag``) match the legacy snapshot file so
    blobs move between storage tiers unchanged.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    iv: str = Field(..., min_length=1)
    ciphertext: str = Field(..., alias="encrypted")
    auth_tag: str = Field(..., alias="authTag", min_length=1)

    def to_dict(self) -> dict[str, str]:
        """Serialize using the on-disk field names."""
        return self.model_dump(by_alias=True)
