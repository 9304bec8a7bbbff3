"""
Account model pairing a Strava athlete with a chat-platform member.
"""

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import BigInteger, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship as orm_relationship

from runclub.models.base import Base, utcnow
from runclub.schemas.credential import EncryptedBlob

if TYPE_CHECKING:
    from runclub.models.race import Race


class Account(Base):
    """
    Registered member.

    ``external_id`` is the provider (Strava athlete) identity and
    ``local_id`` the chat identity; both are unique. OAuth credentials are
    only ever stored encrypted, as the JSON form of an EncryptedBlob.
    """

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[int] = mapped_column(
        BigInteger,
        unique=True,
        nullable=False,
        index=True,
    )
    local_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    profile_json: Mapped[str | None] = mapped_column(
        "profile",
        Text,
        comment="JSON profile returned by the provider",
    )
    encrypted_credential: Mapped[str | None] = mapped_column(
        Text,
        comment="AES-256-GCM encrypted OAuth credential (JSON: encrypted, iv, authTag)",
    )
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    # Relationships
    races: Mapped[list["Race"]] = orm_relationship(
        "Race",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Account(external_id={self.external_id}, local_id={self.local_id!r}, "
            f"active={self.is_active})>"
        )

    @property
    def profile(self) -> dict[str, Any]:
        """Decoded profile; an empty dict when missing or unreadable."""
        if not self.profile_json:
            return {}
        try:
            data = json.loads(self.profile_json)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def set_profile(self, profile: dict[str, Any] | None) -> None:
        self.profile_json = json.dumps(profile) if profile is not None else None

    @property
    def display_name(self) -> str:
        profile = self.profile
        name = " ".join(
            part for part in (profile.get("firstname"), profile.get("lastname")) if part
        )
        return name or self.local_id

    def get_encrypted_blob(self) -> EncryptedBlob | None:
        """
        Parse the stored credential column.

        Returns None when there is no credential or the column does not
        hold a well-formed blob.
        """
        if not self.encrypted_credential:
            return None
        try:
            return EncryptedBlob.model_validate_json(self.encrypted_credential)
        except PydanticValidationError:
            return None
