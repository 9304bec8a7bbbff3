"""
MigrationLog model, the ledger of one-time data migrations.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from runclub.models.base import Base, utcnow


class MigrationLog(Base):
    """One row per named migration; the latest attempt wins."""

    __tablename__ = "migration_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    data_backup: Mapped[str | None] = mapped_column(
        Text,
        comment="JSON copy of the migrated source payload",
    )
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"<MigrationLog(name={self.name!r}, success={self.success})>"
