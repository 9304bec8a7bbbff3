"""
Race model for races a member has signed up for.
"""

from datetime import date, datetime
from enum import Enum as PyEnum
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy import Enum
from sqlalchemy.orm import Mapped, mapped_column, relationship as orm_relationship

from runclub.models.base import Base, utcnow

if TYPE_CHECKING:
    from runclub.models.account import Account


class RaceType(str, PyEnum):
    """Race surface."""

    road = "road"
    trail = "trail"


class RaceStatus(str, PyEnum):
    """Race participation status."""

    registered = "registered"
    completed = "completed"
    cancelled = "cancelled"
    dns = "dns"  # did not start
    dnf = "dnf"  # did not finish


class Race(Base):
    """
    Race entry owned by an Account.

    Rows are removed by the database when their account is deleted.
    """

    __tablename__ = "races"
    __table_args__ = (
        Index("idx_races_account_external_id", "account_external_id"),
        Index("idx_races_race_date", "race_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_external_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("accounts.external_id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    race_date: Mapped[date] = mapped_column(Date, nullable=False)
    race_type: Mapped[RaceType] = mapped_column(
        Enum(RaceType, name="race_type", native_enum=False),
        default=RaceType.road,
        nullable=False,
    )
    distance: Mapped[str | None] = mapped_column(String(20))
    distance_km: Mapped[float | None] = mapped_column(Float)
    location: Mapped[str | None] = mapped_column(String(100))
    status: Mapped[RaceStatus] = mapped_column(
        Enum(RaceStatus, name="race_status", native_enum=False),
        default=RaceStatus.registered,
        nullable=False,
    )
    notes: Mapped[str | None] = mapped_column(Text)
    goal_time: Mapped[str | None] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    # Relationships
    account: Mapped["Account"] = orm_relationship(
        "Account",
        back_populates="races",
    )

    def __repr__(self) -> str:
        return f"<Race(name={self.name!r}, date={self.race_date}, status={self.status})>"
