"""
Pydantic schemas for Race entries.
"""

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from runclub.models.race import RaceStatus, RaceType


class RaceBase(BaseModel):
    """Base schema for Race."""
    name: str = Field(..., min_length=1, max_length=100, description="Race name")
    race_date: date = Field(..., description="Race day (ISO date)")
    race_type: RaceType = Field(RaceType.road, description="road or trail")
    distance: Optional[str] = Field(None, max_length=20, description="e.g. 42.2km, 10mi, 5K")
    distance_km: Optional[float] = Field(None, gt=0, le=1000)
    location: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=500)
    goal_time: Optional[str] = Field(None, max_length=20, description="e.g. 3:30:00")

    @field_validator("name", "distance", "location", "notes", "goal_time")
    @classmethod
    def strip_text(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class RaceCreate(RaceBase):
    """Schema for creating a Race."""
    pass


class RaceUpdate(BaseModel):
    """Schema for updating a Race."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    race_date: Optional[date] = None
    race_type: Optional[RaceType] = None
    distance: Optional[str] = Field(None, max_length=20)
    distance_km: Optional[float] = Field(None, gt=0, le=1000)
    location: Optional[str] = Field(None, max_length=100)
    status: Optional[RaceStatus] = None
    notes: Optional[str] = Field(None, max_length=500)
    goal_time: Optional[str] = Field(None, max_length=20)
