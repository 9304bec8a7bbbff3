"""
SQLAlchemy models for the run club credential store.

All models are imported here for easy access and to ensure
they are registered with the declarative base.
"""

from runclub.models.base import Base
from runclub.models.account import Account
from runclub.models.race import Race, RaceStatus, RaceType
from runclub.models.migration_log import MigrationLog

__all__ = ["Base", "Account", "Race", "RaceStatus", "RaceType", "MigrationLog"]
