"""
Pydantic schemas for credential payloads and race validation.
"""

from runclub.schemas.credential import Credential, EncryptedBlob
from runclub.schemas.race import RaceCreate, RaceUpdate

__all__ = ["Credential", "EncryptedBlob", "RaceCreate", "RaceUpdate"]
