"""
Services for the run club credential store.
"""

from runclub.services.encryption import CredentialCipher, get_credential_cipher
from runclub.services.legacy_store import ConsistencyReport, LegacyEntry, LegacyFlatStore
from runclub.services.member_store import MemberStore
from runclub.services.migration import (
    MIGRATION_NAME,
    MigrationCoordinator,
    MigrationLedger,
    MigrationReport,
    MigrationState,
)
from runclub.services.strava_oauth import StravaOAuthClient, get_strava_oauth_client
from runclub.services.token_manager import (
    DurableTokenSource,
    LegacyTokenSource,
    OAuthProvider,
    TokenLifecycleManager,
    TokenOutcome,
    TokenResolution,
    TokenSource,
)

__all__ = [
    # Encryption
    "CredentialCipher",
    "get_credential_cipher",
    # Stores
    "MemberStore",
    "LegacyFlatStore",
    "LegacyEntry",
    "ConsistencyReport",
    # Migration
    "MIGRATION_NAME",
    "MigrationCoordinator",
    "MigrationLedger",
    "MigrationReport",
    "MigrationState",
    # Strava
    "StravaOAuthClient",
    "get_strava_oauth_client",
    # Tokens
    "TokenLifecycleManager",
    "TokenSource",
    "DurableTokenSource",
    "LegacyTokenSource",
    "OAuthProvider",
    "TokenOutcome",
    "TokenResolution",
]
