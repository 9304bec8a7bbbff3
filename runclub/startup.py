"""
Startup wiring: logging, database, stores and the one-time legacy migration.

Run with: runclub-migrate
Or: python -m runclub.startup
"""

import logging
import sys
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from runclub.config import Settings, get_settings
from runclub.database import create_db_engine, create_session_factory, init_db
from runclub.errors import RunClubError, StorageError
from runclub.services.encryption import CredentialCipher
from runclub.services.legacy_store import LegacyFlatStore
from runclub.services.member_store import MemberStore
from runclub.services.migration import MigrationCoordinator, MigrationLedger, MigrationState
from runclub.services.strava_oauth import StravaOAuthClient
from runclub.services.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

_logging_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for entry points."""
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    _logging_configured = True


@dataclass
class AppContext:
    """
    Handles to every store, passed explicitly to whoever needs them.

    The legacy store starts empty; load_context() loads it.
    """

    settings: Settings
    member_store: MemberStore
    ledger: MigrationLedger
    legacy_store: LegacyFlatStore
    token_manager: TokenLifecycleManager


def build_context(settings: Settings | None = None) -> AppContext:
    """
    Create the database schema and wire up the stores.

    Raises:
        ValidationError: If the encryption key is malformed
        StorageError: If the database cannot be initialized
    """
    settings = settings or get_settings()

    try:
        engine = create_db_engine(settings.database_url, echo=settings.debug)
        init_db(engine)
    except (SQLAlchemyError, OSError) as e:
        raise StorageError(f"Failed to initialize database: {e}") from e
    session_factory = create_session_factory(engine)

    cipher = CredentialCipher(settings.encryption_key)
    if not cipher.is_configured:
        logger.warning("Encryption key not configured. Credentials will not be stored.")

    member_store = MemberStore(session_factory, cipher)
    legacy_store = LegacyFlatStore(settings.legacy_members_path, cipher)
    oauth_client = StravaOAuthClient(
        client_id=settings.strava_client_id,
        client_secret=settings.strava_client_secret,
        token_url=settings.strava_token_url,
        timeout=settings.strava_request_timeout,
    )
    token_manager = TokenLifecycleManager(
        provider=oauth_client,
        member_store=member_store,
        legacy_store=legacy_store,
        margin_seconds=settings.token_refresh_margin_seconds,
        deactivate_on_revocation=settings.deactivate_on_revocation,
    )

    return AppContext(
        settings=settings,
        member_store=member_store,
        ledger=MigrationLedger(session_factory),
        legacy_store=legacy_store,
        token_manager=token_manager,
    )


async def load_context(settings: Settings | None = None) -> AppContext:
    """
    Build the context and load the legacy snapshot into memory.

    Hosts that resolve tokens use this rather than build_context so the
    legacy fallback tier is populated.

    Raises:
        StorageError: If the database or the legacy snapshot cannot be read
    """
    context = build_context(settings)
    count = await context.legacy_store.load()
    logger.info(f"Legacy fallback tier ready ({count} accounts)")
    return context


def run_migration(context: AppContext) -> bool:
    """Migrate the legacy snapshot into the database if not done yet."""
    coordinator = MigrationCoordinator(
        member_store=context.member_store,
        ledger=context.ledger,
        snapshot_path=context.settings.legacy_members_path,
    )
    report = coordinator.run()

    if report.state == MigrationState.FAILED:
        logger.error(f"Legacy migration failed: {report.errors}")
        return False

    if report.errors:
        logger.warning(f"Legacy migration finished with {len(report.errors)} record errors")
    return True


def initialize_and_migrate(settings: Settings | None = None) -> bool:
    """
    Initialize the database and run the legacy migration.

    Returns:
        True on success, False if anything failed
    """
    try:
        context = build_context(settings)
        return run_migration(context)
    except RunClubError as e:
        logger.error(f"Initialization failed: {e}")
        return False


def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info("Initializing run club database...")
    ok = initialize_and_migrate(settings)
    if ok:
        logger.info("Initialization complete")
    else:
        logger.error("Initialization failed")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
