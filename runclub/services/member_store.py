"""
Durable member registry backed by SQLAlchemy.

Owns accounts, their encrypted credentials and dependent race entries.
Identity invariants are checked here and backed by unique constraints;
cascading removal relies on a single database transaction.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from runclub.errors import ConflictError, StorageError, ValidationError
from runclub.models import Account, Race, RaceStatus
from runclub.models.base import utcnow
from runclub.schemas.credential import Credential, EncryptedBlob
from runclub.schemas.race import RaceCreate, RaceUpdate
from runclub.services.encryption import CredentialCipher

logger = logging.getLogger(__name__)


class MemberStore:
    """
    Registry of accounts in the relational database.

    Each public method runs in its own transaction: it commits on success
    and rolls back on any error. Database failures surface as StorageError.
    Returned Account objects are detached snapshots and stay readable after
    the session closes.
    """

    def __init__(self, session_factory: sessionmaker, cipher: CredentialCipher):
        self.session_factory = session_factory
        self.cipher = cipher

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Database operation failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # Registration
    # =========================================================================

    def register(
        self,
        local_id: str,
        external_id: int,
        profile: dict[str, Any] | None,
        credential: Credential | dict | None,
    ) -> Account:
        """
        Register a member.

        Args:
            local_id: Chat-platform user ID
            external_id: Strava athlete ID
            profile: Athlete profile from the provider
            credential: OAuth credential to encrypt and store

        Returns:
            The new (or re-registered) Account

        Raises:
            ValidationError: If the identifiers or credential are malformed
            ConflictError: DuplicateLocalId or DuplicateActiveExternalId
            StorageError: If the write fails
        """
        local_id, external_id = _validate_identity(local_id, external_id)
        credential = _coerce_credential(credential)

        encrypted = self._encrypt_credential(credential, external_id)

        try:
            with self._session() as session:
                by_local = _first(session, Account.local_id == local_id)
                if by_local and (by_local.external_id != external_id or by_local.is_active):
                    logger.warning(
                        f"Duplicate registration for local user {local_id} "
                        f"(already linked to athlete {by_local.external_id})"
                    )
                    raise ConflictError(
                        "DuplicateLocalId",
                        f"User {local_id} is already registered to athlete {by_local.external_id}",
                    )

                account = _first(session, Account.external_id == external_id)
                if account and account.is_active:
                    logger.warning(
                        f"Athlete {external_id} already registered to user {account.local_id}"
                    )
                    raise ConflictError(
                        "DuplicateActiveExternalId",
                        f"Athlete {external_id} is already registered and active",
                    )

                now = utcnow()
                if account is None:
                    account = Account(external_id=external_id, local_id=local_id)
                    session.add(account)
                account.local_id = local_id
                account.is_active = True
                account.set_profile(profile)
                account.encrypted_credential = encrypted
                account.registered_at = now
                account.updated_at = now
                session.flush()
        except StorageError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise ConflictError(
                    "DuplicateLocalId",
                    f"Registration of athlete {external_id} conflicts with an existing account",
                ) from e
            raise

        logger.info(f"Registered athlete {external_id} for user {local_id}")
        return account

    def import_account(
        self,
        local_id: str,
        external_id: int,
        profile: dict[str, Any] | None,
        encrypted_credential: EncryptedBlob | None,
        is_active: bool = True,
        registered_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> Account:
        """
        Insert an account whose credential is already encrypted.

        Used by the legacy migration: the blob is stored as-is so no key is
        needed and no plaintext is ever produced.

        Raises:
            ValidationError: If the identifiers are malformed
            ConflictError: If either identity is already taken
            StorageError: If the write fails
        """
        local_id, external_id = _validate_identity(local_id, external_id)

        try:
            with self._session() as session:
                account = Account(
                    external_id=external_id,
                    local_id=local_id,
                    is_active=is_active,
                    encrypted_credential=(
                        encrypted_credential.model_dump_json(by_alias=True)
                        if encrypted_credential
                        else None
                    ),
                    registered_at=registered_at or utcnow(),
                    updated_at=updated_at or registered_at or utcnow(),
                )
                account.set_profile(profile)
                session.add(account)
                session.flush()
        except StorageError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise ConflictError(
                    "DuplicateLocalId",
                    f"Athlete {external_id} / user {local_id} conflicts with an existing account",
                ) from e
            raise

        return account

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_by_external_id(self, external_id: int) -> Account | None:
        with self._session() as session:
            return _first(session, Account.external_id == int(external_id))

    def get_by_local_id(self, local_id: str) -> Account | None:
        with self._session() as session:
            return _first(session, Account.local_id == local_id)

    def get_all_active(self) -> list[Account]:
        """All active accounts, oldest registration first."""
        with self._session() as session:
            return list(
                session.scalars(
                    select(Account)
                    .where(Account.is_active.is_(True))
                    .order_by(Account.registered_at, Account.id)
                )
            )

    def get_credential(self, account: Account) -> Credential | None:
        """
        Decrypted credential of an account.

        Returns None when there is no credential, no key, or the stored
        blob cannot be decrypted into a valid credential.
        """
        blob = account.get_encrypted_blob()
        if blob is None:
            return None
        payload = self.cipher.decrypt(blob)
        if payload is None:
            return None
        try:
            return Credential.model_validate(payload)
        except PydanticValidationError as e:
            logger.warning(f"Stored credential for athlete {account.external_id} is invalid: {e}")
            return None

    # =========================================================================
    # Mutations
    # =========================================================================

    def update_credential(self, external_id: int, credential: Credential | dict) -> bool:
        """
        Re-encrypt and store a credential.

        Returns:
            True if updated, False if no account matched

        Raises:
            StorageError: NoEncryptionKey when encryption is disabled, or a
                database failure
        """
        if not self.cipher.is_configured:
            logger.error(f"Cannot store credential for athlete {external_id}: no encryption key")
            raise StorageError("No encryption key configured", code="NoEncryptionKey")

        credential = _coerce_credential(credential)
        encrypted = self.cipher.encrypt_to_json(credential)

        with self._session() as session:
            account = _first(session, Account.external_id == int(external_id))
            if account is None:
                return False
            account.encrypted_credential = encrypted
            account.updated_at = utcnow()

        logger.info(f"Credential updated for athlete {external_id}")
        return True

    def deactivate(self, external_id: int) -> bool:
        return self._set_active(external_id, False)

    def reactivate(self, external_id: int) -> bool:
        return self._set_active(external_id, True)

    def _set_active(self, external_id: int, active: bool) -> bool:
        with self._session() as session:
            account = _first(session, Account.external_id == int(external_id))
            if account is None:
                return False
            account.is_active = active
            account.updated_at = utcnow()

        logger.info(f"Athlete {external_id} {'reactivated' if active else 'deactivated'}")
        return True

    def remove(self, external_id: int) -> Account | None:
        """
        Delete an account and all its dependent records in one transaction.

        Returns:
            The removed Account, or None if it did not exist
        """
        external_id = int(external_id)
        with self._session() as session:
            account = _first(session, Account.external_id == external_id)
            if account is None:
                return None

            session.execute(delete(Race).where(Race.account_external_id == external_id))
            session.execute(delete(Account).where(Account.external_id == external_id))

        logger.info(f"Removed athlete {external_id} (user {account.local_id})")
        return account

    def remove_by_local_id(self, local_id: str) -> Account | None:
        account = self.get_by_local_id(local_id)
        if account is None:
            return None
        return self.remove(account.external_id)

    # =========================================================================
    # Races
    # =========================================================================

    def add_race(self, external_id: int, race_data: RaceCreate | dict) -> Race:
        """
        Add a race for an active member.

        Raises:
            ValidationError: If the race data is invalid or the member is
                missing or inactive
        """
        if not isinstance(race_data, RaceCreate):
            try:
                race_data = RaceCreate.model_validate(race_data)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid race data: {e}") from e

        with self._session() as session:
            account = _first(session, Account.external_id == int(external_id))
            if account is None or not account.is_active:
                raise ValidationError("Member not found or inactive")

            race = Race(account_external_id=account.external_id, **race_data.model_dump())
            session.add(race)
            session.flush()

        logger.info(f"Race '{race.name}' on {race.race_date} added for athlete {external_id}")
        return race

    def get_races(self, external_id: int, status: RaceStatus | None = None) -> list[Race]:
        """Races of a member ordered by date."""
        query = select(Race).where(Race.account_external_id == int(external_id))
        if status is not None:
            query = query.where(Race.status == status)
        with self._session() as session:
            return list(session.scalars(query.order_by(Race.race_date, Race.id)))

    def update_race(self, race_id: int, updates: RaceUpdate | dict) -> Race | None:
        if not isinstance(updates, RaceUpdate):
            try:
                updates = RaceUpdate.model_validate(updates)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid race update: {e}") from e

        with self._session() as session:
            race = session.get(Race, race_id)
            if race is None:
                return None
            for key, value in updates.model_dump(exclude_unset=True).items():
                setattr(race, key, value)
            race.updated_at = utcnow()
        return race

    def remove_race(self, race_id: int) -> Race | None:
        with self._session() as session:
            race = session.get(Race, race_id)
            if race is None:
                return None
            session.delete(race)
        return race

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> dict[str, int]:
        with self._session() as session:
            total = session.scalar(select(func.count(Account.id))) or 0
            active = session.scalar(
                select(func.count(Account.id)).where(Account.is_active.is_(True))
            ) or 0
            races = session.scalar(select(func.count(Race.id))) or 0
        return {
            "total": total,
            "active": active,
            "inactive": total - active,
            "races": races,
        }

    def _encrypt_credential(self, credential: Credential | None, external_id: int) -> str | None:
        if credential is None:
            return None
        if not self.cipher.is_configured:
            logger.warning(
                f"No encryption key configured, athlete {external_id} registered without credential"
            )
            return None
        return self.cipher.encrypt_to_json(credential)


def _first(session: Session, condition) -> Account | None:
    return session.scalars(select(Account).where(condition)).first()


def _validate_identity(local_id: Any, external_id: Any) -> tuple[str, int]:
    if not isinstance(local_id, str) or not local_id.strip():
        raise ValidationError("local_id must be a non-empty string")
    try:
        external_id = int(external_id)
    except (TypeError, ValueError):
        raise ValidationError(f"external_id must be numeric, got {external_id!r}")
    if external_id <= 0:
        raise ValidationError("external_id must be positive")
    return local_id.strip(), external_id


def _coerce_credential(credential: Credential | dict | None) -> Credential | None:
    if credential is None or isinstance(credential, Credential):
        return credential
    try:
        return Credential.model_validate(credential)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid credential: {e}") from e
