"""
One-time migration of the legacy JSON snapshot into the relational store.

The outcome is recorded in the ``migration_log`` table; once a successful
row exists the migration never runs again. A failed run is retried on the
next startup.
"""

import json
import logging
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from runclub.errors import ConflictError, StorageError, ValidationError
from runclub.models import MigrationLog
from runclub.models.base import utcnow
from runclub.services.legacy_store import parse_record, snapshot_records
from runclub.services.member_store import MemberStore

logger = logging.getLogger(__name__)

MIGRATION_NAME = "json_to_sqlite_migration"


class MigrationState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class MigrationReport:
    state: MigrationState
    migrated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    backup_path: str | None = None


class MigrationLedger:
    """Reads and writes ``migration_log`` rows, one per migration name."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, name: str) -> MigrationLog | None:
        try:
            with self.session_factory() as session:
                return session.scalars(
                    select(MigrationLog).where(MigrationLog.name == name)
                ).first()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read migration ledger: {e}") from e

    def is_completed(self, name: str) -> bool:
        entry = self.get(name)
        return bool(entry and entry.success)

    def record(
        self,
        name: str,
        success: bool,
        error_message: str | None = None,
        data_backup: str | None = None,
    ) -> MigrationLog:
        """
        Insert or overwrite the ledger row for ``name``.

        Raises:
            StorageError: If the row cannot be written
        """
        session = self.session_factory()
        try:
            entry = session.scalars(
                select(MigrationLog).where(MigrationLog.name == name)
            ).first()
            if entry is None:
                entry = MigrationLog(name=name)
                session.add(entry)
            entry.success = success
            entry.error_message = error_message
            entry.data_backup = data_backup
            entry.executed_at = utcnow()
            session.commit()
            return entry
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to write migration ledger: {e}") from e
        finally:
            session.close()


class MigrationCoordinator:
    """
    Backfills MemberStore from the legacy snapshot file.

    Encrypted credentials are copied as-is, so no key is needed to migrate.
    """

    def __init__(
        self,
        member_store: MemberStore,
        ledger: MigrationLedger,
        snapshot_path: str | Path,
        name: str = MIGRATION_NAME,
    ):
        self.member_store = member_store
        self.ledger = ledger
        self.snapshot_path = Path(snapshot_path)
        self.name = name
        self.state = MigrationState.NOT_STARTED

    def run(self) -> MigrationReport:
        """
        Run the migration if it has not already succeeded.

        Returns:
            MigrationReport; ``NOT_STARTED`` when there was nothing to do

        Raises:
            StorageError: If the ledger cannot be read or written
        """
        if self.ledger.is_completed(self.name):
            logger.info("Legacy migration already completed, skipping")
            self.state = MigrationState.SUCCESS
            return MigrationReport(state=MigrationState.SUCCESS)

        if not self.snapshot_path.exists():
            logger.info(f"No legacy snapshot at {self.snapshot_path}, nothing to migrate")
            return MigrationReport(state=MigrationState.NOT_STARTED)

        self.state = MigrationState.IN_PROGRESS
        logger.info(f"Starting migration from {self.snapshot_path}")

        try:
            raw_text = self.snapshot_path.read_text(encoding="utf-8")
            records = snapshot_records(json.loads(raw_text))
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Legacy migration failed: cannot read snapshot: {e}")
            self.ledger.record(self.name, success=False, error_message=str(e))
            self.state = MigrationState.FAILED
            return MigrationReport(state=MigrationState.FAILED, errors=[str(e)])

        report = MigrationReport(state=MigrationState.IN_PROGRESS)
        for index, raw in enumerate(records):
            self._migrate_record(index, raw, report)

        self.ledger.record(
            self.name,
            success=True,
            error_message="\n".join(report.errors) if report.errors else None,
            data_backup=raw_text,
        )
        report.backup_path = self._backup_file()
        report.state = self.state = MigrationState.SUCCESS

        logger.info(
            f"Legacy migration completed: {report.migrated} migrated, "
            f"{report.skipped} skipped, {len(report.errors)} errors"
        )
        return report

    def _migrate_record(self, index: int, raw, report: MigrationReport) -> None:
        try:
            entry = parse_record(raw, self.member_store.cipher)
        except ValidationError as e:
            report.errors.append(f"record {index}: {e}")
            logger.warning(f"Failed to migrate record {index}: {e}")
            return

        if self.member_store.get_by_external_id(entry.external_id) is not None:
            report.skipped += 1
            logger.debug(f"Athlete {entry.external_id} already in store, skipped")
            return

        try:
            self.member_store.import_account(
                local_id=entry.local_id,
                external_id=entry.external_id,
                profile=entry.profile,
                encrypted_credential=entry.credential,
                is_active=entry.is_active,
                registered_at=entry.registered_at,
            )
        except (ConflictError, ValidationError, StorageError) as e:
            report.errors.append(f"athlete {entry.external_id}: {e}")
            logger.warning(f"Failed to migrate athlete {entry.external_id}: {e}")
            return

        report.migrated += 1

    def _backup_file(self) -> str | None:
        backup_path = f"{self.snapshot_path}.backup.{int(time.time() * 1000)}"
        try:
            shutil.copy2(self.snapshot_path, backup_path)
        except OSError as e:
            logger.error(f"Failed to back up legacy snapshot: {e}")
            return None
        logger.info(f"Legacy snapshot backed up to {backup_path}")
        return backup_path
