"""
File-backed member registry from before the relational store.

Keeps two in-memory indexes, accounts by external (Strava) id and
external ids by local (chat) id, and persists the whole collection as one
JSON snapshot after every mutation. Mutations are staged: new index maps
are built, the snapshot is written, and only then are the maps swapped in,
so a failed write leaves both indexes exactly as they were.
"""

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from runclub.errors import ConflictError, StorageError, ValidationError
from runclub.schemas.credential import Credential, EncryptedBlob
from runclub.services.encryption import CredentialCipher

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "2.0"


@dataclass(frozen=True)
class LegacyEntry:
    """One member in the legacy registry. The credential stays encrypted."""

    external_id: int
    local_id: str
    profile: dict[str, Any] = field(default_factory=dict)
    credential: EncryptedBlob | None = None
    is_active: bool = True
    registered_at: datetime | None = None

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "externalId": self.external_id,
            "localId": self.local_id,
            "profile": self.profile,
            "credential": self.credential.to_dict() if self.credential else None,
            "isActive": self.is_active,
            "registeredAt": self.registered_at.isoformat() if self.registered_at else None,
        }


@dataclass
class ConsistencyReport:
    is_consistent: bool
    errors: list[dict[str, Any]]
    account_count: int
    mapping_count: int


# =============================================================================
# Snapshot parsing
# =============================================================================


def snapshot_records(data: Any) -> list[Any]:
    """
    Raw member records from a snapshot document.

    Accepts the current layout (``accounts``) and the version 1 one
    (``members``).

    Raises:
        ValidationError: If the document has neither list
    """
    if isinstance(data, dict):
        for key in ("accounts", "members"):
            records = data.get(key)
            if isinstance(records, list):
                return records
    raise ValidationError("Snapshot has no 'accounts' or 'members' list")


def parse_record(raw: Any, cipher: CredentialCipher | None = None) -> LegacyEntry:
    """
    Build a LegacyEntry from one snapshot record.

    Version 1 records (``discordUserId``, ``athlete``, ``tokens``) are
    translated. Plaintext tokens are encrypted with ``cipher`` when one is
    configured and dropped otherwise.

    Raises:
        ValidationError: If the identity fields are missing or malformed
    """
    if not isinstance(raw, dict):
        raise ValidationError("Record is not an object")

    profile = raw.get("profile")
    if not isinstance(profile, dict):
        profile = raw.get("athlete") if isinstance(raw.get("athlete"), dict) else {}

    external_id = raw.get("externalId")
    if external_id is None:
        external_id = profile.get("id")
    try:
        external_id = int(external_id)
    except (TypeError, ValueError):
        raise ValidationError(f"Record has no numeric external id: {external_id!r}")
    if external_id <= 0:
        raise ValidationError(f"Record has a non-positive external id: {external_id}")

    local_id = raw.get("localId", raw.get("discordUserId"))
    if isinstance(local_id, int):
        local_id = str(local_id)
    if not isinstance(local_id, str) or not local_id.strip():
        raise ValidationError(f"Record for athlete {external_id} has no local id")

    return LegacyEntry(
        external_id=external_id,
        local_id=local_id.strip(),
        profile=profile,
        credential=_parse_credential(raw.get("credential", raw.get("tokens")), external_id, cipher),
        is_active=bool(raw.get("isActive", True)),
        registered_at=parse_timestamp(raw.get("registeredAt")),
    )


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_credential(
    value: Any, external_id: int, cipher: CredentialCipher | None
) -> EncryptedBlob | None:
    if not isinstance(value, dict):
        return None

    if "authTag" in value or "encrypted" in value:
        try:
            return EncryptedBlob.model_validate(value)
        except PydanticValidationError:
            logger.warning(f"Malformed encrypted credential for athlete {external_id}, dropped")
            return None

    # Plaintext tokens from snapshots written without a key
    if cipher is None or not cipher.is_configured:
        logger.warning(f"Plaintext credential for athlete {external_id} dropped (no key)")
        return None
    try:
        return cipher.encrypt(Credential.model_validate(value))
    except PydanticValidationError:
        logger.warning(f"Invalid plaintext credential for athlete {external_id}, dropped")
        return None


# =============================================================================
# Store
# =============================================================================


class LegacyFlatStore:
    """
    In-memory dual-index registry with whole-file snapshot persistence.

    Reads are synchronous and lock-free. Mutations serialize through one
    asyncio.Lock and suspend while the snapshot is written in a worker
    thread.
    """

    def __init__(self, path: str | Path, cipher: CredentialCipher | None = None):
        self.path = Path(path)
        self.cipher = cipher
        self._by_external_id: dict[int, LegacyEntry] = {}
        self._by_local_id: dict[str, int] = {}
        self._lock = asyncio.Lock()

    # =========================================================================
    # Loading and persistence
    # =========================================================================

    async def load(self) -> int:
        """
        Load the snapshot from disk, replacing the in-memory state.

        Duplicate external or local ids are resolved first-wins; if any were
        dropped the cleaned snapshot is written back.

        Returns:
            Number of accounts loaded

        Raises:
            StorageError: If the file cannot be read or parsed, or the loaded
                state is inconsistent
        """
        async with self._lock:
            if not self.path.exists():
                logger.info(f"No legacy snapshot at {self.path}, starting empty")
                self._by_external_id, self._by_local_id = {}, {}
                return 0

            try:
                text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
                records = snapshot_records(json.loads(text))
            except (OSError, ValueError, ValidationError) as e:
                raise StorageError(f"Failed to load legacy snapshot {self.path}: {e}") from e

            by_external: dict[int, LegacyEntry] = {}
            by_local: dict[str, int] = {}
            seen_local: set[str] = set()
            dropped = []

            for raw in records:
                try:
                    entry = parse_record(raw, self.cipher)
                except ValidationError as e:
                    dropped.append(f"invalid record skipped: {e}")
                    continue

                if entry.external_id in by_external:
                    dropped.append(f"duplicate athlete {entry.external_id} skipped")
                    continue
                if entry.local_id in seen_local:
                    dropped.append(
                        f"duplicate local user {entry.local_id} - athlete {entry.external_id} skipped"
                    )
                    continue

                by_external[entry.external_id] = entry
                seen_local.add(entry.local_id)
                if entry.is_active:
                    by_local[entry.local_id] = entry.external_id

            if dropped:
                for message in dropped:
                    logger.warning(f"Legacy snapshot: {message}")
                await self._persist(by_external)
                logger.info(f"Re-saved cleaned legacy snapshot ({len(dropped)} records dropped)")

            self._by_external_id, self._by_local_id = by_external, by_local

            report = self.verify_consistency()
            if not report.is_consistent:
                raise StorageError(
                    f"Legacy snapshot is inconsistent after load: {report.errors}",
                    code="Inconsistent",
                )

            logger.info(f"Loaded {len(by_external)} accounts from legacy snapshot")
            return len(by_external)

    def to_snapshot(self, by_external_id: dict[int, LegacyEntry] | None = None) -> dict[str, Any]:
        entries = self._by_external_id if by_external_id is None else by_external_id
        return {
            "version": SNAPSHOT_VERSION,
            "savedAt": datetime.now(timezone.utc).isoformat(),
            "accounts": [entry.to_snapshot() for entry in entries.values()],
        }

    async def _persist(self, by_external_id: dict[int, LegacyEntry]) -> None:
        try:
            payload = json.dumps(self.to_snapshot(by_external_id), indent=2)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Legacy snapshot is not serializable: {e}") from e
        try:
            await asyncio.to_thread(self._write_snapshot, payload)
        except OSError as e:
            logger.error(f"Failed to save legacy snapshot {self.path}: {e}")
            raise StorageError(f"Failed to save legacy snapshot: {e}") from e

    def _write_snapshot(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def _commit(self, by_external: dict[int, LegacyEntry], by_local: dict[str, int]) -> None:
        """Persist the staged maps, then swap them in."""
        await self._persist(by_external)
        self._by_external_id, self._by_local_id = by_external, by_local

    # =========================================================================
    # Reads
    # =========================================================================

    def get_by_external_id(self, external_id: int) -> LegacyEntry | None:
        try:
            return self._by_external_id.get(int(external_id))
        except (TypeError, ValueError):
            return None

    def get_by_local_id(self, local_id: str) -> LegacyEntry | None:
        external_id = self._by_local_id.get(local_id)
        if external_id is None:
            return None
        return self._by_external_id.get(external_id)

    def get_all(self) -> list[LegacyEntry]:
        return list(self._by_external_id.values())

    def get_all_active(self) -> list[LegacyEntry]:
        return [entry for entry in self._by_external_id.values() if entry.is_active]

    def get_stats(self) -> dict[str, int]:
        total = len(self._by_external_id)
        active = len(self.get_all_active())
        return {
            "total": total,
            "active": active,
            "inactive": total - active,
            "mappings": len(self._by_local_id),
        }

    def verify_consistency(self) -> ConsistencyReport:
        """Check both indexes against each other."""
        errors: list[dict[str, Any]] = []

        for external_id, entry in self._by_external_id.items():
            if entry.is_active and self._by_local_id.get(entry.local_id) != external_id:
                errors.append({
                    "type": "missing_or_incorrect_mapping",
                    "external_id": external_id,
                    "local_id": entry.local_id,
                    "mapped_to": self._by_local_id.get(entry.local_id),
                })

        for local_id, external_id in self._by_local_id.items():
            entry = self._by_external_id.get(external_id)
            if entry is None:
                errors.append({
                    "type": "orphaned_local_mapping",
                    "local_id": local_id,
                    "external_id": external_id,
                })
            elif not entry.is_active:
                errors.append({
                    "type": "inactive_account_mapped",
                    "local_id": local_id,
                    "external_id": external_id,
                })
            elif entry.local_id != local_id:
                errors.append({
                    "type": "local_id_mismatch",
                    "local_id": local_id,
                    "external_id": external_id,
                    "entry_local_id": entry.local_id,
                })

        return ConsistencyReport(
            is_consistent=not errors,
            errors=errors,
            account_count=len(self._by_external_id),
            mapping_count=len(self._by_local_id),
        )

    # =========================================================================
    # Mutations
    # =========================================================================

    async def register(
        self,
        external_id: int,
        local_id: str,
        profile: dict[str, Any] | None,
        credential: Credential | EncryptedBlob | None,
    ) -> LegacyEntry:
        """
        Register a member.

        Plain credentials are encrypted with the store's cipher before they
        are kept.

        Raises:
            ValidationError: If the identifiers are malformed
            ConflictError: DuplicateLocalId or DuplicateActiveExternalId
            StorageError: If the snapshot cannot be written
        """
        entry = parse_record({
            "externalId": external_id,
            "localId": local_id,
            "profile": profile or {},
        })
        if isinstance(credential, Credential):
            credential = self.cipher.encrypt(credential) if self.cipher else None
            if credential is None:
                logger.warning(f"Athlete {entry.external_id} registered without credential (no key)")
        entry = replace(entry, credential=credential, registered_at=datetime.now(timezone.utc))

        async with self._lock:
            mapped = self._by_local_id.get(entry.local_id)
            if mapped is not None:
                raise ConflictError(
                    "DuplicateLocalId",
                    f"User {entry.local_id} is already registered to athlete {mapped}",
                )

            existing = self._by_external_id.get(entry.external_id)
            if existing and existing.is_active:
                raise ConflictError(
                    "DuplicateActiveExternalId",
                    f"Athlete {entry.external_id} is already registered to user {existing.local_id}",
                )

            # Inactive entries still own their local id
            owner = next(
                (e for e in self._by_external_id.values()
                 if e.local_id == entry.local_id and e.external_id != entry.external_id),
                None,
            )
            if owner is not None:
                raise ConflictError(
                    "DuplicateLocalId",
                    f"User {entry.local_id} belongs to inactive athlete {owner.external_id}",
                )

            by_external = dict(self._by_external_id)
            by_local = dict(self._by_local_id)
            by_external[entry.external_id] = entry
            by_local[entry.local_id] = entry.external_id

            await self._commit(by_external, by_local)

        logger.info(f"Legacy store: registered athlete {entry.external_id} for user {entry.local_id}")
        return entry

    async def remove(self, external_id: int) -> LegacyEntry | None:
        """Remove an account and its local mapping; None if it did not exist."""
        async with self._lock:
            entry = self.get_by_external_id(external_id)
            if entry is None:
                return None

            by_external = dict(self._by_external_id)
            by_local = dict(self._by_local_id)
            del by_external[entry.external_id]
            if by_local.get(entry.local_id) == entry.external_id:
                del by_local[entry.local_id]

            await self._commit(by_external, by_local)

        logger.info(f"Legacy store: removed athlete {entry.external_id}")
        return entry

    async def remove_by_local_id(self, local_id: str) -> LegacyEntry | None:
        entry = self.get_by_local_id(local_id)
        if entry is None:
            return None
        return await self.remove(entry.external_id)

    async def deactivate(self, external_id: int) -> bool:
        async with self._lock:
            entry = self.get_by_external_id(external_id)
            if entry is None:
                return False

            by_external = dict(self._by_external_id)
            by_local = dict(self._by_local_id)
            by_external[entry.external_id] = replace(entry, is_active=False)
            if by_local.get(entry.local_id) == entry.external_id:
                del by_local[entry.local_id]

            await self._commit(by_external, by_local)

        logger.info(f"Legacy store: deactivated athlete {entry.external_id}")
        return True

    async def reactivate(self, external_id: int) -> bool:
        """
        Reactivate an account.

        Raises:
            ConflictError: DuplicateLocalId if its local id now maps to
                another account
        """
        async with self._lock:
            entry = self.get_by_external_id(external_id)
            if entry is None:
                return False

            mapped = self._by_local_id.get(entry.local_id)
            if mapped is not None and mapped != entry.external_id:
                raise ConflictError(
                    "DuplicateLocalId",
                    f"User {entry.local_id} is now registered to athlete {mapped}",
                )

            by_external = dict(self._by_external_id)
            by_local = dict(self._by_local_id)
            by_external[entry.external_id] = replace(entry, is_active=True)
            by_local[entry.local_id] = entry.external_id

            await self._commit(by_external, by_local)

        logger.info(f"Legacy store: reactivated athlete {entry.external_id}")
        return True
