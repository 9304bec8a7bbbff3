"""
Tests for LegacyFlatStore.
"""

import asyncio
import json
import random
from unittest.mock import patch

import pytest

from runclub.errors import ConflictError, StorageError, ValidationError
from runclub.services.legacy_store import LegacyFlatStore, parse_record, snapshot_records


def _write(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")


def _indexes(store):
    return dict(store._by_external_id), dict(store._by_local_id)


class TestRegister:
    """Test registration and lookups."""

    @pytest.mark.asyncio
    async def test_register_indexes_both_ways(self, legacy_store, valid_credential):
        entry = await legacy_store.register(555, "d1", {"firstname": "Jane"}, valid_credential)

        assert legacy_store.get_by_external_id(555) == entry
        assert legacy_store.get_by_local_id("d1") == entry
        assert legacy_store.verify_consistency().is_consistent is True

    @pytest.mark.asyncio
    async def test_credential_kept_encrypted(self, legacy_store, cipher, valid_credential):
        entry = await legacy_store.register(555, "d1", {}, valid_credential)

        assert entry.credential is not None
        assert cipher.decrypt(entry.credential)["access_token"] == "access-valid"

    @pytest.mark.asyncio
    async def test_register_persists_snapshot(self, legacy_store, snapshot_path, valid_credential):
        await legacy_store.register(555, "d1", {"id": 555}, valid_credential)

        data = json.loads(snapshot_path.read_text())
        assert data["version"]
        assert data["savedAt"]
        assert data["accounts"][0]["externalId"] == 555
        assert data["accounts"][0]["localId"] == "d1"
        assert set(data["accounts"][0]["credential"]) == {"encrypted", "iv", "authTag"}
        assert "access-valid" not in snapshot_path.read_text()

    @pytest.mark.asyncio
    async def test_duplicate_local_id(self, legacy_store, valid_credential):
        await legacy_store.register(555, "d1", {}, valid_credential)
        with pytest.raises(ConflictError) as exc_info:
            await legacy_store.register(777, "d1", {}, valid_credential)
        assert exc_info.value.code == "DuplicateLocalId"

    @pytest.mark.asyncio
    async def test_duplicate_active_external_id(self, legacy_store, valid_credential):
        await legacy_store.register(555, "d1", {}, valid_credential)
        with pytest.raises(ConflictError) as exc_info:
            await legacy_store.register(555, "d2", {}, valid_credential)
        assert exc_info.value.code == "DuplicateActiveExternalId"

    @pytest.mark.asyncio
    async def test_reregister_inactive(self, legacy_store, valid_credential):
        await legacy_store.register(555, "d1", {}, valid_credential)
        await legacy_store.deactivate(555)

        entry = await legacy_store.register(555, "d2", {}, valid_credential)

        assert entry.is_active is True
        assert legacy_store.get_by_local_id("d2") == entry
        assert legacy_store.get_by_local_id("d1") is None
        assert legacy_store.verify_consistency().is_consistent is True

    @pytest.mark.asyncio
    async def test_invalid_identity(self, legacy_store):
        with pytest.raises(ValidationError):
            await legacy_store.register("abc", "d1", {}, None)
        with pytest.raises(ValidationError):
            await legacy_store.register(555, "", {}, None)

    def test_lookup_bad_external_id(self, legacy_store):
        assert legacy_store.get_by_external_id("not-a-number") is None


class TestMutations:
    """Test remove, deactivate and reactivate."""

    @pytest.mark.asyncio
    async def test_remove(self, legacy_store, valid_credential):
        await legacy_store.register(555, "d1", {}, valid_credential)

        removed = await legacy_store.remove(555)

        assert removed.external_id == 555
        assert legacy_store.get_by_external_id(555) is None
        assert legacy_store.get_by_local_id("d1") is None
        assert await legacy_store.remove(555) is None

    @pytest.mark.asyncio
    async def test_remove_by_local_id(self, legacy_store, valid_credential):
        await legacy_store.register(555, "d1", {}, valid_credential)
        assert (await legacy_store.remove_by_local_id("d1")).external_id == 555
        assert await legacy_store.remove_by_local_id("d1") is None

    @pytest.mark.asyncio
    async def test_deactivate_drops_local_mapping(self, legacy_store, valid_credential):
        await legacy_store.register(555, "d1", {}, valid_credential)

        assert await legacy_store.deactivate(555) is True

        assert legacy_store.get_by_external_id(555).is_active is False
        assert legacy_store.get_by_local_id("d1") is None
        assert legacy_store.verify_consistency().is_consistent is True

    @pytest.mark.asyncio
    async def test_reactivate(self, legacy_store, valid_credential):
        await legacy_store.register(555, "d1", {}, valid_credential)
        await legacy_store.deactivate(555)

        assert await legacy_store.reactivate(555) is True
        assert legacy_store.get_by_local_id("d1").external_id == 555

    @pytest.mark.asyncio
    async def test_missing_accounts(self, legacy_store):
        assert await legacy_store.deactivate(404) is False
        assert await legacy_store.reactivate(404) is False

    @pytest.mark.asyncio
    async def test_reactivate_conflict(self, legacy_store, snapshot_path, cipher):
        _write(snapshot_path, {"accounts": [
            {"externalId": 555, "localId": "d1", "isActive": False},
            {"externalId": 777, "localId": "d2", "isActive": True},
        ]})
        await legacy_store.load()
        # d1 now points at another account
        legacy_store._by_local_id["d1"] = 777

        with pytest.raises(ConflictError) as exc_info:
            await legacy_store.reactivate(555)
        assert exc_info.value.code == "DuplicateLocalId"

    @pytest.mark.asyncio
    async def test_stats(self, legacy_store, valid_credential):
        await legacy_store.register(555, "d1", {}, valid_credential)
        await legacy_store.register(777, "d2", {}, valid_credential)
        await legacy_store.deactivate(777)

        assert legacy_store.get_stats() == {"total": 2, "active": 1, "inactive": 1, "mappings": 1}
        assert [e.external_id for e in legacy_store.get_all_active()] == [555]


class TestRollback:
    """A failed snapshot write leaves both indexes unchanged."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["register", "remove", "deactivate", "reactivate"])
    async def test_persist_failure_rolls_back(self, legacy_store, valid_credential, operation):
        await legacy_store.register(555, "d1", {}, valid_credential)
        await legacy_store.register(777, "d2", {}, valid_credential)
        await legacy_store.deactivate(777)
        before = _indexes(legacy_store)

        calls = {
            "register": lambda: legacy_store.register(888, "d3", {}, valid_credential),
            "remove": lambda: legacy_store.remove(555),
            "deactivate": lambda: legacy_store.deactivate(555),
            "reactivate": lambda: legacy_store.reactivate(777),
        }

        with patch.object(LegacyFlatStore, "_write_snapshot", side_effect=OSError("disk full")):
            with pytest.raises(StorageError):
                await calls[operation]()

        assert _indexes(legacy_store) == before
        assert legacy_store.verify_consistency().is_consistent is True

    @pytest.mark.asyncio
    async def test_file_unchanged_after_failure(self, legacy_store, snapshot_path, valid_credential):
        await legacy_store.register(555, "d1", {}, valid_credential)
        original = snapshot_path.read_text()

        with patch("runclub.services.legacy_store.os.replace", side_effect=OSError("read-only")):
            with pytest.raises(StorageError):
                await legacy_store.register(777, "d2", {}, valid_credential)

        assert snapshot_path.read_text() == original
        assert list(snapshot_path.parent.glob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_unserializable_profile_rolls_back(self, legacy_store, snapshot_path, valid_credential):
        await legacy_store.register(555, "d1", {}, valid_credential)
        original = snapshot_path.read_text()

        with pytest.raises(StorageError, match="not serializable"):
            await legacy_store.register(777, "d2", {"joined": object()}, valid_credential)

        assert legacy_store.get_by_external_id(777) is None
        assert legacy_store.get_by_local_id("d2") is None
        assert legacy_store.verify_consistency().is_consistent is True
        assert snapshot_path.read_text() == original


class TestConsistency:
    """Test verify_consistency error reporting."""

    @pytest.mark.asyncio
    async def test_detects_each_violation(self, legacy_store, valid_credential):
        await legacy_store.register(555, "d1", {}, valid_credential)
        await legacy_store.register(777, "d2", {}, valid_credential)
        await legacy_store.register(888, "d3", {}, valid_credential)
        await legacy_store.deactivate(888)

        legacy_store._by_local_id["ghost"] = 404
        legacy_store._by_local_id["d3"] = 888
        legacy_store._by_local_id["d2"] = 555

        report = legacy_store.verify_consistency()

        types = {error["type"] for error in report.errors}
        assert report.is_consistent is False
        assert types == {
            "missing_or_incorrect_mapping",
            "orphaned_local_mapping",
            "inactive_account_mapped",
            "local_id_mismatch",
        }

    @pytest.mark.asyncio
    async def test_random_operation_sequence_stays_consistent(self, legacy_store, valid_credential):
        rng = random.Random(1234)
        ids = [101, 102, 103, 104, 105]
        locals_ = ["a", "b", "c", "d", "e"]

        for _ in range(60):
            op = rng.choice(["register", "remove", "deactivate", "reactivate"])
            external_id = rng.choice(ids)
            try:
                if op == "register":
                    await legacy_store.register(external_id, rng.choice(locals_), {}, valid_credential)
                elif op == "remove":
                    await legacy_store.remove(external_id)
                elif op == "deactivate":
                    await legacy_store.deactivate(external_id)
                else:
                    await legacy_store.reactivate(external_id)
            except ConflictError:
                pass
            assert legacy_store.verify_consistency().is_consistent is True

    @pytest.mark.asyncio
    async def test_concurrent_registrations_serialize(self, legacy_store, valid_credential):
        results = await asyncio.gather(
            *(legacy_store.register(1000 + i, "same-user", {}, valid_credential) for i in range(5)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))
        assert legacy_store.verify_consistency().is_consistent is True


class TestLoad:
    """Test snapshot loading."""

    @pytest.mark.asyncio
    async def test_missing_file(self, legacy_store):
        assert await legacy_store.load() == 0
        assert legacy_store.get_all() == []

    @pytest.mark.asyncio
    async def test_round_trip_through_disk(self, legacy_store, snapshot_path, cipher, valid_credential):
        await legacy_store.register(555, "d1", {"id": 555}, valid_credential)
        await legacy_store.register(777, "d2", {"id": 777}, valid_credential)
        await legacy_store.deactivate(777)

        reloaded = LegacyFlatStore(snapshot_path, cipher)
        assert await reloaded.load() == 2

        assert reloaded.get_by_local_id("d1").external_id == 555
        assert reloaded.get_by_external_id(777).is_active is False
        assert reloaded.get_by_local_id("d2") is None
        assert cipher.decrypt(reloaded.get_by_external_id(555).credential)["access_token"] == "access-valid"

    @pytest.mark.asyncio
    async def test_duplicates_first_wins_and_resaved(self, legacy_store, snapshot_path):
        _write(snapshot_path, {"version": "2.0", "accounts": [
            {"externalId": 555, "localId": "d1"},
            {"externalId": 555, "localId": "d9"},
            {"externalId": 777, "localId": "d1"},
            {"externalId": 888, "localId": "d3"},
        ]})

        assert await legacy_store.load() == 2

        assert legacy_store.get_by_local_id("d1").external_id == 555
        assert legacy_store.get_by_external_id(777) is None
        assert legacy_store.get_by_local_id("d9") is None
        saved = json.loads(snapshot_path.read_text())
        assert [a["externalId"] for a in saved["accounts"]] == [555, 888]

    @pytest.mark.asyncio
    async def test_clean_snapshot_not_rewritten(self, legacy_store, snapshot_path):
        _write(snapshot_path, {"accounts": [{"externalId": 555, "localId": "d1"}]})
        before = snapshot_path.stat().st_mtime_ns

        await legacy_store.load()

        assert snapshot_path.stat().st_mtime_ns == before

    @pytest.mark.asyncio
    async def test_external_id_falls_back_to_profile(self, legacy_store, snapshot_path):
        _write(snapshot_path, {"accounts": [{"localId": "d1", "profile": {"id": 555}}]})
        await legacy_store.load()
        assert legacy_store.get_by_local_id("d1").external_id == 555

    @pytest.mark.asyncio
    async def test_version_1_layout(self, legacy_store, snapshot_path, cipher):
        blob = cipher.encrypt({"access_token": "enc", "refresh_token": "r", "expires_at": 1})
        _write(snapshot_path, {"version": "1.0", "members": [
            {
                "discordUserId": "d1",
                "athlete": {"id": 555, "firstname": "Jane"},
                "tokens": blob.to_dict(),
                "registeredAt": "2024-01-15T10:00:00.000Z",
                "isActive": True,
            },
            {
                "discordUserId": "d2",
                "athlete": {"id": 777},
                "tokens": {"access_token": "plain", "refresh_token": "r", "expires_at": 1},
                "isActive": True,
            },
        ]})

        assert await legacy_store.load() == 2

        jane = legacy_store.get_by_local_id("d1")
        assert jane.profile["firstname"] == "Jane"
        assert jane.registered_at.year == 2024
        assert cipher.decrypt(jane.credential)["access_token"] == "enc"
        # Plaintext tokens are encrypted on load
        assert cipher.decrypt(legacy_store.get_by_local_id("d2").credential)["access_token"] == "plain"

    @pytest.mark.asyncio
    async def test_invalid_json(self, legacy_store, snapshot_path):
        snapshot_path.write_text("{broken", encoding="utf-8")
        with pytest.raises(StorageError):
            await legacy_store.load()

    @pytest.mark.asyncio
    async def test_wrong_shape(self, legacy_store, snapshot_path):
        _write(snapshot_path, [1, 2, 3])
        with pytest.raises(StorageError):
            await legacy_store.load()


class TestParsing:
    """Test snapshot record parsing helpers."""

    def test_snapshot_records_layouts(self):
        assert snapshot_records({"accounts": [1]}) == [1]
        assert snapshot_records({"members": [2]}) == [2]
        with pytest.raises(ValidationError):
            snapshot_records({"other": []})

    @pytest.mark.parametrize("raw", [
        "not a dict",
        {"localId": "d1"},
        {"externalId": "abc", "localId": "d1"},
        {"externalId": 555},
        {"externalId": 555, "localId": "  "},
    ])
    def test_parse_record_rejects(self, raw):
        with pytest.raises(ValidationError):
            parse_record(raw)

    def test_numeric_local_id(self):
        assert parse_record({"externalId": "555", "localId": 42}).local_id == "42"

    def test_malformed_credential_dropped(self):
        entry = parse_record({"externalId": 555, "localId": "d1", "credential": {"iv": "00"}})
        assert entry.credential is None

    def test_plaintext_credential_without_key_dropped(self):
        entry = parse_record({"externalId": 555, "localId": "d1", "tokens": {"access_token": "x"}})
        assert entry.credential is None
