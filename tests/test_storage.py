from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from authflow.storage.errors import ConstraintViolation
from authflow.storage.models import (
    AuthRecord,
    Gender,
    LoginFailReason,
    LoginHistoryEntry,
    LoginMethod,
    LoginStatus,
    UserProfile,
    new_id,
)
from authflow.storage.mongo import (
    MongoStore,
    _auth_to_doc,
    _doc_to_auth,
    _doc_to_profile,
    _history_to_doc,
    _profile_to_doc,
)


def _profile(auth_id: str) -> UserProfile:
    return UserProfile(
        id=new_id(),
        auth_id=auth_id,
        full_name="Bao Le",
        gender=Gender.OTHER,
        date_of_birth=date(2001, 12, 31),
    )


class TestMemoryStore:
    async def test_email_lookup_is_case_insensitive(self, store):
        created = await store.create_auth(AuthRecord.new("Bao.Le@Example.com", "hash"))
        assert created.email == "bao.le@example.com"
        assert (await store.find_by_email("BAO.LE@example.COM")).id == created.id
        assert await store.exists_by_email(" bao.le@example.com ") is True

    async def test_duplicate_email_is_a_constraint_violation(self, store):
        await store.create_auth(AuthRecord.new("bao@example.com", "hash"))
        with pytest.raises(ConstraintViolation):
            await store.create_auth(AuthRecord.new("BAO@example.com", "other"))

    async def test_one_profile_per_account(self, store):
        auth = await store.create_auth(AuthRecord.new("bao@example.com", "hash"))
        await store.create_profile(_profile(auth.id))
        with pytest.raises(ConstraintViolation):
            await store.create_profile(_profile(auth.id))

    async def test_returned_records_are_copies(self, store):
        auth = await store.create_auth(AuthRecord.new("bao@example.com", "hash"))
        auth.is_active = False
        assert (await store.find_by_id(auth.id)).is_active is True

    async def test_update_rejects_immutable_fields(self, store):
        auth = await store.create_auth(AuthRecord.new("bao@example.com", "hash"))
        with pytest.raises(ValueError):
            await store.update_auth(auth.id, {"email": "evil@example.com"})
        assert await store.update_auth("missing", {"is_active": False}) is None

    async def test_used_temp_password_keeps_its_hash(self, store):
        auth = await store.create_auth(AuthRecord.new("bao@example.com", "hash"))
        with pytest.raises(ValueError):
            await store.update_auth(auth.id, {"temp_password_used": True})
        await store.update_auth(auth.id, {"temp_password_hash": "temp", "temp_password_used": True})
        record = await store.find_by_id(auth.id)
        assert record.temp_password_used is True
        assert record.temp_password_hash == "temp"

    async def test_consume_temp_password_succeeds_once(self, store):
        auth = await store.create_auth(AuthRecord.new("bao@example.com", "hash"))
        await store.update_auth(auth.id, {"temp_password_hash": "temp-1"})
        assert await store.consume_temp_password(auth.id, "temp-other") is False
        assert await store.consume_temp_password(auth.id, "temp-1") is True
        assert await store.consume_temp_password(auth.id, "temp-1") is False
        assert await store.consume_temp_password("missing", "temp-1") is False
        record = await store.find_by_id(auth.id)
        assert (record.temp_password_used, record.temp_password_hash) == (True, "temp-1")


class TestMongoDocuments:
    async def test_consume_temp_password_is_a_conditional_update(self):
        store = MongoStore.__new__(MongoStore)
        store.auths = MagicMock()
        store.auths.update_one = AsyncMock(return_value=SimpleNamespace(modified_count=0))

        assert await store.consume_temp_password("auth-1", "temp-1") is False
        query, update = store.auths.update_one.call_args.args
        assert query == {
            "_id": "auth-1",
            "temp_password_hash": "temp-1",
            "temp_password_used": False,
        }
        assert update == {"$set": {"temp_password_used": True}}

        store.auths.update_one.return_value = SimpleNamespace(modified_count=1)
        assert await store.consume_temp_password("auth-1", "temp-1") is True

    def test_auth_round_trip_keeps_utc(self):
        record = AuthRecord.new("bao@example.com", "hash")
        record.temp_password_expires_at = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        doc = _auth_to_doc(record)
        assert doc["_id"] == record.id
        assert "id" not in doc
        assert doc["roles"] == "user"

        # Naive datetimes as returned by a client without tz_aware
        doc["temp_password_expires_at"] = doc["temp_password_expires_at"].replace(tzinfo=None)
        restored = _doc_to_auth(doc)
        assert restored.temp_password_expires_at.tzinfo is not None
        assert restored.temp_password_expires_at - record.temp_password_expires_at == timedelta(0)

    def test_profile_birth_date_is_stored_as_datetime(self):
        profile = _profile("auth-1")
        doc = _profile_to_doc(profile)
        assert isinstance(doc["date_of_birth"], datetime)
        assert doc["gender"] == "other"
        assert _doc_to_profile(doc).date_of_birth == date(2001, 12, 31)

    def test_history_enums_are_plain_strings(self):
        entry = LoginHistoryEntry(
            id=new_id(),
            username_attempted="bao@example.com",
            method=LoginMethod.MAGIC_LINK,
            status=LoginStatus.FAILED,
            auth_id="auth-1",
            fail_reason=LoginFailReason.MAGIC_LINK_EXPIRED,
        )
        doc = _history_to_doc(entry)
        assert doc["method"] == "magic-link"
        assert doc["status"] == "failed"
        assert doc["fail_reason"] == "magic_link_expired"
        assert doc["client_type"] == "web"
        assert (doc["country"], doc["city"]) == ("unknown", "unknown")
