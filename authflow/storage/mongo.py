from __future__ import annotations

from dataclasses import asdict
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Optional

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

from authflow.logging import get_logger
from authflow.storage.common import apply_auth_patch, normalize_email, validate_auth_patch
from authflow.storage.errors import ConstraintViolation
from authflow.storage.models import (
    AuthRecord,
    ClientType,
    Gender,
    LoginFailReason,
    LoginHistoryEntry,
    LoginMethod,
    LoginStatus,
    Role,
    UserProfile,
)

LOGIN_HISTORY_RETENTION_SECONDS = 90 * 24 * 60 * 60


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo returns naive datetimes unless the client is tz_aware
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _auth_to_doc(record: AuthRecord) -> Dict[str, Any]:
    doc = asdict(record)
    doc["_id"] = doc.pop("id")
    doc["roles"] = record.roles.value
    return doc


def _doc_to_auth(doc: Dict[str, Any]) -> AuthRecord:
    return AuthRecord(
        id=doc["_id"],
        email=doc["email"],
        password_hash=doc.get("password_hash"),
        verified_email=bool(doc.get("verified_email", False)),
        roles=Role(doc.get("roles", Role.USER.value)),
        is_active=bool(doc.get("is_active", True)),
        refresh_token_hash=doc.get("refresh_token_hash"),
        temp_password_hash=doc.get("temp_password_hash"),
        temp_password_expires_at=_as_utc(doc.get("temp_password_expires_at")),
        temp_password_used=bool(doc.get("temp_password_used", False)),
        last_login=_as_utc(doc.get("last_login")),
        created_at=_as_utc(doc.get("created_at")) or datetime.now(timezone.utc),
    )


def _profile_to_doc(profile: UserProfile) -> Dict[str, Any]:
    doc = asdict(profile)
    doc["_id"] = doc.pop("id")
    doc["gender"] = profile.gender.value
    # BSON has no date type
    doc["date_of_birth"] = datetime.combine(profile.date_of_birth, time.min, tzinfo=timezone.utc)
    return doc


def _doc_to_profile(doc: Dict[str, Any]) -> UserProfile:
    dob = doc["date_of_birth"]
    return UserProfile(
        id=doc["_id"],
        auth_id=doc["auth_id"],
        full_name=doc["full_name"],
        gender=Gender(doc["gender"]),
        date_of_birth=dob.date() if isinstance(dob, datetime) else date.fromisoformat(str(dob)),
        phone=doc.get("phone"),
        avatar=doc.get("avatar"),
        address=doc.get("address"),
        created_at=_as_utc(doc.get("created_at")) or datetime.now(timezone.utc),
    )


def _history_to_doc(entry: LoginHistoryEntry) -> Dict[str, Any]:
    doc = asdict(entry)
    doc["_id"] = doc.pop("id")
    doc["method"] = LoginMethod(entry.method).value
    doc["status"] = LoginStatus(entry.status).value
    doc["fail_reason"] = LoginFailReason(entry.fail_reason).value if entry.fail_reason else None
    doc["client_type"] = ClientType(entry.client_type).value
    return doc


class MongoStore:
    """MongoDB-backed durable identity store.

    Collections: ``auths`` (unique ``email``), ``user_profiles`` (unique
    ``auth_id``) and ``login_history`` (TTL-expired audit trail).
    """

    def __init__(self, mongo_url: str, database: str, *, timeout_ms: int = 5000) -> None:
        self.logger = get_logger(__name__)
        self.client: AsyncMongoClient = AsyncMongoClient(
            mongo_url,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
        )
        self.db = self.client[database]
        self.auths = self.db["auths"]
        self.profiles = self.db["user_profiles"]
        self.history = self.db["login_history"]

    async def ensure_indexes(self) -> None:
        await self.auths.create_index([("email", ASCENDING)], unique=True)
        await self.profiles.create_index([("auth_id", ASCENDING)], unique=True)
        await self.history.create_index([("auth_id", ASCENDING), ("created_at", DESCENDING)])
        await self.history.create_index(
            [("created_at", ASCENDING)], expireAfterSeconds=LOGIN_HISTORY_RETENTION_SECONDS
        )
        self.logger.info("mongo_indexes_ensured", database=self.db.name)

    async def ping(self) -> None:
        await self.db.command("ping")

    async def find_by_email(self, email: str) -> Optional[AuthRecord]:
        doc = await self.auths.find_one({"email": normalize_email(email)})
        return _doc_to_auth(doc) if doc else None

    async def find_by_id(self, auth_id: str) -> Optional[AuthRecord]:
        doc = await self.auths.find_one({"_id": auth_id})
        return _doc_to_auth(doc) if doc else None

    async def exists_by_email(self, email: str) -> bool:
        count = await self.auths.count_documents({"email": normalize_email(email)}, limit=1)
        return count > 0

    async def create_auth(self, record: AuthRecord) -> AuthRecord:
        doc = _auth_to_doc(record)
        doc["email"] = normalize_email(record.email)
        try:
            await self.auths.insert_one(doc)
        except DuplicateKeyError as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return _doc_to_auth(doc)

    async def update_auth(self, auth_id: str, patch: Dict[str, Any]) -> Optional[AuthRecord]:
        changes = validate_auth_patch(patch)
        if changes.keys() & {"temp_password_hash", "temp_password_used"}:
            current = await self.find_by_id(auth_id)
            if current is None:
                return None
            apply_auth_patch(current, changes)
        if "roles" in changes:
            changes["roles"] = Role(changes["roles"]).value
        unset_fields = {name: "" for name, value in changes.items() if value is None}
        set_fields = {name: value for name, value in changes.items() if value is not None}
        update: Dict[str, Any] = {}
        if set_fields:
            update["$set"] = set_fields
        if unset_fields:
            update["$unset"] = unset_fields
        if not update:
            return await self.find_by_id(auth_id)
        doc = await self.auths.find_one_and_update(
            {"_id": auth_id}, update, return_document=ReturnDocument.AFTER
        )
        return _doc_to_auth(doc) if doc else None

    async def consume_temp_password(self, auth_id: str, temp_password_hash: str) -> bool:
        result = await self.auths.update_one(
            {
                "_id": auth_id,
                "temp_password_hash": temp_password_hash,
                "temp_password_used": False,
            },
            {"$set": {"temp_password_used": True}},
        )
        return result.modified_count == 1

    async def create_profile(self, profile: UserProfile) -> UserProfile:
        try:
            await self.profiles.insert_one(_profile_to_doc(profile))
        except DuplicateKeyError as exc:
            raise ConstraintViolation("profile already exists", {"field": "auth_id"}) from exc
        return profile

    async def find_profile_by_auth_id(self, auth_id: str) -> Optional[UserProfile]:
        doc = await self.profiles.find_one({"auth_id": auth_id})
        return _doc_to_profile(doc) if doc else None

    async def create_login_history(self, entry: LoginHistoryEntry) -> None:
        await self.history.insert_one(_history_to_doc(entry))

    async def close(self) -> None:
        await self.client.close()
