from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings

USER_ROLES = frozenset({"buyer", "seller", "admin"})
CALENDAR_CREDENTIAL_FIELDS = (
    "encrypted_refresh_token",
    "encrypted_access_token",
    "access_token_expires_at",
    "calendar_id",
    "calendar_timezone",
)


class UserStore(ABC):
    @abstractmethod
    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def create_user(
        self,
        *,
        email: str,
        full_name: str,
        password_hash: str,
        role: str,
    ) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def update_user_role(self, user_id: str, role: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_users_by_role(self, role: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def get_calendar_credentials(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def upsert_calendar_credentials(self, user_id: str, updates: Mapping[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_calendar_credentials(self, user_id: str) -> bool:
        raise NotImplementedError


class InMemoryUserStore(UserStore):
    def __init__(self) -> None:
        self._next_id = 1
        self._users_by_id: dict[str, dict[str, Any]] = {}
        self._user_id_by_email: dict[str, str] = {}
        self._credentials_by_user_id: dict[str, dict[str, Any]] = {}

    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        user = self._users_by_id.get(user_id)
        if not user:
            return None
        return dict(user)

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        normalized_email = _normalize_email(email)
        user_id = self._user_id_by_email.get(normalized_email)
        if not user_id:
            return None
        return self.get_user_by_id(user_id)

    def create_user(
        self,
        *,
        email: str,
        full_name: str,
        password_hash: str,
        role: str,
    ) -> dict[str, Any]:
        normalized_email = _normalize_email(email)
        if normalized_email in self._user_id_by_email:
            raise ValueError("email_already_exists")

        user_id = str(self._next_id)
        self._next_id += 1
        now = datetime.now(UTC)
        user = {
            "_id": user_id,
            "email": normalized_email,
            "full_name": full_name.strip(),
            "password_hash": password_hash,
            "role": _normalize_role(role),
            "created_at": now,
            "updated_at": now,
        }
        self._users_by_id[user_id] = user
        self._user_id_by_email[normalized_email] = user_id
        return dict(user)

    def update_user_role(self, user_id: str, role: str) -> dict[str, Any] | None:
        user = self._users_by_id.get(user_id)
        if not user:
            return None
        user["role"] = _normalize_role(role)
        user["updated_at"] = datetime.now(UTC)
        return dict(user)

    def list_users_by_role(self, role: str) -> list[dict[str, Any]]:
        normalized_role = _normalize_role(role)
        return [
            dict(user)
            for user in self._users_by_id.values()
            if user.get("role") == normalized_role
        ]

    def get_calendar_credentials(self, user_id: str) -> dict[str, Any] | None:
        credentials = self._credentials_by_user_id.get(user_id)
        if not credentials:
            return None
        return dict(credentials)

    def upsert_calendar_credentials(self, user_id: str, updates: Mapping[str, Any]) -> None:
        current_values = dict(self._credentials_by_user_id.get(user_id, {}))
        current_values.update(_filter_credential_updates(updates))
        current_values["updated_at"] = datetime.now(UTC)
        self._credentials_by_user_id[user_id] = current_values

    def delete_calendar_credentials(self, user_id: str) -> bool:
        return self._credentials_by_user_id.pop(user_id, None) is not None


class MongoUserStore(UserStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        users_collection_name: str,
        credentials_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        database = self._client[db_name]
        self._users = database[users_collection_name]
        self._credentials = database[credentials_collection_name]

        self._users.create_index("email", unique=True)
        self._users.create_index("role")
        self._credentials.create_index("user_id", unique=True)

    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        object_id = _to_object_id(user_id)
        if object_id is None:
            return None
        record = self._users.find_one({"_id": object_id})
        return _serialize_record(record)

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        normalized_email = _normalize_email(email)
        record = self._users.find_one({"email": normalized_email})
        return _serialize_record(record)

    def create_user(
        self,
        *,
        email: str,
        full_name: str,
        password_hash: str,
        role: str,
    ) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        normalized_email = _normalize_email(email)
        now = datetime.now(UTC)
        payload = {
            "email": normalized_email,
            "full_name": full_name.strip(),
            "password_hash": password_hash,
            "role": _normalize_role(role),
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = self._users.insert_one(payload)
        except DuplicateKeyError as exc:
            raise ValueError("email_already_exists") from exc
        created = self._users.find_one({"_id": insert_result.inserted_id})
        serialized = _serialize_record(created)
        if not serialized:
            raise RuntimeError("Unable to read created user.")
        return serialized

    def update_user_role(self, user_id: str, role: str) -> dict[str, Any] | None:
        from pymongo import ReturnDocument

        object_id = _to_object_id(user_id)
        if object_id is None:
            return None
        record = self._users.find_one_and_update(
            {"_id": object_id},
            {"$set": {"role": _normalize_role(role), "updated_at": datetime.now(UTC)}},
            return_document=ReturnDocument.AFTER,
        )
        return _serialize_record(record)

    def list_users_by_role(self, role: str) -> list[dict[str, Any]]:
        cursor = self._users.find({"role": _normalize_role(role)}).sort("created_at", 1)
        return [record for record in (_serialize_record(raw) for raw in cursor) if record]

    def get_calendar_credentials(self, user_id: str) -> dict[str, Any] | None:
        record = self._credentials.find_one({"user_id": user_id}, {"_id": 0})
        if not record:
            return None
        return dict(record)

    def upsert_calendar_credentials(self, user_id: str, updates: Mapping[str, Any]) -> None:
        now = datetime.now(UTC)
        self._credentials.update_one(
            {"user_id": user_id},
            {
                "$set": {
                    **_filter_credential_updates(updates),
                    "updated_at": now,
                },
                "$setOnInsert": {
                    "created_at": now,
                },
            },
            upsert=True,
        )

    def delete_calendar_credentials(self, user_id: str) -> bool:
        delete_result = self._credentials.delete_one({"user_id": user_id})
        return delete_result.deleted_count > 0


def _to_object_id(user_id: str):  # type: ignore[no-untyped-def]
    from bson import ObjectId
    from bson.errors import InvalidId

    try:
        return ObjectId(user_id)
    except (InvalidId, TypeError):
        return None


def _serialize_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    serialized["_id"] = str(record.get("_id", ""))
    return serialized


def _filter_credential_updates(updates: Mapping[str, Any]) -> dict[str, Any]:
    return {
        field_name: value
        for field_name, value in updates.items()
        if field_name in CALENDAR_CREDENTIAL_FIELDS
    }


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _normalize_role(role: str) -> str:
    normalized_role = role.strip().lower()
    if normalized_role not in USER_ROLES:
        raise ValueError(f"unknown_role:{normalized_role}")
    return normalized_role


def create_user_store(settings: Settings) -> UserStore:
    return _create_user_store_cached(
        user_data_store=settings.user_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_users_collection=settings.mongodb_users_collection,
        mongodb_calendar_credentials_collection=settings.mongodb_calendar_credentials_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_user_store_cached(
    *,
    user_data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_users_collection: str,
    mongodb_calendar_credentials_collection: str,
    mongodb_connect_timeout_ms: int,
) -> UserStore:
    if user_data_store == "memory":
        return InMemoryUserStore()

    if user_data_store == "mongodb":
        return MongoUserStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            users_collection_name=mongodb_users_collection,
            credentials_collection_name=mongodb_calendar_credentials_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryUserStore()


def clear_user_store_cache() -> None:
    _create_user_store_cached.cache_clear()
