from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings


class AppointmentStore(ABC):
    @abstractmethod
    def save(self, record: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_for_seller(self, seller_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_for_buyer(self, buyer_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryAppointmentStore(AppointmentStore):
    def __init__(self) -> None:
        self._records: list[dict[str, Any]] = []

    def save(self, record: Mapping[str, Any]) -> dict[str, Any]:
        stored = dict(record)
        stored["_id"] = f"memory-appointment-{len(self._records) + 1}"
        if "created_at" not in stored:
            stored["created_at"] = datetime.now(UTC)
        self._records.append(stored)
        return dict(stored)

    def list_for_seller(self, seller_id: str) -> list[dict[str, Any]]:
        return self._list_matching("seller_id", seller_id)

    def list_for_buyer(self, buyer_id: str) -> list[dict[str, Any]]:
        return self._list_matching("buyer_id", buyer_id)

    def _list_matching(self, field_name: str, value: str) -> list[dict[str, Any]]:
        matches = [dict(record) for record in self._records if record.get(field_name) == value]
        return sorted(matches, key=lambda record: record["start"])


class MongoAppointmentStore(AppointmentStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, MongoClient

        self._asc = ASCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("seller_id", self._asc), ("start", self._asc)])
        self._collection.create_index([("buyer_id", self._asc), ("start", self._asc)])

    def save(self, record: Mapping[str, Any]) -> dict[str, Any]:
        payload = dict(record)
        payload.setdefault("created_at", datetime.now(UTC))
        insert_result = self._collection.insert_one(payload)
        payload["_id"] = str(insert_result.inserted_id)
        return payload

    def list_for_seller(self, seller_id: str) -> list[dict[str, Any]]:
        return self._list_matching("seller_id", seller_id)

    def list_for_buyer(self, buyer_id: str) -> list[dict[str, Any]]:
        return self._list_matching("buyer_id", buyer_id)

    def _list_matching(self, field_name: str, value: str) -> list[dict[str, Any]]:
        cursor = self._collection.find({field_name: value}).sort("start", self._asc)
        records: list[dict[str, Any]] = []
        for raw_record in cursor:
            record = dict(raw_record)
            record["_id"] = str(raw_record.get("_id", ""))
            records.append(record)
        return records


def create_appointment_store(settings: Settings) -> AppointmentStore:
    return _create_appointment_store_cached(
        store_name=settings.user_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_appointments_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_appointment_store_cached(
    *,
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> AppointmentStore:
    if store_name == "memory":
        return InMemoryAppointmentStore()

    if store_name == "mongodb":
        return MongoAppointmentStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryAppointmentStore()


def clear_appointment_store_cache() -> None:
    _create_appointment_store_cached.cache_clear()


def build_appointment_record(
    *,
    seller_id: str,
    buyer_id: str,
    start: datetime,
    end: datetime,
    summary: str,
    google_event_id: str,
    buyer_google_event_id: str | None,
    join_url: str | None,
) -> dict[str, Any]:
    return {
        "seller_id": seller_id,
        "buyer_id": buyer_id,
        "start": start,
        "end": end,
        "summary": summary,
        "google_event_id": google_event_id,
        "buyer_google_event_id": buyer_google_event_id,
        "join_url": join_url,
        "created_at": datetime.now(UTC),
    }
