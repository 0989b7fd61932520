from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.schemas.call_intake import CallProvider, CallRecordStatus, CandidateCall


class DuplicateCallRecordError(Exception):
    """Raised when an insert violates the per-rep external id uniqueness constraint."""

    def __init__(self, message: str, existing_record_id: str | None = None) -> None:
        super().__init__(message)
        self.existing_record_id = existing_record_id


@dataclass(frozen=True)
class CallRecordFilter:
    """Criteria evaluated within one (organization, sales rep) scope.

    An external id pair matches on exact equality. A scheduled window matches
    records starting inside it that also share the normalized title or enough
    participant keys.

    Records holding a different id under one of ``known_external_ids`` are
    distinct recordings and never match.
    """

    provider: str | None = None
    external_id: str | None = None
    scheduled_from: datetime | None = None
    scheduled_to: datetime | None = None
    normalized_title: str | None = None
    participant_keys: frozenset[str] = frozenset()
    min_shared_participants: int = 1
    known_external_ids: tuple[tuple[str, str], ...] = ()

    @classmethod
    def by_external_id(cls, provider: str, external_id: str) -> CallRecordFilter:
        return cls(provider=provider, external_id=external_id)

    @property
    def has_similarity_criteria(self) -> bool:
        return bool(self.normalized_title) or bool(self.participant_keys)

    def to_mongo_query(self) -> dict[str, Any]:
        query: dict[str, Any] = {}
        if self.provider and self.external_id:
            query[f"external_ids.{self.provider}"] = self.external_id

        scheduled_range: dict[str, datetime] = {}
        if self.scheduled_from is not None:
            scheduled_range["$gte"] = self.scheduled_from
        if self.scheduled_to is not None:
            scheduled_range["$lte"] = self.scheduled_to
        if scheduled_range:
            query["scheduled_start_time"] = scheduled_range

        similarity_clauses: list[dict[str, Any]] = []
        if self.normalized_title:
            similarity_clauses.append({"normalized_title": self.normalized_title})
        if self.participant_keys:
            similarity_clauses.append({"participant_keys": {"$in": sorted(self.participant_keys)}})
        if similarity_clauses:
            query["$or"] = similarity_clauses

        id_clauses = [
            {"$or": [{f"external_ids.{provider}": {"$exists": False}}, {f"external_ids.{provider}": external_id}]}
            for provider, external_id in self.known_external_ids
        ]
        if id_clauses:
            query["$and"] = id_clauses
        return query

    def matches(self, record: Mapping[str, Any]) -> bool:
        if self.provider and self.external_id:
            external_ids = record.get("external_ids") or {}
            if external_ids.get(self.provider) != self.external_id:
                return False

        if self.known_external_ids:
            record_ids = record.get("external_ids") or {}
            for provider, external_id in self.known_external_ids:
                record_id = record_ids.get(provider)
                if record_id and record_id != external_id:
                    return False

        scheduled_start = record.get("scheduled_start_time")
        if self.scheduled_from is not None or self.scheduled_to is not None:
            if not isinstance(scheduled_start, datetime):
                return False
            scheduled_start = _as_utc(scheduled_start)
            if self.scheduled_from is not None and scheduled_start < self.scheduled_from:
                return False
            if self.scheduled_to is not None and scheduled_start > self.scheduled_to:
                return False

        if not self.has_similarity_criteria:
            return True

        if self.normalized_title and record.get("normalized_title") == self.normalized_title:
            return True

        if self.participant_keys:
            shared = self.participant_keys.intersection(record.get("participant_keys") or [])
            if len(shared) >= self.min_shared_participants:
                return True
        return False


class CallRecordStore(ABC):
    @abstractmethod
    def find_one(
        self,
        organization_id: str,
        sales_rep_id: str,
        record_filter: CallRecordFilter,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def insert_one(self, record: Mapping[str, Any]) -> str:
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, record_id: str) -> dict[str, Any] | None:
        raise NotImplementedError


class InMemoryCallRecordStore(CallRecordStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[dict[str, Any]] = []
        self._record_id_by_external_key: dict[tuple[str, str, str, str], str] = {}

    def find_one(
        self,
        organization_id: str,
        sales_rep_id: str,
        record_filter: CallRecordFilter,
    ) -> dict[str, Any] | None:
        with self._lock:
            for record in self._records:
                if record.get("organization_id") != organization_id:
                    continue
                if record.get("sales_rep_id") != sales_rep_id:
                    continue
                if record_filter.matches(record):
                    return dict(record)
        return None

    def insert_one(self, record: Mapping[str, Any]) -> str:
        with self._lock:
            external_keys = list(_external_keys(record))
            for external_key in external_keys:
                existing_record_id = self._record_id_by_external_key.get(external_key)
                if existing_record_id:
                    raise DuplicateCallRecordError(
                        f"Call record already exists for {external_key[2]} id {external_key[3]}.",
                        existing_record_id=existing_record_id,
                    )

            record_id = f"memory-{len(self._records) + 1}"
            stored_record = dict(record)
            stored_record["_id"] = record_id
            self._records.append(stored_record)
            for external_key in external_keys:
                self._record_id_by_external_key[external_key] = record_id
            return record_id

    def get_by_id(self, record_id: str) -> dict[str, Any] | None:
        with self._lock:
            for record in self._records:
                if str(record.get("_id")) == record_id:
                    return dict(record)
        return None

    def count(self) -> int:
        with self._lock:
            return len(self._records)


class MongoCallRecordStore(CallRecordStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
        socket_timeout_ms: int = 3000,
    ) -> None:
        from pymongo import ASCENDING, MongoClient

        self._asc = ASCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index(
            [
                ("organization_id", self._asc),
                ("sales_rep_id", self._asc),
                ("scheduled_start_time", self._asc),
            ],
        )
        for provider in CallProvider:
            external_field = f"external_ids.{provider.value}"
            self._collection.create_index(
                [
                    ("organization_id", self._asc),
                    ("sales_rep_id", self._asc),
                    (external_field, self._asc),
                ],
                name=f"unique_{provider.value}_call_per_rep",
                unique=True,
                partialFilterExpression={external_field: {"$type": "string"}},
            )

    def find_one(
        self,
        organization_id: str,
        sales_rep_id: str,
        record_filter: CallRecordFilter,
    ) -> dict[str, Any] | None:
        query = {
            "organization_id": organization_id,
            "sales_rep_id": sales_rep_id,
            **record_filter.to_mongo_query(),
        }
        cursor = self._collection.find(query).sort("created_at", self._asc)
        for record in cursor:
            if record_filter.matches(record):
                return _serialize_call_record(record)
        return None

    def insert_one(self, record: Mapping[str, Any]) -> str:
        from pymongo.errors import DuplicateKeyError

        payload = dict(record)
        try:
            insert_result = self._collection.insert_one(payload)
        except DuplicateKeyError as exc:
            existing = self._find_conflicting_record(payload)
            raise DuplicateCallRecordError(
                "Call record already exists for the same external id.",
                existing_record_id=str(existing["_id"]) if existing else None,
            ) from exc
        return str(insert_result.inserted_id)

    def get_by_id(self, record_id: str) -> dict[str, Any] | None:
        from bson import ObjectId
        from bson.errors import InvalidId

        try:
            object_id = ObjectId(record_id)
        except InvalidId:
            return None
        return _serialize_call_record(self._collection.find_one({"_id": object_id}))

    def _find_conflicting_record(self, payload: Mapping[str, Any]) -> dict[str, Any] | None:
        clauses = [
            {f"external_ids.{provider}": external_id}
            for _, _, provider, external_id in _external_keys(payload)
        ]
        if not clauses:
            return None
        return self._collection.find_one(
            {
                "organization_id": payload.get("organization_id"),
                "sales_rep_id": payload.get("sales_rep_id"),
                "$or": clauses,
            },
        )


def _external_keys(record: Mapping[str, Any]) -> Iterable[tuple[str, str, str, str]]:
    organization_id = str(record.get("organization_id", ""))
    sales_rep_id = str(record.get("sales_rep_id", ""))
    external_ids = record.get("external_ids") or {}
    for provider, external_id in external_ids.items():
        if isinstance(external_id, str) and external_id:
            yield organization_id, sales_rep_id, provider, external_id


def _serialize_call_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    serialized["_id"] = str(record.get("_id", ""))
    return serialized


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def create_call_record_store(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
    mongodb_socket_timeout_ms: int,
) -> CallRecordStore:
    return _create_call_record_store_cached(
        store_name=store_name,
        mongodb_uri=mongodb_uri,
        mongodb_db_name=mongodb_db_name,
        mongodb_collection_name=mongodb_collection_name,
        mongodb_connect_timeout_ms=mongodb_connect_timeout_ms,
        mongodb_socket_timeout_ms=mongodb_socket_timeout_ms,
    )


@lru_cache
def _create_call_record_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
    mongodb_socket_timeout_ms: int,
) -> CallRecordStore:
    if store_name == "memory":
        return InMemoryCallRecordStore()

    if store_name == "mongodb":
        return MongoCallRecordStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
            socket_timeout_ms=mongodb_socket_timeout_ms,
        )

    # Unknown backend names fall back to memory.
    return InMemoryCallRecordStore()


def clear_call_record_store_cache() -> None:
    _create_call_record_store_cached.cache_clear()


def normalize_title(title: str | None) -> str | None:
    if not title:
        return None
    collapsed = " ".join(title.split()).lower()
    return collapsed or None


def build_participant_keys(
    emails: Iterable[str],
    names: Iterable[str],
    *,
    exclude_emails: Iterable[str | None] = (),
    exclude_names: Iterable[str | None] = (),
) -> list[str]:
    excluded_emails = {email.strip().lower() for email in exclude_emails if email}
    excluded_names = {" ".join(name.split()).casefold() for name in exclude_names if name}
    keys: list[str] = []
    for email in emails:
        normalized_email = email.strip().lower()
        if not normalized_email or normalized_email in excluded_emails:
            continue
        key = f"email:{normalized_email}"
        if key not in keys:
            keys.append(key)
    for name in names:
        normalized_name = " ".join(name.split()).casefold()
        if not normalized_name or normalized_name in excluded_names:
            continue
        key = f"name:{normalized_name}"
        if key not in keys:
            keys.append(key)
    return keys


def build_call_record_document(
    candidate: CandidateCall,
    *,
    sales_rep_email: str | None = None,
) -> dict[str, Any]:
    if not candidate.sales_rep_id:
        raise ValueError("Call records require a resolved sales rep.")

    now = datetime.now(UTC)
    participants = [{"email": email, "name": None} for email in candidate.participant_emails]
    participants.extend({"email": None, "name": name} for name in candidate.participant_names)
    return {
        "organization_id": candidate.organization_id,
        "sales_rep_id": candidate.sales_rep_id,
        "sales_rep_name": candidate.sales_rep_name,
        "source": candidate.source.value,
        "external_ids": dict(candidate.external_ids),
        "title": candidate.title,
        "normalized_title": normalize_title(candidate.title),
        "scheduled_start_time": candidate.scheduled_start_time,
        "scheduled_end_time": candidate.scheduled_end_time,
        "duration_minutes": candidate.duration_minutes,
        "participants": participants,
        "participant_keys": build_participant_keys(
            candidate.participant_emails,
            candidate.participant_names,
            exclude_emails=(sales_rep_email, candidate.sales_rep_email),
            exclude_names=(candidate.sales_rep_name, candidate.host_name),
        ),
        "transcript": candidate.transcript,
        "recording_url": candidate.recording_url,
        "share_url": candidate.share_url,
        "metadata": dict(candidate.metadata),
        "status": CallRecordStatus.pending.value,
        "created_at": now,
        "updated_at": now,
    }
