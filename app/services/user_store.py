from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings


class UserStore(ABC):
    @abstractmethod
    def find_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        """Look up a user by internal id, falling back to the platform auth id."""
        raise NotImplementedError

    @abstractmethod
    def find_user_by_email(self, organization_id: str, email: str) -> dict[str, Any] | None:
        """Return the active user of ``organization_id`` registered with ``email``."""
        raise NotImplementedError

    @abstractmethod
    def create_user(
        self,
        *,
        organization_id: str,
        email: str,
        full_name: str,
        auth_id: str | None = None,
        is_active: bool = True,
    ) -> dict[str, Any]:
        raise NotImplementedError


class InMemoryUserStore(UserStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._next_id = 1
        self._users_by_id: dict[str, dict[str, Any]] = {}

    def find_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            user = self._users_by_id.get(user_id)
            if user:
                return dict(user)
            for candidate in self._users_by_id.values():
                if candidate.get("auth_id") == user_id:
                    return dict(candidate)
        return None

    def find_user_by_email(self, organization_id: str, email: str) -> dict[str, Any] | None:
        normalized_email = normalize_email(email)
        if not normalized_email:
            return None
        with self._lock:
            for user in self._users_by_id.values():
                if user.get("organization_id") != organization_id:
                    continue
                if not user.get("is_active", False):
                    continue
                if user.get("email") == normalized_email:
                    return dict(user)
        return None

    def create_user(
        self,
        *,
        organization_id: str,
        email: str,
        full_name: str,
        auth_id: str | None = None,
        is_active: bool = True,
    ) -> dict[str, Any]:
        normalized_email = normalize_email(email)
        with self._lock:
            for user in self._users_by_id.values():
                if user.get("email") == normalized_email:
                    raise ValueError("email_already_exists")

            user_id = str(self._next_id)
            self._next_id += 1
            now = datetime.now(UTC)
            user = {
                "_id": user_id,
                "organization_id": organization_id,
                "email": normalized_email,
                "full_name": full_name.strip(),
                "auth_id": auth_id,
                "is_active": is_active,
                "created_at": now,
                "updated_at": now,
            }
            self._users_by_id[user_id] = user
            return dict(user)


class MongoUserStore(UserStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        users_collection_name: str,
        connect_timeout_ms: int = 2000,
        socket_timeout_ms: int = 3000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
            tz_aware=True,
        )
        self._users = self._client[db_name][users_collection_name]

        self._users.create_index("email", unique=True)
        self._users.create_index([("organization_id", 1), ("email", 1), ("is_active", 1)])
        self._users.create_index(
            "auth_id",
            unique=True,
            partialFilterExpression={"auth_id": {"$type": "string"}},
        )

    def find_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        from bson import ObjectId
        from bson.errors import InvalidId

        try:
            record = self._users.find_one({"_id": ObjectId(user_id)})
        except InvalidId:
            record = None
        if record is None:
            record = self._users.find_one({"auth_id": user_id})
        return _serialize_user_record(record)

    def find_user_by_email(self, organization_id: str, email: str) -> dict[str, Any] | None:
        normalized_email = normalize_email(email)
        if not normalized_email:
            return None
        record = self._users.find_one(
            {
                "organization_id": organization_id,
                "email": normalized_email,
                "is_active": True,
            },
        )
        return _serialize_user_record(record)

    def create_user(
        self,
        *,
        organization_id: str,
        email: str,
        full_name: str,
        auth_id: str | None = None,
        is_active: bool = True,
    ) -> dict[str, Any]:
        from pymongo.errors import DuplicateKeyError

        now = datetime.now(UTC)
        payload: dict[str, Any] = {
            "organization_id": organization_id,
            "email": normalize_email(email),
            "full_name": full_name.strip(),
            "is_active": is_active,
            "created_at": now,
            "updated_at": now,
        }
        if auth_id:
            payload["auth_id"] = auth_id
        try:
            insert_result = self._users.insert_one(payload)
        except DuplicateKeyError as exc:
            raise ValueError("email_already_exists") from exc
        created = self._users.find_one({"_id": insert_result.inserted_id})
        serialized = _serialize_user_record(created)
        if not serialized:
            raise RuntimeError("Unable to read created user.")
        return serialized


def _serialize_user_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    serialized["_id"] = str(record.get("_id", ""))
    return serialized


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def create_user_store(settings: Settings) -> UserStore:
    return _create_user_store_cached(
        user_data_store=settings.user_data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_users_collection=settings.mongodb_users_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
        mongodb_socket_timeout_ms=settings.mongodb_socket_timeout_ms,
    )


@lru_cache
def _create_user_store_cached(
    *,
    user_data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_users_collection: str,
    mongodb_connect_timeout_ms: int,
    mongodb_socket_timeout_ms: int,
) -> UserStore:
    if user_data_store == "memory":
        return InMemoryUserStore()

    if user_data_store == "mongodb":
        return MongoUserStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            users_collection_name=mongodb_users_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
            socket_timeout_ms=mongodb_socket_timeout_ms,
        )

    return InMemoryUserStore()


def clear_user_store_cache() -> None:
    _create_user_store_cached.cache_clear()
