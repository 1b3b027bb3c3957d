from __future__ import annotations

import os
from typing import Any, Dict, Mapping, Optional, Protocol
from pathlib import Path
import json
import logging
from threading import RLock

from ..domain.errors import PersistenceFailure, UserNotFound
from ..domain.models import UserRecord

logger = logging.getLogger("personality.store")


class UserStore(Protocol):
    def get(self, username: str) -> Optional[UserRecord]: ...
    def update(self, username: str, partial: Mapping[str, Any]) -> UserRecord: ...
    def put(self, record: UserRecord) -> UserRecord: ...


def merge_record(record: UserRecord, partial: Mapping[str, Any]) -> UserRecord:
    """Apply a partial update; top-level fields in ``partial`` replace the stored ones."""
    data = record.model_dump()
    data.update(dict(partial))
    data["username"] = record.username
    return UserRecord(**data)


class InMemoryUserStore:
    """Process-local user store used by default and in tests."""

    def __init__(self) -> None:
        self._users: Dict[str, UserRecord] = {}
        self._lock = RLock()

    def get(self, username: str) -> Optional[UserRecord]:
        with self._lock:
            rec = self._users.get(username)
            return rec.model_copy(deep=True) if rec else None

    def update(self, username: str, partial: Mapping[str, Any]) -> UserRecord:
        with self._lock:
            rec = self._users.get(username)
            if rec is None:
                raise UserNotFound(username)
            updated = merge_record(rec, partial)
            self._users[username] = updated
            return updated.model_copy(deep=True)

    def put(self, record: UserRecord) -> UserRecord:
        with self._lock:
            self._users[record.username] = record.model_copy(deep=True)
            return record


class FileUserStore:
    """JSON file-backed store for development persistence.

    Structure: a single JSON object mapping username -> user dict.
    Thread-safe with a coarse RLock; suitable for dev/test, not high concurrency.
    """

    def __init__(self, file_path: Optional[str] = None) -> None:
        self._lock = RLock()
        root = Path(__file__).resolve().parents[3]
        default_path = root / "run" / "users.json"
        self._path = Path(file_path or os.getenv("PERSONALITY_USERS_FILE", str(default_path)))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._users: Dict[str, UserRecord] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("user_file_unreadable", extra={"path": str(self._path), "err": str(exc)})
            return
        for username, raw in (data or {}).items():
            try:
                self._users[username] = UserRecord(**raw)
            except (TypeError, ValueError):
                logger.warning("user_file_entry_skipped", extra={"username": username})

    def _save(self) -> None:
        obj = {name: rec.model_dump(mode="json", by_alias=True) for name, rec in self._users.items()}
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(obj, indent=2), encoding="utf-8")
        tmp.replace(self._path)

    def get(self, username: str) -> Optional[UserRecord]:
        with self._lock:
            rec = self._users.get(username)
            return rec.model_copy(deep=True) if rec else None

    def update(self, username: str, partial: Mapping[str, Any]) -> UserRecord:
        with self._lock:
            rec = self._users.get(username)
            if rec is None:
                raise UserNotFound(username)
            updated = merge_record(rec, partial)
            self._users[username] = updated
            try:
                self._save()
            except OSError as exc:
                self._users[username] = rec
                raise PersistenceFailure(username, str(exc)) from exc
            return updated.model_copy(deep=True)

    def put(self, record: UserRecord) -> UserRecord:
        with self._lock:
            self._users[record.username] = record.model_copy(deep=True)
            try:
                self._save()
            except OSError as exc:
                raise PersistenceFailure(record.username, str(exc)) from exc
            return record


_store: UserStore | None = None


def get_user_store() -> UserStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("PERSONALITY_USER_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        from .user_store_mongo import MongoUserStore

        mongo_store = MongoUserStore()
        mongo_store.ensure_indexes()
        _store = mongo_store
    elif impl == "file":
        _store = FileUserStore()
    else:
        _store = InMemoryUserStore()
    return _store
