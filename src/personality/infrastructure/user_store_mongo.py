from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional

from pymongo import MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from ..domain.errors import PersistenceFailure, UserNotFound
from ..domain.models import UserRecord

logger = logging.getLogger("personality.store")


class MongoUserStore:
    """User records in a ``users`` collection keyed by ``username``.

    ``update`` issues a single ``$set`` with the partial fields, so concurrent
    partial writes from different requests never clobber unrelated fields.
    """

    def __init__(self, client: Optional[MongoClient] = None, db_name: Optional[str] = None) -> None:
        mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
        self._client = client if client is not None else MongoClient(mongo_url, serverSelectionTimeoutMS=2000)
        self._collection = self._client[db_name or os.getenv("MONGO_DB", "personality")]["users"]

    def ensure_indexes(self) -> None:
        self._collection.create_index("username", unique=True)

    def get(self, username: str) -> Optional[UserRecord]:
        doc = self._collection.find_one({"username": username})
        if not doc:
            return None
        return self._to_record(doc)

    def update(self, username: str, partial: Mapping[str, Any]) -> UserRecord:
        fields = self._to_doc(partial)
        fields.pop("username", None)
        try:
            doc = self._collection.find_one_and_update(
                {"username": username},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            logger.error("mongo_update_failed", extra={"username": username, "err": str(exc)})
            raise PersistenceFailure(username, str(exc)) from exc
        if not doc:
            raise UserNotFound(username)
        return self._to_record(doc)

    def put(self, record: UserRecord) -> UserRecord:
        try:
            self._collection.replace_one({"username": record.username}, self._to_doc(record.model_dump()), upsert=True)
        except PyMongoError as exc:
            raise PersistenceFailure(record.username, str(exc)) from exc
        return record

    def _to_record(self, doc: Dict[str, Any]) -> UserRecord:
        doc = dict(doc)
        doc.pop("_id", None)
        return UserRecord(**doc)

    def _to_doc(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, value in fields.items():
            if key == "tweets" and isinstance(value, list):
                value = [t.model_dump() if hasattr(t, "model_dump") else t for t in value]
            out[key] = value
        return out
