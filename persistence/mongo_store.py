"""
Syndatagen MongoDB Store Client
Source-side adapter: keyset extraction for the migration pipeline and
single-document access for the router's mongodb / dual-write modes.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import Decimal128, ObjectId, Timestamp
from pymongo import ASCENDING, DESCENDING, MongoClient

from .config import MongoConfig, get_config
from .models import CollectionName, SourceRecord
from .retry import RetryPolicy

logger = logging.getLogger("syndatagen.mongo")

# Extraction order: creation time, then _id to break ties.
EXTRACT_SORT = [("createdAt", ASCENDING), ("_id", ASCENDING)]

_OPERATORS = {
    "==": "$eq",
    "!=": "$ne",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
    "in": "$in",
    "not-in": "$nin",
    "array-contains-any": "$in",
}


def coerce_id(document_id: Any) -> Any:
    """String ids that look like ObjectIds are stored as ObjectIds."""
    if isinstance(document_id, str) and ObjectId.is_valid(document_id):
        return ObjectId(document_id)
    return document_id


# BSON sorts across types in brackets, but $gt/$gte only match within the
# operand's bracket. Each entry is a createdAt type in sort order with the
# smallest value of its bracket, so a cursor can reach the brackets after it.
_SORT_BRACKETS: List[Tuple[str, Any]] = [
    ("number", float("-inf")),
    ("string", ""),
    ("objectid", ObjectId("0" * 24)),
    ("bool", False),
    ("datetime", datetime.min),
    ("timestamp", Timestamp(0, 0)),
]


def sort_bracket(value: Any) -> Optional[str]:
    """BSON sort bracket of a createdAt value, or None for null and unsupported types."""
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float, Decimal128)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, ObjectId):
        return "objectid"
    if isinstance(value, datetime):
        return "datetime"
    if isinstance(value, Timestamp):
        return "timestamp"
    return None


def encode_cursor(document: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe keyset cursor for the last extracted document."""
    created_at = document.get("createdAt")
    if isinstance(created_at, datetime):
        created = {"kind": "datetime", "value": created_at.isoformat()}
    elif created_at is None:
        created = {"kind": "null", "value": None}
    elif isinstance(created_at, ObjectId):
        created = {"kind": "objectid", "value": str(created_at)}
    elif isinstance(created_at, Timestamp):
        created = {"kind": "timestamp", "value": [created_at.time, created_at.inc]}
    else:
        # strings, numbers and booleans survive JSON as they are
        created = {"kind": "raw", "value": created_at}

    source_id = document["_id"]
    if isinstance(source_id, ObjectId):
        id_type = "objectid"
    elif isinstance(source_id, int):
        id_type = "int"
    else:
        id_type = "str"
    return {"created_at": created, "id": str(source_id), "id_type": id_type}


def decode_cursor(cursor: Dict[str, Any]) -> Tuple[Any, Any]:
    created = cursor["created_at"]
    if created["kind"] == "datetime":
        created_at = datetime.fromisoformat(created["value"])
    elif created["kind"] == "objectid":
        created_at = ObjectId(created["value"])
    elif created["kind"] == "timestamp":
        created_at = Timestamp(*created["value"])
    else:
        created_at = created["value"]

    if cursor["id_type"] == "objectid":
        source_id: Any = ObjectId(cursor["id"])
    elif cursor["id_type"] == "int":
        source_id = int(cursor["id"])
    else:
        source_id = cursor["id"]
    return created_at, source_id


def keyset_filter(cursor: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Mongo filter selecting documents strictly after `cursor` in EXTRACT_SORT order."""
    if cursor is None:
        return {}
    created_at, source_id = decode_cursor(cursor)
    if created_at is None:
        # null/missing createdAt sorts first; after it come the remaining nulls, then everything dated
        return {"$or": [
            {"createdAt": None, "_id": {"$gt": source_id}},
            {"createdAt": {"$ne": None}},
        ]}
    clauses: List[Dict[str, Any]] = [
        {"createdAt": {"$gt": created_at}},
        {"createdAt": created_at, "_id": {"$gt": source_id}},
    ]
    names = [name for name, _ in _SORT_BRACKETS]
    bracket = sort_bracket(created_at)
    if bracket in names:
        clauses.extend(
            {"createdAt": {"$gte": floor}} for _, floor in _SORT_BRACKETS[names.index(bracket) + 1:]
        )
    else:
        logger.warning(
            f"createdAt of type {type(created_at).__name__} has no sort bracket; "
            "documents of later types may be skipped"
        )
    return {"$or": clauses}


def to_mongo_filter(filters: Optional[Iterable[Tuple[str, str, Any]]]) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for field_path, op, value in filters or []:
        if field_path in ("id", "__name__"):
            field_path = "_id"
            value = [coerce_id(v) for v in value] if isinstance(value, list) else coerce_id(value)
        if op == "array-contains":
            query.setdefault(field_path, {})["$elemMatch"] = {"$eq": value}
        elif op in _OPERATORS:
            query.setdefault(field_path, {})[_OPERATORS[op]] = value
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
    return query


class MongoStore:
    """
    MongoDB adapter.

    All driver calls go through the shared RetryPolicy, so transient
    network errors are retried before they reach the caller.
    """

    def __init__(
        self,
        config: Optional[MongoConfig] = None,
        client: Any = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.config = config or get_config().mongo
        self.retry = retry or RetryPolicy()
        self._client = client

    def connect(self) -> None:
        """Create the MongoClient. Connection is lazy; the first call does the handshake."""
        timeout_ms = int(self.config.timeout_seconds * 1000)
        self._client = MongoClient(
            self.config.uri,
            serverSelectionTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
        )
        logger.info(f"MongoDB client created for database {self.config.db_name}")

    @property
    def client(self) -> Any:
        if self._client is None:
            self.connect()
        return self._client

    @property
    def db(self) -> Any:
        return self.client[self.config.db_name]

    def collection_name(self, collection: Any) -> str:
        key = collection.value if isinstance(collection, CollectionName) else str(collection)
        return self.config.collections.get(key, key)

    def col(self, collection: Any) -> Any:
        return self.db[self.collection_name(collection)]

    def ping(self) -> None:
        """Round-trip to the server; raises StoreConnectionError when it is unreachable."""
        self.retry.call(self.client.admin.command, "ping", context="mongo ping")

    # ==================== Extraction ====================

    def find_page(
        self,
        collection: CollectionName,
        after: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> Tuple[List[SourceRecord], Optional[Dict[str, Any]]]:
        """
        Fetch the next page of source documents in (createdAt, _id) order.

        Returns:
            (records, cursor) where cursor points at the last record returned,
            or is `after` unchanged when the page is empty
        """
        name = self.collection_name(collection)

        def fetch():
            return list(
                self.col(collection).find(keyset_filter(after)).sort(EXTRACT_SORT).limit(limit)
            )

        documents = self.retry.call(fetch, context=f"mongo {name} extract")
        records = [SourceRecord(collection=collection, data=doc) for doc in documents]
        cursor = encode_cursor(documents[-1]) if documents else after
        logger.debug(f"Extracted {len(records)} documents from {name}")
        return records, cursor

    # ==================== Documents ====================

    def get_document(self, collection: Any, document_id: str) -> Optional[Dict[str, Any]]:
        name = self.collection_name(collection)
        return self.retry.call(
            self.col(collection).find_one, {"_id": coerce_id(document_id)},
            context=f"mongo {name}/{document_id}",
        )

    def find(
        self,
        collection: Any,
        filters: Optional[Iterable[Tuple[str, str, Any]]] = None,
        order_by: Optional[List[Tuple[str, str]]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        name = self.collection_name(collection)
        query = to_mongo_filter(filters)

        def fetch():
            cursor = self.col(collection).find(query)
            if order_by:
                cursor = cursor.sort([
                    (f, DESCENDING if d.upper().startswith("DESC") else ASCENDING)
                    for f, d in order_by
                ])
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)

        return self.retry.call(fetch, context=f"mongo {name} find")

    def upsert_document(
        self, collection: Any, document_id: str, data: Dict[str, Any], merge: bool = False
    ) -> None:
        """Write a document under its (coerced) _id; `merge` keeps fields not in `data`."""
        name = self.collection_name(collection)
        source_id = coerce_id(document_id)
        body = {k: v for k, v in data.items() if k not in ("_id", "id")}
        col = self.col(collection)
        if merge:
            self.retry.call(
                col.update_one, {"_id": source_id}, {"$set": body},
                upsert=True, context=f"mongo {name}/{document_id}",
            )
        else:
            self.retry.call(
                col.replace_one, {"_id": source_id}, {"_id": source_id, **body},
                upsert=True, context=f"mongo {name}/{document_id}",
            )

    def delete_document(self, collection: Any, document_id: str) -> bool:
        name = self.collection_name(collection)
        result = self.retry.call(
            self.col(collection).delete_one, {"_id": coerce_id(document_id)},
            context=f"mongo {name}/{document_id}",
        )
        return result.deleted_count > 0

    def count(self, collection: Any) -> int:
        name = self.collection_name(collection)
        return self.retry.call(self.col(collection).count_documents, {}, context=f"mongo {name} count")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
