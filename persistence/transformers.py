"""
MongoDB -> Firestore document transformers.

Pure functions: a SourceRecord in, a TargetRecord out. ObjectIds become
strings, datetimes become ISO-8601 strings, and fields a collection does not
know about are kept under `metadata` rather than dropped.
"""

import copy
from datetime import date, datetime, timezone
from typing import Any, Dict, FrozenSet

from bson import ObjectId

from .models import CollectionName, SourceRecord, TargetRecord
from .schemas import get_schema

# Mongo bookkeeping fields that never reach Firestore
EXCLUDED_FIELDS = frozenset({"_id", "__v"})

KNOWN_FIELDS: Dict[CollectionName, FrozenSet[str]] = {
    CollectionName.CUSTOMERS: frozenset({
        "name", "email", "company", "status", "plan", "firebaseUid",
        "settings", "createdAt", "updatedAt", "metadata",
    }),
    CollectionName.WAITLIST: frozenset({
        "email", "name", "company", "industry", "dataVolume", "useCase",
        "status", "ipAddress", "createdAt", "updatedAt", "metadata",
    }),
    CollectionName.PROJECTS: frozenset({
        "name", "description", "ownerId", "customerId", "teamMembers", "status",
        "settings", "storageConfig", "createdAt", "updatedAt", "metadata",
    }),
    CollectionName.DATA_GENERATION_JOBS: frozenset({
        "name", "type", "projectId", "customerId", "createdBy", "status", "config",
        "progress", "result", "error", "startedAt", "completedAt",
        "createdAt", "updatedAt", "metadata",
    }),
}

# Legacy field names renamed on the way over
FIELD_MAPPINGS: Dict[CollectionName, Dict[str, str]] = {
    CollectionName.DATA_GENERATION_JOBS: {"creationTime": "createdAt"},
}

DEFAULT_VALUES: Dict[CollectionName, Dict[str, Any]] = {
    CollectionName.CUSTOMERS: {
        "status": "active",
        "settings": {"storageQuota": 100, "maxProjects": 5},
    },
    CollectionName.WAITLIST: {
        "status": "pending",
    },
    CollectionName.PROJECTS: {
        "status": "active",
        "settings": {"dataRetentionDays": 30, "maxStorageGB": 50},
    },
    CollectionName.DATA_GENERATION_JOBS: {
        "status": "queued",
    },
}


def to_iso8601(value: datetime) -> str:
    """Format a datetime like JavaScript's toISOString(). Naive values are UTC (pymongo default)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def transform_value(value: Any) -> Any:
    """Recursively convert BSON/Python types to Firestore-friendly values."""
    if value is None:
        return None
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return to_iso8601(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): transform_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [transform_value(v) for v in value]
    return value


def target_document_id(source_id: Any) -> str:
    """Deterministic Firestore document ID for a Mongo _id."""
    return str(source_id)


def transform(record: SourceRecord) -> TargetRecord:
    """
    Transform one Mongo document into its Firestore shape.

    Args:
        record: Source document; must carry an `_id`

    Returns:
        TargetRecord with a string document ID and the collection's schema version
    """
    collection = record.collection
    if record.source_id is None:
        raise ValueError(f"{collection.value} document without _id")

    known = KNOWN_FIELDS[collection]
    mappings = FIELD_MAPPINGS.get(collection, {})

    data: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for key, value in record.data.items():
        if key in EXCLUDED_FIELDS:
            continue
        target_key = mappings.get(key, key)
        if target_key != key and target_key in record.data:
            # The current field name wins over its legacy alias.
            continue
        if target_key in known:
            data[target_key] = transform_value(value)
        else:
            extra[target_key] = transform_value(value)

    if extra:
        metadata = data.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {} if metadata is None else {"value": metadata}
        data["metadata"] = {**extra, **metadata}

    for key, default in DEFAULT_VALUES.get(collection, {}).items():
        if data.get(key) is None:
            data[key] = copy.deepcopy(default)

    return TargetRecord(
        collection=collection,
        document_id=target_document_id(record.source_id),
        data=data,
        schema_version=get_schema(collection).version,
    )

