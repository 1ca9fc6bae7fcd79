"""
Versioned document schemas for the four migrated collections.

Schemas describe the Firestore (target) shape: dates are ISO-8601 strings,
ids are strings. Bump `version` when a rule changes.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Pattern, Sequence

from .models import CollectionName

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

FIELD_TYPES = ("string", "number", "boolean", "object", "array", "date", "any")


@dataclass(frozen=True)
class FieldSpec:
    """Rules for one field."""
    type: str = "any"
    required: bool = False
    enum: Optional[Sequence[Any]] = None
    pattern: Optional[Pattern] = None
    min_length: Optional[int] = None
    nested: Optional[Dict[str, "FieldSpec"]] = None

    def __post_init__(self):
        if self.type not in FIELD_TYPES:
            raise ValueError(f"Unknown field type: {self.type}")


@dataclass(frozen=True)
class CollectionSchema:
    collection: CollectionName
    version: int
    fields: Dict[str, FieldSpec] = field(default_factory=dict)


CUSTOMERS_SCHEMA = CollectionSchema(
    collection=CollectionName.CUSTOMERS,
    version=1,
    fields={
        "name": FieldSpec("string", required=True, min_length=1),
        "email": FieldSpec("string", pattern=EMAIL_PATTERN),
        "company": FieldSpec("string"),
        "status": FieldSpec("string"),
        "settings": FieldSpec("object", nested={
            "storageQuota": FieldSpec("number"),
            "maxProjects": FieldSpec("number"),
        }),
        "createdAt": FieldSpec("date"),
        "updatedAt": FieldSpec("date"),
        "metadata": FieldSpec("object"),
    },
)

WAITLIST_SCHEMA = CollectionSchema(
    collection=CollectionName.WAITLIST,
    version=1,
    fields={
        "email": FieldSpec("string", required=True, pattern=EMAIL_PATTERN),
        "name": FieldSpec("string"),
        "company": FieldSpec("string"),
        "industry": FieldSpec("string"),
        "dataVolume": FieldSpec("string"),
        "useCase": FieldSpec("string"),
        "status": FieldSpec("string", required=True, enum=("pending", "approved", "invited", "rejected")),
        "ipAddress": FieldSpec("string"),
        "createdAt": FieldSpec("date"),
        "metadata": FieldSpec("object"),
    },
)

PROJECTS_SCHEMA = CollectionSchema(
    collection=CollectionName.PROJECTS,
    version=1,
    fields={
        "name": FieldSpec("string", required=True, min_length=1),
        "description": FieldSpec("string"),
        "ownerId": FieldSpec("string"),
        "customerId": FieldSpec("string"),
        "teamMembers": FieldSpec("array"),
        "status": FieldSpec("string", required=True, enum=("active", "archived")),
        "settings": FieldSpec("object", nested={
            "dataRetentionDays": FieldSpec("number"),
            "maxStorageGB": FieldSpec("number"),
        }),
        "storageConfig": FieldSpec("object", nested={
            "bucketName": FieldSpec("string", required=True),
            "region": FieldSpec("string", required=True),
        }),
        "createdAt": FieldSpec("date"),
        "updatedAt": FieldSpec("date"),
        "metadata": FieldSpec("object"),
    },
)

DATA_GENERATION_JOBS_SCHEMA = CollectionSchema(
    collection=CollectionName.DATA_GENERATION_JOBS,
    version=1,
    fields={
        "projectId": FieldSpec("string", required=True),
        "status": FieldSpec(
            "string",
            required=True,
            enum=("queued", "pending", "running", "processing", "completed", "failed", "cancelled"),
        ),
        "type": FieldSpec("string"),
        "config": FieldSpec("object"),
        "progress": FieldSpec("number"),
        "createdAt": FieldSpec("date"),
        "startedAt": FieldSpec("date"),
        "completedAt": FieldSpec("date"),
        "metadata": FieldSpec("object"),
    },
)

SCHEMAS: Dict[CollectionName, CollectionSchema] = {
    schema.collection: schema
    for schema in (CUSTOMERS_SCHEMA, WAITLIST_SCHEMA, PROJECTS_SCHEMA, DATA_GENERATION_JOBS_SCHEMA)
}


def get_schema(collection: Any) -> CollectionSchema:
    return SCHEMAS[CollectionName.parse(collection)]
