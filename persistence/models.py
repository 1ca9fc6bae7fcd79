"""
Shared data models and enums for the persistence layer.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidBackendMode, UnknownCollection, VerificationDiscrepancy


class CollectionName(str, Enum):
    """Logical collections served by the persistence layer."""
    CUSTOMERS = "customers"
    WAITLIST = "waitlist"
    PROJECTS = "projects"
    DATA_GENERATION_JOBS = "dataGenerationJobs"

    @classmethod
    def parse(cls, value: Any) -> "CollectionName":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownCollection(value) from None

    @property
    def env_key(self) -> str:
        """Settings key, e.g. COLLECTION_DATAGENERATIONJOBS_BACKEND."""
        return f"COLLECTION_{self.value.upper()}_BACKEND"


class BackendMode(str, Enum):
    """Which store(s) serve a collection."""
    MONGODB = "mongodb"
    FIRESTORE = "firestore"
    BOTH = "both"

    @classmethod
    def parse(cls, value: Any) -> "BackendMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidBackendMode(value) from None


class MigrationStatus(str, Enum):
    """Status of a migration job."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_COMPLETED = "partially-completed"


class CollectionPhase(str, Enum):
    """Per-collection state inside a migration job."""
    PENDING = "pending"
    RESUMING = "resuming"
    EXTRACTING = "extracting"
    TRANSFORMING = "transforming"
    VALIDATING = "validating"
    LOADING = "loading"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


class FailurePolicy(str, Enum):
    """What the pipeline does when a document or a batch fails."""
    SKIP_DOCUMENT = "skip-document"
    ABORT_COLLECTION = "abort-collection"
    ABORT_JOB = "abort-job"


class WriteKind(str, Enum):
    CREATE = "create"
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


# ==================== Documents ====================

@dataclass
class SourceRecord:
    """A document as stored in MongoDB (ObjectId _id, native datetimes)."""
    collection: CollectionName
    data: Dict[str, Any]

    @property
    def source_id(self) -> Any:
        return self.data.get("_id")


@dataclass
class TargetRecord:
    """A document in Firestore shape (string id, ISO-8601 dates, plain maps)."""
    collection: CollectionName
    document_id: str
    data: Dict[str, Any]
    schema_version: int = 1


@dataclass
class Document:
    """A document read back from a store."""
    id: str
    collection: str
    data: Dict[str, Any] = field(default_factory=dict)

    def get(self, field_name: str, default: Any = None) -> Any:
        """Read a possibly dotted field path."""
        if field_name in ("__name__", "id"):
            return self.id
        value: Any = self.data
        for part in field_name.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **self.data}


@dataclass(frozen=True)
class PageCursor:
    """
    Opaque position in a paginated query.

    Holds the sort-key values of the last returned document. Only the access
    layer creates and reads these.
    """
    collection: str
    order_fields: Tuple[str, ...]
    values: Tuple[Any, ...]
    document_id: str

    def __repr__(self) -> str:
        return f"PageCursor(collection={self.collection!r}, document_id={self.document_id!r})"


@dataclass
class Page:
    """One page of a cursor-paginated query."""
    items: List[Document]
    has_more: bool
    last_doc: Optional[PageCursor] = None


# ==================== Writes ====================

@dataclass
class WriteOperation:
    """One entry of a batch write."""
    kind: WriteKind
    document_id: str
    data: Optional[Dict[str, Any]] = None
    merge: bool = False

    @classmethod
    def create(cls, document_id: str, data: Dict[str, Any]) -> "WriteOperation":
        return cls(WriteKind.CREATE, document_id, data)

    @classmethod
    def set(cls, document_id: str, data: Dict[str, Any], merge: bool = False) -> "WriteOperation":
        return cls(WriteKind.SET, document_id, data, merge)

    @classmethod
    def update(cls, document_id: str, data: Dict[str, Any]) -> "WriteOperation":
        return cls(WriteKind.UPDATE, document_id, data)

    @classmethod
    def delete(cls, document_id: str) -> "WriteOperation":
        return cls(WriteKind.DELETE, document_id)


@dataclass
class ChunkResult:
    """Outcome of one atomic commit inside a batch write."""
    index: int
    size: int
    committed: bool
    error: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass
class BatchResult:
    """Per-chunk outcome of a batch write."""
    collection: str
    chunks: List[ChunkResult] = field(default_factory=list)

    @property
    def committed_operations(self) -> int:
        return sum(c.size for c in self.chunks if c.committed)

    @property
    def failed_operations(self) -> int:
        return sum(c.size for c in self.chunks if not c.committed)

    @property
    def all_committed(self) -> bool:
        return all(c.committed for c in self.chunks)

    @property
    def failed_chunks(self) -> List[ChunkResult]:
        return [c for c in self.chunks if not c.committed]


@dataclass
class WriteResult:
    """Outcome of a routed single-document write."""
    collection: CollectionName
    document_id: str
    backends: List[BackendMode] = field(default_factory=list)
    warnings: List[Exception] = field(default_factory=list)


# ==================== Migration ====================

@dataclass
class CollectionStats:
    """Counters for one collection in one migration job (monotonic)."""
    extracted: int = 0
    transformed: int = 0
    validation_failures: int = 0
    loaded: int = 0
    verified: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "extracted": self.extracted,
            "transformed": self.transformed,
            "validation_failures": self.validation_failures,
            "loaded": self.loaded,
            "verified": self.verified,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectionStats":
        return cls(**{k: int(data.get(k, 0)) for k in cls().to_dict()})


@dataclass
class CollectionState:
    """Progress, checkpoint and findings for one collection of a job."""
    collection: CollectionName
    phase: CollectionPhase = CollectionPhase.PENDING
    stats: CollectionStats = field(default_factory=CollectionStats)
    checkpoint: Optional[Dict[str, Any]] = None
    batches_committed: int = 0
    load_batches: List[int] = field(default_factory=list)
    failed_documents: List[Dict[str, Any]] = field(default_factory=list)
    discrepancies: List[VerificationDiscrepancy] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    failure_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection.value,
            "phase": self.phase.value,
            "stats": self.stats.to_dict(),
            "checkpoint": self.checkpoint,
            "batches_committed": self.batches_committed,
            "load_batches": list(self.load_batches),
            "failed_documents": list(self.failed_documents),
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "errors": list(self.errors),
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectionState":
        return cls(
            collection=CollectionName(data["collection"]),
            phase=CollectionPhase(data.get("phase", "pending")),
            stats=CollectionStats.from_dict(data.get("stats", {})),
            checkpoint=data.get("checkpoint"),
            batches_committed=data.get("batches_committed", 0),
            load_batches=list(data.get("load_batches", [])),
            failed_documents=list(data.get("failed_documents", [])),
            discrepancies=[
                VerificationDiscrepancy.from_dict(d) for d in data.get("discrepancies", [])
            ],
            errors=list(data.get("errors", [])),
            failure_reason=data.get("failure_reason"),
        )


@dataclass
class MigrationJob:
    """One run of the migration pipeline over one or more collections."""
    id: str
    collections: List[CollectionName]
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    status: MigrationStatus = MigrationStatus.RUNNING
    states: Dict[CollectionName, CollectionState] = field(default_factory=dict)
    dry_run: bool = False
    options: Dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None

    def __post_init__(self):
        for collection in self.collections:
            self.states.setdefault(collection, CollectionState(collection=collection))

    @property
    def per_collection_stats(self) -> Dict[CollectionName, CollectionStats]:
        return {c: s.stats for c, s in self.states.items()}

    @property
    def checkpoint(self) -> Dict[CollectionName, Optional[Dict[str, Any]]]:
        return {c: s.checkpoint for c, s in self.states.items()}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serialisable record."""
        return {
            "id": self.id,
            "collections": [c.value for c in self.collections],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "options": self.options,
            "failure_reason": self.failure_reason,
            "states": {c.value: s.to_dict() for c, s in self.states.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationJob":
        """Create from a stored record."""
        states = {
            CollectionName(name): CollectionState.from_dict(state)
            for name, state in data.get("states", {}).items()
        }
        return cls(
            id=data["id"],
            collections=[CollectionName(c) for c in data.get("collections", [])],
            started_at=data.get("started_at", time.time()),
            completed_at=data.get("completed_at"),
            status=MigrationStatus(data.get("status", "running")),
            states=states,
            dry_run=data.get("dry_run", False),
            options=data.get("options", {}),
            failure_reason=data.get("failure_reason"),
        )
