"""
Error taxonomy for the persistence layer.

Every error carries an ErrorKind so callers (retry policy, migration report, CLI)
can decide what to do without re-classifying. Driver exceptions from
google-api-core and pymongo are mapped once, at the store boundary, by
classify_exception().
"""

from enum import Enum
from typing import Any, Dict, Optional

from google.api_core import exceptions as gexc
from pymongo import errors as mongo_errors


class ErrorKind(str, Enum):
    """Classification used for retry and reporting decisions."""
    CONNECTION = "connection"
    QUOTA = "quota"
    VALIDATION = "validation"
    BATCH_LIMIT = "batch_limit"
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    CONTENTION = "contention"
    PARTIAL_DUAL_WRITE = "partial_dual_write"
    VERIFICATION = "verification"
    CANCELLED = "cancelled"
    STORE = "store"


class PersistenceError(Exception):
    """Base class for all persistence errors."""
    kind: ErrorKind = ErrorKind.STORE
    retryable: bool = False

    def __init__(self, message: str = "", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message}


class StoreConnectionError(PersistenceError):
    """Transient network/timeout failure talking to a store."""
    kind = ErrorKind.CONNECTION
    retryable = True


class QuotaExceeded(PersistenceError):
    """Firestore read/write quota hit; retried with a longer backoff."""
    kind = ErrorKind.QUOTA
    retryable = True


class StoreError(PersistenceError):
    """Non-retryable failure reported by a store."""
    kind = ErrorKind.STORE


class TransactionFailed(PersistenceError):
    """A transaction could not be committed after the client's contention retries."""
    kind = ErrorKind.CONTENTION


class ValidationError(PersistenceError):
    """A document failed its collection schema. Never retried."""
    kind = ErrorKind.VALIDATION

    def __init__(self, document_id: str, field: str, reason: str):
        super().__init__(f"{document_id}: field '{field}' {reason}")
        self.document_id = document_id
        self.field = field
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {"document_id": self.document_id, "field": self.field, "reason": self.reason}


class BatchLimitExceeded(PersistenceError):
    """More than 500 operations were put in one atomic batch (chunking bug)."""
    kind = ErrorKind.BATCH_LIMIT


class InvalidBackendMode(PersistenceError):
    kind = ErrorKind.INVALID_INPUT

    def __init__(self, mode: Any):
        super().__init__(f"Invalid backend '{mode}'. Must be one of: mongodb, firestore, both")
        self.mode = mode


class UnknownCollection(PersistenceError):
    kind = ErrorKind.INVALID_INPUT

    def __init__(self, collection: Any):
        super().__init__(
            f"Unknown collection '{collection}'. Available collections: "
            "customers, waitlist, projects, dataGenerationJobs, or 'all'"
        )
        self.collection = collection


class DocumentNotFound(PersistenceError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, path: str):
        super().__init__(f"Document not found: {path}")
        self.path = path


class JobNotFound(PersistenceError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, job_id: str):
        super().__init__(f"Migration job not found: {job_id}")
        self.job_id = job_id


class DryRunNotResumable(PersistenceError):
    """A dry run writes no data or checkpoints, so there is nothing to resume."""

    kind = ErrorKind.INVALID_INPUT

    def __init__(self, job_id: str):
        super().__init__(
            f"Migration job {job_id} was a dry run and cannot be resumed; start a new migration instead"
        )


class MigrationCancelled(PersistenceError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Cancelled"):
        super().__init__(message)


class PartialDualWrite(PersistenceError):
    """
    Warning-level: the Firestore write succeeded but the MongoDB copy did not.

    Returned on WriteResult.warnings, not raised.
    """
    kind = ErrorKind.PARTIAL_DUAL_WRITE

    def __init__(self, collection: str, document_id: str, cause: BaseException):
        super().__init__(
            f"Dual-write to MongoDB failed for {collection}/{document_id}: {cause}",
            cause=cause,
        )
        self.collection = collection
        self.document_id = document_id


class VerificationDiscrepancy(PersistenceError):
    """
    A migrated document or count that does not match its source.

    Collected into the migration report; already-committed writes are kept.
    """
    kind = ErrorKind.VERIFICATION

    def __init__(
        self,
        collection: str,
        reason: str,
        document_id: Optional[str] = None,
        field: Optional[str] = None,
        expected: Any = None,
        actual: Any = None,
    ):
        where = f"{collection}/{document_id}" if document_id else collection
        super().__init__(f"{where}: {reason}")
        self.collection = collection
        self.reason = reason
        self.document_id = document_id
        self.field = field
        self.expected = expected
        self.actual = actual

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "reason": self.reason,
            "document_id": self.document_id,
            "field": self.field,
            "expected": self.expected,
            "actual": self.actual,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationDiscrepancy":
        return cls(
            collection=data["collection"],
            reason=data.get("reason", ""),
            document_id=data.get("document_id"),
            field=data.get("field"),
            expected=data.get("expected"),
            actual=data.get("actual"),
        )


_TRANSIENT_GOOGLE = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.GatewayTimeout,
)

_TRANSIENT_MONGO = (
    mongo_errors.AutoReconnect,
    mongo_errors.NetworkTimeout,
    mongo_errors.ServerSelectionTimeoutError,
    mongo_errors.ConnectionFailure,
    mongo_errors.ExecutionTimeout,
)


def classify_exception(exc: BaseException, context: str = "") -> PersistenceError:
    """Map a driver exception onto the persistence taxonomy."""
    if isinstance(exc, PersistenceError):
        return exc

    prefix = f"{context}: " if context else ""
    message = f"{prefix}{exc}"

    if isinstance(exc, gexc.ResourceExhausted):
        return QuotaExceeded(message, cause=exc)
    if isinstance(exc, gexc.NotFound):
        return DocumentNotFound(context or str(exc))
    if isinstance(exc, gexc.Aborted):
        return TransactionFailed(message, cause=exc)
    if isinstance(exc, _TRANSIENT_GOOGLE) or isinstance(exc, _TRANSIENT_MONGO):
        return StoreConnectionError(message, cause=exc)
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return StoreConnectionError(message, cause=exc)
    return StoreError(message, cause=exc)
