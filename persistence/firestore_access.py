"""
Syndatagen Firestore Access Layer
Query builder, cached list queries, cursor pagination, batched and
transactional writes. Used by the live application and the migration pipeline.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from google.api_core import exceptions as gexc
from google.cloud import firestore
from google.cloud.firestore_v1 import FieldFilter

from .cache import QueryCache, fingerprint
from .config import get_config
from .errors import (
    BatchLimitExceeded,
    DocumentNotFound,
    PersistenceError,
    TransactionFailed,
    classify_exception,
)
from .firestore_db import FirestoreStore
from .metrics import FirestoreMetrics
from .models import (
    BatchResult,
    ChunkResult,
    Document,
    Page,
    PageCursor,
    WriteKind,
    WriteOperation,
)
from .retry import RetryPolicy

logger = logging.getLogger("syndatagen.firestore")

# Firestore's limit for one atomic batch.
MAX_BATCH_OPERATIONS = 500

FILTER_OPERATORS = frozenset({
    "<", "<=", "==", "!=", ">=", ">",
    "array-contains", "array-contains-any", "in", "not-in",
})

ASCENDING = firestore.Query.ASCENDING
DESCENDING = firestore.Query.DESCENDING

Filter = Tuple[str, str, Any]
OrderSpec = Union[str, Tuple[str, str]]


def normalize_filters(filters: Optional[Iterable[Filter]]) -> List[Filter]:
    normalized = []
    for item in filters or []:
        field_path, op, value = item
        if op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {op}")
        normalized.append((field_path, op, value))
    return normalized


def normalize_order(order_by: Optional[Iterable[OrderSpec]]) -> List[Tuple[str, str]]:
    """Accept "field", "-field", ("field", "asc"|"desc"|ASCENDING|DESCENDING)."""
    normalized = []
    for item in order_by or []:
        if isinstance(item, str):
            if item.startswith("-"):
                normalized.append((item[1:], DESCENDING))
            else:
                normalized.append((item, ASCENDING))
            continue
        field_path, direction = item
        direction = str(direction).upper()
        if direction in ("ASC", ASCENDING):
            normalized.append((field_path, ASCENDING))
        elif direction in ("DESC", DESCENDING):
            normalized.append((field_path, DESCENDING))
        else:
            raise ValueError(f"Unsupported sort direction: {direction}")
    return normalized


class TransactionContext:
    """
    Handle passed to run_transaction callbacks.

    Reads go through the transaction; writes are recorded so the affected
    collections can be invalidated after commit.
    """

    def __init__(self, access: "FirestoreAccessLayer", transaction: Any, touched: Set[str]):
        self._access = access
        self._transaction = transaction
        self._touched = touched

    @property
    def transaction(self) -> Any:
        return self._transaction

    def get(self, collection: Any, document_id: str) -> Optional[Document]:
        store = self._access.store
        snapshot = store.doc(collection, document_id).get(transaction=self._transaction)
        if not snapshot.exists:
            return None
        return Document(id=snapshot.id, collection=store.collection_name(collection), data=snapshot.to_dict() or {})

    def set(self, collection: Any, document_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        self._transaction.set(self._ref(collection, document_id), data, merge=merge)

    def update(self, collection: Any, document_id: str, data: Dict[str, Any]) -> None:
        self._transaction.update(self._ref(collection, document_id), data)

    def delete(self, collection: Any, document_id: str) -> None:
        self._transaction.delete(self._ref(collection, document_id))

    def _ref(self, collection: Any, document_id: str):
        self._touched.add(self._access.store.collection_name(collection))
        return self._access.store.doc(collection, document_id)


class FirestoreAccessLayer:
    """
    Firestore reads and writes with caching, pagination and batching.

    - Single-document reads are always fresh.
    - List queries are cached by fingerprint until TTL expiry or a write to the
      same collection.
    - Every network call goes through the retry policy and is timed.
    """

    def __init__(
        self,
        store: Optional[FirestoreStore] = None,
        cache: Optional[QueryCache] = None,
        metrics: Optional[FirestoreMetrics] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.store = store or FirestoreStore()
        if cache is None:
            cache_config = get_config().cache
            cache = QueryCache(
                ttl_seconds=cache_config.ttl_seconds,
                max_entries=cache_config.max_entries,
                enabled=cache_config.enabled,
            )
        self.cache = cache
        self.metrics = metrics or FirestoreMetrics()
        self.retry = retry or RetryPolicy()

    # ==================== Reads ====================

    def get_document(self, path: str) -> Document:
        """Get a document by "collection/documentId" path. Raises DocumentNotFound."""
        parts = [p for p in path.strip("/").split("/") if p]
        if len(parts) != 2:
            raise ValueError(f"Expected 'collection/documentId', got: {path}")
        return self.get(parts[0], parts[1])

    def get(self, collection: Any, document_id: str) -> Document:
        name = self.store.collection_name(collection)
        ref = self.store.doc(collection, document_id)
        with self.metrics.timed("read", name):
            snapshot = self.retry.call(
                ref.get, timeout=self.store.timeout, context=f"{name}/{document_id}"
            )
        if not snapshot.exists:
            raise DocumentNotFound(f"{name}/{document_id}")
        return Document(id=snapshot.id, collection=name, data=snapshot.to_dict() or {})

    def get_many(self, collection: Any, document_ids: Sequence[str]) -> Dict[str, Document]:
        """Fetch several documents; missing ones are absent from the result."""
        name = self.store.collection_name(collection)
        found: Dict[str, Document] = {}
        ids = list(document_ids)
        for start in range(0, len(ids), 300):
            refs = [self.store.doc(collection, doc_id) for doc_id in ids[start:start + 300]]
            with self.metrics.timed("read", name):
                snapshots = self.retry.call(
                    lambda: list(self.store.client.get_all(refs, timeout=self.store.timeout)),
                    context=f"{name} get_all",
                )
            for snapshot in snapshots:
                if snapshot.exists:
                    found[snapshot.id] = Document(
                        id=snapshot.id, collection=name, data=snapshot.to_dict() or {}
                    )
        return found

    def query(
        self,
        collection: Any,
        filters: Optional[Iterable[Filter]] = None,
        order_by: Optional[Iterable[OrderSpec]] = None,
        limit: Optional[int] = None,
        select: Optional[Sequence[str]] = None,
        skip_cache: bool = False,
    ) -> List[Document]:
        """
        Run a list query.

        Args:
            collection: Logical or physical collection name
            filters: (field, operator, value) triples
            order_by: Sort fields, see normalize_order
            limit: Maximum number of documents
            select: Field projection; only these fields are fetched
            skip_cache: Bypass the query cache for this call

        Returns:
            Matching documents
        """
        name = self.store.collection_name(collection)
        filter_list = normalize_filters(filters)
        order = normalize_order(order_by)
        fields = list(select) if select else None

        key = fingerprint(name, filters=filter_list, order_by=order, limit=limit, select=fields)
        generation = self.cache.generation(name)
        if not skip_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        query = self._build(collection, filter_list, order)
        if fields:
            query = query.select(fields)
        if limit is not None:
            query = query.limit(limit)

        documents = self._stream(query, name)
        # A write that lands during the stream bumps the generation; set drops the result.
        self.cache.set(key, name, documents, generation=generation)
        return documents

    def query_with_pagination(
        self,
        collection: Any,
        order_by: Iterable[OrderSpec],
        page_size: int,
        start_after: Optional[PageCursor] = None,
        filters: Optional[Iterable[Filter]] = None,
    ) -> Page:
        """
        Keyset pagination anchored on the sort-key values of the previous page's
        last document, with the document id as tiebreaker.
        """
        if page_size <= 0:
            raise ValueError("page_size must be positive")

        name = self.store.collection_name(collection)
        order = normalize_order(order_by)
        if not order:
            raise ValueError("query_with_pagination requires at least one order_by field")
        if all(field_path != "__name__" for field_path, _ in order):
            order.append(("__name__", order[-1][1]))
        order_fields = tuple(field_path for field_path, _ in order)

        query = self._build(collection, normalize_filters(filters), order)
        if start_after is not None:
            if start_after.collection != name or start_after.order_fields != order_fields:
                raise ValueError("Cursor does not belong to this query")
            query = query.start_after(list(start_after.values))
        query = query.limit(page_size + 1)

        documents = self._stream(query, name)
        has_more = len(documents) > page_size
        items = documents[:page_size]

        last_doc = None
        if items:
            last = items[-1]
            last_doc = PageCursor(
                collection=name,
                order_fields=order_fields,
                values=tuple(last.get(f) for f in order_fields),
                document_id=last.id,
            )
        return Page(items=items, has_more=has_more, last_doc=last_doc)

    def count(self, collection: Any, filters: Optional[Iterable[Filter]] = None) -> int:
        """Server-side count aggregation."""
        name = self.store.collection_name(collection)
        query = self._build(collection, normalize_filters(filters), [])
        with self.metrics.timed("query", name):
            results = self.retry.call(
                query.count(alias="all").get, timeout=self.store.timeout, context=f"{name} count"
            )
        first = results[0]
        if isinstance(first, (list, tuple)):
            first = first[0]
        return int(first.value)

    def _build(self, collection: Any, filters: List[Filter], order: List[Tuple[str, str]]):
        query = self.store.col(collection)
        for field_path, op, value in filters:
            query = query.where(filter=FieldFilter(field_path, op, value))
        for field_path, direction in order:
            query = query.order_by(field_path, direction=direction)
        return query

    def _stream(self, query: Any, name: str) -> List[Document]:
        with self.metrics.timed("query", name):
            snapshots = self.retry.call(
                lambda: list(query.stream(timeout=self.store.timeout)), context=f"{name} query"
            )
        return [
            Document(id=snapshot.id, collection=name, data=snapshot.to_dict() or {})
            for snapshot in snapshots
        ]

    # ==================== Writes ====================

    def set_document(
        self, collection: Any, document_id: str, data: Dict[str, Any], merge: bool = False
    ) -> None:
        name = self.store.collection_name(collection)
        ref = self.store.doc(collection, document_id)
        with self.metrics.timed("write", name):
            self.retry.call(
                ref.set, data, merge=merge, timeout=self.store.timeout,
                context=f"{name}/{document_id}",
            )
        self.cache.invalidate_collection(name)

    def delete_document(self, collection: Any, document_id: str) -> None:
        name = self.store.collection_name(collection)
        ref = self.store.doc(collection, document_id)
        with self.metrics.timed("delete", name):
            self.retry.call(ref.delete, timeout=self.store.timeout, context=f"{name}/{document_id}")
        self.cache.invalidate_collection(name)

    def batch_write(self, collection: Any, operations: Iterable[WriteOperation]) -> BatchResult:
        """
        Write operations in atomic chunks of at most 500.

        Each chunk's outcome is recorded before the next chunk is attempted;
        chunks touch disjoint documents, so a failed chunk does not stop the rest.
        """
        name = self.store.collection_name(collection)
        ops = list(operations)
        result = BatchResult(collection=name)

        for index, start in enumerate(range(0, len(ops), MAX_BATCH_OPERATIONS)):
            chunk = ops[start:start + MAX_BATCH_OPERATIONS]
            try:
                self.retry.call(
                    self._commit_chunk, collection, chunk, context=f"{name} batch {index}"
                )
                result.chunks.append(ChunkResult(index=index, size=len(chunk), committed=True))
            except BatchLimitExceeded:
                raise
            except PersistenceError as e:
                logger.error(f"Batch {index} on {name} failed ({len(chunk)} ops): {e}")
                result.chunks.append(ChunkResult(
                    index=index,
                    size=len(chunk),
                    committed=False,
                    error=str(e),
                    error_kind=e.kind.value,
                ))

        if result.committed_operations:
            self.cache.invalidate_collection(name)
        return result

    def _commit_chunk(self, collection: Any, chunk: List[WriteOperation]) -> None:
        if len(chunk) > MAX_BATCH_OPERATIONS:
            raise BatchLimitExceeded(
                f"Refusing to commit {len(chunk)} operations in one batch (max {MAX_BATCH_OPERATIONS})"
            )
        name = self.store.collection_name(collection)
        # Fresh batch per attempt so a retried commit never carries stale writes.
        batch = self.store.client.batch()
        for op in chunk:
            ref = self.store.doc(collection, op.document_id)
            if op.kind == WriteKind.CREATE:
                batch.create(ref, op.data)
            elif op.kind == WriteKind.SET:
                batch.set(ref, op.data, merge=op.merge)
            elif op.kind == WriteKind.UPDATE:
                batch.update(ref, op.data)
            elif op.kind == WriteKind.DELETE:
                batch.delete(ref)
        with self.metrics.timed("write", name):
            batch.commit(timeout=self.store.timeout)

    def run_transaction(self, fn: Callable[[TransactionContext], Any], max_attempts: int = 5) -> Any:
        """
        Run a read-modify-write callback in a Firestore transaction.

        Contention retries are handled by the client library; only
        non-retryable failures reach the caller.
        """
        touched: Set[str] = set()

        def body(transaction):
            touched.clear()
            return fn(TransactionContext(self, transaction, touched))

        transaction = self.store.client.transaction(max_attempts=max_attempts)
        try:
            with self.metrics.timed("transaction", "*"):
                result = firestore.transactional(body)(transaction)
        except gexc.GoogleAPICallError as e:
            raise classify_exception(e, "transaction") from e
        except ValueError as e:
            if str(e).startswith("Failed to commit transaction"):
                raise TransactionFailed(str(e), cause=e) from e
            raise

        for name in touched:
            self.cache.invalidate_collection(name)
        return result
