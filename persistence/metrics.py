"""
Firestore operation metrics.

Counts, durations and failures per operation kind, globally and per
collection. Slow operations are logged.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger("syndatagen.metrics")

OPERATIONS = ("read", "query", "write", "delete", "transaction")
SLOW_OPERATION_MS = 1000.0


@dataclass
class OperationMetrics:
    count: int = 0
    total_duration_ms: float = 0.0
    failures: int = 0
    last_error: Optional[str] = None

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.count if self.count else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "total_duration_ms": round(self.total_duration_ms, 2),
            "average_duration_ms": round(self.average_duration_ms, 2),
            "failures": self.failures,
            "failure_rate": (self.failures / self.count) if self.count else 0.0,
            "last_error": self.last_error,
        }


def _empty() -> Dict[str, OperationMetrics]:
    return {op: OperationMetrics() for op in OPERATIONS}


@dataclass
class FirestoreMetrics:
    """Thread-safe metrics registry, one per access layer."""
    started_at: float = field(default_factory=time.time)
    _global: Dict[str, OperationMetrics] = field(default_factory=_empty)
    _collections: Dict[str, Dict[str, OperationMetrics]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(
        self,
        operation: str,
        collection: str,
        duration_ms: float,
        success: bool,
        error: Optional[BaseException] = None,
    ) -> None:
        with self._lock:
            targets = (self._global[operation], self._collections.setdefault(collection, _empty())[operation])
            for metric in targets:
                metric.count += 1
                metric.total_duration_ms += duration_ms
                if not success:
                    metric.failures += 1
                    metric.last_error = str(error) if error else None

        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow Firestore {operation} on {collection}: {duration_ms:.0f}ms")
        if not success:
            logger.error(f"Firestore {operation} error on {collection}: {error}")

    @contextmanager
    def timed(self, operation: str, collection: str) -> Iterator[None]:
        """Time the enclosed block and record it, re-raising any failure."""
        start = time.perf_counter()
        try:
            yield
        except Exception as e:
            self.record(operation, collection, (time.perf_counter() - start) * 1000, False, e)
            raise
        self.record(operation, collection, (time.perf_counter() - start) * 1000, True)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "started_at": self.started_at,
                "global": {op: m.to_dict() for op, m in self._global.items()},
                "collections": {
                    name: {op: m.to_dict() for op, m in ops.items()}
                    for name, ops in self._collections.items()
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._global = _empty()
            self._collections = {}
            self.started_at = time.time()
