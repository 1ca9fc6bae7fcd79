"""
Syndatagen Migration Pipeline
Moves collections from MongoDB to Firestore:

    extract -> transform -> validate -> load -> verify -> report

Batches inside a collection run strictly in order; separate collections run
on a small thread pool. The job is checkpointed after every committed batch,
so an interrupted run can be resumed with `resume_from_job_id`.
"""

import logging
import random
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from .audit import AuditTrail
from .checkpoint import CheckpointStore
from .config import get_config
from .errors import (
    DryRunNotResumable,
    MigrationCancelled,
    PersistenceError,
    StoreError,
    ValidationError,
    VerificationDiscrepancy,
)
from .firestore_access import MAX_BATCH_OPERATIONS
from .models import (
    CollectionName,
    CollectionPhase,
    CollectionState,
    FailurePolicy,
    MigrationJob,
    MigrationStatus,
    TargetRecord,
    WriteOperation,
)
from .transformers import transform
from .validation import validate

logger = logging.getLogger("syndatagen.migration")

# Upper bound on concurrent collections, to stay under Firestore's write quota.
MAX_WORKERS = 4

CANCELLED_REASON = "Cancelled"


@dataclass
class MigrationOptions:
    """Options for one pipeline run."""
    batch_size: int = 500
    resume_from_job_id: Optional[str] = None
    dry_run: bool = False
    on_failure: FailurePolicy = FailurePolicy.SKIP_DOCUMENT
    max_workers: int = MAX_WORKERS
    verify_sample_size: int = 10
    cancel_event: Optional[threading.Event] = field(default=None, repr=False)

    @classmethod
    def from_config(cls, **overrides: Any) -> "MigrationOptions":
        """Defaults from MIGRATION_* settings, with explicit overrides on top."""
        migration = get_config().migration
        values: Dict[str, Any] = {
            "batch_size": migration.batch_size,
            "max_workers": migration.max_workers,
            "verify_sample_size": migration.verify_sample_size,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        if "on_failure" in values:
            values["on_failure"] = FailurePolicy(values["on_failure"])
        return cls(**values)

    @property
    def effective_batch_size(self) -> int:
        return max(1, min(int(self.batch_size), MAX_BATCH_OPERATIONS))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_size": self.effective_batch_size,
            "resume_from_job_id": self.resume_from_job_id,
            "dry_run": self.dry_run,
            "on_failure": self.on_failure.value,
            "max_workers": self.max_workers,
            "verify_sample_size": self.verify_sample_size,
        }


@dataclass
class CountCheck:
    """Source vs target document count for one collection."""
    collection: CollectionName
    source_count: int
    target_count: int

    @property
    def ok(self) -> bool:
        return self.source_count == self.target_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection.value,
            "source_count": self.source_count,
            "target_count": self.target_count,
            "ok": self.ok,
        }


class Reservoir:
    """Fixed-size uniform random sample over a stream (Algorithm R)."""

    def __init__(self, size: int, rng: Optional[random.Random] = None):
        self.size = max(0, size)
        self.items: List[Any] = []
        self.seen = 0
        self._rng = rng or random.Random()

    def offer(self, item: Any) -> None:
        self.seen += 1
        if len(self.items) < self.size:
            self.items.append(item)
            return
        j = self._rng.randrange(self.seen)
        if j < self.size:
            self.items[j] = item


@dataclass
class _Run:
    """Shared state of one run, handed to every collection worker."""
    job: MigrationJob
    options: MigrationOptions
    cancel: threading.Event
    abort: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)


class _BatchFailed(Exception):
    """A batch could not be extracted or loaded after retries."""

    def __init__(self, error: PersistenceError):
        super().__init__(str(error))
        self.error = error


class MigrationPipeline:
    """
    MongoDB -> Firestore migration.

    Args:
        mongo: MongoStore (source)
        firestore: FirestoreAccessLayer (target)
        checkpoints: Where job records are persisted
        audit: Audit trail for job start/finish
        rng: Random source for verification sampling
    """

    def __init__(
        self,
        mongo: Any,
        firestore: Any,
        checkpoints: Optional[CheckpointStore] = None,
        audit: Optional[AuditTrail] = None,
        rng: Optional[random.Random] = None,
    ):
        self.mongo = mongo
        self.firestore = firestore
        self.checkpoints = checkpoints or CheckpointStore()
        self.audit = audit or AuditTrail(access=firestore)
        self._rng = rng or random.Random()

    # ==================== Public API ====================

    def run(
        self,
        collections: Iterable[Any],
        options: Optional[MigrationOptions] = None,
    ) -> MigrationJob:
        """
        Migrate collections, or resume a stored job.

        Args:
            collections: Collection names; ignored when resuming (the stored job decides)
            options: Batch size, failure policy, dry run, resume id, cancellation

        Returns:
            The finished job record (also persisted in the checkpoint store)
        """
        options = options or MigrationOptions()
        if options.resume_from_job_id:
            job = self._prepare_resume(options, collections)
        else:
            names = list(dict.fromkeys(CollectionName.parse(c) for c in collections))
            if not names:
                raise ValueError("No collections to migrate")
            job = MigrationJob(
                id=str(uuid.uuid4()),
                collections=names,
                dry_run=options.dry_run,
                options=options.to_dict(),
            )

        run = _Run(job=job, options=options, cancel=options.cancel_event or threading.Event())
        self._save(run)

        self.audit.record(
            "migration.start",
            ",".join(c.value for c in job.collections),
            metadata={"job_id": job.id, **job.options},
        )
        logger.info(
            f"Migration {job.id} started: {', '.join(c.value for c in job.collections)} "
            f"(batch size {options.effective_batch_size}{', dry run' if options.dry_run else ''})"
        )

        pending = [c for c in job.collections if job.states[c].phase != CollectionPhase.COMPLETED]
        if pending:
            workers = max(1, min(len(pending), options.max_workers, MAX_WORKERS))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="migrate") as pool:
                futures = {pool.submit(self._migrate_collection, run, c): c for c in pending}
                for future in as_completed(futures):
                    collection = futures[future]
                    try:
                        future.result()
                    except Exception as e:
                        logger.exception(f"Unexpected error migrating {collection.value}")
                        with run.lock:
                            state = job.states[collection]
                            state.phase = CollectionPhase.FAILED
                            state.failure_reason = f"Unexpected error: {e}"
                            state.errors.append({"kind": "store", "message": str(e)})

        self._finish(run)
        return job

    def verify(self, collections: Iterable[Any]) -> List[CountCheck]:
        """Compare MongoDB source counts with Firestore target counts."""
        checks = []
        for collection in collections:
            name = CollectionName.parse(collection)
            check = CountCheck(
                collection=name,
                source_count=self.mongo.count(name),
                target_count=self.firestore.count(name),
            )
            level = logging.INFO if check.ok else logging.WARNING
            logger.log(
                level,
                f"{name.value}: MongoDB={check.source_count} Firestore={check.target_count}",
            )
            checks.append(check)
        return checks

    def load_job(self, job_id: str) -> MigrationJob:
        return self.checkpoints.load(job_id)

    # ==================== Job lifecycle ====================

    def _prepare_resume(self, options: MigrationOptions, collections: Iterable[Any]) -> MigrationJob:
        job = self.checkpoints.load(options.resume_from_job_id)
        if job.dry_run:
            raise DryRunNotResumable(job.id)
        requested = {CollectionName.parse(c) for c in collections}
        if requested and requested != set(job.collections):
            logger.warning(
                f"Resuming {job.id} with its stored collections "
                f"({', '.join(c.value for c in job.collections)}); ignoring the ones given"
            )

        job.status = MigrationStatus.RUNNING
        job.completed_at = None
        job.failure_reason = None
        job.dry_run = options.dry_run
        job.options = {**job.options, **options.to_dict()}
        for state in job.states.values():
            if state.phase != CollectionPhase.COMPLETED:
                state.phase = CollectionPhase.RESUMING
                state.failure_reason = None
        logger.info(f"Resuming migration {job.id}")
        return job

    def _finish(self, run: _Run) -> None:
        job = run.job
        with run.lock:
            job.status = self._final_status(run)
            if run.cancel.is_set():
                job.failure_reason = CANCELLED_REASON
            elif run.abort.is_set():
                job.failure_reason = next(
                    (s.failure_reason for s in job.states.values() if s.failure_reason),
                    "Aborted",
                )
            job.completed_at = time.time()
        self._save(run)

        self.audit.record(
            "migration.finish",
            ",".join(c.value for c in job.collections),
            metadata={"job_id": job.id, "status": job.status.value},
        )
        logger.info(f"Migration {job.id} finished: {job.status.value}")

    @staticmethod
    def _final_status(run: _Run) -> MigrationStatus:
        states = list(run.job.states.values())
        if run.cancel.is_set() or run.abort.is_set():
            return MigrationStatus.FAILED
        completed = [s for s in states if s.phase == CollectionPhase.COMPLETED]
        if not completed:
            return MigrationStatus.FAILED
        clean = len(completed) == len(states) and all(
            s.stats.validation_failures == 0 and not s.discrepancies for s in states
        )
        return MigrationStatus.COMPLETED if clean else MigrationStatus.PARTIALLY_COMPLETED

    def _save(self, run: _Run) -> None:
        with run.lock:
            self.checkpoints.save(run.job)

    def _set_phase(self, run: _Run, state: CollectionState, phase: CollectionPhase) -> None:
        with run.lock:
            state.phase = phase

    # ==================== Per-collection worker ====================

    def _migrate_collection(self, run: _Run, collection: CollectionName) -> None:
        state = run.job.states[collection]
        options = run.options
        started = time.perf_counter()
        sample = Reservoir(options.verify_sample_size, self._rng)
        cursor = state.checkpoint

        try:
            while True:
                if run.cancel.is_set():
                    raise MigrationCancelled(CANCELLED_REASON)
                if run.abort.is_set():
                    raise MigrationCancelled("Job aborted")

                self._set_phase(run, state, CollectionPhase.EXTRACTING)
                try:
                    records, next_cursor = self.mongo.find_page(
                        collection, after=cursor, limit=options.effective_batch_size
                    )
                except PersistenceError as e:
                    raise _BatchFailed(e) from e
                if not records:
                    break

                self._set_phase(run, state, CollectionPhase.TRANSFORMING)
                targets: List[TargetRecord] = []
                failures: List[ValidationError] = []
                for record in records:
                    try:
                        targets.append(transform(record))
                    except ValueError as e:
                        failures.append(ValidationError(str(record.source_id), "_id", str(e)))

                self._set_phase(run, state, CollectionPhase.VALIDATING)
                valid: List[TargetRecord] = []
                failed_ids = {f.document_id for f in failures}
                for target in targets:
                    errors = validate(target)
                    if errors:
                        failures.extend(errors)
                        failed_ids.add(target.document_id)
                    else:
                        valid.append(target)

                if failures and options.on_failure != FailurePolicy.SKIP_DOCUMENT:
                    with run.lock:
                        self._count_batch(state, len(records), failed_ids, failures)
                    raise failures[0]

                committed = 0
                if valid and not options.dry_run:
                    self._set_phase(run, state, CollectionPhase.LOADING)
                    committed = self._load(collection, valid)

                with run.lock:
                    self._count_batch(state, len(records), failed_ids, failures)
                    if not options.dry_run:
                        state.stats.loaded += committed
                        if committed:
                            state.load_batches.append(committed)
                            state.batches_committed += 1
                        state.checkpoint = next_cursor
                if not options.dry_run:
                    for target in valid:
                        sample.offer(target)
                cursor = next_cursor
                self._save(run)

                logger.info(
                    f"{collection.value}: batch of {len(records)} "
                    f"({committed} loaded, {len(failed_ids)} invalid)"
                )

            if not options.dry_run:
                self._set_phase(run, state, CollectionPhase.VERIFYING)
                self._verify_collection(run, collection, state, sample)

            self._set_phase(run, state, CollectionPhase.COMPLETED)

        except MigrationCancelled as e:
            self._fail(run, state, e.message, e)
        except ValidationError as e:
            self._fail(run, state, f"Validation failed: {e}", e)
        except _BatchFailed as e:
            self._fail(run, state, f"Batch failed: {e.error}", e.error)
        except PersistenceError as e:
            self._fail(run, state, str(e), e)
        finally:
            with run.lock:
                state.stats.duration_ms += int((time.perf_counter() - started) * 1000)
            self._save(run)

    def _count_batch(
        self,
        state: CollectionState,
        extracted: int,
        failed_ids: Set[str],
        failures: List[ValidationError],
    ) -> None:
        # Every extracted document enters transformation; a failed transform is a validation failure.
        state.stats.extracted += extracted
        state.stats.transformed += extracted
        state.stats.validation_failures += len(failed_ids)
        state.failed_documents.extend(f.to_dict() for f in failures)

    def _load(self, collection: CollectionName, targets: List[TargetRecord]) -> int:
        operations = [WriteOperation.set(t.document_id, t.data) for t in targets]
        result = self.firestore.batch_write(collection, operations)
        if not result.all_committed:
            chunk = result.failed_chunks[0]
            raise _BatchFailed(StoreError(f"{collection.value} load failed: {chunk.error}"))
        return result.committed_operations

    def _fail(self, run: _Run, state: CollectionState, reason: str, error: PersistenceError) -> None:
        with run.lock:
            state.phase = CollectionPhase.FAILED
            state.failure_reason = reason
            state.errors.append(error.to_dict())
        logger.error(f"{state.collection.value} failed: {reason}")

        if isinstance(error, MigrationCancelled):
            return
        if run.options.on_failure == FailurePolicy.ABORT_JOB:
            run.abort.set()

    # ==================== Verification ====================

    def _verify_collection(
        self,
        run: _Run,
        collection: CollectionName,
        state: CollectionState,
        sample: Reservoir,
    ) -> None:
        discrepancies: List[VerificationDiscrepancy] = []
        loaded = state.stats.loaded

        source_count = self.mongo.count(collection)
        if state.stats.extracted < source_count:
            discrepancies.append(VerificationDiscrepancy(
                collection.value, "extracted fewer documents than the source holds",
                expected=source_count, actual=state.stats.extracted,
            ))

        target_count = self.firestore.count(collection)
        if target_count < loaded:
            discrepancies.append(VerificationDiscrepancy(
                collection.value, "document count below loaded",
                expected=loaded, actual=target_count,
            ))

        if sample.items:
            found = self.firestore.get_many(collection, [t.document_id for t in sample.items])
            for expected in sample.items:
                actual = found.get(expected.document_id)
                if actual is None:
                    discrepancies.append(VerificationDiscrepancy(
                        collection.value, "document missing", document_id=expected.document_id,
                    ))
                    continue
                for field_name, value in expected.data.items():
                    if actual.data.get(field_name) != value:
                        discrepancies.append(VerificationDiscrepancy(
                            collection.value, "field mismatch",
                            document_id=expected.document_id, field=field_name,
                            expected=value, actual=actual.data.get(field_name),
                        ))

        for discrepancy in discrepancies:
            logger.warning(f"Verification: {discrepancy}")

        with run.lock:
            state.stats.verified = min(target_count, loaded)
            state.discrepancies.extend(discrepancies)


def format_report(job: MigrationJob) -> str:
    """Human-readable job report."""
    lines = [
        f"Migration job {job.id}",
        f"  status: {job.status.value}" + (f" ({job.failure_reason})" if job.failure_reason else ""),
        f"  dry run: {'yes' if job.dry_run else 'no'}",
    ]
    if job.completed_at:
        lines.append(f"  duration: {job.completed_at - job.started_at:.1f}s")

    for collection in job.collections:
        state = job.states[collection]
        stats = state.stats
        lines.append(f"  {collection.value}: {state.phase.value}")
        lines.append(
            f"    extracted={stats.extracted} transformed={stats.transformed} "
            f"validation_failures={stats.validation_failures} loaded={stats.loaded} "
            f"verified={stats.verified} duration_ms={stats.duration_ms}"
        )
        if state.load_batches:
            lines.append(f"    load batches: {state.load_batches}")
        if state.failure_reason:
            lines.append(f"    failure: {state.failure_reason}")
        for failure in state.failed_documents:
            lines.append(
                f"    invalid {failure['document_id']}: {failure['field']} {failure['reason']}"
            )
        for discrepancy in state.discrepancies:
            lines.append(f"    discrepancy: {discrepancy}")
    return "\n".join(lines)
