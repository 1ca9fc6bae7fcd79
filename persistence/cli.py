"""
syndatagen-db: backend switching and MongoDB -> Firestore migration.

Usage:
    syndatagen-db use <collection|all> <mongodb|firestore|both> [--persist]
    syndatagen-db status
    syndatagen-db dual-write [--collections=customers,waitlist] [--persist]
    syndatagen-db migrate <collections...> [--batch-size=N] [--resume=<jobId>]
                          [--dry-run] [--on-failure=skip-document|abort-collection|abort-job]
    syndatagen-db gcp enable|disable [--persist]
    syndatagen-db verify [collections...]
    syndatagen-db report <jobId>

Exit codes:
    migrate: 0 completed, 1 partially completed, 2 failed
    verify:  0 counts match, 1 discrepancies
    others:  0 ok, 1 invalid arguments
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from .checkpoint import CheckpointStore
from .config import get_config
from .errors import JobNotFound, PersistenceError
from .firestore_access import FirestoreAccessLayer
from .firestore_db import FirestoreStore
from .migration import MigrationOptions, MigrationPipeline, format_report
from .models import BackendMode, CollectionName, FailurePolicy, MigrationStatus
from .mongo_store import MongoStore
from .router import BackendRouter

logger = logging.getLogger("syndatagen.cli")

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FAILED = 2

_MIGRATE_EXIT_CODES = {
    MigrationStatus.COMPLETED: EXIT_OK,
    MigrationStatus.PARTIALLY_COMPLETED: EXIT_PARTIAL,
    MigrationStatus.FAILED: EXIT_FAILED,
}


class ArgumentParser(argparse.ArgumentParser):
    """argparse exits 2 on bad usage; invalid arguments exit 1 here."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _make_router() -> BackendRouter:
    config = get_config()
    firestore = None
    if config.audit.enabled and config.has_firestore:
        firestore = FirestoreAccessLayer(FirestoreStore())
    return BackendRouter(firestore=firestore)


def _make_pipeline() -> MigrationPipeline:
    store = FirestoreStore()
    if not store.is_ready:
        raise PersistenceError("Firestore not ready. Check FIREBASE_PROJECT_ID and credentials.")
    mongo = MongoStore()
    mongo.ping()
    return MigrationPipeline(mongo=mongo, firestore=FirestoreAccessLayer(store))


def _make_checkpoints() -> CheckpointStore:
    return CheckpointStore()


def _split_collections(values: Optional[List[str]]) -> List[str]:
    names: List[str] = []
    for value in values or []:
        names.extend(part.strip() for part in value.split(",") if part.strip())
    return names


# ==================== Commands ====================

def cmd_use(args) -> int:
    router = _make_router()
    try:
        updated = router.set_backend(args.collection, args.mode, persist=args.persist, actor=args.actor)
    except PersistenceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    for collection in updated:
        print(f"{collection.value}: {router.get_backend(collection).value}")
    if args.persist:
        print(f"Saved to {router.settings.path}")
    return EXIT_OK


def cmd_status(args) -> int:
    router = _make_router()
    status = router.status()
    if args.json:
        print(json.dumps({
            "default": router.default_mode.value,
            "collections": {c.value: m.value for c, m in status.items()},
        }, indent=2))
        return EXIT_OK

    print(f"Default backend: {router.default_mode.value}")
    width = max(len(c.value) for c in CollectionName)
    for collection, mode in status.items():
        print(f"  {collection.value.ljust(width)}  {mode.value}")
    return EXIT_OK


def cmd_dual_write(args) -> int:
    router = _make_router()
    collections = _split_collections(args.collections) or [c.value for c in CollectionName]
    try:
        for collection in collections:
            router.set_backend(collection, BackendMode.BOTH, persist=args.persist, actor=args.actor)
    except PersistenceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Dual-write enabled for: {', '.join(collections)}")
    return EXIT_OK


def cmd_gcp(args) -> int:
    router = _make_router()
    mode = BackendMode.FIRESTORE if args.action == "enable" else BackendMode.MONGODB
    router.set_global_default(mode, persist=args.persist, actor=args.actor)
    print(f"GCP features {'enabled' if mode == BackendMode.FIRESTORE else 'disabled'}; "
          f"default backend is {mode.value}")
    return EXIT_OK


def cmd_migrate(args) -> int:
    collections = _split_collections(args.collections)
    if not collections and not args.resume:
        print("Error: give at least one collection, or --resume=<jobId>", file=sys.stderr)
        return EXIT_FAILED

    cancel = threading.Event()
    options = MigrationOptions.from_config(
        batch_size=args.batch_size,
        resume_from_job_id=args.resume,
        dry_run=args.dry_run,
        on_failure=args.on_failure,
        max_workers=args.max_workers,
        cancel_event=cancel,
    )

    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        def _on_interrupt(signum, frame):
            logger.warning("Interrupt received, stopping after the current batch...")
            cancel.set()
        previous_handler = signal.signal(signal.SIGINT, _on_interrupt)

    try:
        pipeline = _make_pipeline()
        job = pipeline.run(collections, options)
    except PersistenceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    print(format_report(job))
    return _MIGRATE_EXIT_CODES[job.status]


def cmd_verify(args) -> int:
    collections = _split_collections(args.collections) or [c.value for c in CollectionName]
    try:
        checks = _make_pipeline().verify(collections)
    except PersistenceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for check in checks:
        mark = "OK" if check.ok else "MISMATCH"
        print(f"{check.collection.value}: MongoDB={check.source_count} "
              f"Firestore={check.target_count} {mark}")
    return EXIT_OK if all(check.ok for check in checks) else 1


def cmd_report(args) -> int:
    try:
        job = _make_checkpoints().load(args.job_id)
    except JobNotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps(job.to_dict(), indent=2, default=str))
    else:
        print(format_report(job))
    return EXIT_OK


# ==================== Entry point ====================

def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="syndatagen-db",
        description="Switch collection backends and migrate MongoDB data to Firestore.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "--actor",
        default=os.getenv("USER", "cli"),
        help="Identity recorded in the audit trail",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    use = subparsers.add_parser("use", help="Route a collection to a backend")
    use.add_argument("collection", help="Collection name or 'all'")
    use.add_argument("mode", help="mongodb, firestore or both")
    use.add_argument("--persist", action="store_true", help="Write the setting to the settings file")
    use.set_defaults(func=cmd_use)

    status = subparsers.add_parser("status", help="Show the backend of every collection")
    status.add_argument("--json", action="store_true")
    status.set_defaults(func=cmd_status)

    dual = subparsers.add_parser("dual-write", help="Serve collections from both backends")
    dual.add_argument("--collections", action="append", help="Comma-separated collection names")
    dual.add_argument("--persist", action="store_true")
    dual.set_defaults(func=cmd_dual_write)

    migrate = subparsers.add_parser("migrate", help="Migrate collections to Firestore")
    migrate.add_argument("collections", nargs="*", help="Collections to migrate")
    migrate.add_argument("--batch-size", type=int, help="Documents per batch (max 500)")
    migrate.add_argument("--resume", metavar="JOB_ID", help="Resume a stored job")
    migrate.add_argument("--dry-run", action="store_true", help="Extract, transform and validate only")
    migrate.add_argument(
        "--on-failure",
        choices=[p.value for p in FailurePolicy],
        default=FailurePolicy.SKIP_DOCUMENT.value,
    )
    migrate.add_argument("--max-workers", type=int, help="Collections migrated concurrently (max 4)")
    migrate.set_defaults(func=cmd_migrate)

    gcp = subparsers.add_parser("gcp", help="Toggle the global default between Firestore and MongoDB")
    gcp.add_argument("action", choices=["enable", "disable"])
    gcp.add_argument("--persist", action="store_true")
    gcp.set_defaults(func=cmd_gcp)

    verify = subparsers.add_parser("verify", help="Compare source and target document counts")
    verify.add_argument("collections", nargs="*")
    verify.set_defaults(func=cmd_verify)

    report = subparsers.add_parser("report", help="Print a stored migration report")
    report.add_argument("job_id")
    report.add_argument("--json", action="store_true")
    report.set_defaults(func=cmd_report)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
