"""
Shared fixtures: isolated configuration, in-memory stores, a ready-made
access layer and router.
"""

import random

import pytest

from persistence import firestore_access
from persistence.audit import AuditTrail
from persistence.cache import QueryCache
from persistence.checkpoint import CheckpointStore
from persistence.config import AuditConfig, FirestoreConfig, reset_config
from persistence.firestore_access import FirestoreAccessLayer
from persistence.firestore_db import FirestoreStore
from persistence.metrics import FirestoreMetrics
from persistence.migration import MigrationPipeline
from persistence.retry import RetryPolicy
from persistence.router import BackendRouter, BackendSettingsFile, RouterConfig

from tests.fakes import FakeFirestoreClient, FakeMongoStore, fake_transactional


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Point every setting at the test's tmp dir and drop cached config."""
    for key in (
        "DEFAULT_COLLECTION_BACKEND",
        "NEXT_PUBLIC_ENABLE_GCP_FEATURES",
        "COLLECTION_CUSTOMERS_BACKEND",
        "COLLECTION_WAITLIST_BACKEND",
        "COLLECTION_PROJECTS_BACKEND",
        "COLLECTION_DATAGENERATIONJOBS_BACKEND",
        "AUDIT_LOG_ENABLED",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("MONGODB_URI", "mongodb://localhost:27017")
    monkeypatch.setenv("FIREBASE_PROJECT_ID", "syndatagen-test")
    monkeypatch.setenv("BACKEND_CONFIG_PATH", str(tmp_path / "backend.env"))
    monkeypatch.setenv("MIGRATION_CHECKPOINT_DIR", str(tmp_path / "jobs"))
    reset_config()
    yield
    reset_config()


@pytest.fixture
def fake_client():
    return FakeFirestoreClient()


@pytest.fixture
def firestore_store(fake_client):
    return FirestoreStore(config=FirestoreConfig(project_id="syndatagen-test"), client=fake_client)


@pytest.fixture
def access(firestore_store, monkeypatch):
    monkeypatch.setattr(firestore_access.firestore, "transactional", fake_transactional)
    return FirestoreAccessLayer(
        store=firestore_store,
        cache=QueryCache(ttl_seconds=60),
        metrics=FirestoreMetrics(),
        retry=RetryPolicy.no_wait(),
    )


@pytest.fixture
def mongo():
    return FakeMongoStore()


@pytest.fixture
def audit():
    return AuditTrail(access=None, config=AuditConfig(enabled=False))


@pytest.fixture
def settings_file(tmp_path):
    return BackendSettingsFile(tmp_path / "backend.env")


@pytest.fixture
def router(access, mongo, settings_file, audit):
    return BackendRouter(
        config=RouterConfig(),
        firestore=access,
        mongo=mongo,
        settings_file=settings_file,
        audit=audit,
    )


@pytest.fixture
def checkpoints(tmp_path):
    return CheckpointStore(tmp_path / "jobs")


@pytest.fixture
def pipeline(mongo, access, checkpoints, audit):
    return MigrationPipeline(
        mongo=mongo,
        firestore=access,
        checkpoints=checkpoints,
        audit=audit,
        rng=random.Random(7),
    )
