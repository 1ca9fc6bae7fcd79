"""Tests for backend routing, persisted selections and dual-write."""

import pytest
from google.api_core import exceptions as gexc

from persistence.audit import AuditTrail
from persistence.config import AuditConfig
from persistence.errors import (
    DocumentNotFound,
    InvalidBackendMode,
    PartialDualWrite,
    StoreError,
    UnknownCollection,
)
from persistence.models import BackendMode, CollectionName
from persistence.router import (
    DEFAULT_BACKEND_KEY,
    GCP_FEATURES_KEY,
    BackendRouter,
    BackendSettingsFile,
    RouterConfig,
)


class TestSelection:
    @pytest.mark.parametrize("collection", list(CollectionName))
    @pytest.mark.parametrize("mode", list(BackendMode))
    def test_set_then_get(self, router, collection, mode):
        router.set_backend(collection.value, mode.value)
        assert router.get_backend(collection) == mode

    def test_default_applies_without_override(self, router):
        assert router.get_backend("customers") == BackendMode.MONGODB
        router.set_global_default("firestore")
        assert router.get_backend("customers") == BackendMode.FIRESTORE

    def test_override_beats_default(self, router):
        router.set_backend("projects", "both")
        router.set_global_default("firestore")
        assert router.get_backend("projects") == BackendMode.BOTH

    def test_all_sets_every_collection(self, router):
        updated = router.set_backend("all", "firestore")
        assert updated == list(CollectionName)
        assert set(router.status().values()) == {BackendMode.FIRESTORE}

    def test_mode_is_case_insensitive(self, router):
        router.set_backend("waitlist", " Firestore ")
        assert router.get_backend("waitlist") == BackendMode.FIRESTORE

    def test_invalid_mode(self, router):
        with pytest.raises(InvalidBackendMode):
            router.set_backend("customers", "postgres")
        assert router.get_backend("customers") == BackendMode.MONGODB

    def test_unknown_collection(self, router):
        with pytest.raises(UnknownCollection):
            router.set_backend("invoices", "firestore")

    def test_get_backend_never_raises(self, router):
        router.set_global_default("both")
        assert router.get_backend("invoices") == BackendMode.BOTH

    def test_changes_are_audited(self, router):
        router.set_backend("customers", "both", actor="alice")
        entry = router.audit.recent(1)[0]
        assert entry["action"] == "backend.set"
        assert entry["resource"] == "customers"
        assert entry["actor"] == "alice"
        assert entry["metadata"]["previous"] == {"customers": "mongodb"}


class TestPersistence:
    def test_persist_writes_settings_file(self, router, settings_file):
        router.set_backend("dataGenerationJobs", "firestore", persist=True)
        assert settings_file.read() == {"COLLECTION_DATAGENERATIONJOBS_BACKEND": "firestore"}

    def test_without_persist_nothing_is_written(self, router, settings_file):
        router.set_backend("customers", "firestore")
        assert not settings_file.path.exists()

    def test_update_keeps_unrelated_lines(self, settings_file):
        settings_file.path.write_text(
            "# comment\nMONGODB_URI=mongodb://db\nexport COLLECTION_CUSTOMERS_BACKEND=mongodb\n"
        )
        settings_file.update({"COLLECTION_CUSTOMERS_BACKEND": "both", "COLLECTION_WAITLIST_BACKEND": "firestore"})

        assert settings_file.path.read_text() == (
            "# comment\n"
            "MONGODB_URI=mongodb://db\n"
            "COLLECTION_CUSTOMERS_BACKEND=both\n"
            "COLLECTION_WAITLIST_BACKEND=firestore\n"
        )

    def test_persisted_selection_survives_restart(self, router, settings_file):
        router.set_backend("projects", "both", persist=True)
        restarted = RouterConfig.from_env(environ={}, path=settings_file.path)
        assert restarted.overrides == {CollectionName.PROJECTS: BackendMode.BOTH}

    @pytest.mark.parametrize("mode, toggle", [("firestore", "true"), ("mongodb", "false")])
    def test_global_default_persists_gcp_toggle(self, router, settings_file, mode, toggle):
        router.set_global_default(mode, persist=True)
        assert settings_file.read() == {DEFAULT_BACKEND_KEY: mode, GCP_FEATURES_KEY: toggle}

    def test_global_default_both_leaves_toggle_alone(self, router, settings_file):
        router.set_global_default("both", persist=True)
        assert settings_file.read() == {DEFAULT_BACKEND_KEY: "both"}


class TestRouterConfig:
    def test_defaults(self):
        config = RouterConfig.from_env(environ={})
        assert config.default_mode == BackendMode.MONGODB
        assert config.overrides == {}

    def test_gcp_toggle_selects_firestore(self):
        assert RouterConfig.from_env(environ={GCP_FEATURES_KEY: "true"}).default_mode == BackendMode.FIRESTORE

    def test_explicit_default_beats_gcp_toggle(self):
        config = RouterConfig.from_env(environ={GCP_FEATURES_KEY: "true", DEFAULT_BACKEND_KEY: "both"})
        assert config.default_mode == BackendMode.BOTH

    def test_environment_beats_file(self, tmp_path):
        path = tmp_path / "backend.env"
        path.write_text("COLLECTION_CUSTOMERS_BACKEND=firestore\nCOLLECTION_WAITLIST_BACKEND=both\n")
        config = RouterConfig.from_env(environ={"COLLECTION_CUSTOMERS_BACKEND": "mongodb"}, path=path)
        assert config.overrides == {
            CollectionName.CUSTOMERS: BackendMode.MONGODB,
            CollectionName.WAITLIST: BackendMode.BOTH,
        }

    def test_invalid_values_are_ignored(self):
        config = RouterConfig.from_env(environ={
            DEFAULT_BACKEND_KEY: "oracle",
            "COLLECTION_PROJECTS_BACKEND": "nope",
        })
        assert config.default_mode == BackendMode.MONGODB
        assert config.overrides == {}

    def test_router_reads_configured_settings_file(self, settings_file, monkeypatch):
        settings_file.path.write_text("COLLECTION_WAITLIST_BACKEND=both\n")
        router = BackendRouter(audit=AuditTrail(config=AuditConfig()))
        assert router.get_backend("waitlist") == BackendMode.BOTH
        assert router.settings.path == settings_file.path


class TestRoutedAccess:
    def test_mongodb_mode_reads_and_transforms(self, router, mongo):
        mongo.insert("customers", {"_id": "c1", "name": "Acme", "__v": 0})
        doc = router.read_document("customers", "c1")
        assert doc.id == "c1"
        assert doc.data["name"] == "Acme"
        assert "__v" not in doc.data

    def test_firestore_mode(self, router, access):
        router.set_backend("customers", "firestore")
        access.set_document("customers", "c1", {"name": "Acme"})
        assert router.read_document("customers", "c1").data == {"name": "Acme"}

    def test_both_mode_falls_back_to_mongo(self, router, mongo, access):
        router.set_backend("customers", "both")
        mongo.insert("customers", {"_id": "old", "name": "Legacy"})
        access.set_document("customers", "new", {"name": "Fresh"})

        assert router.read_document("customers", "new").data["name"] == "Fresh"
        assert router.read_document("customers", "old").data["name"] == "Legacy"

    def test_both_mode_missing_everywhere(self, router):
        router.set_backend("customers", "both")
        with pytest.raises(DocumentNotFound):
            router.read_document("customers", "ghost")

    def test_both_mode_firestore_errors_do_not_fall_back(self, router, mongo, fake_client):
        router.set_backend("customers", "both")
        mongo.insert("customers", {"_id": "c1", "name": "Legacy"})
        fake_client.fail("get", gexc.PermissionDenied("denied"))
        with pytest.raises(StoreError):
            router.read_document("customers", "c1")

    def test_dual_write_reaches_both_stores(self, router, mongo, fake_client):
        router.set_backend("projects", "both")
        result = router.write_document("projects", "p1", {"name": "Demo"})

        assert result.backends == [BackendMode.FIRESTORE, BackendMode.MONGODB]
        assert result.warnings == []
        assert fake_client.data["projects"]["p1"] == {"name": "Demo"}
        assert mongo.get_document("projects", "p1")["name"] == "Demo"

    def test_dual_write_tolerates_mongo_failure(self, router, mongo, fake_client):
        router.set_backend("projects", "both")
        mongo.fail_upserts = True

        result = router.write_document("projects", "p1", {"name": "Demo"})

        assert fake_client.data["projects"]["p1"] == {"name": "Demo"}
        assert result.backends == [BackendMode.FIRESTORE]
        assert len(result.warnings) == 1
        assert isinstance(result.warnings[0], PartialDualWrite)

    def test_dual_write_fails_when_firestore_fails(self, router, mongo, fake_client):
        router.set_backend("projects", "both")
        fake_client.fail("set", gexc.PermissionDenied("denied"))
        with pytest.raises(StoreError):
            router.write_document("projects", "p1", {"name": "Demo"})
        assert mongo.get_document("projects", "p1") is None

    def test_mongodb_mode_write(self, router, mongo, fake_client):
        result = router.write_document("waitlist", "w1", {"email": "a@b.co"})
        assert result.backends == [BackendMode.MONGODB]
        assert mongo.get_document("waitlist", "w1")["email"] == "a@b.co"
        assert "waitlist" not in fake_client.data

    def test_delete_in_both_mode(self, router, mongo, access, fake_client):
        router.set_backend("customers", "both")
        router.write_document("customers", "c1", {"name": "Acme"})
        result = router.delete_document("customers", "c1")
        assert result.backends == [BackendMode.FIRESTORE, BackendMode.MONGODB]
        assert "c1" not in fake_client.data["customers"]
        assert mongo.get_document("customers", "c1") is None

    def test_list_documents(self, router, mongo, access):
        mongo.insert("projects", {"_id": "p1", "name": "A", "status": "active"},
                     {"_id": "p2", "name": "B", "status": "archived"})
        docs = router.list_documents("projects", filters=[("status", "==", "active")])
        assert [d.id for d in docs] == ["p1"]

        router.set_backend("projects", "firestore")
        access.set_document("projects", "f1", {"name": "F", "status": "active"})
        assert [d.id for d in router.list_documents("projects")] == ["f1"]

    def test_missing_store_is_a_configuration_error(self, settings_file, audit):
        router = BackendRouter(config=RouterConfig(), settings_file=settings_file, audit=audit)
        with pytest.raises(RuntimeError):
            router.read_document("customers", "c1")
