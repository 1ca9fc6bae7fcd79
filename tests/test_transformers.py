"""Tests for MongoDB -> Firestore document transformation."""

from datetime import datetime, timezone

import pytest
from bson import ObjectId

from persistence.models import CollectionName, SourceRecord
from persistence.transformers import target_document_id, to_iso8601, transform, transform_value

OID = ObjectId("507f1f77bcf86cd799439011")


def customer(**fields):
    return SourceRecord(CollectionName.CUSTOMERS, {"_id": OID, **fields})


class TestTransformValue:
    def test_object_ids_and_dates_are_converted_recursively(self):
        value = {
            "owner": OID,
            "members": [{"userId": OID, "addedAt": datetime(2024, 1, 2, 3, 4, 5)}],
        }
        assert transform_value(value) == {
            "owner": "507f1f77bcf86cd799439011",
            "members": [{"userId": "507f1f77bcf86cd799439011", "addedAt": "2024-01-02T03:04:05.000Z"}],
        }

    def test_naive_datetimes_are_utc(self):
        assert to_iso8601(datetime(2024, 5, 1, 12, 0, 0, 123000)) == "2024-05-01T12:00:00.123Z"

    def test_aware_datetimes_are_normalized_to_utc(self):
        from datetime import timedelta
        tz = timezone(timedelta(hours=2))
        assert to_iso8601(datetime(2024, 5, 1, 14, 0, tzinfo=tz)) == "2024-05-01T12:00:00.000Z"


class TestTransform:
    def test_document_id_is_string_of_source_id(self):
        target = transform(customer(name="Acme"))
        assert target.document_id == "507f1f77bcf86cd799439011"
        assert target.document_id == target_document_id(OID)
        assert "_id" not in target.data

    def test_created_at_becomes_iso_string(self):
        target = transform(customer(name="Acme", createdAt=datetime(2024, 1, 1)))
        assert target.data["createdAt"] == "2024-01-01T00:00:00.000Z"

    def test_unknown_fields_kept_under_metadata(self):
        target = transform(customer(name="Acme", legacyScore=7, metadata={"source": "import"}))
        assert "legacyScore" not in target.data
        assert target.data["metadata"] == {"legacyScore": 7, "source": "import"}

    def test_mongoose_version_key_dropped(self):
        target = transform(customer(name="Acme", __v=3))
        assert "__v" not in target.data
        assert "metadata" not in target.data

    def test_defaults_fill_missing_fields(self):
        target = transform(customer(name="Acme"))
        assert target.data["status"] == "active"
        assert target.data["settings"] == {"storageQuota": 100, "maxProjects": 5}

    def test_defaults_do_not_override_values(self):
        target = transform(customer(name="Acme", status="suspended"))
        assert target.data["status"] == "suspended"

    def test_job_legacy_creation_time_is_renamed(self):
        created = datetime(2023, 6, 1)
        record = SourceRecord(
            CollectionName.DATA_GENERATION_JOBS,
            {"_id": OID, "projectId": OID, "creationTime": created},
        )
        target = transform(record)
        assert target.data["createdAt"] == "2023-06-01T00:00:00.000Z"
        assert target.data["projectId"] == "507f1f77bcf86cd799439011"
        assert target.data["status"] == "queued"

    def test_current_field_wins_over_legacy_alias(self):
        record = SourceRecord(
            CollectionName.DATA_GENERATION_JOBS,
            {"_id": OID, "creationTime": datetime(2020, 1, 1), "createdAt": datetime(2021, 1, 1)},
        )
        assert transform(record).data["createdAt"] == "2021-01-01T00:00:00.000Z"

    def test_transform_is_pure(self):
        source = customer(name="Acme", createdAt=datetime(2024, 1, 1))
        before = dict(source.data)
        assert transform(source) == transform(source)
        assert source.data == before

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            transform(SourceRecord(CollectionName.CUSTOMERS, {"name": "Acme"}))
