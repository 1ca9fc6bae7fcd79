"""Tests for schema validation."""

from persistence.models import CollectionName, TargetRecord
from persistence.schemas import get_schema
from persistence.validation import validate, validate_document


def record(collection, **data):
    return TargetRecord(collection=collection, document_id="doc1", data=data)


def test_valid_customer_passes():
    assert validate(record(CollectionName.CUSTOMERS, name="Acme", createdAt="2024-01-01T00:00:00.000Z")) == []


def test_missing_required_field_is_reported_as_triple():
    errors = validate(record(CollectionName.CUSTOMERS, createdAt="2024-01-01T00:00:00.000Z"))
    assert [e.to_dict() for e in errors] == [
        {"document_id": "doc1", "field": "name", "reason": "is required"},
    ]


def test_wrong_type_reported():
    errors = validate(record(CollectionName.CUSTOMERS, name=42))
    assert errors[0].field == "name"
    assert "string" in errors[0].reason


def test_invalid_date_string_reported():
    errors = validate(record(CollectionName.CUSTOMERS, name="Acme", createdAt="yesterday"))
    assert errors[0].field == "createdAt"


def test_email_pattern_and_enum():
    errors = validate(record(CollectionName.WAITLIST, email="not-an-email", status="maybe"))
    fields = {e.field for e in errors}
    assert fields == {"email", "status"}


def test_nested_rules_use_dotted_field_names():
    errors = validate(record(
        CollectionName.PROJECTS,
        name="P",
        status="active",
        storageConfig={"bucketName": "b"},
    ))
    assert [e.field for e in errors] == ["storageConfig.region"]


def test_booleans_are_not_numbers():
    errors = validate(record(CollectionName.CUSTOMERS, name="Acme", settings={"maxProjects": True}))
    assert [e.field for e in errors] == ["settings.maxProjects"]


def test_non_dict_document():
    errors = validate_document("doc1", ["not", "a", "dict"], get_schema("customers"))
    assert errors[0].field == "*"
