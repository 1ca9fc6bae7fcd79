"""
Schema validation for transformed documents.

Validation never raises for bad data: it returns the list of
(document_id, field, reason) failures, empty when the document is valid.
"""

from datetime import date, datetime
from typing import Any, Dict, List

from .errors import ValidationError
from .models import TargetRecord
from .schemas import CollectionSchema, FieldSpec, get_schema


def _is_date(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    if isinstance(value, str):
        try:
            datetime.fromisoformat(value.replace("Z", "+00:00"))
            return True
        except ValueError:
            return False
    # Firestore Timestamp-like objects
    return hasattr(value, "seconds") and hasattr(value, "nanos")


def _type_ok(spec_type: str, value: Any) -> bool:
    if spec_type == "any":
        return True
    if spec_type == "string":
        return isinstance(value, str)
    if spec_type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if spec_type == "boolean":
        return isinstance(value, bool)
    if spec_type == "object":
        return isinstance(value, dict)
    if spec_type == "array":
        return isinstance(value, list)
    if spec_type == "date":
        return _is_date(value)
    return False


def _check_fields(
    document_id: str,
    data: Dict[str, Any],
    fields: Dict[str, FieldSpec],
    prefix: str = "",
) -> List[ValidationError]:
    errors: List[ValidationError] = []

    for name, spec in fields.items():
        path = f"{prefix}{name}"
        value = data.get(name)

        if value is None:
            if spec.required:
                errors.append(ValidationError(document_id, path, "is required"))
            continue

        if not _type_ok(spec.type, value):
            errors.append(ValidationError(document_id, path, f"must be of type {spec.type}"))
            continue

        if spec.min_length is not None and isinstance(value, (str, list)) and len(value) < spec.min_length:
            errors.append(ValidationError(
                document_id, path, f"must have length at least {spec.min_length}"
            ))
        if spec.pattern is not None and isinstance(value, str) and not spec.pattern.match(value):
            errors.append(ValidationError(document_id, path, f"must match pattern {spec.pattern.pattern}"))
        if spec.enum is not None and value not in spec.enum:
            errors.append(ValidationError(
                document_id, path, f"must be one of: {', '.join(map(str, spec.enum))}"
            ))
        if spec.nested and isinstance(value, dict):
            errors.extend(_check_fields(document_id, value, spec.nested, prefix=f"{path}."))

    return errors


def validate_document(
    document_id: str, data: Dict[str, Any], schema: CollectionSchema
) -> List[ValidationError]:
    """Validate a document's fields against a collection schema."""
    if not isinstance(data, dict):
        return [ValidationError(document_id, "*", "document must be an object")]
    return _check_fields(document_id, data, schema.fields)


def validate(record: TargetRecord) -> List[ValidationError]:
    """Validate a transformed record against its collection's schema."""
    return validate_document(record.document_id, record.data, get_schema(record.collection))
