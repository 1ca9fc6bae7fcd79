"""Tests for the MongoDB adapter: keyset cursors, filters and driver calls."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
import mongomock
from bson import ObjectId, Timestamp
from pymongo import errors as mongo_errors

from persistence.config import MongoConfig
from persistence.errors import StoreConnectionError
from persistence.models import CollectionName
from persistence.mongo_store import (
    EXTRACT_SORT,
    MongoStore,
    coerce_id,
    decode_cursor,
    encode_cursor,
    keyset_filter,
    to_mongo_filter,
)
from persistence.retry import RetryPolicy

OID = ObjectId("65a1b2c3d4e5f60718293a4b")


@pytest.fixture
def driver():
    client = MagicMock()
    collection = client.__getitem__.return_value.__getitem__.return_value
    return client, collection


@pytest.fixture
def store(driver):
    client, _ = driver
    return MongoStore(
        config=MongoConfig(uri="mongodb://localhost:27017"),
        client=client,
        retry=RetryPolicy.no_wait(),
    )


class TestCursor:
    def test_datetime_and_objectid_survive_json(self):
        created = datetime(2024, 1, 2, 3, 4, 5)
        cursor = encode_cursor({"_id": OID, "createdAt": created})
        assert cursor == {
            "created_at": {"kind": "datetime", "value": "2024-01-02T03:04:05"},
            "id": str(OID),
            "id_type": "objectid",
        }
        assert decode_cursor(cursor) == (created, OID)

    def test_missing_created_at(self):
        cursor = encode_cursor({"_id": 7})
        assert cursor["created_at"] == {"kind": "null", "value": None}
        assert decode_cursor(cursor) == (None, 7)

    def test_string_ids_stay_strings(self):
        assert decode_cursor(encode_cursor({"_id": "abc", "createdAt": None}))[1] == "abc"


class TestKeysetFilter:
    def test_first_page_has_no_filter(self):
        assert keyset_filter(None) == {}

    def test_dated_cursor(self):
        created = datetime(2024, 1, 1)
        cursor = encode_cursor({"_id": OID, "createdAt": created})
        assert keyset_filter(cursor) == {"$or": [
            {"createdAt": {"$gt": created}},
            {"createdAt": created, "_id": {"$gt": OID}},
            {"createdAt": {"$gte": Timestamp(0, 0)}},
        ]}

    def test_string_cursor_continues_into_later_type_brackets(self):
        cursor = encode_cursor({"_id": "a", "createdAt": "2023-05-01T00:00:00.000Z"})
        clauses = keyset_filter(cursor)["$or"]
        assert {"createdAt": {"$gte": datetime.min}} in clauses
        assert {"createdAt": {"$gte": False}} in clauses
        assert {"createdAt": {"$gte": float("-inf")}} not in clauses

    def test_undated_cursor_continues_into_dated_documents(self):
        cursor = encode_cursor({"_id": OID})
        assert keyset_filter(cursor) == {"$or": [
            {"createdAt": None, "_id": {"$gt": OID}},
            {"createdAt": {"$ne": None}},
        ]}


class TestFilters:
    def test_coerce_id(self):
        assert coerce_id(str(OID)) == OID
        assert coerce_id("customer-1") == "customer-1"
        assert coerce_id(42) == 42

    def test_operators(self):
        query = to_mongo_filter([
            ("status", "==", "active"),
            ("n", ">=", 1),
            ("n", "<", 5),
            ("tags", "array-contains", "a"),
            ("kind", "not-in", ["x"]),
        ])
        assert query == {
            "status": {"$eq": "active"},
            "n": {"$gte": 1, "$lt": 5},
            "tags": {"$elemMatch": {"$eq": "a"}},
            "kind": {"$nin": ["x"]},
        }

    def test_id_filters_target_object_ids(self):
        assert to_mongo_filter([("id", "in", [str(OID), "x"])]) == {"_id": {"$in": [OID, "x"]}}

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            to_mongo_filter([("n", "~", 1)])


class TestMongoStore:
    def test_physical_collection_name(self, store, driver):
        client, _ = driver
        store.col(CollectionName.DATA_GENERATION_JOBS)
        client.__getitem__.return_value.__getitem__.assert_called_with("dataJobs")

    def test_find_page_returns_records_and_cursor(self, store, driver):
        _, collection = driver
        docs = [
            {"_id": OID, "createdAt": datetime(2024, 1, 1), "name": "A"},
            {"_id": 2, "createdAt": datetime(2024, 1, 2), "name": "B"},
        ]
        collection.find.return_value.sort.return_value.limit.return_value = docs

        records, cursor = store.find_page(CollectionName.CUSTOMERS, after=None, limit=2)

        collection.find.assert_called_once_with({})
        collection.find.return_value.sort.assert_called_once_with(EXTRACT_SORT)
        collection.find.return_value.sort.return_value.limit.assert_called_once_with(2)
        assert [r.source_id for r in records] == [OID, 2]
        assert decode_cursor(cursor) == (datetime(2024, 1, 2), 2)

    def test_empty_page_keeps_cursor(self, store, driver):
        _, collection = driver
        collection.find.return_value.sort.return_value.limit.return_value = []
        after = encode_cursor({"_id": OID, "createdAt": None})
        records, cursor = store.find_page(CollectionName.CUSTOMERS, after=after)
        assert records == []
        assert cursor == after

    def test_transient_errors_are_retried(self, store, driver):
        _, collection = driver
        collection.count_documents.side_effect = [mongo_errors.AutoReconnect("reset"), 3]
        assert store.count(CollectionName.CUSTOMERS) == 3
        assert collection.count_documents.call_count == 2

    def test_persistent_connection_failure_surfaces_classified(self, store, driver):
        _, collection = driver
        collection.count_documents.side_effect = mongo_errors.ServerSelectionTimeoutError("down")
        with pytest.raises(StoreConnectionError):
            store.count(CollectionName.CUSTOMERS)
        assert collection.count_documents.call_count == 5

    def test_upsert_replaces_by_default(self, store, driver):
        _, collection = driver
        store.upsert_document("customers", str(OID), {"id": str(OID), "name": "Acme"})
        collection.replace_one.assert_called_once_with(
            {"_id": OID}, {"_id": OID, "name": "Acme"}, upsert=True
        )

    def test_upsert_merge_uses_set(self, store, driver):
        _, collection = driver
        store.upsert_document("customers", "c1", {"name": "Acme"}, merge=True)
        collection.update_one.assert_called_once_with({"_id": "c1"}, {"$set": {"name": "Acme"}}, upsert=True)

    def test_delete_reports_whether_anything_was_removed(self, store, driver):
        _, collection = driver
        collection.delete_one.return_value.deleted_count = 0
        assert store.delete_document("customers", "c1") is False

    def test_find_applies_sort_and_limit(self, store, driver):
        _, collection = driver
        cursor = collection.find.return_value
        cursor.sort.return_value.limit.return_value = [{"_id": 1}]
        result = store.find("projects", filters=[("status", "==", "active")],
                            order_by=[("createdAt", "DESCENDING")], limit=1)
        collection.find.assert_called_once_with({"status": {"$eq": "active"}})
        cursor.sort.assert_called_once_with([("createdAt", -1)])
        assert result == [{"_id": 1}]


class TestExtractionAgainstMongoSemantics:
    """find_page against mongomock, which applies MongoDB's cross-type sort and match rules."""

    @pytest.fixture
    def mongo_store(self):
        return MongoStore(
            config=MongoConfig(uri="mongodb://localhost:27017"),
            client=mongomock.MongoClient(),
            retry=RetryPolicy.no_wait(),
        )

    def extract_all(self, store, limit):
        seen, cursor = [], None
        while True:
            records, cursor = store.find_page(CollectionName.CUSTOMERS, after=cursor, limit=limit)
            if not records:
                return seen
            seen.extend(r.data["_id"] for r in records)

    @pytest.mark.parametrize("limit", [1, 2, 10])
    def test_mixed_created_at_types_are_all_extracted(self, mongo_store, limit):
        mongo_store.col(CollectionName.CUSTOMERS).insert_many([
            {"_id": "b", "createdAt": datetime(2024, 1, 1)},
            {"_id": "a", "createdAt": "2023-05-01T00:00:00.000Z"},
            {"_id": "c", "createdAt": datetime(2024, 1, 2)},
            {"_id": "n"},
        ])

        assert self.extract_all(mongo_store, limit) == ["n", "a", "b", "c"]
        assert mongo_store.count(CollectionName.CUSTOMERS) == 4

    def test_ties_on_created_at_are_broken_by_id(self, mongo_store):
        created = datetime(2024, 1, 1)
        mongo_store.col(CollectionName.CUSTOMERS).insert_many(
            [{"_id": f"c{i}", "createdAt": created} for i in (3, 1, 2)]
        )
        assert self.extract_all(mongo_store, 1) == ["c1", "c2", "c3"]
