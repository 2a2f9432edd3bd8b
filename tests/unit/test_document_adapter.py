"""
Unit tests for DocumentStoreAdapter: filter rendering, identifier handling,
error translation and sessions against a mocked pymongo client.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError, ExecutionTimeout, ServerSelectionTimeoutError

from dualstore.adapters.document import DocumentStoreAdapter, coerce_object_id
from dualstore.config.settings import MongoConfig
from dualstore.core.exceptions import (
    DuplicateRecordError,
    QueryTimeoutError,
    QueryTranslationError,
    StoreConnectionError,
)

OID = "507f1f77bcf86cd799439011"


def _cursor(rows):
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.skip.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=rows)
    return cursor


@pytest.fixture
def collections():
    return {}


@pytest.fixture
def client():
    c = MagicMock()
    c.admin.command = AsyncMock(return_value={"ok": 1.0})
    c.close = AsyncMock()
    return c


@pytest.fixture
def mongo(client, collections):
    def collection(name):
        if name not in collections:
            coll = MagicMock()
            coll.find.return_value = _cursor([])
            coll.count_documents = AsyncMock(return_value=0)
            collections[name] = coll
        return collections[name]

    db = MagicMock()
    db.__getitem__.side_effect = collection
    adapter = DocumentStoreAdapter(MongoConfig(), client=client)
    adapter._db = db
    adapter._connected = True
    return adapter


class TestFilters:
    def test_generic_id_becomes_object_id(self, mongo):
        assert mongo._filter("users", {"id": OID}) == {"_id": ObjectId(OID)}

    def test_keyed_collection_id_stays_string(self, mongo):
        assert mongo._filter("conversations", {"id": "c1"}) == {"_id": "c1"}

    def test_non_hex_id_is_left_alone(self, mongo):
        assert mongo._filter("users", {"_id": "plain"}) == {"_id": "plain"}

    def test_conjunction_and_comparisons(self, mongo):
        rendered = mongo._filter("users", {"email": "a@b.c", "_id": {"$ne": OID}})
        assert rendered == {"$and": [{"email": "a@b.c"}, {"_id": {"$ne": ObjectId(OID)}}]}

    def test_regex_and_in(self, mongo):
        rendered = mongo._filter("messages", {
            "text": {"$regex": "hi", "$options": "i"},
            "id": {"$in": ["m1", "m2"]},
        })
        assert rendered == {"$and": [
            {"text": {"$regex": "hi", "$options": "i"}},
            {"_id": {"$in": ["m1", "m2"]}},
        ]}

    def test_or_and_exists(self, mongo):
        rendered = mongo._filter("messages", {"$or": [{"indexed": {"$exists": False}}, {"indexed": False}]})
        assert rendered == {"$or": [{"indexed": {"$exists": False}}, {"indexed": False}]}

    def test_empty_query(self, mongo):
        assert mongo._filter("users", None) == {}

    async def test_unsupported_operator_fails_before_driver(self, mongo, collections):
        with pytest.raises(QueryTranslationError):
            await mongo.find_many("users", {"tags": {"$elemMatch": {"a": 1}}})
        assert collections["users"].find.call_count == 0


class TestTranslation:
    def test_to_native_generic(self):
        record = DocumentStoreAdapter._to_native("users", {"id": OID, "email": "a@b.c"})
        assert record == {"_id": ObjectId(OID), "email": "a@b.c"}

    def test_to_native_keyed(self):
        record = DocumentStoreAdapter._to_native("messages", {"messageId": "m1", "text": "hi"})
        assert record["_id"] == "m1"

    def test_update_document_wraps_plain_fields(self):
        assert DocumentStoreAdapter._update_document({"id": "x", "name": "N"}) == {"$set": {"name": "N"}}

    def test_update_document_drops_empty_operators(self):
        assert DocumentStoreAdapter._update_document({"$set": {"_id": "x"}, "$inc": {"n": 1}}) == {"$inc": {"n": 1}}

    def test_to_document_stringifies_ids(self):
        doc = DocumentStoreAdapter._to_document({"_id": ObjectId(OID), "name": "A"})
        assert doc == {"_id": OID, "id": OID, "name": "A"}

    def test_coerce_object_id(self):
        assert coerce_object_id(OID) == ObjectId(OID)
        assert coerce_object_id("abc") == "abc"
        assert coerce_object_id(5) == 5


class TestOperations:
    async def test_find_many_applies_options(self, mongo, collections):
        rows = [{"_id": ObjectId(OID), "email": "a@b.c"}]
        mongo._collection("users").find.return_value = cursor = _cursor(rows)

        docs = await mongo.find_many("users", {"role": "admin"}, {"sort": {"createdAt": -1}, "limit": 5, "skip": 10})

        collections["users"].find.assert_called_once_with({"role": "admin"}, None)
        cursor.sort.assert_called_once_with([("createdAt", -1)])
        cursor.skip.assert_called_once_with(10)
        cursor.limit.assert_called_once_with(5)
        assert docs == [{"_id": OID, "id": OID, "email": "a@b.c"}]

    async def test_projection_maps_id(self, mongo, collections):
        await mongo.find_many("users", {}, {"projection": ["id", "email"]})
        assert collections["users"].find.call_args.args[1] == {"_id": 1, "email": 1}

    async def test_populate_replaces_references(self, mongo):
        mongo._collection("messages").find.return_value = _cursor([{"_id": "m1", "user": OID}])
        mongo._collection("users").find.return_value = _cursor([{"_id": ObjectId(OID), "name": "Ann"}])

        docs = await mongo.find_many("messages", {}, {"populate": ["user"]})
        assert docs[0]["user"]["name"] == "Ann"

    async def test_create_returns_string_ids(self, mongo):
        coll = mongo._collection("users")
        coll.insert_one = AsyncMock(return_value=MagicMock(inserted_id=ObjectId(OID)))
        doc = await mongo.create("users", {"email": "a@b.c"})
        assert doc["id"] == doc["_id"] == OID

    async def test_duplicate_key(self, mongo):
        coll = mongo._collection("users")
        coll.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))
        with pytest.raises(DuplicateRecordError):
            await mongo.create("users", {"email": "a@b.c"})

    async def test_execution_timeout(self, mongo):
        mongo._collection("users").count_documents = AsyncMock(side_effect=ExecutionTimeout("slow"))
        with pytest.raises(QueryTimeoutError):
            await mongo.count("users")

    async def test_lost_connection(self, mongo):
        mongo._collection("users").count_documents = AsyncMock(side_effect=ServerSelectionTimeoutError("gone"))
        with pytest.raises(StoreConnectionError):
            await mongo.count("users")

    async def test_delete_by_id_missing(self, mongo):
        coll = mongo._collection("conversations")
        coll.delete_one = AsyncMock(return_value=MagicMock(deleted_count=0))
        assert await mongo.delete_by_id("conversations", "c1") is False
        coll.delete_one.assert_awaited_once_with({"_id": "c1"})

    async def test_upsert_on_keyed_collection_sets_identity(self, mongo):
        coll = mongo._collection("conversations")
        coll.find_one_and_update = AsyncMock(return_value={"_id": "c9", "conversationId": "c9", "user": "u1"})

        doc = await mongo.find_one_and_update("conversations", {"user": "u1"}, {"title": "t"}, upsert=True)

        _, update = coll.find_one_and_update.call_args.args
        on_insert = update["$setOnInsert"]
        assert on_insert["_id"] == on_insert["conversationId"]
        assert update["$set"] == {"title": "t"}
        assert coll.find_one_and_update.call_args.kwargs["upsert"] is True
        assert doc["id"] == "c9"

    async def test_upsert_race_retries_as_update(self, mongo):
        coll = mongo._collection("balances")
        coll.find_one_and_update = AsyncMock(side_effect=[
            DuplicateKeyError("E11000"),
            {"_id": ObjectId(OID), "user": "u1", "tokenCredits": 3},
        ])
        doc = await mongo.find_one_and_update("balances", {"user": "u1"}, {"tokenCredits": 3}, upsert=True)
        assert doc["tokenCredits"] == 3
        assert "upsert" not in coll.find_one_and_update.call_args.kwargs

    async def test_ping(self, mongo, client):
        assert await mongo.ping() is True
        client.admin.command.assert_awaited_with("ping")

    async def test_not_connected(self):
        with pytest.raises(StoreConnectionError):
            await DocumentStoreAdapter(MongoConfig()).count("users")


class TestSessions:
    async def test_operations_join_the_session(self, mongo, client, collections):
        session = MagicMock()
        session.start_transaction = AsyncMock()
        session.commit_transaction = AsyncMock()
        session.abort_transaction = AsyncMock()
        session.end_session = AsyncMock()
        client.start_session.return_value = session

        async def body(tx):
            return await mongo.count("users")

        await mongo.with_transaction(body)
        assert collections["users"].count_documents.call_args.kwargs == {"session": session}
        session.commit_transaction.assert_awaited_once()
        session.end_session.assert_awaited_once()

    async def test_abort_on_error(self, mongo, client):
        session = MagicMock()
        session.start_transaction = AsyncMock()
        session.abort_transaction = AsyncMock()
        session.end_session = AsyncMock()
        client.start_session.return_value = session

        async def body(tx):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await mongo.with_transaction(body)
        session.abort_transaction.assert_awaited_once()
        session.end_session.assert_awaited_once()
