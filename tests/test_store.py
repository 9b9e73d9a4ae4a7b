import asyncio
from datetime import datetime

import pytest

from drivechat.core.exceptions import NotFoundError
from drivechat.store.base import DELETE_FIELD, SERVER_TIMESTAMP, Filter, Increment
from drivechat.store.mongo import build_create_pipeline, build_query, build_set_pipeline, build_update


def test_targeted_update_leaves_siblings_alone(store):
    async def scenario():
        await store.set("conversations", "c1", {"unread_count": {"u1": 3, "u2": 4}, "title": "x"})
        await store.update("conversations", "c1", {"unread_count.u1": 0, "title": DELETE_FIELD})
        return await store.get("conversations", "c1")

    doc = asyncio.run(scenario())
    assert doc == {"id": "c1", "unread_count": {"u1": 0, "u2": 4}}


def test_increment_and_server_timestamp(store):
    async def scenario():
        await store.set("counters", "c1", {"n": 1, "at": SERVER_TIMESTAMP})
        await asyncio.gather(*(store.update("counters", "c1", {"n": Increment(2)}) for _ in range(10)))
        await store.update("counters", "c1", {"fresh": Increment(5)})
        return await store.get("counters", "c1")

    doc = asyncio.run(scenario())
    assert doc["n"] == 21
    assert doc["fresh"] == 5
    assert isinstance(doc["at"], datetime)


def test_update_missing_document_raises(store):
    with pytest.raises(NotFoundError):
        asyncio.run(store.update("conversations", "missing", {"a": 1}))


def test_create_only_inserts_when_absent(store):
    async def scenario():
        first = await store.create("conversations", "c1", {"unread_count": {"u1": 0}, "at": SERVER_TIMESTAMP})
        await store.update("conversations", "c1", {"unread_count.u1": Increment(1)})
        second = await store.create("conversations", "c1", {"unread_count": {"u1": 0}})
        return first, second, await store.get("conversations", "c1")

    first, second, doc = asyncio.run(scenario())
    assert (first, second) == (True, False)
    assert doc["unread_count"] == {"u1": 1}
    assert isinstance(doc["at"], datetime)


def test_concurrent_creates_have_one_winner(store):
    async def scenario():
        return await asyncio.gather(*(store.create("conversations", "c1", {"n": i}) for i in range(5)))

    assert sorted(asyncio.run(scenario())) == [False, False, False, False, True]

def test_returned_documents_are_copies(store):
    async def scenario():
        await store.set("things", "t1", {"tags": ["a"]})
        doc = await store.get("things", "t1")
        doc["tags"].append("b")
        return await store.get("things", "t1")

    assert asyncio.run(scenario())["tags"] == ["a"]


def test_filters_and_ordering(store):
    async def scenario():
        await store.set("people", "p1", {"age": 30, "tags": ["x"]})
        await store.set("people", "p2", {"age": 20, "tags": ["y"]})
        await store.set("people", "p3", {"age": 40, "tags": ["x", "y"]})
        await store.set("people", "p4", {"tags": []})
        return {
            "older": await store.find("people", [Filter("age", ">=", 30)], order_by=("age", False)),
            "tagged": await store.find("people", [Filter("tags", "array_contains", "x")]),
            "in": await store.find("people", [Filter("age", "in", [20, 40])], order_by=("age", True)),
            "not_30": await store.find("people", [Filter("age", "!=", 30)]),
            "top": await store.find("people", order_by=("age", True), limit=1),
        }

    result = asyncio.run(scenario())
    assert [d["id"] for d in result["older"]] == ["p1", "p3"]
    assert [d["id"] for d in result["tagged"]] == ["p1", "p3"]
    assert [d["id"] for d in result["in"]] == ["p3", "p2"]
    # a missing field never matches
    assert [d["id"] for d in result["not_30"]] == ["p2", "p3"]
    assert [d["id"] for d in result["top"]] == ["p3"]


def test_unknown_filter_operator():
    with pytest.raises(ValueError):
        Filter("a", "like", "x")


def test_mongo_update_translation():
    update = build_update(
        {
            "last_message": {"text": "Hi", "timestamp": SERVER_TIMESTAMP},
            "unread_count.u2": Increment(1),
            "participants": {"u1": {"name": "Alice"}},
            "draft": DELETE_FIELD,
        }
    )
    assert update == {
        "$set": {"last_message.text": "Hi", "participants": {"u1": {"name": "Alice"}}},
        "$currentDate": {"last_message.timestamp": {"$type": "date"}},
        "$inc": {"unread_count.u2": 1},
        "$unset": {"draft": ""},
    }


def test_mongo_query_translation():
    assert build_query([]) == {}
    assert build_query([Filter("participant_ids", "array_contains", "u1")]) == {"participant_ids": "u1"}
    assert build_query([Filter("conversation_id", "==", "c1"), Filter("read", "==", False)]) == {
        "$and": [{"conversation_id": "c1"}, {"read": False}]
    }
    assert build_query([Filter("status", "in", ["online", "away"])]) == {"status": {"$in": ["online", "away"]}}
    assert build_query([Filter("age", "!=", 3)]) == {"age": {"$ne": 3, "$exists": True}}


def test_mongo_whole_document_uses_server_clock():
    data = {
        "price": "$100",
        "created_at": SERVER_TIMESTAMP,
        "participants": {"u1": {"name": "Alice", "last_seen": SERVER_TIMESTAMP}},
        "unread_count": {},
        "tags": ["a"],
        "draft": DELETE_FIELD,
    }
    replacement = {
        "price": {"$literal": "$100"},
        "created_at": "$$NOW",
        "participants": {"u1": {"name": {"$literal": "Alice"}, "last_seen": "$$NOW"}},
        "unread_count": {"$literal": {}},
        "tags": {"$literal": ["a"]},
    }
    assert build_set_pipeline("c1", data) == [{"$replaceWith": {**replacement, "_id": {"$literal": "c1"}}}]

    (stage,) = build_create_pipeline(data)
    fresh, created, existing = stage["$replaceWith"]["$cond"]
    # an existing document is kept as it is
    assert existing == "$$ROOT"
    assert created == {**replacement, "_id": "$_id"}
    assert fresh == {"$eq": [{"$size": {"$objectToArray": "$$ROOT"}}, 1]}
