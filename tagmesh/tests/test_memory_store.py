"""
In-Memory Document Store Tests

Tests the protocol contract every backend honours:
- Revision-checked put (create, update, stale and missing revisions)
- Key-ordered all_docs
- Changes feed: latest change per key, checkpoints, long-poll
- put_replica winner policy
- Named databases outliving their handles
"""

from __future__ import annotations

import asyncio

import pytest

from tagmesh.core.errors import ErrorCode
from tagmesh.storage import (
    DocumentStoreProtocol,
    MemoryStoreRegistry,
    OperationType,
    open_local_store,
    parse_revision,
    revision_wins,
)


@pytest.fixture
def store(registry: MemoryStoreRegistry):
    return registry.open("db")


# =============================================================================
# REVISIONS
# =============================================================================
class TestRevisions:
    def test_parse(self):
        assert parse_revision("3-abc") == (3, "abc")
        assert parse_revision(None) == (0, "")

    def test_higher_generation_wins(self):
        assert revision_wins("2-aaa", "1-fff")
        assert not revision_wins("1-fff", "2-aaa")

    def test_hash_breaks_ties(self):
        assert revision_wins("2-bbb", "2-aaa")
        assert not revision_wins("2-aaa", "2-aaa")

    def test_anything_beats_nothing(self):
        assert revision_wins("1-aaa", None)


# =============================================================================
# CRUD
# =============================================================================
class TestCrud:
    def test_satisfies_protocol(self, store):
        assert isinstance(store, DocumentStoreProtocol)

    @pytest.mark.asyncio
    async def test_get_missing_is_not_found(self, store):
        result = await store.get("nope")
        assert result.is_err()
        assert result.error.is_not_found
        assert result.error.code == ErrorCode.STORAGE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_create_then_get(self, store):
        put = await store.put({"_id": "a", "value": 1})
        assert put.is_ok()
        assert put.unwrap().operation == OperationType.CREATE
        assert put.unwrap().revision.startswith("1-")

        doc = (await store.get("a")).unwrap()
        assert doc == {"_id": "a", "_rev": put.unwrap().revision, "value": 1}

    @pytest.mark.asyncio
    async def test_update_with_current_revision(self, store):
        first = (await store.put({"_id": "a", "value": 1})).unwrap()
        second = await store.put({"_id": "a", "_rev": first.revision, "value": 2})
        assert second.is_ok()
        assert second.unwrap().operation == OperationType.UPDATE
        assert parse_revision(second.unwrap().revision)[0] == 2

    @pytest.mark.asyncio
    async def test_update_without_revision_conflicts(self, store):
        await store.put({"_id": "a", "value": 1})
        result = await store.put({"_id": "a", "value": 2})
        assert result.is_err()
        assert result.error.is_conflict

    @pytest.mark.asyncio
    async def test_stale_revision_conflicts(self, store):
        first = (await store.put({"_id": "a", "value": 1})).unwrap()
        await store.put({"_id": "a", "_rev": first.revision, "value": 2})
        result = await store.put({"_id": "a", "_rev": first.revision, "value": 3})
        assert result.is_err()
        assert result.error.is_conflict
        assert (await store.get("a")).unwrap()["value"] == 2

    @pytest.mark.asyncio
    async def test_revision_for_missing_record_conflicts(self, store):
        result = await store.put({"_id": "a", "_rev": "1-abc", "value": 1})
        assert result.is_err()
        assert result.error.is_conflict

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, store):
        await store.put({"_id": "a", "nested": {"x": 1}})
        doc = (await store.get("a")).unwrap()
        doc["nested"]["x"] = 99
        assert (await store.get("a")).unwrap()["nested"]["x"] == 1

    @pytest.mark.asyncio
    async def test_all_docs_sorted_by_key(self, store):
        for key in ("c", "a", "b"):
            await store.put({"_id": key})
        rows = (await store.all_docs()).unwrap()
        assert [key for key, _ in rows] == ["a", "b", "c"]
        assert all(doc["_id"] == key for key, doc in rows)

        bare = (await store.all_docs(include_docs=False)).unwrap()
        assert bare == [("a", None), ("b", None), ("c", None)]


# =============================================================================
# CHANGES FEED
# =============================================================================
class TestChanges:
    @pytest.mark.asyncio
    async def test_latest_change_per_key(self, store):
        first = (await store.put({"_id": "a", "v": 1})).unwrap()
        await store.put({"_id": "b"})
        await store.put({"_id": "a", "_rev": first.revision, "v": 2})

        batch = (await store.changes()).unwrap()
        assert [change.key for change in batch.changes] == ["b", "a"]
        assert batch.last_seq == 3

    @pytest.mark.asyncio
    async def test_checkpoint_and_limit(self, store):
        for key in ("a", "b", "c"):
            await store.put({"_id": key})

        page = (await store.changes(limit=2)).unwrap()
        assert [change.key for change in page.changes] == ["a", "b"]

        rest = (await store.changes(since=page.last_seq)).unwrap()
        assert [change.key for change in rest.changes] == ["c"]

        empty = (await store.changes(since=rest.last_seq)).unwrap()
        assert len(empty) == 0
        assert empty.last_seq == rest.last_seq

    @pytest.mark.asyncio
    async def test_longpoll_wakes_on_write(self, store):
        waiter = asyncio.ensure_future(store.changes(since=0, timeout_ms=2000))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        await store.put({"_id": "a"})
        batch = (await asyncio.wait_for(waiter, 1.0)).unwrap()
        assert [change.key for change in batch.changes] == ["a"]

    @pytest.mark.asyncio
    async def test_longpoll_times_out_empty(self, store):
        batch = (await store.changes(since=0, timeout_ms=20)).unwrap()
        assert len(batch) == 0


# =============================================================================
# REPLICATED WRITES
# =============================================================================
class TestPutReplica:
    @pytest.mark.asyncio
    async def test_stores_missing_document_with_its_revision(self, store):
        assert (await store.put_replica({"_id": "a", "_rev": "3-abc", "v": 1})).unwrap()
        assert (await store.get("a")).unwrap()["_rev"] == "3-abc"

    @pytest.mark.asyncio
    async def test_losing_revision_is_ignored(self, store):
        await store.put_replica({"_id": "a", "_rev": "3-abc", "v": 1})
        assert not (await store.put_replica({"_id": "a", "_rev": "2-fff", "v": 2})).unwrap()
        assert (await store.get("a")).unwrap()["v"] == 1

    @pytest.mark.asyncio
    async def test_equal_revision_is_ignored(self, store):
        await store.put_replica({"_id": "a", "_rev": "1-abc", "v": 1})
        assert not (await store.put_replica({"_id": "a", "_rev": "1-abc", "v": 1})).unwrap()
        assert (await store.changes()).unwrap().last_seq == 1

    @pytest.mark.asyncio
    async def test_winning_revision_replaces(self, store):
        await store.put_replica({"_id": "a", "_rev": "2-aaa", "v": 1})
        assert (await store.put_replica({"_id": "a", "_rev": "2-bbb", "v": 2})).unwrap()
        assert (await store.get("a")).unwrap()["v"] == 2

    @pytest.mark.asyncio
    async def test_requires_revision(self, store):
        result = await store.put_replica({"_id": "a"})
        assert result.is_err()
        assert result.error.code == ErrorCode.STORAGE_SERIALIZATION


# =============================================================================
# HANDLES
# =============================================================================
class TestHandles:
    @pytest.mark.asyncio
    async def test_closed_handle_rejects_operations(self, store):
        await store.close()
        result = await store.get("a")
        assert result.is_err()
        assert result.error.code == ErrorCode.STORAGE_CLOSED

    @pytest.mark.asyncio
    async def test_data_outlives_handle(self, registry):
        first = registry.open("db")
        await first.put({"_id": "a", "v": 1})
        await first.close()

        second = registry.open("db")
        assert (await second.get("a")).unwrap()["v"] == 1

    @pytest.mark.asyncio
    async def test_names_are_isolated(self, registry):
        await registry.open("one").put({"_id": "a"})
        assert (await registry.open("two").get("a")).is_err()
        assert registry.names() == ["one", "two"]

    @pytest.mark.asyncio
    async def test_factory_opens_in_registry(self, registry):
        store = (await open_local_store("db", registry=registry)).unwrap()
        await store.put({"_id": "a"})
        assert "db" in registry
