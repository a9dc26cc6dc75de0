"""
CouchDB Store Tests

Runs the HTTP adapter against a small CouchDB stand-in mounted with
httpx.MockTransport:
- Database creation on connect
- Status mapping (404 -> NotFound, 409 -> Conflict)
- _changes long-poll parameters and _bulk_docs replicated writes
- Basic vs header authentication through open_remote_store
"""

from __future__ import annotations

import base64
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from tagmesh.core.errors import ConfigurationError, ErrorCode
from tagmesh.storage import (
    CouchConfig,
    CouchDocumentStore,
    MemoryStoreRegistry,
    open_remote_store,
    parse_revision,
    split_database_url,
)
from tagmesh.sync import replicate

SERVER = "http://couch.test:5984"


class FakeCouch:
    """Just enough of the CouchDB HTTP API for the adapter."""

    def __init__(self, *databases: str) -> None:
        self.databases: Dict[str, Dict[str, Dict[str, Any]]] = {db: {} for db in databases}
        self.seqs: Dict[str, Dict[str, int]] = {db: {} for db in databases}
        self.requests: List[httpx.Request] = []
        self.counter = 0
        self.fault: Optional[Callable[[httpx.Request], Exception]] = None

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fault is not None:
            raise self.fault(request)
        db, _, rest = request.url.path.strip("/").partition("/")

        if not rest:
            if request.method == "GET":
                if db in self.databases:
                    return httpx.Response(200, json={"db_name": db})
                return httpx.Response(404, json={"error": "not_found"})
            if request.method == "PUT":
                if db in self.databases:
                    return httpx.Response(412, json={"error": "file_exists"})
                self.databases[db] = {}
                self.seqs[db] = {}
                return httpx.Response(201, json={"ok": True})

        docs = self.databases.get(db)
        if docs is None:
            return httpx.Response(404, json={"error": "not_found"})

        if rest == "_all_docs":
            include = request.url.params.get("include_docs") == "true"
            rows = [
                {"id": key, "doc": docs[key]} if include else {"id": key}
                for key in sorted(docs)
            ]
            return httpx.Response(200, json={"rows": rows})

        if rest == "_changes":
            since = int(request.url.params.get("since", "0"))
            rows = sorted(
                (seq, key) for key, seq in self.seqs[db].items() if seq > since
            )
            limit = request.url.params.get("limit")
            if limit is not None:
                rows = rows[: int(limit)]
            results = [
                {"seq": seq, "id": key, "changes": [{"rev": docs[key]["_rev"]}]}
                for seq, key in rows
            ]
            last_seq = rows[-1][0] if rows else since
            return httpx.Response(200, json={"results": results, "last_seq": last_seq})

        if rest == "_bulk_docs":
            payload = json.loads(request.content)
            assert payload["new_edits"] is False
            for doc in payload["docs"]:
                self._store(db, doc)
            return httpx.Response(201, json=[])

        if request.method == "GET":
            if rest in docs:
                return httpx.Response(200, json=docs[rest])
            return httpx.Response(404, json={"error": "not_found"})

        if request.method == "PUT":
            doc = json.loads(request.content)
            current = docs.get(rest)
            if doc.get("_rev") != (current["_rev"] if current else None):
                return httpx.Response(409, json={"error": "conflict"})
            generation = parse_revision(doc.get("_rev"))[0]
            doc["_rev"] = f"{generation + 1}-{self.counter:032x}"
            self._store(db, doc)
            return httpx.Response(201, json={"ok": True, "id": rest, "rev": doc["_rev"]})

        return httpx.Response(405, json={"error": "method_not_allowed"})

    def _store(self, db: str, doc: Dict[str, Any]) -> None:
        self.counter += 1
        self.databases[db][doc["_id"]] = doc
        self.seqs[db][doc["_id"]] = self.counter


@pytest.fixture
def couch() -> FakeCouch:
    return FakeCouch("db")


@pytest_asyncio.fixture
async def store(couch: FakeCouch):
    couch_store = CouchDocumentStore("db", CouchConfig(url=SERVER), transport=couch.transport())
    (await couch_store.connect()).unwrap()
    yield couch_store
    await couch_store.close()


# =============================================================================
# CONNECTION
# =============================================================================
class TestConnect:
    @pytest.mark.asyncio
    async def test_creates_missing_database(self):
        couch = FakeCouch()
        couch_store = CouchDocumentStore("fresh", CouchConfig(url=SERVER), transport=couch.transport())
        assert (await couch_store.connect()).is_ok()
        assert [r.method for r in couch.requests] == ["GET", "PUT"]
        assert "fresh" in couch.databases
        await couch_store.close()

    @pytest.mark.asyncio
    async def test_missing_database_without_create(self):
        config = CouchConfig(url=SERVER, create_missing=False)
        couch_store = CouchDocumentStore("fresh", config, transport=FakeCouch().transport())
        result = await couch_store.connect()
        assert result.is_err()
        assert result.error.code == ErrorCode.STORAGE_BAD_RESPONSE

    @pytest.mark.asyncio
    async def test_transport_failure_is_connection_error(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        couch_store = CouchDocumentStore("db", CouchConfig(url=SERVER), transport=httpx.MockTransport(refuse))
        result = await couch_store.connect()
        assert result.error.code == ErrorCode.STORAGE_CONNECTION_FAILED

    @pytest.mark.asyncio
    async def test_timeout_is_timeout_error(self, couch):
        couch_store = CouchDocumentStore("db", CouchConfig(url=SERVER), transport=couch.transport())
        (await couch_store.connect()).unwrap()

        couch.fault = lambda request: httpx.ReadTimeout("slow", request=request)
        result = await couch_store.get("a")
        assert result.error.code == ErrorCode.STORAGE_TIMEOUT
        await couch_store.close()

    @pytest.mark.asyncio
    async def test_closed_store_rejects_operations(self, store):
        await store.close()
        await store.close()
        assert (await store.get("a")).error.code == ErrorCode.STORAGE_CLOSED


# =============================================================================
# DOCUMENTS
# =============================================================================
class TestDocuments:
    @pytest.mark.asyncio
    async def test_put_then_get(self, store):
        put = (await store.put({"_id": "a", "v": 1})).unwrap()
        assert put.revision.startswith("1-")

        doc = (await store.get("a")).unwrap()
        assert doc["v"] == 1
        assert doc["_rev"] == put.revision

    @pytest.mark.asyncio
    async def test_missing_document_is_not_found(self, store):
        assert (await store.get("nope")).error.is_not_found

    @pytest.mark.asyncio
    async def test_stale_revision_is_conflict(self, store):
        await store.put({"_id": "a", "v": 1})
        assert (await store.put({"_id": "a", "v": 2})).error.is_conflict

    @pytest.mark.asyncio
    async def test_all_docs(self, store, couch):
        await store.put({"_id": "b"})
        await store.put({"_id": "a"})

        rows = (await store.all_docs()).unwrap()
        assert [key for key, _ in rows] == ["a", "b"]
        assert couch.requests[-1].url.params["include_docs"] == "true"

        bare = (await store.all_docs(include_docs=False)).unwrap()
        assert bare == [("a", None), ("b", None)]

    @pytest.mark.asyncio
    async def test_changes_longpoll_parameters(self, store, couch):
        await store.put({"_id": "a"})
        batch = (await store.changes(since=0, limit=10, timeout_ms=50)).unwrap()

        params = couch.requests[-1].url.params
        assert params["feed"] == "longpoll"
        assert params["timeout"] == "50"
        assert params["limit"] == "10"
        assert [c.key for c in batch.changes] == ["a"]
        assert batch.last_seq == batch.changes[-1].seq

    @pytest.mark.asyncio
    async def test_changes_without_wait_is_normal_feed(self, store, couch):
        batch = (await store.changes()).unwrap()
        assert "feed" not in couch.requests[-1].url.params
        assert couch.requests[-1].url.params["since"] == "0"
        assert len(batch) == 0

    @pytest.mark.asyncio
    async def test_put_replica_uses_bulk_docs_without_new_edits(self, store, couch):
        assert (await store.put_replica({"_id": "a", "_rev": "3-abc", "v": 1})).unwrap()
        assert couch.requests[-1].url.path.endswith("/_bulk_docs")
        assert (await store.get("a")).unwrap()["_rev"] == "3-abc"

    @pytest.mark.asyncio
    async def test_put_replica_skips_losing_revision(self, store, couch):
        await store.put_replica({"_id": "a", "_rev": "3-abc"})
        before = len(couch.requests)
        assert not (await store.put_replica({"_id": "a", "_rev": "3-abc"})).unwrap()
        assert len(couch.requests) == before + 1
        assert couch.requests[-1].method == "GET"

    @pytest.mark.asyncio
    async def test_replicates_with_memory_store(self, store):
        local = MemoryStoreRegistry().open("local")
        await local.put({"_id": "a", "v": 1})
        await local.put({"_id": "b", "v": 2})

        pushed = (await replicate(local, store)).unwrap()
        assert pushed.docs_written == 2
        assert (await store.get("a")).unwrap() == (await local.get("a")).unwrap()

        back = (await replicate(store, local)).unwrap()
        assert back.docs_written == 0


# =============================================================================
# REMOTE FACTORY
# =============================================================================
class TestOpenRemoteStore:
    def test_split_database_url(self):
        assert split_database_url(f"{SERVER}/db/") == (SERVER, "db")
        with pytest.raises(ConfigurationError):
            split_database_url("http://couch.test")

    @pytest.mark.asyncio
    async def test_basic_auth(self, couch):
        opened = await open_remote_store(
            f"{SERVER}/db", "alice", "pw", transport=couch.transport(),
        )
        remote = opened.unwrap()
        expected = "Basic " + base64.b64encode(b"alice:pw").decode("ascii")
        assert couch.requests[0].headers["authorization"] == expected
        await remote.close()

    @pytest.mark.asyncio
    async def test_authorization_header_replaces_basic_auth(self, couch):
        opened = await open_remote_store(
            f"{SERVER}/db",
            "alice",
            "pw",
            headers={"Authorization": "Bearer token", "X-Team": "lab"},
            transport=couch.transport(),
        )
        remote = opened.unwrap()
        request = couch.requests[0]
        assert request.headers["authorization"] == "Bearer token"
        assert request.headers["x-team"] == "lab"
        await remote.close()

    @pytest.mark.asyncio
    async def test_unreachable_server_is_err(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        opened = await open_remote_store(f"{SERVER}/db", transport=httpx.MockTransport(refuse))
        assert opened.is_err()
        assert opened.error.code == ErrorCode.STORAGE_CONNECTION_FAILED
