"""
In-Memory Document Store: Development and Testing Backend

Process-local named databases with full protocol compliance:
- Revision-checked writes (optimistic concurrency)
- Sequence-numbered changes feed with long-poll
- Deterministic winner policy for replicated writes

Databases live in a MemoryStoreRegistry and outlive the handles opened
on them, the way a browser-local database outlives a page: closing a
handle and reopening the same name sees the same documents.

Performance Characteristics:
    - get/put: O(1) average case
    - all_docs: O(n log n) (sorted by key)
    - changes: O(n log n) (sorted by sequence)
"""

from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from tagmesh.core.errors import StorageError
from tagmesh.core.types import Result, Ok, Err
from tagmesh.storage.documents import (
    next_revision,
    revision_wins,
    split_document,
    with_meta,
)
from tagmesh.storage.protocols import (
    ChangeRecord,
    ChangesBatch,
    OperationMetadata,
    OperationType,
)


# =============================================================================
# STORED DOCUMENT
# =============================================================================
@dataclass
class StoredDocument:
    """Internal record: body without metadata, its revision and change sequence."""
    body: Dict[str, Any]
    rev: str
    seq: int


# =============================================================================
# MEMORY DATABASE
# =============================================================================
class MemoryDatabase:
    """
    The data behind one database name.

    The condition doubles as the database lock; writers notify it so
    long-polling change readers wake up.
    """

    __slots__ = ("name", "docs", "seq", "cond")

    def __init__(self, name: str) -> None:
        self.name = name
        self.docs: Dict[str, StoredDocument] = {}
        self.seq = 0
        self.cond = asyncio.Condition()

    def store(self, key: str, body: Dict[str, Any], rev: str) -> int:
        """Record a write; caller holds cond."""
        self.seq += 1
        self.docs[key] = StoredDocument(body=copy.deepcopy(body), rev=rev, seq=self.seq)
        self.cond.notify_all()
        return self.seq


class MemoryStoreRegistry:
    """Named in-memory databases shared by every handle opened on them."""

    def __init__(self) -> None:
        self._databases: Dict[str, MemoryDatabase] = {}

    def open(self, name: str) -> InMemoryDocumentStore:
        database = self._databases.get(name)
        if database is None:
            database = MemoryDatabase(name)
            self._databases[name] = database
        return InMemoryDocumentStore(database)

    def __contains__(self, name: object) -> bool:
        return name in self._databases

    def names(self) -> List[str]:
        return sorted(self._databases)

    def drop(self, name: str) -> None:
        self._databases.pop(name, None)


# =============================================================================
# IN-MEMORY DOCUMENT STORE
# =============================================================================
class InMemoryDocumentStore:
    """
    Handle on a MemoryDatabase implementing DocumentStoreProtocol.

    Example:
        registry = MemoryStoreRegistry()
        store = registry.open("tagmesh_metadata__abc")
        result = await store.put({"_id": "s:e1", "name": "e1"})
        doc = (await store.get("s:e1")).unwrap()
    """

    __slots__ = ("_db", "_closed")

    def __init__(self, database: MemoryDatabase) -> None:
        self._db = database
        self._closed = False

    @property
    def name(self) -> str:
        return self._db.name

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> Optional[Err[StorageError]]:
        if self._closed:
            return Err(StorageError.closed(self.name))
        return None

    async def get(self, key: str) -> Result[Dict[str, Any], StorageError]:
        if (closed := self._check_open()) is not None:
            return closed
        async with self._db.cond:
            record = self._db.docs.get(key)
            if record is None:
                return Err(StorageError.not_found(self.name, key))
            return Ok(with_meta(key, record.rev, record.body))

    async def put(self, doc: Dict[str, Any]) -> Result[OperationMetadata, StorageError]:
        if (closed := self._check_open()) is not None:
            return closed
        start_ns = time.perf_counter_ns()
        key, rev, body = split_document(doc)
        if not key:
            return Err(StorageError.serialization("<missing _id>"))

        async with self._db.cond:
            existing = self._db.docs.get(key)
            current_rev = existing.rev if existing is not None else None
            if rev != current_rev:
                return Err(StorageError.conflict(self.name, key, rev, current_rev))

            new_rev = next_revision(body, current_rev)
            self._db.store(key, body, new_rev)

        return Ok(OperationMetadata(
            operation=OperationType.CREATE if existing is None else OperationType.UPDATE,
            latency_ns=time.perf_counter_ns() - start_ns,
            revision=new_rev,
            affected_rows=1,
        ))

    async def all_docs(
        self,
        include_docs: bool = True,
    ) -> Result[List[Tuple[str, Optional[Dict[str, Any]]]], StorageError]:
        if (closed := self._check_open()) is not None:
            return closed
        async with self._db.cond:
            rows = []
            for key in sorted(self._db.docs):
                record = self._db.docs[key]
                rows.append((key, with_meta(key, record.rev, record.body) if include_docs else None))
            return Ok(rows)

    async def changes(
        self,
        since: Any = None,
        limit: Optional[int] = None,
        timeout_ms: int = 0,
    ) -> Result[ChangesBatch, StorageError]:
        if (closed := self._check_open()) is not None:
            return closed
        since_seq = int(since or 0)

        async with self._db.cond:
            if timeout_ms > 0 and self._db.seq <= since_seq:
                try:
                    await asyncio.wait_for(
                        self._db.cond.wait_for(lambda: self._db.seq > since_seq),
                        timeout=timeout_ms / 1000,
                    )
                except asyncio.TimeoutError:
                    pass

            records = sorted(
                (
                    ChangeRecord(seq=record.seq, key=key, revision=record.rev)
                    for key, record in self._db.docs.items()
                    if record.seq > since_seq
                ),
                key=lambda change: change.seq,
            )

        if limit is not None:
            records = records[:limit]
        last_seq = records[-1].seq if records else since_seq
        return Ok(ChangesBatch(changes=tuple(records), last_seq=last_seq))

    async def put_replica(self, doc: Dict[str, Any]) -> Result[bool, StorageError]:
        if (closed := self._check_open()) is not None:
            return closed
        key, rev, body = split_document(doc)
        if not key or not rev:
            return Err(StorageError.serialization(key or "<missing _id>"))

        async with self._db.cond:
            existing = self._db.docs.get(key)
            if existing is not None and not revision_wins(rev, existing.rev):
                return Ok(False)
            self._db.store(key, body, rev)
            return Ok(True)

    async def close(self) -> None:
        self._closed = True

    def __repr__(self) -> str:
        return f"InMemoryDocumentStore({self.name!r}, closed={self._closed})"
