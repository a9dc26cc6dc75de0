"""
Redis Document Store
====================

Redis/Valkey implementation of DocumentStoreProtocol, for deployments
where the local tier lives on a server rather than in-process.

Key Layout (one logical database per store name):
-------------------------------------------------
- {prefix}:{name}:doc:{id}  Hash with fields 'd' (body JSON), 'r' (rev), 's' (seq)
- {prefix}:{name}:seq       Monotonic change counter (INCR)
- {prefix}:{name}:changes   Sorted set, member = doc id, score = latest seq

Because ZADD overwrites the score of an existing member, the changes set
always holds exactly the latest change per key, in sequence order.

Writes go through a Lua compare-and-swap on the revision so concurrent
writers cannot interleave between the revision check and the update.

Algorithmic Complexity:
-----------------------
| Operation    | Time       | Notes                          |
|--------------|------------|--------------------------------|
| get          | O(1)       | HGETALL                        |
| put          | O(log N)   | CAS script, ZADD               |
| all_docs     | O(N)       | ZRANGE + pipelined HGETALL     |
| changes      | O(log N+k) | ZRANGEBYSCORE + pipelined HGET |
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tagmesh.core.errors import StorageError
from tagmesh.core.types import Result, Ok, Err
from tagmesh.storage.config import RedisConfig
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

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# Attempts for a replicated write racing local writers
REPLICA_CAS_ATTEMPTS: int = 5

CONFLICT_REPLY: str = "conflict"

# Lua script for atomic revision CAS plus change-feed bookkeeping
LUA_PUT_SCRIPT: str = """
local doc_key = KEYS[1]
local seq_key = KEYS[2]
local changes_key = KEYS[3]
local expected_rev = ARGV[1]
local new_rev = ARGV[2]
local body = ARGV[3]
local doc_id = ARGV[4]

local current_rev = redis.call('HGET', doc_key, 'r')
if current_rev == false then
    current_rev = ''
end
if current_rev ~= expected_rev then
    return redis.error_reply('conflict')
end

local seq = redis.call('INCR', seq_key)
redis.call('HSET', doc_key, 'd', body, 'r', new_rev, 's', seq)
redis.call('ZADD', changes_key, seq, doc_id)
return seq
"""


# =============================================================================
# REDIS DOCUMENT STORE
# =============================================================================
class RedisDocumentStore:
    """
    Redis-backed store implementing DocumentStoreProtocol.

    Example:
        >>> store = RedisDocumentStore("tagmesh_metadata__abc", RedisConfig())
        >>> (await store.connect()).unwrap()
        >>> await store.put({"_id": "s:e1", "name": "e1"})
        >>> await store.close()
    """

    __slots__ = (
        "_name",
        "_config",
        "_client",
        "_put_sha",
        "_connected",
    )

    def __init__(self, name: str, config: RedisConfig) -> None:
        """
        Args:
            name: Logical database name; namespaces every key.
            config: Redis connection configuration.

        Note:
            Call `connect()` before performing operations.
        """
        self._name = name
        self._config = config
        self._client: Optional[aioredis.Redis] = None
        self._put_sha: Optional[str] = None
        self._connected = False

    @property
    def name(self) -> str:
        return self._name

    # -------------------------------------------------------------------------
    # KEYS
    # -------------------------------------------------------------------------

    def _key(self, suffix: str) -> str:
        return f"{self._config.key_prefix}:{self._name}:{suffix}"

    def _doc_key(self, doc_id: str) -> str:
        return self._key(f"doc:{doc_id}")

    @property
    def _seq_key(self) -> str:
        return self._key("seq")

    @property
    def _changes_key(self) -> str:
        return self._key("changes")

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    async def connect(self) -> Result[None, StorageError]:
        """
        Create the client, verify the server and load the CAS script.

        Returns:
            Ok(None) on success, Err(StorageError) when unreachable.
        """
        target = f"redis://{self._config.host}:{self._config.port}/{self._config.db}"
        try:
            self._client = aioredis.Redis(**self._config.get_connection_kwargs())
            await self._client.ping()
            self._put_sha = await self._client.script_load(LUA_PUT_SCRIPT)
            self._connected = True
            logger.debug("Redis store %s connected to %s", self._name, target)
            return Ok(None)
        except RedisError as e:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
            return Err(StorageError.connection_failed(target, e))

    async def close(self) -> None:
        """
        Close the connection pool.

        Safe to call multiple times.
        """
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._connected = False

    def _check_open(self) -> Optional[Err[StorageError]]:
        if not self._connected or self._client is None:
            return Err(StorageError.closed(self._name))
        return None

    def _map_error(self, operation: str, error: Exception, started_ns: int) -> StorageError:
        if isinstance(error, (RedisTimeoutError, asyncio.TimeoutError)):
            return StorageError.timeout(
                f"{self._name}.{operation}",
                (time.perf_counter_ns() - started_ns) / 1_000_000,
            )
        return StorageError.connection_failed(self._name, error)

    # -------------------------------------------------------------------------
    # CORE OPERATIONS
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Result[Dict[str, Any], StorageError]:
        if (closed := self._check_open()) is not None:
            return closed
        start_ns = time.perf_counter_ns()
        try:
            data: Dict[str, str] = await self._client.hgetall(self._doc_key(key))
        except (RedisError, asyncio.TimeoutError) as e:
            return Err(self._map_error("get", e, start_ns))

        if not data:
            return Err(StorageError.not_found(self._name, key))
        try:
            body = json.loads(data.get("d", "{}"))
        except json.JSONDecodeError as e:
            return Err(StorageError.serialization(key, e))
        return Ok(with_meta(key, data["r"], body))

    async def _cas(
        self,
        key: str,
        expected_rev: Optional[str],
        new_rev: str,
        body: Dict[str, Any],
    ) -> Result[int, StorageError]:
        """Run the CAS script; Ok(seq) on success, Err(conflict) on rev mismatch."""
        start_ns = time.perf_counter_ns()
        try:
            payload = json.dumps(body)
        except (TypeError, ValueError) as e:
            return Err(StorageError.serialization(key, e))

        try:
            seq = await self._client.evalsha(
                self._put_sha,
                3,
                self._doc_key(key),
                self._seq_key,
                self._changes_key,
                expected_rev or "",
                new_rev,
                payload,
                key,
            )
        except ResponseError as e:
            if str(e).startswith(CONFLICT_REPLY):
                current = await self._client.hget(self._doc_key(key), "r")
                return Err(StorageError.conflict(self._name, key, expected_rev, current))
            return Err(StorageError.connection_failed(self._name, e))
        except (RedisError, asyncio.TimeoutError) as e:
            return Err(self._map_error("put", e, start_ns))
        return Ok(int(seq))

    async def put(self, doc: Dict[str, Any]) -> Result[OperationMetadata, StorageError]:
        if (closed := self._check_open()) is not None:
            return closed
        start_ns = time.perf_counter_ns()
        key, rev, body = split_document(doc)
        if not key:
            return Err(StorageError.serialization("<missing _id>"))

        new_rev = next_revision(body, rev)
        result = await self._cas(key, rev, new_rev, body)
        if result.is_err():
            return result

        return Ok(OperationMetadata(
            operation=OperationType.CREATE if rev is None else OperationType.UPDATE,
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
        start_ns = time.perf_counter_ns()
        try:
            keys = sorted(await self._client.zrange(self._changes_key, 0, -1))
            if not include_docs:
                return Ok([(key, None) for key in keys])

            async with self._client.pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.hgetall(self._doc_key(key))
                rows = await pipe.execute()
        except (RedisError, asyncio.TimeoutError) as e:
            return Err(self._map_error("all_docs", e, start_ns))

        docs: List[Tuple[str, Optional[Dict[str, Any]]]] = []
        for key, data in zip(keys, rows):
            if not data:
                continue
            try:
                docs.append((key, with_meta(key, data["r"], json.loads(data["d"]))))
            except (KeyError, json.JSONDecodeError) as e:
                return Err(StorageError.serialization(key, e))
        return Ok(docs)

    async def _read_changes(
        self,
        since_seq: int,
        limit: Optional[int],
    ) -> List[ChangeRecord]:
        if limit is None:
            entries = await self._client.zrangebyscore(
                self._changes_key, f"({since_seq}", "+inf", withscores=True,
            )
        else:
            entries = await self._client.zrangebyscore(
                self._changes_key, f"({since_seq}", "+inf",
                start=0, num=limit, withscores=True,
            )
        if not entries:
            return []

        async with self._client.pipeline(transaction=False) as pipe:
            for key, _ in entries:
                pipe.hget(self._doc_key(key), "r")
            revisions = await pipe.execute()

        return [
            ChangeRecord(seq=int(score), key=key, revision=rev)
            for (key, score), rev in zip(entries, revisions)
            if rev is not None
        ]

    async def changes(
        self,
        since: Any = None,
        limit: Optional[int] = None,
        timeout_ms: int = 0,
    ) -> Result[ChangesBatch, StorageError]:
        if (closed := self._check_open()) is not None:
            return closed
        since_seq = int(since or 0)
        start_ns = time.perf_counter_ns()
        deadline = time.monotonic() + timeout_ms / 1000
        poll_s = self._config.poll_interval_ms / 1000

        try:
            records = await self._read_changes(since_seq, limit)
            while not records and time.monotonic() < deadline:
                await asyncio.sleep(min(poll_s, max(deadline - time.monotonic(), 0)))
                records = await self._read_changes(since_seq, limit)
        except (RedisError, asyncio.TimeoutError) as e:
            return Err(self._map_error("changes", e, start_ns))

        last_seq = records[-1].seq if records else since_seq
        return Ok(ChangesBatch(changes=tuple(records), last_seq=last_seq))

    async def put_replica(self, doc: Dict[str, Any]) -> Result[bool, StorageError]:
        """
        Store a replicated revision if it wins against the current one.

        The winner is decided client-side and then written with a CAS on
        the revision it was compared against; a concurrent local write
        makes the CAS fail and the comparison is repeated.
        """
        if (closed := self._check_open()) is not None:
            return closed
        key, rev, body = split_document(doc)
        if not key or not rev:
            return Err(StorageError.serialization(key or "<missing _id>"))

        last_error: Optional[StorageError] = None
        for _ in range(REPLICA_CAS_ATTEMPTS):
            current = await self.get(key)
            if current.is_ok():
                current_rev = current.unwrap()["_rev"]
                if not revision_wins(rev, current_rev):
                    return Ok(False)
            elif current.error.is_not_found:
                current_rev = None
            else:
                return current

            written = await self._cas(key, current_rev, rev, body)
            if written.is_ok():
                return Ok(True)
            if not written.error.is_conflict:
                return written
            last_error = written.error

        logger.warning("Replicated write of %s into %s kept losing CAS races", key, self._name)
        return Err(last_error)

    def __repr__(self) -> str:
        return f"RedisDocumentStore({self._name!r}, connected={self._connected})"
