"""
CouchDB Document Store
======================

HTTP implementation of DocumentStoreProtocol against a CouchDB-compatible
server. This is the remote tier every client replicates with.

Endpoint Mapping:
-----------------
| Operation    | Request                                         |
|--------------|-------------------------------------------------|
| connect      | GET /{db}, PUT /{db} when missing               |
| get          | GET /{db}/{id}                                  |
| put          | PUT /{db}/{id}                                  |
| all_docs     | GET /{db}/_all_docs?include_docs=true           |
| changes      | GET /{db}/_changes?feed=longpoll&since=...      |
| put_replica  | POST /{db}/_bulk_docs {"new_edits": false}      |

Sequence values returned by the server are opaque strings and are passed
back unchanged as checkpoints.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from tagmesh.core.errors import StorageError
from tagmesh.core.types import Result, Ok, Err
from tagmesh.storage.config import CouchConfig
from tagmesh.storage.documents import META_REV, revision_wins, split_document
from tagmesh.storage.protocols import (
    ChangeRecord,
    ChangesBatch,
    OperationMetadata,
    OperationType,
)

logger = logging.getLogger(__name__)


class CouchDocumentStore:
    """
    One database on a CouchDB-compatible server.

    Example:
        >>> store = CouchDocumentStore("tagmesh_metadata__abc", CouchConfig(url="http://localhost:5984"))
        >>> (await store.connect()).unwrap()
        >>> doc = (await store.get("s:e1")).unwrap()
        >>> await store.close()

    transport is handed to httpx.AsyncClient; tests pass an
    httpx.MockTransport.
    """

    __slots__ = ("_name", "_config", "_transport", "_client", "_db_path")

    def __init__(
        self,
        name: str,
        config: CouchConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._name = name
        self._config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._db_path = "/" + quote(name, safe="")

    @property
    def name(self) -> str:
        return self._name

    @property
    def url(self) -> str:
        return f"{self._config.url.rstrip('/')}{self._db_path}"

    def _doc_path(self, doc_id: str) -> str:
        return f"{self._db_path}/{quote(doc_id, safe='')}"

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    async def connect(self) -> Result[None, StorageError]:
        """
        Open the HTTP client and make sure the database exists.

        Returns:
            Ok(None) when the database is reachable (or was created).
        """
        auth = None
        if self._config.username is not None:
            auth = httpx.BasicAuth(self._config.username, self._config.password or "")

        self._client = httpx.AsyncClient(
            base_url=self._config.url.rstrip("/"),
            auth=auth,
            headers=dict(self._config.headers),
            timeout=self._config.timeout_ms / 1000,
            transport=self._transport,
        )

        result = await self._request("GET", self._db_path)
        if result.is_err():
            await self.close()
            return result
        response = result.unwrap()

        if response.status_code == 404 and self._config.create_missing:
            created = await self._request("PUT", self._db_path)
            if created.is_err():
                await self.close()
                return created
            # 412: created concurrently by another client
            if created.unwrap().status_code not in (201, 202, 412):
                await self.close()
                return Err(self._bad_response(created.unwrap()))
            logger.info("Created remote database %s", self.url)
        elif response.status_code != 200:
            await self.close()
            return Err(self._bad_response(response))

        return Ok(None)

    async def close(self) -> None:
        """Close the HTTP client. Safe to call multiple times."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # HTTP HELPERS
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        extra_timeout_s: float = 0.0,
        **kwargs: Any,
    ) -> Result[httpx.Response, StorageError]:
        if self._client is None:
            return Err(StorageError.closed(self._name))
        start_ns = time.perf_counter_ns()
        if extra_timeout_s:
            kwargs["timeout"] = self._config.timeout_ms / 1000 + extra_timeout_s
        try:
            return Ok(await self._client.request(method, path, **kwargs))
        except httpx.TimeoutException:
            return Err(StorageError.timeout(
                f"{method} {path}",
                (time.perf_counter_ns() - start_ns) / 1_000_000,
            ))
        except httpx.HTTPError as e:
            return Err(StorageError.connection_failed(self.url, e))

    def _bad_response(self, response: httpx.Response) -> StorageError:
        return StorageError.bad_response(self.url, response.status_code, response.text)

    def _decode(self, response: httpx.Response, key: str) -> Result[Any, StorageError]:
        try:
            return Ok(response.json())
        except ValueError as e:
            return Err(StorageError.serialization(key, e))

    # -------------------------------------------------------------------------
    # CORE OPERATIONS
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Result[Dict[str, Any], StorageError]:
        result = await self._request("GET", self._doc_path(key))
        if result.is_err():
            return result
        response = result.unwrap()
        if response.status_code == 404:
            return Err(StorageError.not_found(self._name, key))
        if response.status_code != 200:
            return Err(self._bad_response(response))
        return self._decode(response, key)

    async def put(self, doc: Dict[str, Any]) -> Result[OperationMetadata, StorageError]:
        start_ns = time.perf_counter_ns()
        key, rev, _ = split_document(doc)
        if not key:
            return Err(StorageError.serialization("<missing _id>"))

        result = await self._request("PUT", self._doc_path(key), json=doc)
        if result.is_err():
            return result
        response = result.unwrap()
        if response.status_code == 409:
            return Err(StorageError.conflict(self._name, key, rev, None))
        if response.status_code not in (201, 202):
            return Err(self._bad_response(response))

        body = self._decode(response, key)
        if body.is_err():
            return body
        return Ok(OperationMetadata(
            operation=OperationType.CREATE if rev is None else OperationType.UPDATE,
            latency_ns=time.perf_counter_ns() - start_ns,
            revision=body.unwrap().get("rev"),
            affected_rows=1,
        ))

    async def all_docs(
        self,
        include_docs: bool = True,
    ) -> Result[List[Tuple[str, Optional[Dict[str, Any]]]], StorageError]:
        params = {"include_docs": "true" if include_docs else "false"}
        result = await self._request("GET", f"{self._db_path}/_all_docs", params=params)
        if result.is_err():
            return result
        response = result.unwrap()
        if response.status_code != 200:
            return Err(self._bad_response(response))

        body = self._decode(response, "_all_docs")
        if body.is_err():
            return body
        return Ok([
            (row["id"], row.get("doc") if include_docs else None)
            for row in body.unwrap().get("rows", [])
        ])

    async def changes(
        self,
        since: Any = None,
        limit: Optional[int] = None,
        timeout_ms: int = 0,
    ) -> Result[ChangesBatch, StorageError]:
        params: Dict[str, Any] = {"since": since if since is not None else 0}
        if limit is not None:
            params["limit"] = limit
        if timeout_ms > 0:
            params["feed"] = "longpoll"
            params["timeout"] = timeout_ms

        result = await self._request(
            "GET",
            f"{self._db_path}/_changes",
            extra_timeout_s=timeout_ms / 1000,
            params=params,
        )
        if result.is_err():
            return result
        response = result.unwrap()
        if response.status_code != 200:
            return Err(self._bad_response(response))

        body = self._decode(response, "_changes")
        if body.is_err():
            return body
        feed = body.unwrap()
        records = tuple(
            ChangeRecord(
                seq=row["seq"],
                key=row["id"],
                revision=row["changes"][0]["rev"] if row.get("changes") else "",
                deleted=bool(row.get("deleted", False)),
            )
            for row in feed.get("results", [])
        )
        return Ok(ChangesBatch(changes=records, last_seq=feed.get("last_seq", since)))

    async def put_replica(self, doc: Dict[str, Any]) -> Result[bool, StorageError]:
        key, rev, _ = split_document(doc)
        if not key or not rev:
            return Err(StorageError.serialization(key or "<missing _id>"))

        current = await self.get(key)
        if current.is_ok():
            if not revision_wins(rev, current.unwrap().get(META_REV)):
                return Ok(False)
        elif not current.error.is_not_found:
            return current

        result = await self._request(
            "POST",
            f"{self._db_path}/_bulk_docs",
            json={"docs": [doc], "new_edits": False},
        )
        if result.is_err():
            return result
        response = result.unwrap()
        if response.status_code not in (201, 202):
            return Err(self._bad_response(response))
        return Ok(True)

    def __repr__(self) -> str:
        return f"CouchDocumentStore({self.url!r})"
