"""
Storage Module: Revisioned Document Stores
==========================================

Provides:
- Protocol definition for pluggable document stores
- In-memory backend for development, tests and process-local state
- Redis backend for server-side local tiers
- CouchDB HTTP adapter for the shared remote tier
- Factory functions for backend selection

Design Principles:
-----------------
1. **Backend Agnostic**: Same interface for in-memory and remote stores
2. **Factory Pattern**: Runtime backend selection via configuration
3. **Result Monad**: No exceptions for control flow

Example:
    >>> registry = MemoryStoreRegistry()
    >>> local = (await open_local_store("tagmesh_metadata__abc", registry=registry)).unwrap()
    >>> remote = (await open_remote_store("http://couch:5984/tagmesh_metadata__abc")).unwrap()
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Mapping, Optional

import httpx

from tagmesh.core.errors import ConfigurationError, StorageError
from tagmesh.core.types import Result, Ok, Err

# Protocol definitions
from tagmesh.storage.protocols import (
    OperationType,
    OperationMetadata,
    ChangeRecord,
    ChangesBatch,
    DocumentStoreProtocol,
    StoreFactory,
)

# Document helpers
from tagmesh.storage.documents import (
    META_ID,
    META_REV,
    parse_revision,
    next_revision,
    revision_wins,
    to_plain,
)

# Backends
from tagmesh.storage.backends import (
    InMemoryDocumentStore,
    MemoryDatabase,
    MemoryStoreRegistry,
)
from tagmesh.storage.redis_store import RedisDocumentStore
from tagmesh.storage.couch_store import CouchDocumentStore

# Configuration
from tagmesh.storage.config import (
    BackendType,
    RedisConfig,
    CouchConfig,
)

logger = logging.getLogger(__name__)

_default_registry: Optional[MemoryStoreRegistry] = None


def default_registry() -> MemoryStoreRegistry:
    """Process-wide registry used when no registry is passed."""
    global _default_registry
    if _default_registry is None:
        _default_registry = MemoryStoreRegistry()
    return _default_registry


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

async def open_local_store(
    name: str,
    backend: BackendType = BackendType.IN_MEMORY,
    registry: Optional[MemoryStoreRegistry] = None,
    redis_config: Optional[RedisConfig] = None,
    couch_config: Optional[CouchConfig] = None,
) -> Result[DocumentStoreProtocol, StorageError]:
    """
    Open the local store named name.

    Args:
        name: Database name (a derived storage id or the schema store id).
        backend: Which backend to open.
        registry: Named in-memory databases (IN_MEMORY only).
        redis_config: Connection settings (REDIS only; default from env).
        couch_config: Server settings (COUCH only; default from env).

    Returns:
        Ok(store) ready for use, Err(StorageError) when unreachable.
    """
    if backend is BackendType.IN_MEMORY:
        return Ok((registry or default_registry()).open(name))

    if backend is BackendType.REDIS:
        store = RedisDocumentStore(name, redis_config or RedisConfig.from_env())
        connected = await store.connect()
        return Ok(store) if connected.is_ok() else connected

    if backend is BackendType.COUCH:
        couch = CouchDocumentStore(name, couch_config or CouchConfig.from_env())
        connected = await couch.connect()
        return Ok(couch) if connected.is_ok() else connected

    raise ConfigurationError.invalid("backend", f"unsupported backend {backend!r}")


def split_database_url(url: str) -> tuple[str, str]:
    """Split "http://host:5984/dbname" into ("http://host:5984", "dbname")."""
    root, _, db_name = url.rstrip("/").rpartition("/")
    if not db_name or "://" not in root:
        raise ConfigurationError.invalid("url", f"no database name in {url!r}")
    return root, db_name


async def open_remote_store(
    url: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
    config: Optional[CouchConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Result[DocumentStoreProtocol, StorageError]:
    """
    Open a remote database by full URL.

    Header auth is used when headers carry Authorization; otherwise
    username/password basic auth (or none). config supplies the remaining
    settings (timeouts, database creation) and its url is replaced.
    """
    root, db_name = split_database_url(url)
    header_items = tuple((headers or {}).items())
    header_auth = any(k.lower() == "authorization" for k, _ in header_items)

    base = config or CouchConfig(url=root)
    couch_config = dataclasses.replace(
        base,
        url=root,
        username=None if header_auth else username,
        password=None if header_auth else password,
        headers=header_items,
    )
    store = CouchDocumentStore(db_name, couch_config, transport=transport)
    connected = await store.connect()
    if connected.is_err():
        logger.warning("Could not open remote store %s: %s", store.url, connected.error)
        return connected
    return Ok(store)


__all__ = [
    # Protocols
    "OperationType",
    "OperationMetadata",
    "ChangeRecord",
    "ChangesBatch",
    "DocumentStoreProtocol",
    "StoreFactory",
    # Documents
    "META_ID",
    "META_REV",
    "parse_revision",
    "next_revision",
    "revision_wins",
    "to_plain",
    # Backends
    "InMemoryDocumentStore",
    "MemoryDatabase",
    "MemoryStoreRegistry",
    "RedisDocumentStore",
    "CouchDocumentStore",
    # Configuration
    "BackendType",
    "RedisConfig",
    "CouchConfig",
    # Factories
    "default_registry",
    "open_local_store",
    "open_remote_store",
    "split_database_url",
]
