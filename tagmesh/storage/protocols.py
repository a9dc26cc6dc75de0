"""
Document Store Protocol Definitions

Structural subtyping protocols (PEP 544) for the stores a repository
drives. A store holds JSON documents keyed by id, each stamped with a
revision ("<generation>-<hash>"):

- put() with a stale or missing revision on an existing record is rejected
- changes() exposes the latest change per key in sequence order
- put_replica() accepts a document carrying a foreign revision and keeps
  whichever revision the store's winner policy prefers

Design Principles:
    - Zero-exception control flow via Result[T, StorageError]
    - Async-first for non-blocking I/O
    - Protocol classes for structural subtyping (duck typing with type safety)
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

from tagmesh.core.errors import StorageError
from tagmesh.core.types import Result


# =============================================================================
# OPERATION TYPE
# =============================================================================
class OperationType(Enum):
    """Store operation types for logging."""
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    REPLICATE = "replicate"
    SCAN = "scan"


# =============================================================================
# OPERATION RESULT METADATA
# =============================================================================
@dataclass(frozen=True, slots=True)
class OperationMetadata:
    """
    Metadata returned with every write.

    revision is the revision the document holds after the operation.
    """
    operation: OperationType
    latency_ns: int
    revision: Optional[str] = None
    affected_rows: int = 0

    @property
    def latency_ms(self) -> float:
        return self.latency_ns / 1_000_000


# =============================================================================
# CHANGES FEED
# =============================================================================
@dataclass(frozen=True, slots=True)
class ChangeRecord:
    """Latest change of one key as seen by a changes feed."""
    seq: Any
    key: str
    revision: str
    deleted: bool = False


@dataclass(frozen=True, slots=True)
class ChangesBatch:
    """
    A page of the changes feed.

    last_seq is an opaque checkpoint: pass it back as since= to resume.
    """
    changes: Tuple[ChangeRecord, ...] = field(default_factory=tuple)
    last_seq: Any = None

    def __len__(self) -> int:
        return len(self.changes)


# =============================================================================
# DOCUMENT STORE PROTOCOL
# =============================================================================
@runtime_checkable
class DocumentStoreProtocol(Protocol):
    """
    Base protocol for revisioned async document stores.

    Implemented by InMemoryDocumentStore, RedisDocumentStore and
    CouchDocumentStore.
    """

    @property
    def name(self) -> str:
        ...

    @abstractmethod
    async def get(self, key: str) -> Result[Dict[str, Any], StorageError]:
        """
        Retrieve a document by key.

        Returns:
            Ok(doc): document including "_id" and "_rev"
            Err(StorageError): NOT_FOUND when absent, other codes on failure
        """
        ...

    @abstractmethod
    async def put(self, doc: Dict[str, Any]) -> Result[OperationMetadata, StorageError]:
        """
        Create or update a document.

        doc must carry "_id"; updates must carry the current "_rev".

        Returns:
            Ok(metadata): metadata.revision is the new revision
            Err(StorageError): CONFLICT on stale or missing revision
        """
        ...

    @abstractmethod
    async def all_docs(
        self,
        include_docs: bool = True,
    ) -> Result[List[Tuple[str, Optional[Dict[str, Any]]]], StorageError]:
        """List (key, doc) pairs ordered by key; doc is None unless include_docs."""
        ...

    @abstractmethod
    async def changes(
        self,
        since: Any = None,
        limit: Optional[int] = None,
        timeout_ms: int = 0,
    ) -> Result[ChangesBatch, StorageError]:
        """
        Read the changes feed after checkpoint since.

        When nothing changed and timeout_ms > 0, wait up to timeout_ms
        for a change before returning an empty batch.
        """
        ...

    @abstractmethod
    async def put_replica(self, doc: Dict[str, Any]) -> Result[bool, StorageError]:
        """
        Apply a replicated document carrying its own "_rev".

        Returns Ok(True) when the incoming revision won and was stored.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the handle. Safe to call multiple times."""
        ...


# Opens a local store by name; keyword options are passed through opaquely
StoreFactory = Callable[..., Awaitable[Result[DocumentStoreProtocol, StorageError]]]
