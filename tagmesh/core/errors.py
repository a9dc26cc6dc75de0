"""
Error Hierarchy for TagMesh

Design Principles:
- Expected absence and revision conflicts travel as Err values, not raises
- Store failures that leave the in-memory view inconsistent are raised
- Misuse (removing a tag that is not there) is a logged no-op, never an error
- Carry full error context for debugging and audit trails

Each error type includes:
- Unique error code for programmatic handling
- Human-readable message for logging
- Optional cause chain for root cause analysis
- Timestamp for correlation with sync events

Usage:
    result = await store.get(key)
    if result.is_err():
        if result.error.is_not_found:
            ...  # first save of this record
        else:
            raise result.error
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from tagmesh.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Storage errors
    - 2xxx: Sync errors
    - 3xxx: Schema errors
    - 9xxx: Internal/configuration errors
    """

    # Storage errors (1xxx)
    STORAGE_NOT_FOUND = 1001
    STORAGE_CONFLICT = 1002
    STORAGE_CONNECTION_FAILED = 1003
    STORAGE_TIMEOUT = 1004
    STORAGE_SERIALIZATION = 1005
    STORAGE_CLOSED = 1006
    STORAGE_BAD_RESPONSE = 1007

    # Sync errors (2xxx)
    SYNC_REPLICATION_FAILED = 2001
    SYNC_CANCELLED = 2002

    # Schema errors (3xxx)
    SCHEMA_INVALID_DOCUMENT = 3001

    # Internal errors (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_CONFIGURATION_ERROR = 9002


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass(eq=False)
class TagMeshError(Exception):
    """
    Base class for all TagMesh errors.

    Provides common infrastructure for error handling:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Timestamp for correlation
    - Cause chain for root cause analysis
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[Exception] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def with_context(self, **kwargs: Any) -> TagMeshError:
        """Add context to error (returns new instance of the same class)."""
        return dataclasses.replace(self, context={**self.context, **kwargs})

    def to_dict(self) -> dict[str, Any]:
        """Serialize error to dictionary for structured logging."""
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# STORAGE ERRORS
# =============================================================================
@dataclass(eq=False)
class StorageError(TagMeshError):
    """
    Errors from document stores (local or remote).

    Covers missing records, stale-revision rejections, unreachable
    servers and malformed responses.
    """

    @property
    def is_not_found(self) -> bool:
        return self.code == ErrorCode.STORAGE_NOT_FOUND

    @property
    def is_conflict(self) -> bool:
        return self.code == ErrorCode.STORAGE_CONFLICT

    @classmethod
    def not_found(cls, store: str, key: str) -> StorageError:
        """Record does not exist."""
        return cls(
            code=ErrorCode.STORAGE_NOT_FOUND,
            message=f"Document {key!r} not found in {store}",
            context={"store": store, "key": key},
        )

    @classmethod
    def conflict(
        cls,
        store: str,
        key: str,
        expected_rev: Optional[str],
        current_rev: Optional[str],
    ) -> StorageError:
        """Write carried a stale (or missing) revision."""
        return cls(
            code=ErrorCode.STORAGE_CONFLICT,
            message=(
                f"Revision conflict on {key!r} in {store}: "
                f"expected {expected_rev}, current {current_rev}"
            ),
            context={
                "store": store,
                "key": key,
                "expected_rev": expected_rev,
                "current_rev": current_rev,
            },
        )

    @classmethod
    def connection_failed(
        cls,
        target: str,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        """Store could not be reached."""
        return cls(
            code=ErrorCode.STORAGE_CONNECTION_FAILED,
            message=f"Failed to connect to store at {target}: {cause}",
            cause=cause,
            context={"target": target},
        )

    @classmethod
    def timeout(cls, operation: str, duration_ms: float) -> StorageError:
        """Store operation exceeded its timeout."""
        return cls(
            code=ErrorCode.STORAGE_TIMEOUT,
            message=f"Store operation '{operation}' timed out after {duration_ms:.0f}ms",
            context={"operation": operation, "duration_ms": duration_ms},
        )

    @classmethod
    def serialization(cls, key: str, cause: Optional[Exception] = None) -> StorageError:
        """Document could not be encoded or decoded."""
        return cls(
            code=ErrorCode.STORAGE_SERIALIZATION,
            message=f"Document {key!r} is not serializable: {cause}",
            cause=cause,
            context={"key": key},
        )

    @classmethod
    def closed(cls, store: str) -> StorageError:
        """Operation on a released handle."""
        return cls(
            code=ErrorCode.STORAGE_CLOSED,
            message=f"Store handle {store} is closed",
            context={"store": store},
        )

    @classmethod
    def bad_response(cls, target: str, status: int, body: str) -> StorageError:
        """Server answered with an unexpected status."""
        return cls(
            code=ErrorCode.STORAGE_BAD_RESPONSE,
            message=f"Unexpected response {status} from {target}: {body[:200]}",
            context={"target": target, "status": status},
        )


# =============================================================================
# SYNC ERRORS
# =============================================================================
@dataclass(eq=False)
class SyncError(TagMeshError):
    """Errors from one-shot replication and continuous sync."""

    @classmethod
    def replication_failed(
        cls,
        source: str,
        target: str,
        cause: Optional[Exception] = None,
    ) -> SyncError:
        """A replication pass could not complete."""
        return cls(
            code=ErrorCode.SYNC_REPLICATION_FAILED,
            message=f"Replication {source} -> {target} failed: {cause}",
            cause=cause,
            context={"source": source, "target": target},
        )

    @classmethod
    def cancelled(cls, channel: str) -> SyncError:
        return cls(
            code=ErrorCode.SYNC_CANCELLED,
            message=f"Sync on channel '{channel}' was cancelled",
            context={"channel": channel},
        )


# =============================================================================
# SCHEMA ERRORS
# =============================================================================
@dataclass(eq=False)
class SchemaError(TagMeshError):
    """Malformed stored documents: the shared tag definitions or an entity record."""

    @classmethod
    def invalid_document(cls, doc_id: str, reason: str) -> SchemaError:
        return cls(
            code=ErrorCode.SCHEMA_INVALID_DOCUMENT,
            message=f"Tag definition document {doc_id!r} is invalid: {reason}",
            context={"doc_id": doc_id, "reason": reason},
        )

    @classmethod
    def invalid_entity(cls, key: str, reason: str) -> SchemaError:
        return cls(
            code=ErrorCode.SCHEMA_INVALID_DOCUMENT,
            message=f"Entity record {key!r} is invalid: {reason}",
            context={"key": key, "reason": reason},
        )


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================
@dataclass(eq=False)
class ConfigurationError(TagMeshError):
    """Invalid or inconsistent configuration."""

    @classmethod
    def invalid(cls, setting: str, reason: str) -> ConfigurationError:
        return cls(
            code=ErrorCode.INTERNAL_CONFIGURATION_ERROR,
            message=f"Invalid configuration for {setting}: {reason}",
            context={"setting": setting, "reason": reason},
        )
