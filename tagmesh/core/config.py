"""
Configuration Management for TagMesh

Provides validated configuration with sensible defaults.
Supports environment variable overrides.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
- The repository secret is injected through this object, never
  through mutable module state, so identity derivation stays pure
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from tagmesh.core import constants as C
from tagmesh.core.types import Result, Ok, Err


@dataclass(frozen=True)
class SyncConfig:
    """Replication and continuous sync configuration."""

    batch_size: int = C.SYNC_BATCH_SIZE
    longpoll_timeout_ms: int = C.SYNC_LONGPOLL_TIMEOUT_MS
    retry: bool = True
    retry_base_ms: int = C.SYNC_RETRY_BASE_MS
    retry_max_ms: int = C.SYNC_RETRY_MAX_MS


@dataclass(frozen=True)
class SchemaConfig:
    """Shared tag-definition document configuration."""

    tag_definitions_doc_id: str = C.TAG_DEFINITIONS_DOC_ID
    conflict_retries: int = C.SCHEMA_CONFLICT_RETRIES
    conflict_backoff_ms: int = C.SCHEMA_CONFLICT_BACKOFF_MS


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration."""

    log_level: str = "INFO"
    log_json: bool = False


@dataclass(frozen=True)
class TagMeshConfig:
    """
    Root configuration, shared by every repository of one deployment.

    repository_secret_root salts every derived storage identifier and
    must be overridden in production. metadata_document_id_root is a
    non-secret namespace prefix for store names.
    """

    repository_secret_root: str = C.DEFAULT_REPOSITORY_SECRET_ROOT
    metadata_document_id_root: str = C.DEFAULT_METADATA_DOCUMENT_ID_ROOT
    sync: SyncConfig = field(default_factory=SyncConfig)
    schema: SchemaConfig = field(default_factory=SchemaConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @property
    def uses_default_secret(self) -> bool:
        return self.repository_secret_root == C.DEFAULT_REPOSITORY_SECRET_ROOT

    def warn_if_default_secret(self, logger: Optional[logging.Logger] = None) -> bool:
        """
        Emit the startup warning for the publicly known secret.

        Returns True when the warning was emitted. Never raises: the
        library stays usable unconfigured during development.
        """
        if not self.uses_default_secret:
            return False
        (logger or logging.getLogger("tagmesh")).warning(
            "TagRepository secret is set to the default publicly known value. "
            "Set TAGMESH_SECRET_ROOT or pass TagMeshConfig(repository_secret_root=...) "
            "to keep subject storage identifiers unguessable"
        )
        return True

    @classmethod
    def from_env(cls) -> Result[TagMeshConfig, str]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with TAGMESH_.
        Example: TAGMESH_SECRET_ROOT, TAGMESH_SYNC_BATCH_SIZE
        """

        def _get_bool(key: str, default: bool) -> bool:
            val = os.getenv(key, "").lower()
            if val in ("true", "1", "yes"):
                return True
            if val in ("false", "0", "no"):
                return False
            return default

        try:
            sync = SyncConfig(
                batch_size=int(os.getenv("TAGMESH_SYNC_BATCH_SIZE", str(C.SYNC_BATCH_SIZE))),
                longpoll_timeout_ms=int(
                    os.getenv("TAGMESH_SYNC_LONGPOLL_TIMEOUT_MS", str(C.SYNC_LONGPOLL_TIMEOUT_MS))
                ),
                retry=_get_bool("TAGMESH_SYNC_RETRY", True),
                retry_base_ms=int(os.getenv("TAGMESH_SYNC_RETRY_BASE_MS", str(C.SYNC_RETRY_BASE_MS))),
                retry_max_ms=int(os.getenv("TAGMESH_SYNC_RETRY_MAX_MS", str(C.SYNC_RETRY_MAX_MS))),
            )

            schema = SchemaConfig(
                conflict_retries=int(
                    os.getenv("TAGMESH_SCHEMA_CONFLICT_RETRIES", str(C.SCHEMA_CONFLICT_RETRIES))
                ),
            )

            observability = ObservabilityConfig(
                log_level=os.getenv("TAGMESH_LOG_LEVEL", "INFO").upper(),
                log_json=_get_bool("TAGMESH_LOG_JSON", False),
            )

            return Ok(cls(
                repository_secret_root=os.getenv(
                    "TAGMESH_SECRET_ROOT", C.DEFAULT_REPOSITORY_SECRET_ROOT
                ),
                metadata_document_id_root=os.getenv(
                    "TAGMESH_DOCUMENT_ID_ROOT", C.DEFAULT_METADATA_DOCUMENT_ID_ROOT
                ),
                sync=sync,
                schema=schema,
                observability=observability,
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Validate configuration invariants."""
        if not self.repository_secret_root:
            return Err("repository_secret_root must not be empty")
        if not self.metadata_document_id_root:
            return Err("metadata_document_id_root must not be empty")
        if self.sync.batch_size < 1:
            return Err("Sync batch_size must be >= 1")
        if self.sync.longpoll_timeout_ms < 0:
            return Err("Sync longpoll_timeout_ms must be >= 0")
        if self.sync.retry_base_ms > self.sync.retry_max_ms:
            return Err("Sync retry_base_ms cannot exceed retry_max_ms")
        if self.schema.conflict_retries < 0:
            return Err("Schema conflict_retries must be >= 0")
        if self.observability.log_level not in logging.getLevelNamesMapping():
            return Err(f"Unknown log level {self.observability.log_level!r}")
        return Ok(None)
