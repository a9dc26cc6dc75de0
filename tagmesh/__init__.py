"""
TagMesh: Collaborative Entity Annotations with Two-Tier Sync

Independent clients attach tags and notes to named entities of a
subject (a document, a record, a patient). Data lives in a local store
and optionally syncs with a shared remote server:

- Subject store: one per subject, named by an unguessable identifier
  derived from the subject id and a deployment secret
- Schema store: one per deployment, holding the shared tag definitions
- Sync: one-shot pull on connect, then live bidirectional replication;
  every remote change reloads the in-memory view

Holding the derived identifier is the only access control: whoever can
compute it can read and write the subject's annotations.
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from tagmesh.core.types import Result, Ok, Err
from tagmesh.core.errors import (
    TagMeshError,
    StorageError,
    SyncError,
    SchemaError,
    ConfigurationError,
)
from tagmesh.core.config import TagMeshConfig, SyncConfig, SchemaConfig, ObservabilityConfig
from tagmesh.core.identity import (
    derive_secret_id,
    derive_storage_id,
    schema_store_id,
    entity_key,
    parse_entity_key,
)

# Data model exports
from tagmesh.models import Tag, User, Annotation, Entity, RepositoryEntities, TagDefinitions

# Repository exports
from tagmesh.repository import (
    TagRepository,
    RepositoryOptions,
    SchemaStoreManager,
    StateLoader,
)

# Storage exports
from tagmesh.storage import (
    BackendType,
    MemoryStoreRegistry,
    open_local_store,
    open_remote_store,
)

# Observability exports
from tagmesh.observability import setup_logging

__all__ = [
    # Version
    "__version__",
    # Core types
    "Result",
    "Ok",
    "Err",
    # Errors
    "TagMeshError",
    "StorageError",
    "SyncError",
    "SchemaError",
    "ConfigurationError",
    # Config
    "TagMeshConfig",
    "SyncConfig",
    "SchemaConfig",
    "ObservabilityConfig",
    # Identity
    "derive_secret_id",
    "derive_storage_id",
    "schema_store_id",
    "entity_key",
    "parse_entity_key",
    # Model
    "Tag",
    "User",
    "Annotation",
    "Entity",
    "RepositoryEntities",
    "TagDefinitions",
    # Repository
    "TagRepository",
    "RepositoryOptions",
    "SchemaStoreManager",
    "StateLoader",
    # Storage
    "BackendType",
    "MemoryStoreRegistry",
    "open_local_store",
    "open_remote_store",
    # Observability
    "setup_logging",
]
