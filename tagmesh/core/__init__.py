"""
Core module: Result types, errors, configuration and identity derivation.
"""

from tagmesh.core.types import Result, Ok, Err, Timestamp, ContentHash
from tagmesh.core.errors import (
    ErrorCode,
    TagMeshError,
    StorageError,
    SyncError,
    SchemaError,
    ConfigurationError,
)
from tagmesh.core.config import (
    TagMeshConfig,
    SyncConfig,
    SchemaConfig,
    ObservabilityConfig,
)
from tagmesh.core.identity import (
    derive_secret_id,
    derive_storage_id,
    storage_id_for_secret,
    schema_store_id,
    entity_key,
    parse_entity_key,
)

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    "ContentHash",
    "ErrorCode",
    "TagMeshError",
    "StorageError",
    "SyncError",
    "SchemaError",
    "ConfigurationError",
    "TagMeshConfig",
    "SyncConfig",
    "SchemaConfig",
    "ObservabilityConfig",
    "derive_secret_id",
    "derive_storage_id",
    "storage_id_for_secret",
    "schema_store_id",
    "entity_key",
    "parse_entity_key",
]
