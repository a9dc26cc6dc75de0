"""
Repository module: the per-subject tag repository, its schema manager and loader.
"""

from tagmesh.repository.schema import SchemaStoreManager
from tagmesh.repository.loader import StateLoader
from tagmesh.repository.tag_repository import (
    ConnectOptions,
    RepositoryOptions,
    TagRepository,
    resolve_config,
)

__all__ = [
    "SchemaStoreManager",
    "StateLoader",
    "ConnectOptions",
    "RepositoryOptions",
    "TagRepository",
    "resolve_config",
]
