"""
Data model: tags, users, annotations and entities.
"""

from tagmesh.models.entities import (
    Tag,
    User,
    Annotation,
    Entity,
    RepositoryEntities,
    TagDefinitions,
)

__all__ = [
    "Tag",
    "User",
    "Annotation",
    "Entity",
    "RepositoryEntities",
    "TagDefinitions",
]
