"""
Annotation Data Model

Value types for everything a repository holds in memory:

- Tag: a named, colored category shared by every subject of a deployment
- User: the author attributed to new annotations
- Annotation: one tag applied to one entity, with free-text notes
- Entity: a named item of a subject carrying annotations keyed by tag name

Entities and annotations round-trip through plain JSON documents
(to_dict/from_dict); Tag objects are shared by reference between the
schema cache and every annotation that uses them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, MutableMapping, Optional

from tagmesh.core import constants as C
from tagmesh.core.errors import SchemaError


# =============================================================================
# TAG
# =============================================================================
@dataclass
class Tag:
    """
    Category of annotation and its display color.

    Mutable so that a reload can adopt the stored color in place and
    every annotation holding this reference sees it.
    """

    name: str
    color: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "color": self.color}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Tag:
        return cls(
            name=data["name"],
            color=data.get("color") or C.DEFAULT_TAG_COLOR,
        )


# =============================================================================
# USER
# =============================================================================
@dataclass(frozen=True)
class User:
    """Identity of a participant that creates or modifies annotations."""

    username: str
    email: str


# =============================================================================
# ANNOTATION
# =============================================================================
class Annotation:
    """
    A tag applied to an entity, with notes and optional attribution.

    tag and color are derived from the shared tag definition.
    """

    __slots__ = ("tag_definition", "notes", "username")

    def __init__(
        self,
        tag_definition: Tag,
        notes: str,
        username: Optional[str] = None,
    ) -> None:
        self.tag_definition = tag_definition
        self.notes = notes
        self.username = username

    @property
    def tag(self) -> str:
        return self.tag_definition.name

    @property
    def color(self) -> str:
        return self.tag_definition.color

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "notes": self.notes,
            "color": self.color,
            "username": self.username,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        resolve_tag: Callable[[str, Optional[str]], Tag],
        tag_name: Optional[str] = None,
    ) -> Annotation:
        """
        Rebuild from a stored document.

        resolve_tag maps (name, stored color) to the shared Tag so
        annotations loaded from a store keep one definition per name.
        """
        if not isinstance(data, dict):
            raise SchemaError.invalid_entity(tag_name or "?", "annotation is not an object")
        name = data.get("tag") or tag_name
        if not isinstance(name, str) or not name:
            raise SchemaError.invalid_entity(tag_name or "?", "annotation has no tag name")
        color, notes, username = data.get("color"), data.get("notes") or "", data.get("username")
        for field, value in (("color", color), ("notes", notes), ("username", username)):
            if value is not None and not isinstance(value, str):
                raise SchemaError.invalid_entity(name, f"annotation {field} is not a string")
        return cls(
            tag_definition=resolve_tag(name, color),
            notes=notes,
            username=username,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Annotation):
            return NotImplemented
        return (
            self.tag_definition == other.tag_definition
            and self.notes == other.notes
            and self.username == other.username
        )

    def __repr__(self) -> str:
        return (
            f"Annotation(tag={self.tag!r}, color={self.color!r}, "
            f"notes={self.notes!r}, username={self.username!r})"
        )


# =============================================================================
# ENTITY
# =============================================================================
class Entity:
    """
    An item of a subject that carries annotations.

    id is taken from the name at construction and never changes; it is
    the primary key inside the subject's repository. An entity whose
    tags mapping is empty is virtual: reads never persist it.
    """

    __slots__ = ("_id", "name", "type", "tags")

    def __init__(self, name: str, type: Optional[str] = None) -> None:
        self._id = name
        self.name = name
        self.type = type or None
        self.tags: Dict[str, Annotation] = {}

    @property
    def id(self) -> str:
        return self._id

    @property
    def is_virtual(self) -> bool:
        return not self.tags

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the stored entity document (no store metadata)."""
        return {
            "id": self._id,
            "name": self.name,
            "type": self.type,
            "tags": {name: anno.to_dict() for name, anno in self.tags.items()},
        }

    @classmethod
    def from_dict(
        cls,
        entity_id: str,
        data: Dict[str, Any],
        resolve_tag: Callable[[str, Optional[str]], Tag],
    ) -> Entity:
        """
        Deserialize from a stored document.

        entity_id comes from the record key; the document's own name may
        differ from it and is kept as the display name.
        """
        name, type_, tags = data.get("name"), data.get("type"), data.get("tags") or {}
        if not isinstance(tags, dict):
            raise SchemaError.invalid_entity(entity_id, "'tags' is not an object")
        for field, value in (("name", name), ("type", type_)):
            if value is not None and not isinstance(value, str):
                raise SchemaError.invalid_entity(entity_id, f"'{field}' is not a string")

        entity = cls(entity_id, type_)
        entity.name = name or entity_id
        for tag_name, anno_data in tags.items():
            try:
                entity.tags[tag_name] = Annotation.from_dict(anno_data, resolve_tag, tag_name)
            except SchemaError as e:
                raise SchemaError.invalid_entity(entity_id, e.context["reason"]) from e
        return entity

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return NotImplemented
        return (
            self._id == other._id
            and self.name == other.name
            and self.type == other.type
            and self.tags == other.tags
        )

    def __repr__(self) -> str:
        return (
            f"Entity(id={self._id!r}, name={self.name!r}, type={self.type!r}, "
            f"tags={sorted(self.tags)!r})"
        )


# Caller-supplied sink the repository writes entities into
RepositoryEntities = MutableMapping[str, Entity]

# Tag schema cache shared across subjects of one deployment
TagDefinitions = Dict[str, Tag]
