"""
Schema Store Manager: the shared tag-definition registry.

One document ("tag_definitions" by default) in the schema store holds
every tag of the deployment:

    {"_id": "tag_definitions", "tags": {"bug": {"name": "bug", "color": "#ff0000"}}}

The first writer of a name fixes its color. Every subject repository
reads the same document, and replication of the schema store spreads new
tags to every client.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from tagmesh.core import constants as C
from tagmesh.core.config import SchemaConfig
from tagmesh.core.errors import SchemaError, StorageError
from tagmesh.core.types import Result, Ok
from tagmesh.models.entities import Tag, TagDefinitions
from tagmesh.reliability.retry import RetryPolicy, retry_result
from tagmesh.storage.documents import META_ID, META_REV, to_plain
from tagmesh.storage.protocols import DocumentStoreProtocol

logger = logging.getLogger(__name__)


class SchemaStoreManager:
    """
    Cache plus store access for tag definitions.

    definitions is the cache; it is shared with the repository and its
    Tag objects are updated in place so annotations holding them see the
    stored color after every reload.
    """

    __slots__ = ("store", "definitions", "_config")

    def __init__(
        self,
        store: DocumentStoreProtocol,
        definitions: Optional[TagDefinitions] = None,
        config: Optional[SchemaConfig] = None,
    ) -> None:
        self.store = store
        self.definitions: TagDefinitions = definitions if definitions is not None else {}
        self._config = config or SchemaConfig()

    @property
    def doc_id(self) -> str:
        return self._config.tag_definitions_doc_id

    # -------------------------------------------------------------------------
    # DOCUMENT ACCESS
    # -------------------------------------------------------------------------

    async def _read(self) -> Result[Optional[Dict[str, Any]], StorageError]:
        """The definitions document, or Ok(None) when it does not exist yet."""
        result = await self.store.get(self.doc_id)
        if result.is_err():
            return Ok(None) if result.error.is_not_found else result
        return result

    def _stored_tags(self, doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if doc is None:
            return {}
        tags = doc.get("tags", {})
        if not isinstance(tags, dict):
            raise SchemaError.invalid_document(self.doc_id, "'tags' is not an object")
        return tags

    def _adopt(self, name: str, data: Dict[str, Any]) -> Tag:
        """Cache the stored definition, updating an existing Tag in place."""
        color = data.get("color") or C.DEFAULT_TAG_COLOR
        tag = self.definitions.get(name)
        if tag is None:
            tag = Tag(name, color)
            self.definitions[name] = tag
        elif tag.color != color:
            logger.debug("Tag %s color %s replaced by stored %s", name, tag.color, color)
            tag.color = color
        return tag

    def _document(self, tags: Dict[str, Any], previous: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        doc: Dict[str, Any] = {META_ID: self.doc_id, "tags": tags}
        if previous is not None:
            doc[META_REV] = previous[META_REV]
        return to_plain(doc)

    # -------------------------------------------------------------------------
    # OPERATIONS
    # -------------------------------------------------------------------------

    async def get_or_create_tag(self, name: str, color: Optional[str] = None) -> Tag:
        """
        Shared Tag for name, creating the definition on first use.

        A stored definition wins over color. Concurrent creators are
        resolved by re-reading on revision conflict; if the conflicts
        outlast the retry budget the local definition is used until the
        next reload brings the stored one.

        Raises:
            StorageError: on store failures other than conflicts.
        """
        cached = self.definitions.get(name)
        if cached is not None:
            return cached

        async def attempt() -> Result[Tag, StorageError]:
            read = await self._read()
            if read.is_err():
                return read
            doc = read.unwrap()
            stored = self._stored_tags(doc)
            if name in stored:
                return Ok(self._adopt(name, stored[name]))

            tag = Tag(name, color or C.DEFAULT_TAG_COLOR)
            written = await self.store.put(
                self._document({**stored, name: tag.to_dict()}, doc)
            )
            if written.is_err():
                return written
            logger.info("Created tag definition %s (%s)", name, tag.color)
            return Ok(self.definitions.setdefault(name, tag))

        policy = RetryPolicy.on_conflict(
            max_retries=self._config.conflict_retries,
            base_delay_ms=self._config.conflict_backoff_ms,
        )
        result = await retry_result(attempt, policy)
        if result.is_ok():
            return result.unwrap()

        if not result.error.is_conflict:
            raise result.error
        logger.warning(
            "Tag definition %s still conflicting after %d retries; using local definition",
            name, self._config.conflict_retries,
        )
        return self.definitions.setdefault(name, Tag(name, color or C.DEFAULT_TAG_COLOR))

    async def load_definitions(self) -> TagDefinitions:
        """
        Merge the stored definitions into the cache.

        A missing document is created, seeded with the current cache.

        Raises:
            StorageError: on store failures other than NotFound.
            SchemaError: when the stored document is malformed.
        """
        read = await self._read()
        if read.is_err():
            raise read.error
        doc = read.unwrap()

        if doc is None:
            seed = {name: tag.to_dict() for name, tag in self.definitions.items()}
            created = await self.store.put(self._document(seed, None))
            if created.is_ok():
                logger.info("Created tag schema document %s", self.doc_id)
                return self.definitions
            if not created.error.is_conflict:
                raise created.error
            # Created concurrently by another writer
            reread = await self._read()
            if reread.is_err():
                raise reread.error
            doc = reread.unwrap()

        for name, data in self._stored_tags(doc).items():
            if not isinstance(data, dict):
                raise SchemaError.invalid_document(self.doc_id, f"tag {name!r} is not an object")
            self._adopt(name, data)
        return self.definitions

    def resolve(self, name: str, color: Optional[str] = None) -> Tag:
        """Cached Tag for name, or a detached one carrying color."""
        tag = self.definitions.get(name)
        if tag is not None:
            return tag
        return Tag(name, color or C.DEFAULT_TAG_COLOR)
