"""
State Loader: rebuilds the in-memory view from the stores.
"""

from __future__ import annotations

import logging

from tagmesh.core.errors import SchemaError
from tagmesh.core.identity import parse_entity_key
from tagmesh.models.entities import Entity, RepositoryEntities
from tagmesh.repository.schema import SchemaStoreManager
from tagmesh.storage.documents import split_document
from tagmesh.storage.protocols import DocumentStoreProtocol

logger = logging.getLogger(__name__)


class StateLoader:
    """
    Full reload of tag definitions and entities into the caller's sink.

    Entities found in the store replace their slot in the sink
    wholesale; slots with no stored record are left alone. A record
    that does not parse is skipped with a warning.
    """

    __slots__ = ("schema", "store", "subject_id", "sink")

    def __init__(
        self,
        schema: SchemaStoreManager,
        store: DocumentStoreProtocol,
        subject_id: str,
        sink: RepositoryEntities,
    ) -> None:
        self.schema = schema
        self.store = store
        self.subject_id = subject_id
        self.sink = sink

    async def load(self) -> int:
        """
        Reload definitions then every entity record.

        Returns:
            Number of entities written into the sink.

        Raises:
            StorageError: on any store failure other than NotFound.
        """
        await self.schema.load_definitions()

        rows = await self.store.all_docs(include_docs=True)
        if rows.is_err():
            if rows.error.is_not_found:
                return 0
            raise rows.error

        loaded = 0
        for key, doc in rows.unwrap():
            # Reserved record named after the store itself
            if key == self.store.name or doc is None:
                continue
            entity_id = parse_entity_key(self.subject_id, key)
            if entity_id is None:
                logger.debug("Skipping record %s outside subject %s", key, self.subject_id)
                continue
            _, _, body = split_document(doc)
            try:
                entity = Entity.from_dict(entity_id, body, self.schema.resolve)
            except SchemaError as e:
                logger.warning("Skipping malformed record %s: %s", key, e.context["reason"])
                continue
            self.sink[entity_id] = entity
            loaded += 1

        logger.debug("Loaded %d entities for subject %s", loaded, self.subject_id)
        return loaded
