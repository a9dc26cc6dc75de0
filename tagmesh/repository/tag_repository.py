"""
Tag Repository: per-subject annotations with two-tier sync

The aggregate root of TagMesh. A repository owns:

- a local subject store, named by the unguessable storage id derived
  from the subject id and the deployment secret
- a local schema store holding the tag definitions shared by all subjects
- when connected, one SyncChannel per store to the remote server

Local mutations update the caller's sink immediately and persist the
whole entity in the background. Every change arriving through sync
triggers a full reload into the same sink.

Design Principles:
    - The caller's mapping is written through, never replaced
    - One asyncio.Lock serialises reloads and mutations
    - Writes to the same entity are chained; different entities are independent
    - Losing the network never affects local usability

Example:
    annotations: dict[str, Entity] = {}
    async with await TagRepository.create("patient-42", annotations) as repo:
        await repo.save_tag("BRCA1", "pathogenic", "confirmed by panel", "#ff0000")
        await repo.connect("https://couch.example.org", "alice", "secret")
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from tagmesh.core import constants as C
from tagmesh.core.config import TagMeshConfig
from tagmesh.core.errors import ConfigurationError, StorageError
from tagmesh.core.identity import (
    derive_secret_id,
    entity_key,
    schema_store_id,
    storage_id_for_secret,
)
from tagmesh.core.types import Result, Ok
from tagmesh.models.entities import (
    Annotation,
    Entity,
    RepositoryEntities,
    TagDefinitions,
    User,
)
from tagmesh.observability.logging import StructuredLogger
from tagmesh.repository.loader import StateLoader
from tagmesh.repository.schema import SchemaStoreManager
from tagmesh.storage import open_local_store, open_remote_store
from tagmesh.storage.documents import META_ID, META_REV, to_plain
from tagmesh.storage.protocols import (
    DocumentStoreProtocol,
    OperationMetadata,
    StoreFactory,
)
from tagmesh.sync.channel import RemoteFactory, SyncChannel, open_channel


# =============================================================================
# OPTIONS
# =============================================================================
@dataclass
class RepositoryOptions:
    """
    Construction options for a TagRepository.

    Attributes:
        server_url: Remote base URL; create() connects when set.
        store_options: Passed as keyword arguments to store_factory.
        store_factory: Opens a local store by name.
        remote_factory: Opens a remote store by full database URL.
        config: Deployment configuration (default: TagMeshConfig.from_env()).
    """
    server_url: Optional[str] = None
    store_options: Dict[str, Any] = field(default_factory=dict)
    store_factory: StoreFactory = open_local_store
    remote_factory: RemoteFactory = open_remote_store
    config: Optional[TagMeshConfig] = None


@dataclass(frozen=True)
class ConnectOptions:
    """Credentials of the last connect, replayed by change_subject."""
    base_url: str
    username: Optional[str] = None
    password: Optional[str] = None
    headers: Optional[Mapping[str, str]] = None


def resolve_config(config: Optional[TagMeshConfig]) -> TagMeshConfig:
    """
    Explicit config, or one loaded from the environment; validated.

    Raises:
        ConfigurationError: on unparsable environment or invalid values.
    """
    if config is None:
        loaded = TagMeshConfig.from_env()
        if loaded.is_err():
            raise ConfigurationError.invalid("environment", loaded.error)
        config = loaded.unwrap()
    valid = config.validate()
    if valid.is_err():
        raise ConfigurationError.invalid("TagMeshConfig", valid.error)
    return config


# =============================================================================
# TAG REPOSITORY
# =============================================================================
class TagRepository:
    """
    Annotations of one subject, persisted locally and optionally synced.

    Use TagRepository.create() rather than the constructor: it derives
    the storage id, opens the local stores and loads state.
    """

    def __init__(
        self,
        secret_id: str,
        subject_id: str,
        annotations: RepositoryEntities,
        options: Optional[RepositoryOptions] = None,
    ) -> None:
        self._options = options or RepositoryOptions()
        self.config = resolve_config(self._options.config)
        self.config.warn_if_default_secret()

        self.subject_id = subject_id
        self.secret_id = secret_id
        self.metadata_document_id = storage_id_for_secret(
            secret_id, self.config.metadata_document_id_root,
        )
        self.user_annotations: RepositoryEntities = annotations
        self.tag_definitions: TagDefinitions = {}
        self.connected = False
        self.user: Optional[User] = None
        self.server_url: Optional[str] = self._options.server_url

        self._store: Optional[DocumentStoreProtocol] = None
        self._schema_store: Optional[DocumentStoreProtocol] = None
        self._schema: Optional[SchemaStoreManager] = None
        self._loader: Optional[StateLoader] = None
        self._schema_channel: Optional[SyncChannel] = None
        self._subject_channel: Optional[SyncChannel] = None
        self._connect_options: Optional[ConnectOptions] = None

        self._lock = asyncio.Lock()
        self._write_chains: Dict[str, asyncio.Task] = {}
        self._pending: Dict[asyncio.Task, None] = {}
        self._log = StructuredLogger(__name__).with_extra(subject_id=subject_id)

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    @classmethod
    async def create(
        cls,
        subject_id: str,
        annotations: RepositoryEntities,
        options: Optional[RepositoryOptions] = None,
    ) -> TagRepository:
        """
        Create a repository for subject_id writing into annotations.

        Derives the secure storage id, opens both local stores, loads
        state and, when options.server_url is set, connects.

        Raises:
            StorageError: when a local store cannot be opened or read.
            ConfigurationError: on invalid configuration.
        """
        options = options or RepositoryOptions()
        config = resolve_config(options.config)
        secret_id = derive_secret_id(config.repository_secret_root, subject_id)

        repo = cls(secret_id, subject_id, annotations, dataclasses.replace(options, config=config))
        try:
            await repo.open()
        except BaseException:
            await repo.close()
            raise
        if repo.server_url:
            await repo.connect(repo.server_url)
        return repo

    async def _open_store(self, name: str) -> DocumentStoreProtocol:
        opened = await self._options.store_factory(name, **self._options.store_options)
        if opened.is_err():
            raise opened.error
        return opened.unwrap()

    async def open(self) -> TagRepository:
        """Open the local stores and load state. Called by create()."""
        await self._open_stores()
        await self.load_state()
        return self

    async def _open_stores(self) -> None:
        if self._schema_store is None:
            self._schema_store = await self._open_store(
                schema_store_id(self.config.metadata_document_id_root)
            )
            self._schema = SchemaStoreManager(
                self._schema_store, self.tag_definitions, self.config.schema,
            )
        self._store = await self._open_store(self.metadata_document_id)
        self._loader = StateLoader(self._schema, self._store, self.subject_id, self.user_annotations)

    async def close(self) -> None:
        """Await pending writes, then release every channel and store."""
        await self.flush()
        await self.disconnect()
        if self._schema_channel is not None:
            await self._schema_channel.close()
            self._schema_channel = None
        if self._store is not None:
            await self._store.close()
            self._store = None
        if self._schema_store is not None:
            await self._schema_store.close()
            self._schema_store = None

    async def __aenter__(self) -> TagRepository:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def store(self) -> Optional[DocumentStoreProtocol]:
        return self._store

    @property
    def schema_store(self) -> Optional[DocumentStoreProtocol]:
        return self._schema_store

    @property
    def schema_channel(self) -> Optional[SyncChannel]:
        return self._schema_channel

    @property
    def subject_channel(self) -> Optional[SyncChannel]:
        return self._subject_channel

    # -------------------------------------------------------------------------
    # STATE
    # -------------------------------------------------------------------------

    async def load_state(self) -> TagRepository:
        """
        Full reload of tag definitions and entities into the sink.

        Raises:
            StorageError: on any store failure other than NotFound.
        """
        async with self._lock:
            await self._loader.load()
        return self

    def get(self, entity_id: str) -> Entity:
        """The entity for entity_id, or a transient one that is not stored."""
        entity = self.user_annotations.get(entity_id)
        if entity is not None:
            return entity
        return Entity(entity_id)

    # -------------------------------------------------------------------------
    # MUTATIONS
    # -------------------------------------------------------------------------

    async def save_tag(
        self,
        entity_name: str,
        tag: str,
        notes: str = "",
        color: Optional[str] = None,
        type: Optional[str] = None,
    ) -> Entity:
        """
        Apply tag to entity_name, or update its notes if already applied.

        The entity is inserted into the sink when new. Persistence is
        scheduled and not awaited; use flush() for a durability point.
        """
        async with self._lock:
            tag_definition = await self._schema.get_or_create_tag(tag, color)

            entity = self.user_annotations.get(entity_name)
            if entity is None:
                entity = Entity(entity_name)
                self.user_annotations[entity_name] = entity
            if type:
                entity.type = type

            annotation = entity.tags.get(tag)
            if annotation is None:
                entity.tags[tag] = Annotation(
                    tag_definition,
                    notes,
                    self.user.username if self.user is not None else None,
                )
            else:
                annotation.notes = notes
                annotation.tag_definition = tag_definition

            self._schedule_save(entity)
        return entity

    async def remove_annotation(
        self,
        entity_id: str,
        annotation: Optional[Annotation] = None,
    ) -> None:
        """Remove annotation from entity_id and await the write."""
        if annotation is None:
            self._log.info("No annotation to remove", entity_id=entity_id)
            return

        async with self._lock:
            entity = self.user_annotations.get(entity_id)
            if entity is None or not entity.tags:
                self._log.info("Entity has no tags to remove", entity_id=entity_id)
                return
            if annotation.tag not in entity.tags:
                self._log.info(
                    "Tag not present on entity", entity_id=entity_id, tag=annotation.tag,
                )
                return
            del entity.tags[annotation.tag]
            write = self._schedule_save(entity)
        await asyncio.wait([write])

    async def remove_tag(self, entity_id: str, tag_name: str) -> None:
        """Remove the annotation named tag_name; a no-op if absent."""
        entity = self.user_annotations.get(entity_id)
        annotation = entity.tags.get(tag_name) if entity is not None else None
        await self.remove_annotation(entity_id, annotation)

    async def clear(self) -> None:
        """Remove every annotation of every entity, one write per tag."""
        for entity_id in list(self.user_annotations):
            entity = self.user_annotations.get(entity_id)
            if entity is None:
                continue
            for annotation in list(entity.tags.values()):
                await self.remove_annotation(entity_id, annotation)

    # -------------------------------------------------------------------------
    # PERSISTENCE
    # -------------------------------------------------------------------------

    def _schedule_save(self, entity: Entity) -> asyncio.Task:
        """Queue a write of entity's current document behind earlier ones."""
        key = entity_key(self.subject_id, entity.id)
        body = to_plain(entity.to_dict())
        previous = self._write_chains.get(entity.id)

        task = asyncio.get_running_loop().create_task(
            self._write_after(previous, self._store, key, body),
            name=f"tagmesh-save-{key}",
        )
        self._write_chains[entity.id] = task
        self._pending[task] = None
        task.add_done_callback(lambda done: self._write_finished(entity.id, done))
        return task

    def _write_finished(self, entity_id: str, task: asyncio.Task) -> None:
        self._pending.pop(task, None)
        if self._write_chains.get(entity_id) is task:
            del self._write_chains[entity_id]
        if not task.cancelled() and task.exception() is not None:
            self._log.error(
                "Entity write crashed", entity_id=entity_id, error=repr(task.exception()),
            )

    async def _write_after(
        self,
        previous: Optional[asyncio.Task],
        store: DocumentStoreProtocol,
        key: str,
        body: Dict[str, Any],
    ) -> Result[OperationMetadata, StorageError]:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        return await self._save_entity(store, key, body)

    async def _save_entity(
        self,
        store: DocumentStoreProtocol,
        key: str,
        body: Dict[str, Any],
    ) -> Result[OperationMetadata, StorageError]:
        """Write body under key with the current revision; failures are logged."""
        doc = dict(body)
        doc[META_ID] = key

        existing = await store.get(key)
        if existing.is_ok():
            doc[META_REV] = existing.unwrap()[META_REV]
        elif not existing.error.is_not_found:
            self._log.error("Could not read entity before write", key=key, error=str(existing.error))
            return existing

        result = await store.put(doc)
        if result.is_err():
            if result.error.is_conflict:
                self._log.warning("Entity write lost a revision race", key=key)
            else:
                self._log.error("Entity write failed", key=key, error=str(result.error))
        else:
            self._log.debug("Saved entity", key=key, revision=result.unwrap().revision)
        return result

    async def flush(self) -> List[Result[OperationMetadata, StorageError]]:
        """Await every scheduled write and return their results in order."""
        results: List[Result[OperationMetadata, StorageError]] = []
        awaited: set[asyncio.Task] = set()
        while True:
            batch = [task for task in self._pending if task not in awaited]
            if not batch:
                return results
            awaited.update(batch)
            outcomes = await asyncio.gather(*batch, return_exceptions=True)
            results.extend(o for o in outcomes if not isinstance(o, BaseException))

    # -------------------------------------------------------------------------
    # SYNC
    # -------------------------------------------------------------------------

    async def connect(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> bool:
        """
        Replicate both stores with base_url and keep them in live sync.

        Returns:
            True when both channels are live. A failure leaves the
            repository fully usable locally with connected False.
        """
        options = ConnectOptions(base_url, username, password, dict(headers) if headers else None)
        self._connect_options = options
        self.server_url = base_url
        credentials = dict(username=username, password=password, headers=options.headers)

        async def schema_channel() -> Result[SyncChannel, Any]:
            current = self._schema_channel
            if current is not None and current.base_url == base_url and current.live:
                self._log.debug("Reusing schema channel", url=base_url)
                return Ok(current)
            if current is not None:
                self._schema_channel = None
                await current.close()
            return await open_channel(
                "schema", base_url, self._schema_store, self._options.remote_factory,
                self.load_state, self.config.sync, **credentials,
            )

        async def subject_channel() -> Result[SyncChannel, Any]:
            if self._subject_channel is not None:
                current, self._subject_channel = self._subject_channel, None
                await current.close()
            return await open_channel(
                "subject", base_url, self._store, self._options.remote_factory,
                self.load_state, self.config.sync, **credentials,
            )

        schema_result, subject_result = await asyncio.gather(schema_channel(), subject_channel())

        if schema_result.is_ok():
            self._schema_channel = schema_result.unwrap()
        else:
            self._log.warning("Schema sync unavailable", url=base_url, error=str(schema_result.error))

        if subject_result.is_ok():
            self._subject_channel = subject_result.unwrap()
            self.user = User(username or C.UNKNOWN_USER, C.UNKNOWN_USER)
            self._log.info("Connected", url=base_url, user=self.user.username)
        else:
            self._log.warning("Subject sync unavailable", url=base_url, error=str(subject_result.error))

        self.connected = schema_result.is_ok() and subject_result.is_ok()
        return self.connected

    async def disconnect(self) -> None:
        """Stop subject sync; local state stays usable."""
        if self._subject_channel is not None:
            channel, self._subject_channel = self._subject_channel, None
            await channel.close()
            self._log.info("Disconnected")
        self.connected = False

    async def change_subject(
        self,
        subject_id: str,
        annotations: RepositoryEntities,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> TagRepository:
        """
        Rebind this repository to another subject.

        Pending writes of the old subject are flushed into its own store
        before it is closed. The schema store and its channel stay attached.
        """
        await self.flush()
        await self.disconnect()

        # Schema reloads must not see a half-swapped subject
        async with self._lock:
            if self._store is not None:
                await self._store.close()
                self._store = None

            self.subject_id = subject_id
            self.secret_id = derive_secret_id(self.config.repository_secret_root, subject_id)
            self.metadata_document_id = storage_id_for_secret(
                self.secret_id, self.config.metadata_document_id_root,
            )
            self.user_annotations = annotations
            self.user = None
            self._log = StructuredLogger(__name__).with_extra(subject_id=subject_id)
            await self._open_stores()

        await self.load_state()

        if self.server_url:
            previous = self._connect_options
            await self.connect(
                self.server_url,
                username or (previous.username if previous else None),
                password or (previous.password if previous else None),
                headers=previous.headers if previous else None,
            )
        return self

    def __repr__(self) -> str:
        return (
            f"TagRepository(subject_id={self.subject_id!r}, "
            f"store={self.metadata_document_id!r}, connected={self.connected})"
        )
