"""
Sync channel: one local store kept in step with one remote database.

A repository runs two of these, one for the shared tag schema and one
for the current subject. Opening a channel pulls the remote once,
reloads the in-memory view, then keeps syncing live and reloads again
whenever replication writes anything.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from tagmesh.core.config import SyncConfig
from tagmesh.core.errors import StorageError, SyncError, TagMeshError
from tagmesh.core.types import Result, Ok, Err
from tagmesh.storage.protocols import DocumentStoreProtocol
from tagmesh.sync.replication import (
    SyncEvent,
    SyncEventType,
    SyncHandle,
    replicate,
)

logger = logging.getLogger(__name__)

ReloadCallback = Callable[[], Awaitable[Any]]

# Opens a remote store by full URL: (url, username=, password=, headers=)
RemoteFactory = Callable[..., Awaitable[Result[DocumentStoreProtocol, StorageError]]]


class SyncChannel:
    """
    Local store ↔ remote store pairing with its live SyncHandle.

    The channel owns the remote handle: close() cancels live sync and
    closes the remote store. The local store belongs to the repository.
    """

    __slots__ = ("label", "base_url", "local", "remote", "_reload", "_config", "_handle")

    def __init__(
        self,
        label: str,
        base_url: str,
        local: DocumentStoreProtocol,
        remote: DocumentStoreProtocol,
        reload: ReloadCallback,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.label = label
        self.base_url = base_url
        self.local = local
        self.remote = remote
        self._reload = reload
        self._config = config or SyncConfig()
        self._handle: Optional[SyncHandle] = None

    @property
    def live(self) -> bool:
        return self._handle is not None and self._handle.running

    @property
    def handle(self) -> Optional[SyncHandle]:
        return self._handle

    async def open(self) -> Result[None, TagMeshError]:
        """
        Initial pull, reload, then start live sync.

        Returns Err when the pull or the reload fails; live sync is not
        started in that case and the caller should close the channel.
        """
        pulled = await replicate(self.remote, self.local, batch_size=self._config.batch_size)
        if pulled.is_err():
            return pulled

        try:
            await self._reload()
        except TagMeshError as e:
            return Err(e)

        self._handle = SyncHandle(
            self.local,
            self.remote,
            self._config,
            label=self.label,
            pull_since=pulled.unwrap().last_seq,
        )
        self._handle.on(SyncEventType.CHANGE, self._on_change)
        self._handle.on(SyncEventType.ERROR, self._on_error)
        self._handle.start()
        logger.info(
            "Sync channel %s live: %s <-> %s (%d documents pulled)",
            self.label, self.local.name, self.remote.name, pulled.unwrap().docs_written,
        )
        return Ok(None)

    async def _on_change(self, event: SyncEvent) -> None:
        logger.debug("Sync channel %s %s change, reloading", self.label, event.direction)
        await self._reload()

    def _on_error(self, event: SyncEvent) -> None:
        logger.info("Sync channel %s interrupted: %s", self.label, event.error)

    async def close(self) -> None:
        """Cancel live sync and release the remote handle. Idempotent."""
        if self._handle is not None:
            await self._handle.cancel()
            self._handle = None
        await self.remote.close()

    def __repr__(self) -> str:
        return f"SyncChannel({self.label!r}, {self.local.name!r} <-> {self.remote.name!r}, live={self.live})"


def database_url(base_url: str, database: str) -> str:
    return f"{base_url.rstrip('/')}/{database}"


async def open_channel(
    label: str,
    base_url: str,
    local: DocumentStoreProtocol,
    remote_factory: RemoteFactory,
    reload: ReloadCallback,
    config: Optional[SyncConfig] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> Result[SyncChannel, TagMeshError]:
    """
    Open the remote database matching local on base_url and start syncing.

    Header auth is used when headers carry Authorization, otherwise
    username/password. Every failure is returned as Err with all
    handles released.
    """
    url = database_url(base_url, local.name)
    try:
        if headers and any(k.lower() == "authorization" for k in headers):
            remote = await remote_factory(url, headers=headers)
        else:
            remote = await remote_factory(url, username=username, password=password, headers=headers)
    except TagMeshError as e:
        return Err(e)
    if remote.is_err():
        return Err(SyncError.replication_failed(url, local.name, remote.error))

    channel = SyncChannel(label, base_url, local, remote.unwrap(), reload, config)
    try:
        opened = await channel.open()
    except BaseException:
        await channel.close()
        raise
    if opened.is_err():
        await channel.close()
        return opened
    return Ok(channel)
