"""
Replication Transport: Changes-Feed Replication and Live Sync

Drives two DocumentStoreProtocol stores with nothing but their
get / changes / put_replica primitives:

- replicate(): one-shot, one-direction pass over the source changes feed
- SyncHandle: continuous bidirectional replication with events,
  long-poll idling and exponential-backoff retry

Conflicts are never merged here: put_replica lets the target store keep
whichever revision its winner policy prefers, so both sides converge on
the same winner.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from tagmesh.core import constants as C
from tagmesh.core.config import SyncConfig
from tagmesh.core.errors import StorageError, SyncError
from tagmesh.core.types import Result, Ok, Err
from tagmesh.reliability.retry import calculate_backoff
from tagmesh.storage.protocols import DocumentStoreProtocol

logger = logging.getLogger(__name__)


# =============================================================================
# ONE-SHOT REPLICATION
# =============================================================================
@dataclass(frozen=True, slots=True)
class ReplicationResult:
    """Outcome of one replication pass."""
    docs_read: int
    docs_written: int
    last_seq: Any


async def replicate(
    source: DocumentStoreProtocol,
    target: DocumentStoreProtocol,
    since: Any = None,
    batch_size: int = C.SYNC_BATCH_SIZE,
) -> Result[ReplicationResult, SyncError]:
    """
    Copy every document changed on source after since into target.

    Reads the changes feed in pages of batch_size until a short page,
    so a pass always ends at the feed position it observed last.

    Returns:
        Ok(ReplicationResult) with last_seq as the next checkpoint.
        Err(SyncError) wrapping the first store failure.
    """
    docs_read = 0
    docs_written = 0
    checkpoint = since

    def _failed(error: StorageError) -> Err[SyncError]:
        return Err(SyncError.replication_failed(source.name, target.name, error))

    while True:
        batch = await source.changes(since=checkpoint, limit=batch_size)
        if batch.is_err():
            return _failed(batch.error)
        page = batch.unwrap()

        for change in page.changes:
            if change.deleted:
                continue
            fetched = await source.get(change.key)
            if fetched.is_err():
                # Superseded between the feed read and the fetch
                if fetched.error.is_not_found:
                    continue
                return _failed(fetched.error)
            docs_read += 1

            applied = await target.put_replica(fetched.unwrap())
            if applied.is_err():
                return _failed(applied.error)
            if applied.unwrap():
                docs_written += 1

        checkpoint = page.last_seq
        if len(page) < batch_size:
            break

    if docs_written:
        logger.debug(
            "Replicated %d/%d documents %s -> %s",
            docs_written, docs_read, source.name, target.name,
        )
    return Ok(ReplicationResult(
        docs_read=docs_read,
        docs_written=docs_written,
        last_seq=checkpoint,
    ))


# =============================================================================
# SYNC EVENTS
# =============================================================================
class SyncEventType(str, Enum):
    """Events emitted by a SyncHandle."""
    CHANGE = "change"
    ERROR = "error"
    PAUSED = "paused"
    ACTIVE = "active"
    COMPLETE = "complete"


@dataclass(frozen=True, slots=True)
class SyncEvent:
    """
    Payload handed to event handlers.

    direction is "pull" or "push" for CHANGE events.
    """
    type: SyncEventType
    direction: Optional[str] = None
    result: Optional[ReplicationResult] = None
    error: Optional[Exception] = None


SyncEventHandler = Callable[[SyncEvent], Union[None, Awaitable[None]]]


# =============================================================================
# LIVE SYNC HANDLE
# =============================================================================
class SyncHandle:
    """
    Continuous bidirectional replication between a local and a remote store.

    Each round pulls remote → local, then pushes local → remote, emitting
    CHANGE for every direction that wrote documents. Between rounds the
    handle long-polls both changes feeds and wakes on the first change.
    Failures emit ERROR and, when retry is enabled, the round is retried
    after an exponential backoff; otherwise the handle completes.

    Example:
        handle = SyncHandle(local, remote, SyncConfig())
        handle.on("change", on_change)
        handle.start()
        ...
        await handle.cancel()
    """

    __slots__ = (
        "_local",
        "_remote",
        "_config",
        "_retry",
        "_label",
        "_handlers",
        "_task",
        "_pull_since",
        "_push_since",
    )

    def __init__(
        self,
        local: DocumentStoreProtocol,
        remote: DocumentStoreProtocol,
        config: Optional[SyncConfig] = None,
        retry: Optional[bool] = None,
        label: str = "sync",
        pull_since: Any = None,
        push_since: Any = None,
    ) -> None:
        self._local = local
        self._remote = remote
        self._config = config or SyncConfig()
        self._retry = self._config.retry if retry is None else retry
        self._label = label
        self._handlers: Dict[SyncEventType, List[SyncEventHandler]] = {}
        self._task: Optional[asyncio.Task] = None
        self._pull_since = pull_since
        self._push_since = push_since

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def checkpoints(self) -> tuple[Any, Any]:
        """(pull, push) feed positions reached so far."""
        return (self._pull_since, self._push_since)

    def on(self, event: Union[str, SyncEventType], handler: SyncEventHandler) -> SyncHandle:
        """Register handler for event; handlers may be sync or async."""
        self._handlers.setdefault(SyncEventType(event), []).append(handler)
        return self

    def start(self) -> SyncHandle:
        if self.running:
            return self
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"tagmesh-sync-{self._label}",
        )
        return self

    async def cancel(self) -> None:
        """Stop live sync and wait for the loop to unwind. Idempotent."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # -------------------------------------------------------------------------
    # EVENTS
    # -------------------------------------------------------------------------

    async def _emit(self, event: SyncEvent) -> None:
        for handler in list(self._handlers.get(event.type, ())):
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Sync %s handler for %s failed", self._label, event.type.value)

    # -------------------------------------------------------------------------
    # LOOP
    # -------------------------------------------------------------------------

    async def _round(self) -> Optional[SyncError]:
        pulled = await replicate(
            self._remote, self._local, self._pull_since, self._config.batch_size,
        )
        if pulled.is_err():
            return pulled.error
        self._pull_since = pulled.unwrap().last_seq
        if pulled.unwrap().docs_written:
            await self._emit(SyncEvent(SyncEventType.CHANGE, "pull", pulled.unwrap()))

        pushed = await replicate(
            self._local, self._remote, self._push_since, self._config.batch_size,
        )
        if pushed.is_err():
            return pushed.error
        self._push_since = pushed.unwrap().last_seq
        if pushed.unwrap().docs_written:
            await self._emit(SyncEvent(SyncEventType.CHANGE, "push", pushed.unwrap()))
        return None

    async def _wait_for_changes(self) -> Optional[SyncError]:
        timeout_ms = self._config.longpoll_timeout_ms
        if timeout_ms <= 0:
            await asyncio.sleep(self._config.retry_base_ms / 1000)
            return None

        watches = [
            asyncio.ensure_future(self._local.changes(self._push_since, limit=1, timeout_ms=timeout_ms)),
            asyncio.ensure_future(self._remote.changes(self._pull_since, limit=1, timeout_ms=timeout_ms)),
        ]
        try:
            done, _ = await asyncio.wait(watches, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for watch in watches:
                watch.cancel()
            await asyncio.gather(*watches, return_exceptions=True)

        for watch in done:
            if watch.cancelled():
                continue
            result = watch.result()
            if result.is_err():
                return SyncError.replication_failed(
                    self._remote.name, self._local.name, result.error,
                )
        return None

    async def _run(self) -> None:
        attempt = 0
        try:
            while True:
                error = await self._round()
                if error is None:
                    attempt = 0
                    await self._emit(SyncEvent(SyncEventType.PAUSED))
                    error = await self._wait_for_changes()
                    if error is None:
                        await self._emit(SyncEvent(SyncEventType.ACTIVE))
                        continue

                logger.warning("Sync %s failed: %s", self._label, error)
                await self._emit(SyncEvent(SyncEventType.ERROR, error=error))
                if not self._retry:
                    break
                delay = calculate_backoff(
                    attempt, self._config.retry_base_ms, self._config.retry_max_ms,
                )
                attempt += 1
                await asyncio.sleep(delay / 1000)
        except asyncio.CancelledError:
            logger.debug("Sync %s cancelled", self._label)
            raise
        finally:
            await self._emit(SyncEvent(SyncEventType.COMPLETE))

    def __repr__(self) -> str:
        return (
            f"SyncHandle({self._label!r}, local={self._local.name!r}, "
            f"remote={self._remote.name!r}, running={self.running})"
        )
