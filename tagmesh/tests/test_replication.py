"""
Replication Tests

Tests one-shot replicate() and the live SyncHandle:
- Copying, batching and checkpoints
- Convergence on the winning revision in both directions
- Live change events, cancellation and retry after failure
"""

from __future__ import annotations

import asyncio

import pytest

from tagmesh.core.config import SyncConfig
from tagmesh.core.errors import ErrorCode, StorageError
from tagmesh.core.types import Err
from tagmesh.storage import MemoryStoreRegistry
from tagmesh.sync import SyncEventType, SyncHandle, replicate
from tagmesh.tests.conftest import wait_until

FAST = SyncConfig(batch_size=2, longpoll_timeout_ms=50, retry_base_ms=10, retry_max_ms=50)


@pytest.fixture
def pair(registry: MemoryStoreRegistry):
    return registry.open("local"), registry.open("remote")


class FlakyStore:
    """Wraps a store; changes() fails the first `failures` times."""

    def __init__(self, inner, failures: int) -> None:
        self._inner = inner
        self.failures = failures

    @property
    def name(self):
        return self._inner.name

    async def changes(self, *args, **kwargs):
        if self.failures > 0:
            self.failures -= 1
            return Err(StorageError.connection_failed("flaky"))
        return await self._inner.changes(*args, **kwargs)

    def __getattr__(self, attr):
        return getattr(self._inner, attr)


# =============================================================================
# ONE-SHOT
# =============================================================================
class TestReplicate:
    @pytest.mark.asyncio
    async def test_copies_all_documents_across_batches(self, pair):
        local, remote = pair
        for i in range(5):
            await remote.put({"_id": f"doc-{i}", "i": i})

        result = (await replicate(remote, local, batch_size=2)).unwrap()
        assert result.docs_read == 5
        assert result.docs_written == 5
        assert result.last_seq == 5

        for i in range(5):
            local_doc = (await local.get(f"doc-{i}")).unwrap()
            remote_doc = (await remote.get(f"doc-{i}")).unwrap()
            assert local_doc == remote_doc

    @pytest.mark.asyncio
    async def test_checkpoint_skips_already_replicated(self, pair):
        local, remote = pair
        await remote.put({"_id": "a"})
        first = (await replicate(remote, local)).unwrap()

        await remote.put({"_id": "b"})
        second = (await replicate(remote, local, since=first.last_seq)).unwrap()
        assert second.docs_read == 1

    @pytest.mark.asyncio
    async def test_replicating_back_writes_nothing(self, pair):
        local, remote = pair
        await remote.put({"_id": "a"})
        await replicate(remote, local)
        back = (await replicate(local, remote)).unwrap()
        assert back.docs_read == 1
        assert back.docs_written == 0

    @pytest.mark.asyncio
    async def test_divergent_edits_converge_on_same_winner(self, pair):
        local, remote = pair
        base = (await remote.put({"_id": "a", "v": 0})).unwrap()
        await replicate(remote, local)

        await local.put({"_id": "a", "_rev": base.revision, "v": "local"})
        await remote.put({"_id": "a", "_rev": base.revision, "v": "remote"})

        await replicate(remote, local)
        await replicate(local, remote)

        local_doc = (await local.get("a")).unwrap()
        remote_doc = (await remote.get("a")).unwrap()
        assert local_doc == remote_doc
        assert local_doc["v"] in ("local", "remote")

    @pytest.mark.asyncio
    async def test_source_failure_is_sync_error(self, pair):
        local, remote = pair
        await remote.close()
        result = await replicate(remote, local)
        assert result.is_err()
        assert result.error.code == ErrorCode.SYNC_REPLICATION_FAILED
        assert result.error.cause.code == ErrorCode.STORAGE_CLOSED


# =============================================================================
# LIVE SYNC
# =============================================================================
class TestSyncHandle:
    @pytest.mark.asyncio
    async def test_pushes_and_pulls_live(self, pair):
        local, remote = pair
        handle = SyncHandle(local, remote, FAST).start()
        try:
            await local.put({"_id": "from-local"})
            await remote.put({"_id": "from-remote"})

            async def present():
                return (await remote.get("from-local")).is_ok() and (
                    await local.get("from-remote")
                ).is_ok()

            for _ in range(300):
                if await present():
                    break
                await asyncio.sleep(0.01)
            assert await present()
        finally:
            await handle.cancel()

    @pytest.mark.asyncio
    async def test_emits_change_with_direction(self, pair):
        local, remote = pair
        events = []
        handle = SyncHandle(local, remote, FAST)
        handle.on("change", events.append)
        handle.start()
        try:
            await remote.put({"_id": "a"})
            await wait_until(lambda: any(e.direction == "pull" for e in events))
            event = next(e for e in events if e.direction == "pull")
            assert event.type is SyncEventType.CHANGE
            assert event.result.docs_written == 1
        finally:
            await handle.cancel()

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited(self, pair):
        local, remote = pair
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event.direction)

        handle = SyncHandle(local, remote, FAST).on(SyncEventType.CHANGE, handler).start()
        try:
            await local.put({"_id": "a"})
            await wait_until(lambda: "push" in seen)
        finally:
            await handle.cancel()

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_sync(self, pair):
        local, remote = pair

        def broken(event):
            raise RuntimeError("handler bug")

        handle = SyncHandle(local, remote, FAST).on("change", broken).start()
        try:
            await remote.put({"_id": "a"})
            await wait_until(lambda: handle.checkpoints[0] == 1)
            await remote.put({"_id": "b"})
            await wait_until(lambda: handle.checkpoints[0] == 2)
            assert handle.running
        finally:
            await handle.cancel()

    @pytest.mark.asyncio
    async def test_cancel_stops_and_completes(self, pair):
        local, remote = pair
        completed = []
        handle = SyncHandle(local, remote, FAST).on("complete", completed.append).start()
        await asyncio.sleep(0.02)
        await handle.cancel()
        assert not handle.running
        assert len(completed) == 1

        await remote.put({"_id": "late"})
        await asyncio.sleep(0.1)
        assert (await local.get("late")).is_err()

        await handle.cancel()

    @pytest.mark.asyncio
    async def test_retries_after_failure(self, pair):
        local, remote = pair
        flaky = FlakyStore(remote, failures=2)
        errors = []
        await remote.put({"_id": "a"})

        handle = SyncHandle(local, flaky, FAST).on("error", errors.append).start()
        try:
            for _ in range(300):
                if (await local.get("a")).is_ok():
                    break
                await asyncio.sleep(0.01)
            assert (await local.get("a")).is_ok()
            assert len(errors) >= 2
        finally:
            await handle.cancel()

    @pytest.mark.asyncio
    async def test_without_retry_stops_on_failure(self, pair):
        local, remote = pair
        flaky = FlakyStore(remote, failures=1)
        completed = []
        handle = SyncHandle(local, flaky, FAST, retry=False).on("complete", completed.append).start()
        await wait_until(lambda: not handle.running)
        assert len(completed) == 1
        await handle.cancel()
