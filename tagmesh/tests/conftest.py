"""
Shared fixtures: in-memory registries standing in for client-local
databases and for the remote server, plus fast sync settings.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from tagmesh.core.config import SyncConfig, TagMeshConfig
from tagmesh.core.errors import StorageError
from tagmesh.core.types import Ok, Err
from tagmesh.repository import RepositoryOptions
from tagmesh.storage import MemoryStoreRegistry, split_database_url

TEST_SECRET = "test-secret-root"


class MemoryServer:
    """
    Remote factory over a MemoryStoreRegistry.

    Records every open so tests can inspect the credentials used, and
    can be told to refuse databases whose name ends with a suffix.
    """

    def __init__(self) -> None:
        self.registry = MemoryStoreRegistry()
        self.opened: List[Dict[str, Any]] = []
        self.refuse_suffix: Optional[str] = None

    async def __call__(
        self,
        url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        _, db_name = split_database_url(url)
        self.opened.append({
            "url": url,
            "db": db_name,
            "username": username,
            "password": password,
            "headers": headers,
        })
        if self.refuse_suffix and db_name.endswith(self.refuse_suffix):
            return Err(StorageError.connection_failed(url))
        return Ok(self.registry.open(db_name))


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll predicate until true or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def config() -> TagMeshConfig:
    return TagMeshConfig(
        repository_secret_root=TEST_SECRET,
        sync=SyncConfig(longpoll_timeout_ms=50, retry_base_ms=10, retry_max_ms=50),
    )


@pytest.fixture
def registry() -> MemoryStoreRegistry:
    return MemoryStoreRegistry()


@pytest.fixture
def server() -> MemoryServer:
    return MemoryServer()


@pytest.fixture
def make_options(config: TagMeshConfig, server: MemoryServer):
    """Options for one client: its own local registry, the shared server."""

    def _make(registry: Optional[MemoryStoreRegistry] = None, **overrides: Any) -> RepositoryOptions:
        values: Dict[str, Any] = dict(
            store_options={"registry": registry or MemoryStoreRegistry()},
            remote_factory=server,
            config=config,
        )
        values.update(overrides)
        return RepositoryOptions(**values)

    return _make


@pytest.fixture
def options(make_options, registry: MemoryStoreRegistry) -> RepositoryOptions:
    return make_options(registry)
