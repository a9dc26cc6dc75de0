"""
Backend Configuration Module
============================

Immutable configuration dataclasses for the document store backends.

Design Principles:
------------------
1. **Immutability**: All configs are frozen to prevent runtime mutation
2. **Validation**: Pre-conditions checked at construction time
3. **Environment**: Supports loading from environment variables
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Optional, Tuple

from tagmesh.core import constants as C


# =============================================================================
# ENUMERATIONS
# =============================================================================

class BackendType(Enum):
    """
    Storage backend type enumeration.

    Used for factory dispatch when opening local stores.
    """
    IN_MEMORY = auto()  # Development/testing, and browser-like local state
    REDIS = auto()      # Shared local tier for server-side deployments
    COUCH = auto()      # CouchDB-compatible HTTP database


def _env_bool(value: str, default: bool) -> bool:
    value = value.lower()
    if value in ("true", "1", "yes"):
        return True
    if value in ("false", "0", "no"):
        return False
    return default


# =============================================================================
# REDIS CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class RedisConfig:
    """
    Redis/Valkey connection configuration.

    Attributes:
        host: Redis server hostname or IP address.
        port: Redis server port (1-65535).
        password: Optional authentication password.
        db: Logical database index (0-15).
        max_connections: Connection pool size. Must be > 0.
        connect_timeout_ms: TCP connection timeout in milliseconds.
        socket_timeout_ms: Socket read/write timeout in milliseconds.
        ssl: Enable TLS encryption for connections.
        key_prefix: Namespace prepended to every key the store writes.
        poll_interval_ms: Sleep between change-feed polls while long-polling.

    Example:
        >>> config = RedisConfig.from_env()
        >>> config = RedisConfig(host="redis.example.com", password="secret")
    """
    password: Optional[str] = None
    host: str = "localhost"
    key_prefix: str = "tagmesh"

    socket_timeout_ms: int = 5000
    connect_timeout_ms: int = 2000
    poll_interval_ms: int = C.REDIS_POLL_INTERVAL_MS
    max_connections: int = 50
    port: int = 6379
    db: int = 0

    ssl: bool = False

    def __post_init__(self) -> None:
        """
        Validate configuration invariants.

        Raises:
            ValueError: If any invariant is violated.
        """
        if not (1 <= self.port <= 65535):
            raise ValueError(f"port must be in [1, 65535], got {self.port}")

        if not (0 <= self.db <= 15):
            raise ValueError(f"db must be in [0, 15], got {self.db}")

        if self.max_connections <= 0:
            raise ValueError(f"max_connections must be > 0, got {self.max_connections}")

        if self.connect_timeout_ms <= 0:
            raise ValueError(f"connect_timeout_ms must be > 0, got {self.connect_timeout_ms}")
        if self.socket_timeout_ms <= 0:
            raise ValueError(f"socket_timeout_ms must be > 0, got {self.socket_timeout_ms}")
        if self.poll_interval_ms <= 0:
            raise ValueError(f"poll_interval_ms must be > 0, got {self.poll_interval_ms}")

    @classmethod
    def from_env(cls, prefix: str = "REDIS") -> "RedisConfig":
        """
        Construct configuration from environment variables.

        Environment Variables:
        - {prefix}_HOST: Server hostname (default: localhost)
        - {prefix}_PORT: Server port (default: 6379)
        - {prefix}_PASSWORD: Authentication password
        - {prefix}_DB: Database index (default: 0)
        - {prefix}_SSL: Enable TLS (default: false)
        - {prefix}_MAX_CONNECTIONS: Pool size (default: 50)
        - {prefix}_KEY_PREFIX: Key namespace (default: tagmesh)
        - {prefix}_POLL_INTERVAL_MS: Change-feed poll interval
        """
        def _get(key: str, default: str = "") -> str:
            return os.environ.get(f"{prefix}_{key}", default)

        def _get_int(key: str, default: int) -> int:
            val = _get(key)
            return int(val) if val else default

        return cls(
            host=_get("HOST", "localhost"),
            port=_get_int("PORT", 6379),
            password=_get("PASSWORD") or None,
            db=_get_int("DB", 0),
            max_connections=_get_int("MAX_CONNECTIONS", 50),
            connect_timeout_ms=_get_int("CONNECT_TIMEOUT_MS", 2000),
            socket_timeout_ms=_get_int("SOCKET_TIMEOUT_MS", 5000),
            poll_interval_ms=_get_int("POLL_INTERVAL_MS", C.REDIS_POLL_INTERVAL_MS),
            key_prefix=_get("KEY_PREFIX", "tagmesh"),
            ssl=_env_bool(_get("SSL"), False),
        )

    def get_connection_kwargs(self) -> Dict[str, Any]:
        """
        Generate kwargs for redis-py connection.

        Returns:
            Dict suitable for redis.asyncio.Redis().
        """
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "max_connections": self.max_connections,
            "socket_connect_timeout": self.connect_timeout_ms / 1000.0,
            "socket_timeout": self.socket_timeout_ms / 1000.0,
            "decode_responses": True,
            "ssl": self.ssl,
        }
        if self.password:
            kwargs["password"] = self.password
        return kwargs


# =============================================================================
# COUCH CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class CouchConfig:
    """
    CouchDB-compatible server connection settings.

    url is the server root ("http://host:5984"); the database name is
    appended per store. headers are sent with every request, which is how
    header-based auth (a proxy injecting the user) is configured.

    Attributes:
        url: Server root URL.
        username: Basic auth user, or None.
        password: Basic auth password, or None.
        headers: Extra request headers as (name, value) pairs.
        timeout_ms: Request timeout; long-poll requests add their own wait.
        create_missing: Create the database on connect when absent.
    """
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    headers: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    timeout_ms: int = C.COUCH_REQUEST_TIMEOUT_MS
    create_missing: bool = True

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("url must be non-empty")
        if not self.url.startswith(("http://", "https://")):
            raise ValueError(f"url must be http(s), got {self.url!r}")
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be > 0, got {self.timeout_ms}")
        if (self.username is None) != (self.password is None):
            raise ValueError("username and password must be given together")

    @property
    def uses_header_auth(self) -> bool:
        return self.username is None and bool(self.headers)

    @classmethod
    def from_env(cls, prefix: str = "COUCHDB") -> "CouchConfig":
        """
        Construct configuration from environment variables.

        Environment Variables:
        - {prefix}_URL: Server root (default: http://localhost:5984)
        - {prefix}_USER / {prefix}_PASSWORD: Basic auth credentials
        - {prefix}_TIMEOUT_MS: Request timeout
        """
        def _get(key: str, default: str = "") -> str:
            return os.environ.get(f"{prefix}_{key}", default)

        timeout = _get("TIMEOUT_MS")
        return cls(
            url=_get("URL", "http://localhost:5984"),
            username=_get("USER") or None,
            password=_get("PASSWORD") or None,
            timeout_ms=int(timeout) if timeout else C.COUCH_REQUEST_TIMEOUT_MS,
            create_missing=_env_bool(_get("CREATE_MISSING"), True),
        )
