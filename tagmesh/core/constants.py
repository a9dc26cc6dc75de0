"""
System-Wide Constants for TagMesh

All well-known names and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# TIME UNITS
# =============================================================================
SECOND_MS: Final[int] = 1000
MINUTE_MS: Final[int] = 60 * SECOND_MS

NS_PER_MS: Final[int] = 1_000_000

# =============================================================================
# IDENTITY
# =============================================================================
# Publicly known placeholder; repositories warn loudly while it is in use
DEFAULT_REPOSITORY_SECRET_ROOT: Final[str] = "set_me_to_a_secret"
DEFAULT_METADATA_DOCUMENT_ID_ROOT: Final[str] = "tagmesh_metadata__"
SCHEMA_STORE_SUFFIX: Final[str] = "__schema"
SECRET_SEPARATOR: Final[str] = "-"
ENTITY_KEY_SEPARATOR: Final[str] = ":"

# =============================================================================
# DOCUMENTS
# =============================================================================
TAG_DEFINITIONS_DOC_ID: Final[str] = "tag_definitions"
DEFAULT_TAG_COLOR: Final[str] = "#cccccc"
UNKNOWN_USER: Final[str] = "Unknown"

# =============================================================================
# SYNC
# =============================================================================
SYNC_BATCH_SIZE: Final[int] = 100
SYNC_LONGPOLL_TIMEOUT_MS: Final[int] = 25 * SECOND_MS
SYNC_RETRY_BASE_MS: Final[int] = 1 * SECOND_MS
SYNC_RETRY_MAX_MS: Final[int] = 10 * MINUTE_MS

# =============================================================================
# SCHEMA
# =============================================================================
SCHEMA_CONFLICT_RETRIES: Final[int] = 3
SCHEMA_CONFLICT_BACKOFF_MS: Final[int] = 50

# =============================================================================
# RELIABILITY
# =============================================================================
RETRY_BASE_MS: Final[int] = 100
RETRY_MAX_MS: Final[int] = 10 * SECOND_MS
RETRY_MAX_ATTEMPTS: Final[int] = 3

# =============================================================================
# REMOTE STORES
# =============================================================================
COUCH_REQUEST_TIMEOUT_MS: Final[int] = 30 * SECOND_MS
REDIS_POLL_INTERVAL_MS: Final[int] = 250
