"""
Sync module: changes-feed replication and live sync channels.
"""

from tagmesh.sync.replication import (
    ReplicationResult,
    SyncEvent,
    SyncEventHandler,
    SyncEventType,
    SyncHandle,
    replicate,
)
from tagmesh.sync.channel import (
    RemoteFactory,
    SyncChannel,
    database_url,
    open_channel,
)

__all__ = [
    "ReplicationResult",
    "SyncEvent",
    "SyncEventHandler",
    "SyncEventType",
    "SyncHandle",
    "replicate",
    "RemoteFactory",
    "SyncChannel",
    "database_url",
    "open_channel",
]
