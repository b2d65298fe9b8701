"""Remote synchronization for schoolkv contexts.

Provides the persistent outbox of pending writes and the HTTP client that
drains it into the shared remote store.
"""

from .outbox import Outbox, OutboxEntry
from .remote_client import (
    FlushResult,
    RemoteResult,
    RemoteStatus,
    RemoteStoreClient,
    SyncStatus,
)

__all__ = [
    "FlushResult",
    "Outbox",
    "OutboxEntry",
    "RemoteResult",
    "RemoteStatus",
    "RemoteStoreClient",
    "SyncStatus",
]
