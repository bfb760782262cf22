"""Delta-synchronized local cache of remote CRM lists.

Provides:
- Snapshot: in-memory replica of one list keyed by remote item id
- DeltaSyncEngine: cursor-based sync of one list with expiry recovery
- MultiListCoordinator: concurrent multi-list sync with failure isolation
- PersistentStore / RedisStore / MemoryStore: durable state backends

Architecture: the remote list is the source of truth; the snapshot is a
replica persisted between sessions together with its delta cursor.
"""

from src.leadsync.cache.coordinator import MultiListCoordinator
from src.leadsync.cache.engine import ChangeFeed, DeltaSyncEngine
from src.leadsync.cache.schemas import (
    AnchorFields,
    ChangeRecord,
    EventFields,
    FeedPage,
    LeadFields,
    ListFields,
    ListSyncOutcome,
    PersistedSyncState,
    SyncedItem,
    SyncReport,
)
from src.leadsync.cache.snapshot import Snapshot
from src.leadsync.cache.store import MemoryStore, PersistentStore, RedisStore

__all__ = [
    "AnchorFields",
    "ChangeFeed",
    "ChangeRecord",
    "DeltaSyncEngine",
    "EventFields",
    "FeedPage",
    "LeadFields",
    "ListFields",
    "ListSyncOutcome",
    "MemoryStore",
    "MultiListCoordinator",
    "PersistedSyncState",
    "PersistentStore",
    "RedisStore",
    "Snapshot",
    "SyncReport",
    "SyncedItem",
]
