# =============================================================================
# mess_core/offline/__init__.py
# Offline-First Sync Core for the Mess Manager client
# =============================================================================
"""
Offline-First Sync Core

Attendance scans, meal entries, payments and bazar entries keep working
without a network. Writes made offline are stored locally and sent when the
connection returns; reads are answered from cache when the server is out
of reach.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                    OFFLINE-FIRST SYNC CORE                       │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │                 OfflineDataService                        │  │
│   │         (Single API - the UI uses this only)              │  │
│   └──────────────────────────────────────────────────────────┘  │
│                            │                                     │
│              ┌─────────────┴─────────────┐                      │
│              ▼                           ▼                      │
│   ┌──────────────────┐        ┌──────────────────┐             │
│   │  ConnectionMgr   │        │RequestInterceptor│             │
│   │  (Online/Offline)│        │ (route per GET)  │             │
│   └──────────────────┘        └──────────────────┘             │
│              │ online                    │                       │
│              ▼                           ▼                       │
│   ┌──────────────────┐        ┌──────────────────┐             │
│   │   SyncEngine     │        │  ResponseCache   │             │
│   │ (drain + remove) │        │static/data/runtime│            │
│   └──────────────────┘        └──────────────────┘             │
│              │                           │                       │
│              ▼                           ▼                       │
│   ┌──────────────────┐        ┌──────────────────┐             │
│   │   LocalQueue     │───────►│  LocalDatabase   │             │
│   │ (pending writes) │        │    (SQLite)      │             │
│   └──────────────────┘        └──────────────────┘             │
│                                          ▲                       │
│   ┌──────────────────┐   messages        │                       │
│   │BackgroundWorker  │◄──────────────────┘                       │
│   │ (own engine)     │   (shared store only)                     │
│   └──────────────────┘                                          │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from mess_core.offline import OfflineDataService

service = OfflineDataService(settings)
await service.start()
await service.connection.set_online(True)

result = await service.record_meal(mess_id=1, meal_date="2024-05-01", lunch=1)
print(result.status)                # SubmitStatus.SENT / QUEUED / REJECTED
print(service.queue.pending_count())
"""

from mess_core.offline.local_database import (
    LocalDatabase,
    get_local_database,
)

from mess_core.offline.local_queue import (
    Category,
    QueueItem,
    LocalQueue,
)

from mess_core.offline.connection_manager import (
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
    ConnectionQuality,
)

from mess_core.offline.network import (
    NetworkFetcher,
    is_document_request,
)

from mess_core.offline.cache_manager import (
    CacheEntry,
    CachePartition,
    CacheStorage,
    ResponseCache,
)

from mess_core.offline.interceptor import (
    Route,
    RequestInterceptor,
    InterceptingTransport,
)

from mess_core.offline.sync_engine import (
    SyncEngine,
    SyncSummary,
    ItemResult,
)

from mess_core.offline.background import (
    BackgroundSyncWorker,
    DATA_REFRESH_TAG,
)

from mess_core.offline.data_service import (
    OfflineDataService,
    SubmitResult,
    SubmitStatus,
    ScanResult,
)

__all__ = [
    # Local store
    "LocalDatabase",
    "get_local_database",
    # Queue
    "Category",
    "QueueItem",
    "LocalQueue",
    # Connection Management
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "ConnectionQuality",
    # Network
    "NetworkFetcher",
    "is_document_request",
    # Cache
    "CacheEntry",
    "CachePartition",
    "CacheStorage",
    "ResponseCache",
    # Interception
    "Route",
    "RequestInterceptor",
    "InterceptingTransport",
    # Sync
    "SyncEngine",
    "SyncSummary",
    "ItemResult",
    "BackgroundSyncWorker",
    "DATA_REFRESH_TAG",
    # Service (Main API)
    "OfflineDataService",
    "SubmitResult",
    "SubmitStatus",
    "ScanResult",
]
