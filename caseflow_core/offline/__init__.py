# =============================================================================
# caseflow_core/offline/__init__.py
# Offline-First Data Layer for the Caseflow field app
# =============================================================================
"""
Offline-First Data Layer

Field agents keep working on cases, forms and photos with no connectivity.
Every local write is recorded together with a queued SyncAction; the sync
processor replays the queue when the backend is reachable and records any
divergence as a Conflict for explicit resolution.

Architecture:
------------
                 OfflineDataService (composition root)
                              |
      +-----------------------+------------------------+
      |                       |                        |
 OfflineRepository      SyncEngine/Processor     ConflictResolver
 (entity + action         (replay, retry,        (record, resolve)
  in one transaction)      backoff, pull)
      |                       |                        |
      +---------- SyncQueue --+---- BackendClient -----+
                      |
                  LocalStore (SQLite)  <-  SchemaMigrator
                      |
   ResponseCache, NotificationCenter, SessionStore, MetricsRecorder

Usage:
------
from caseflow_core.offline import OfflineDataService, SyncSettings

service = OfflineDataService(SyncSettings.from_env()).open(start_sync=True)
service.repository.update_case_status("C1", "IN_PROGRESS")
print(service.get_status()["queue"])
"""

from caseflow_core.offline.local_store import LocalStore

from caseflow_core.offline.migrations import (
    SchemaMigrator,
    Migration,
    TARGET_VERSION,
)

from caseflow_core.offline.models import (
    Case,
    FormSubmission,
    Attachment,
    GeoLocation,
    SyncAction,
    Conflict,
    Notification,
    CacheEntry,
    UserSession,
    PerformanceMetric,
    SyncStatus,
    UploadStatus,
    ActionType,
    ActionStatus,
    EntityType,
    ConflictStatus,
    ConflictType,
    ResolutionStrategy,
    CaseStatus,
    CasePriority,
    now_ms,
)

from caseflow_core.offline.serialization import canonical_json, loads
from caseflow_core.offline.sync_queue import SyncQueue
from caseflow_core.offline.repository import OfflineRepository
from caseflow_core.offline.notifications import NotificationCenter
from caseflow_core.offline.metrics import MetricsRecorder
from caseflow_core.offline.sessions import SessionStore
from caseflow_core.offline.cache import ResponseCache

from caseflow_core.offline.conflicts import (
    ConflictResolver,
    prefer_local_merge,
)

from caseflow_core.offline.api_client import (
    BackendClient,
    ReplayResult,
    DownloadResult,
)

from caseflow_core.offline.connection_manager import (
    ConnectionMonitor,
    ConnectionState,
    ConnectionStatus,
)

from caseflow_core.offline.sync_processor import (
    SyncProcessor,
    SyncEngine,
    SyncState,
    BatchResult,
    PullResult,
)

from caseflow_core.offline.config import SyncSettings
from caseflow_core.offline.service import OfflineDataService

__all__ = [
    # Storage
    "LocalStore",
    "SchemaMigrator",
    "Migration",
    "TARGET_VERSION",
    "canonical_json",
    "loads",
    # Records
    "Case",
    "FormSubmission",
    "Attachment",
    "GeoLocation",
    "SyncAction",
    "Conflict",
    "Notification",
    "CacheEntry",
    "UserSession",
    "PerformanceMetric",
    "SyncStatus",
    "UploadStatus",
    "ActionType",
    "ActionStatus",
    "EntityType",
    "ConflictStatus",
    "ConflictType",
    "ResolutionStrategy",
    "CaseStatus",
    "CasePriority",
    "now_ms",
    # Mutations and queue
    "OfflineRepository",
    "SyncQueue",
    # Sync
    "BackendClient",
    "ReplayResult",
    "DownloadResult",
    "ConnectionMonitor",
    "ConnectionState",
    "ConnectionStatus",
    "SyncProcessor",
    "SyncEngine",
    "SyncState",
    "BatchResult",
    "PullResult",
    "ConflictResolver",
    "prefer_local_merge",
    # Supporting stores
    "ResponseCache",
    "NotificationCenter",
    "SessionStore",
    "MetricsRecorder",
    # Configuration / main API
    "SyncSettings",
    "OfflineDataService",
]
