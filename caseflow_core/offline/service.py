# =============================================================================
# caseflow_core/offline/service.py
# Offline Data Service - composition root for the offline layer
# =============================================================================
"""
OfflineDataService - builds and owns every offline component.

The UI layer talks to the repository for reads/writes, to the conflict
resolver for explicit resolutions, and to get_status() for queue/connectivity
indicators. Components are wired explicitly; there are no module-level
singletons, so tests can build a service on an in-memory store.

Usage:
------
from caseflow_core.offline import OfflineDataService, SyncSettings

with OfflineDataService(SyncSettings.load("caseflow.toml")) as service:
    service.repository.update_case_status("C1", "IN_PROGRESS")
    service.sync_now()
    print(service.get_status()["queue"])
"""

from __future__ import annotations
from typing import Any, Dict, Optional
import logging

from caseflow_core.errors import ConfigurationError
from caseflow_core.offline.api_client import BackendClient
from caseflow_core.offline.cache import ResponseCache
from caseflow_core.offline.config import SyncSettings
from caseflow_core.offline.conflicts import ConflictResolver, MergeFunction
from caseflow_core.offline.connection_manager import ConnectionMonitor
from caseflow_core.offline.local_store import LocalStore
from caseflow_core.offline.metrics import MetricsRecorder
from caseflow_core.offline.models import new_id
from caseflow_core.offline.notifications import NotificationCenter
from caseflow_core.offline.repository import OfflineRepository
from caseflow_core.offline.sessions import SessionStore
from caseflow_core.offline.sync_processor import LAST_PULL_SETTING, SyncEngine, SyncProcessor
from caseflow_core.offline.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

DEVICE_ID_SETTING = "device_id"


class OfflineDataService:
    """
    Single entry point for the offline-first data layer.

    Without an api_base_url (and no injected client) the service runs
    local-only: writes are still queued, nothing is replayed.
    """

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        client: Optional[BackendClient] = None,
        monitor: Optional[ConnectionMonitor] = None,
        merge_function: Optional[MergeFunction] = None,
        clock=None,
    ):
        self.settings = settings or SyncSettings()
        self.settings.validate()

        self.store = LocalStore(self.settings.db_path, clock=clock)
        self.queue = SyncQueue(self.store, default_max_retries=self.settings.max_retries)
        self.repository = OfflineRepository(self.store, self.queue)
        self.notifications = NotificationCenter(self.store)
        self.metrics = MetricsRecorder(self.store)
        self.sessions = SessionStore(self.store)
        self.cache = ResponseCache(self.store, default_ttl=self.settings.cache_ttl)
        self.conflicts = ConflictResolver(
            self.store,
            self.queue,
            self.repository,
            notifications=self.notifications,
            merge_function=merge_function,
        )

        self.client = client
        if self.client is None and self.settings.api_base_url:
            self.client = BackendClient(
                self.settings.api_base_url,
                timeout=self.settings.request_timeout,
                token_provider=self.sessions.current_token,
            )

        self.monitor = monitor
        if self.monitor is None and self.client is not None:
            self.monitor = ConnectionMonitor(
                backend_host=self.client.host,
                backend_port=self.client.port,
                check_interval=self.settings.connection_check_interval,
            )

        self.processor: Optional[SyncProcessor] = None
        self.engine: Optional[SyncEngine] = None
        if self.client is not None:
            self.processor = SyncProcessor(
                self.store,
                self.queue,
                self.repository,
                self.client,
                self.conflicts,
                notifications=self.notifications,
                metrics=self.metrics,
                batch_size=self.settings.batch_size,
                backoff_base=self.settings.backoff_base,
                backoff_factor=self.settings.backoff_factor,
                backoff_cap=self.settings.backoff_cap,
                max_workers=self.settings.max_workers,
            )
            self.engine = SyncEngine(self.processor, self.monitor, sync_interval=self.settings.sync_interval)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def open(self, start_sync: bool = False, start_monitoring: bool = False) -> OfflineDataService:
        """
        Initialize the store (fatal on failure) and optionally start the
        background monitor and sync loop.
        """
        self.store.initialize()

        device_id = self.store.get_setting(DEVICE_ID_SETTING)
        if not device_id:
            device_id = new_id("device", self.store.clock())
            self.store.set_setting(DEVICE_ID_SETTING, device_id)
        if self.client is not None:
            self.client.device_id = device_id

        if self.monitor is not None:
            self.monitor.initialize(start_monitoring=start_monitoring)
        if start_sync:
            if self.engine is None:
                raise ConfigurationError(
                    "Background sync needs an api_base_url or a backend client",
                    config_key="api_base_url",
                )
            self.engine.start()

        logger.info(f"OfflineDataService opened (device {device_id}, sync={'on' if self.engine else 'off'})")
        return self

    def close(self) -> None:
        if self.engine is not None:
            self.engine.stop()
        if self.monitor is not None:
            self.monitor.stop_monitoring()
        if self.client is not None:
            self.client.close()
        self.store.close()
        logger.info("OfflineDataService closed")

    def __enter__(self) -> OfflineDataService:
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    # =========================================================================
    # SYNC
    # =========================================================================

    @property
    def device_id(self) -> Optional[str]:
        return self.store.get_setting(DEVICE_ID_SETTING)

    @property
    def is_online(self) -> bool:
        return self.monitor is not None and self.monitor.is_online

    def sync_now(self) -> bool:
        """Run one sync cycle now; False when offline or sync is not configured."""
        if self.engine is None:
            logger.debug("Sync requested but no backend is configured")
            return False
        return self.engine.sync_now()

    def cancel_sync(self) -> None:
        if self.processor is not None:
            self.processor.cancel()

    def maintenance(self, completed_older_than: int) -> Dict[str, int]:
        """Sweep expired cache rows/notifications and old completed actions and metrics."""
        return {
            "cache": self.cache.clear_expired(),
            "notifications": self.notifications.clear_expired(),
            "completed_actions": self.queue.purge_completed(completed_older_than),
            "metrics": self.metrics.prune(completed_older_than),
        }

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        """Queue counts, conflicts, connectivity and last sync for the UI."""
        return {
            "device_id": self.device_id,
            "queue": self.queue.counts(),
            "pending_conflicts": self.conflicts.pending_count,
            "unread_notifications": len(self.notifications.unread()),
            "connection": self.monitor.get_status_display() if self.monitor else None,
            "sync": self.engine.get_status_display() if self.engine else None,
            "last_pull_at": self.store.get_setting(LAST_PULL_SETTING),
            "database_size": self.store.get_database_size(),
        }
