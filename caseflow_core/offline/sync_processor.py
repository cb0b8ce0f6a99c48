# =============================================================================
# caseflow_core/offline/sync_processor.py
# Sync Queue Processor and background Sync Engine
# =============================================================================
"""
SyncProcessor - drains the outbound queue against the backend.

Per action outcome:
- success:    completed; the local case adopts the server's version and
              updated_at and flips to synced once nothing else is queued
- transport:  retry_count += 1 and rescheduled with exponential backoff while
              retry_count < max_retries, otherwise failed + Notification
- conflict:   handed to the ConflictResolver and parked (never retried blindly)
- rejected:   failed + Notification

Only the head of each entity's line is ever ready, so a batch holds at most
one action per entity and may be replayed concurrently across entities.

SyncEngine - background loop around the processor (interval timer, sync on
reconnect, state callbacks for the UI), adapted for explicit wiring.
"""

from __future__ import annotations
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from caseflow_core.errors import (
    CaseflowError,
    ErrorContext,
    SyncConflictError,
    SyncRejectedError,
    SyncTransportError,
    ValidationError,
    handle_error,
)
from caseflow_core.logging import LogContext
from caseflow_core.offline.api_client import BackendClient
from caseflow_core.offline.conflicts import ConflictResolver
from caseflow_core.offline.connection_manager import ConnectionMonitor, ConnectionState, ConnectionStatus
from caseflow_core.offline.local_store import LocalStore
from caseflow_core.offline.metrics import REPLAY_LATENCY, SYNC_BATCH_DURATION, MetricsRecorder
from caseflow_core.offline.models import ActionType, EntityType, SyncAction, now_ms
from caseflow_core.offline.notifications import NotificationCenter
from caseflow_core.offline.repository import OfflineRepository
from caseflow_core.offline.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

LAST_PULL_SETTING = "last_pull_at"

COMPLETED = "completed"
RETRIED = "retried"
FAILED = "failed"
CONFLICT = "conflict"
SKIPPED = "skipped"


@dataclass
class BatchResult:
    """Counts for one or more processed batches."""
    attempted: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    conflicts: int = 0
    cancelled: bool = False
    duration_ms: float = 0.0

    def add(self, outcome: str) -> None:
        if outcome == SKIPPED:
            return
        self.attempted += 1
        if outcome == COMPLETED:
            self.completed += 1
        elif outcome == RETRIED:
            self.retried += 1
        elif outcome == FAILED:
            self.failed += 1
        elif outcome == CONFLICT:
            self.conflicts += 1

    def merge(self, other: BatchResult) -> None:
        self.attempted += other.attempted
        self.completed += other.completed
        self.retried += other.retried
        self.failed += other.failed
        self.conflicts += other.conflicts
        self.cancelled = self.cancelled or other.cancelled
        self.duration_ms += other.duration_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "completed": self.completed,
            "retried": self.retried,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "cancelled": self.cancelled,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class PullResult:
    applied: int = 0
    skipped: int = 0
    deleted: int = 0
    sync_timestamp: Optional[int] = None


class SyncProcessor:
    """
    Replays queued SyncActions against the backend.

    Usage:
        processor = SyncProcessor(store, queue, repository, client, resolver)
        summary = processor.process_queue()
    """

    BATCH_SIZE = 50
    BACKOFF_BASE = 2            # Seconds before the first retry
    BACKOFF_FACTOR = 2
    BACKOFF_CAP = 300           # Seconds
    MAX_PULL_PAGES = 20

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        repository: OfflineRepository,
        client: BackendClient,
        resolver: ConflictResolver,
        notifications: Optional[NotificationCenter] = None,
        metrics: Optional[MetricsRecorder] = None,
        batch_size: int = BATCH_SIZE,
        backoff_base: float = BACKOFF_BASE,
        backoff_factor: float = BACKOFF_FACTOR,
        backoff_cap: float = BACKOFF_CAP,
        max_workers: int = 1,
        clock=None,
    ):
        self.store = store
        self.queue = queue
        self.repository = repository
        self.client = client
        self.resolver = resolver
        self.notifications = notifications
        self.metrics = metrics
        self.batch_size = batch_size
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.backoff_cap = backoff_cap
        self.max_workers = max(1, max_workers)
        self.clock = clock or store.clock or now_ms
        self._cancel = threading.Event()

    # =========================================================================
    # BACKOFF / CANCELLATION
    # =========================================================================

    def compute_backoff(self, retry_count: int) -> int:
        """
        Delay before retry number `retry_count` (1-based), in milliseconds.

        min(cap, base * factor ** (retry_count - 1)) seconds.
        """
        exponent = max(0, retry_count - 1)
        if self.backoff_factor > 1 and self.backoff_base > 0:
            # Past this exponent the cap applies; large retry counts would overflow the power
            ratio = max(1.0, self.backoff_cap / self.backoff_base)
            exponent = min(exponent, math.ceil(math.log(ratio, self.backoff_factor)))
        seconds = min(self.backoff_cap, self.backoff_base * (self.backoff_factor ** exponent))
        return int(seconds * 1000)

    def cancel(self) -> None:
        """Stop processing before the next action; the in-flight replay finishes."""
        self._cancel.set()
        logger.info("Sync processing cancellation requested")

    @property
    def is_cancelled(self) -> bool:
        return self._cancel.is_set()

    # =========================================================================
    # QUEUE PROCESSING
    # =========================================================================

    def process_queue(self, max_batches: Optional[int] = None) -> BatchResult:
        """
        Process batches until nothing is ready, processing is cancelled or
        `max_batches` is reached.
        """
        self._cancel.clear()
        summary = BatchResult()
        batches = 0

        while max_batches is None or batches < max_batches:
            result = self.process_batch()
            summary.merge(result)
            batches += 1
            if result.cancelled or result.attempted == 0:
                break

        if summary.attempted:
            logger.info(f"Sync queue processed: {summary.to_dict()}")
        return summary

    def process_batch(self) -> BatchResult:
        """Replay one batch of ready actions."""
        result = BatchResult()
        if self.is_cancelled:
            result.cancelled = True
            return result

        actions = self.queue.get_ready(limit=self.batch_size)
        if not actions:
            return result

        with LogContext(logger, f"Replaying {len(actions)} sync actions") as ctx:
            if self.max_workers > 1 and len(actions) > 1:
                with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="SyncReplay") as pool:
                    outcomes = list(pool.map(self._process_if_not_cancelled, actions))
            else:
                outcomes = []
                for action in actions:
                    outcomes.append(self._process_if_not_cancelled(action))

        for outcome in outcomes:
            result.add(outcome)
        result.cancelled = self.is_cancelled
        result.duration_ms = ctx.elapsed * 1000

        if self.metrics is not None:
            self.metrics.record(SYNC_BATCH_DURATION, result.duration_ms, result.to_dict())
        return result

    def _process_if_not_cancelled(self, action: SyncAction) -> str:
        if self.is_cancelled:
            return SKIPPED
        return self.process_action(action)

    def process_action(self, action: SyncAction) -> str:
        """
        Replay a single action and record its outcome.

        Returns:
            One of completed, retried, failed, conflict
        """
        base_version = self.repository.base_version(action.entity_type, action.entity_id)
        started = time.perf_counter()

        try:
            replay = self.client.replay(action, base_version)
        except SyncConflictError as e:
            self.resolver.record(action, e)
            return CONFLICT
        except SyncTransportError as e:
            return self._handle_retryable(action, e.message)
        except SyncRejectedError as e:
            return self._fail(action, e.message)
        except Exception as e:
            # Unexpected client errors count as failed attempts, never as success
            handle_error(e, user_message=f"Unexpected error replaying {action.id}")
            return self._handle_retryable(action, str(e))
        finally:
            if self.metrics is not None:
                latency = (time.perf_counter() - started) * 1000
                self.metrics.record(REPLAY_LATENCY, latency, {"action_type": action.action_type.value})

        with self.store.transaction() as conn:
            self.queue.mark_completed(action.id)
            if action.entity_type == EntityType.CASE and action.action_type != ActionType.DELETE:
                self.repository.reconcile_case(conn, action.entity_id, replay.entity)
            self.repository.mark_synced(conn, action.entity_type, action.entity_id)

        logger.debug(f"Sync action {action.id} completed")
        return COMPLETED

    def _handle_retryable(self, action: SyncAction, error: str) -> str:
        if action.retry_count < action.max_retries:
            retry_count = action.retry_count + 1
            delay = self.compute_backoff(retry_count)
            self.queue.schedule_retry(action.id, retry_count, self.clock() + delay, error)
            logger.warning(
                f"Sync action {action.id} failed (attempt {retry_count}/{action.max_retries}), "
                f"retrying in {delay / 1000:.0f}s: {error}"
            )
            return RETRIED
        return self._fail(action, f"Retries exhausted: {error}")

    def _fail(self, action: SyncAction, error: str) -> str:
        self.queue.mark_failed(action.id, error)
        logger.error(f"Sync action {action.id} failed permanently: {error}")
        if self.notifications is not None:
            self.notifications.emit(
                "Sync failed",
                f"Changes to {action.entity_type.value} {action.entity_id} could not be synced",
                type=NotificationCenter.ERROR,
                data={
                    "action_id": action.id,
                    "entity_type": action.entity_type.value,
                    "entity_id": action.entity_id,
                    "error": error,
                },
            )
        return FAILED

    # =========================================================================
    # INBOUND
    # =========================================================================

    def pull_server_updates(self) -> PullResult:
        """
        Apply server-side case changes since the last successful pull.

        Cases with outstanding local actions are skipped; their local edits win
        until replayed.
        """
        result = PullResult()
        since = self.store.get_setting(LAST_PULL_SETTING)

        for _ in range(self.MAX_PULL_PAGES):
            download = self.client.download_changes(since=since, batch_size=self.batch_size)

            for data in download.cases:
                try:
                    applied = self.repository.apply_server_case(data)
                except (ValidationError, ValueError) as e:
                    handle_error(e, user_message=f"Skipping malformed server case {data.get('id')}")
                    applied = False
                if applied:
                    result.applied += 1
                else:
                    result.skipped += 1

            for case_id in download.deleted_case_ids:
                if self.repository.apply_server_delete(case_id):
                    result.deleted += 1

            since = download.sync_timestamp or self.clock()
            self.store.set_setting(LAST_PULL_SETTING, since)
            result.sync_timestamp = since
            if not download.has_more:
                break

        logger.info(
            f"Pulled server changes: {result.applied} applied, {result.skipped} skipped, {result.deleted} deleted"
        )
        return result


# =============================================================================
# BACKGROUND ENGINE
# =============================================================================

@dataclass
class SyncState:
    """Current sync state."""
    is_syncing: bool = False
    last_sync: Optional[datetime] = None
    last_sync_success: Optional[datetime] = None
    pending_count: int = 0
    failed_count: int = 0
    conflict_count: int = 0
    total_synced: int = 0
    last_error: Optional[str] = None
    last_result: Dict[str, Any] = field(default_factory=dict)


class SyncEngine:
    """
    Background synchronization loop.

    Usage:
        engine = SyncEngine(processor, monitor)
        engine.start()      # Start background sync
        engine.sync_now()   # Force immediate sync
    """

    SYNC_INTERVAL = 30          # Seconds between sync attempts

    def __init__(
        self,
        processor: SyncProcessor,
        monitor: Optional[ConnectionMonitor] = None,
        sync_interval: float = SYNC_INTERVAL,
        pull_updates: bool = True,
    ):
        self.processor = processor
        self.monitor = monitor
        self.sync_interval = sync_interval
        self.pull_updates = pull_updates
        self._state = SyncState()
        self._sync_thread: Optional[threading.Thread] = None
        self._stop_sync = threading.Event()
        self._wake = threading.Event()
        self._sync_lock = threading.Lock()
        self._callbacks: List[Callable[[SyncState], None]] = []

        if self.monitor is not None:
            self.monitor.register_callback(self._on_connection_change)

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._state.is_syncing

    @property
    def is_running(self) -> bool:
        return self._sync_thread is not None and self._sync_thread.is_alive()

    @property
    def can_sync(self) -> bool:
        return self.monitor is None or self.monitor.is_online

    def start(self) -> None:
        """Start background sync thread."""
        if self.is_running:
            return

        self._stop_sync.clear()
        self._sync_thread = threading.Thread(
            target=self._sync_loop,
            daemon=True,
            name="SyncEngine"
        )
        self._sync_thread.start()
        logger.info("Sync engine started")

    def stop(self) -> None:
        """Stop background sync; an in-flight replay is allowed to finish."""
        self._stop_sync.set()
        self._wake.set()
        self.processor.cancel()
        if self._sync_thread:
            self._sync_thread.join(timeout=10)
            self._sync_thread = None
        logger.info("Sync engine stopped")

    def _sync_loop(self) -> None:
        """Background sync loop."""
        while not self._stop_sync.is_set():
            self._wake.wait(timeout=self.sync_interval)
            self._wake.clear()
            if self._stop_sync.is_set():
                break
            if self.can_sync:
                try:
                    self._perform_sync()
                except Exception as e:
                    logger.error(f"Sync error: {e}")

    def _on_connection_change(self, state: ConnectionState) -> None:
        """Handle connection status changes."""
        if state.status == ConnectionStatus.ONLINE:
            logger.info("Connection restored, triggering sync")
            if self.is_running:
                self._wake.set()
            else:
                self.sync_now()
        elif state.status == ConnectionStatus.OFFLINE and self._state.is_syncing:
            self.processor.cancel()

    def sync_now(self) -> bool:
        """
        Perform immediate sync.

        Returns:
            True if the cycle ran without errors or permanent failures
        """
        if not self.can_sync:
            logger.debug("Cannot sync: offline")
            return False
        return self._perform_sync()

    def _perform_sync(self) -> bool:
        if not self._sync_lock.acquire(blocking=False):
            return False

        self._state.is_syncing = True
        self._state.last_sync = datetime.now()
        self._notify_callbacks()
        success = False

        try:
            with ErrorContext("Sync cycle") as ctx:
                result = self.processor.process_queue()
                if self.pull_updates and not result.cancelled:
                    self.processor.pull_server_updates()

                self._state.total_synced += result.completed
                self._state.last_result = result.to_dict()
                success = result.failed == 0

            if ctx.error is not None:
                self._state.last_error = ctx.error["message"]
                success = False
            elif success:
                self._state.last_error = None
                self._state.last_sync_success = datetime.now()
            return success

        finally:
            self._refresh_counts()
            self._state.is_syncing = False
            self._sync_lock.release()
            self._notify_callbacks()

    def _refresh_counts(self) -> None:
        try:
            counts = self.processor.queue.counts()
            self._state.pending_count = counts["pending"] + counts["retrying"]
            self._state.failed_count = counts["failed"]
            self._state.conflict_count = counts["conflict"]
        except CaseflowError as e:
            handle_error(e)

    def register_callback(self, callback: Callable[[SyncState], None]) -> None:
        """Register a callback for sync state changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[SyncState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in sync callback: {e}")

    def get_status_display(self) -> Dict[str, Any]:
        """Get sync status for UI display."""
        return {
            "is_syncing": self._state.is_syncing,
            "is_running": self.is_running,
            "last_sync": self._state.last_sync.isoformat() if self._state.last_sync else None,
            "last_success": self._state.last_sync_success.isoformat() if self._state.last_sync_success else None,
            "pending_count": self._state.pending_count,
            "failed_count": self._state.failed_count,
            "conflict_count": self._state.conflict_count,
            "total_synced": self._state.total_synced,
            "last_error": self._state.last_error,
        }
