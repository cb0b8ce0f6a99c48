# =============================================================================
# caseflow_core/offline/conflicts.py
# Conflict recording and explicit resolution
# =============================================================================
"""
ConflictResolver - records server-side divergence reported during replay and
applies an explicitly chosen resolution.

Recording never decides anything: the conflicting SyncAction is parked in
status 'conflict' (which blocks later actions for the same entity) and both
snapshots are kept verbatim until someone calls resolve().

Resolution strategies:
    local_wins   requeue the local change based on the server's version
    server_wins  overwrite the local copy from the server snapshot; the
                 action and every later queued change for the entity are
                 closed as failed (superseded)
    merge        write a merged snapshot locally and requeue it; later
                 queued updates of the same case are folded into it
"""

from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional
import logging

from caseflow_core.errors import ConflictResolutionError, SyncConflictError
from caseflow_core.offline.local_store import LocalStore
from caseflow_core.offline.models import (
    ActionStatus,
    ActionType,
    Conflict,
    ConflictStatus,
    ConflictType,
    EntityType,
    ResolutionStrategy,
    SyncAction,
    SyncStatus,
    map_rows,
    new_id,
    now_ms,
)
from caseflow_core.offline.notifications import NotificationCenter
from caseflow_core.offline.repository import OfflineRepository
from caseflow_core.offline.serialization import canonical_json
from caseflow_core.offline.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

MergeFunction = Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]

SUPERSEDED = "superseded by server version"
FOLDED = "folded into merged resolution"


def prefer_local_merge(local: Dict[str, Any], server: Dict[str, Any]) -> Dict[str, Any]:
    """
    Field-level merge: start from the server snapshot and overlay every field
    the local payload carries a value for. The server's version is kept.
    """
    merged = dict(server)
    merged.update({k: v for k, v in local.items() if v is not None})
    if "version" in server:
        merged["version"] = server["version"]
    return merged


def classify_conflict(action: SyncAction, error: SyncConflictError) -> ConflictType:
    """Work out what kind of divergence the server reported."""
    if error.conflict_type:
        try:
            return ConflictType(error.conflict_type)
        except ValueError:
            logger.debug(f"Unknown server conflict type '{error.conflict_type}'")

    server_deleted = not error.server_data or bool(
        error.server_data.get("deleted") or error.server_data.get("deletedAt")
        or error.server_data.get("deleted_at")
    )
    if action.action_type == ActionType.DELETE and not server_deleted:
        return ConflictType.DELETE_UPDATE
    if action.action_type != ActionType.DELETE and server_deleted:
        return ConflictType.UPDATE_DELETE
    return ConflictType.VERSION_MISMATCH


class ConflictResolver:
    """Records and resolves sync conflicts. Never auto-discards local data."""

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        repository: OfflineRepository,
        notifications: Optional[NotificationCenter] = None,
        merge_function: Optional[MergeFunction] = None,
        clock=None,
    ):
        self.store = store
        self.queue = queue
        self.repository = repository
        self.notifications = notifications
        self.merge_function = merge_function
        self.clock = clock or store.clock or now_ms

    # =========================================================================
    # RECORDING
    # =========================================================================

    def record(self, action: SyncAction, error: SyncConflictError) -> Conflict:
        """
        Preserve both sides of a rejected replay and park the action.

        Args:
            action: The SyncAction whose replay was rejected
            error: The server's conflict response

        Returns:
            The pending Conflict
        """
        server_data = error.server_data or {}
        server_version = error.server_version
        if server_version is None and server_data.get("version") is not None:
            server_version = int(server_data["version"])

        now = self.clock()
        conflict = Conflict(
            id=new_id("conflict", now),
            entity_type=action.entity_type,
            entity_id=action.entity_id,
            local_data=action.action_data,
            server_data=canonical_json(server_data),
            conflict_type=classify_conflict(action, error),
            created_at=now,
            status=ConflictStatus.PENDING,
            sync_action_id=action.id,
            server_version=server_version,
        )

        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO conflicts (
                    id, entity_type, entity_id, local_data, server_data,
                    conflict_type, created_at, status, sync_action_id, server_version
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    conflict.id, conflict.entity_type.value, conflict.entity_id,
                    conflict.local_data, conflict.server_data, conflict.conflict_type.value,
                    now, conflict.status.value, action.id, server_version,
                ]
            )
            self.queue.mark_conflict(action.id, error.message)
            self._flag_entity(conn, conflict)

        logger.warning(
            f"Conflict {conflict.id} on {action.entity_type.value}/{action.entity_id}: "
            f"{conflict.conflict_type.value} (server version {server_version})"
        )
        if self.notifications is not None:
            self.notifications.emit(
                "Sync conflict",
                f"Changes to {action.entity_type.value} {action.entity_id} conflict with the server copy",
                type=NotificationCenter.WARNING,
                data={"conflict_id": conflict.id, "entity_id": action.entity_id},
            )
        return conflict

    def _flag_entity(self, conn, conflict: Conflict) -> None:
        if conflict.entity_type == EntityType.CASE:
            conn.execute(
                "UPDATE cases SET sync_status = ?, conflict_data = ? WHERE id = ?",
                [SyncStatus.CONFLICT.value, conflict.server_data, conflict.entity_id]
            )
        else:
            self.repository.set_sync_status(conn, conflict.entity_type, conflict.entity_id, SyncStatus.CONFLICT)

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, conflict_id: str) -> Optional[Conflict]:
        row = self.store.query_one("SELECT * FROM conflicts WHERE id = ?", [conflict_id])
        return Conflict.from_row(row) if row else None

    def pending_conflicts(self, entity_type: Optional[EntityType] = None) -> List[Conflict]:
        sql = "SELECT * FROM conflicts WHERE status = ?"
        params: List[Any] = [ConflictStatus.PENDING.value]
        if entity_type is not None:
            sql += " AND entity_type = ?"
            params.append(EntityType(entity_type).value)
        sql += " ORDER BY created_at"
        return map_rows(self.store.query(sql, params), Conflict)

    def conflicts_for(self, entity_type: EntityType, entity_id: str) -> List[Conflict]:
        rows = self.store.query(
            "SELECT * FROM conflicts WHERE entity_type = ? AND entity_id = ? ORDER BY created_at",
            [EntityType(entity_type).value, entity_id]
        )
        return map_rows(rows, Conflict)

    @property
    def pending_count(self) -> int:
        row = self.store.query_one(
            "SELECT COUNT(*) AS count FROM conflicts WHERE status = ?", [ConflictStatus.PENDING.value]
        )
        return row["count"]

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def resolve(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy,
        merged_data: Optional[Dict[str, Any]] = None,
    ) -> Conflict:
        """
        Apply an explicit resolution to a pending conflict.

        Args:
            conflict_id: Conflict to resolve
            strategy: local_wins, server_wins or merge
            merged_data: Snapshot to use for merge (else the merge function)

        Returns:
            The resolved Conflict
        """
        try:
            strategy = ResolutionStrategy(strategy)
        except ValueError:
            raise ConflictResolutionError(
                f"Unknown resolution strategy '{strategy}'", conflict_id=conflict_id
            ) from None

        conflict = self.get(conflict_id)
        if conflict is None:
            raise ConflictResolutionError(f"Conflict '{conflict_id}' does not exist", conflict_id=conflict_id)
        if conflict.status != ConflictStatus.PENDING:
            raise ConflictResolutionError(
                f"Conflict '{conflict_id}' is already resolved",
                conflict_id=conflict_id,
                strategy=strategy.value,
            )

        action = self.queue.get(conflict.sync_action_id) if conflict.sync_action_id else None
        if action is not None and action.status != ActionStatus.CONFLICT:
            raise ConflictResolutionError(
                f"Sync action {action.id} is no longer parked (status {action.status.value})",
                conflict_id=conflict_id,
                strategy=strategy.value,
            )
        if action is None and strategy != ResolutionStrategy.SERVER_WINS:
            raise ConflictResolutionError(
                "The originating sync action no longer exists; only server_wins is possible",
                conflict_id=conflict_id,
                strategy=strategy.value,
            )

        superseded: List[str] = []
        with self.store.transaction() as conn:
            if strategy == ResolutionStrategy.LOCAL_WINS:
                self._apply_local_wins(conn, conflict, action)
            elif strategy == ResolutionStrategy.SERVER_WINS:
                superseded = self._apply_server_wins(conn, conflict)
            else:
                superseded = self._apply_merge(conn, conflict, action, merged_data)

            resolved_at = self.clock()
            conn.execute(
                "UPDATE conflicts SET status = ?, resolution_strategy = ?, resolved_at = ? WHERE id = ?",
                [ConflictStatus.RESOLVED.value, strategy.value, resolved_at, conflict.id]
            )

        logger.info(f"Resolved conflict {conflict.id} with {strategy.value}")
        if superseded and self.notifications is not None:
            self.notifications.emit(
                "Local changes discarded",
                f"{len(superseded)} queued change(s) to {conflict.entity_type.value} "
                f"{conflict.entity_id} were replaced by the {strategy.value} resolution",
                type=NotificationCenter.INFO,
                data={"conflict_id": conflict.id, "action_ids": superseded},
            )
        return self.get(conflict.id)

    def local_snapshot(self, conflict: Conflict) -> Dict[str, Any]:
        """
        Most recent local state of the conflicted entity.

        Edits queued behind the parked action carry newer snapshots than the
        one recorded with the conflict; merges should start from the newest.
        """
        later = self.queue.outstanding_actions(
            conflict.entity_type, conflict.entity_id, exclude_id=conflict.sync_action_id
        )
        updates = [a for a in later if a.action_type == ActionType.UPDATE]
        if conflict.entity_type == EntityType.CASE and updates:
            return updates[-1].payload
        return conflict.local_payload

    def _supersede(self, actions: List[SyncAction], reason: str) -> List[str]:
        for stale in actions:
            self.queue.mark_failed(stale.id, reason)
            logger.info(f"Superseded sync action {stale.id} ({stale.action_type.value} "
                        f"{stale.entity_type.value}/{stale.entity_id})")
        return [stale.id for stale in actions]

    def _rebase(self, conn, conflict: Conflict, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Point a local payload (and the local case row) at the server's version."""
        if conflict.server_version is None:
            return payload
        payload = dict(payload)
        if "version" in payload or conflict.entity_type == EntityType.CASE:
            payload["version"] = conflict.server_version
        if conflict.entity_type == EntityType.CASE:
            conn.execute(
                "UPDATE cases SET version = ? WHERE id = ?", [conflict.server_version, conflict.entity_id]
            )
        return payload

    def _reopen_entity(self, conn, conflict: Conflict) -> None:
        if conflict.entity_type == EntityType.CASE:
            conn.execute(
                "UPDATE cases SET sync_status = ?, conflict_data = NULL, last_modified = ? WHERE id = ?",
                [SyncStatus.PENDING.value, self.clock(), conflict.entity_id]
            )
        else:
            self.repository.set_sync_status(conn, conflict.entity_type, conflict.entity_id, SyncStatus.PENDING)

    def _apply_local_wins(self, conn, conflict: Conflict, action: SyncAction) -> None:
        # Later actions replay after this one, each on the version the previous replay returned
        payload = self._rebase(conn, conflict, conflict.local_payload)
        # Server deleted the entity: replay the local state as a fresh create
        action_type = ActionType.CREATE if conflict.conflict_type == ConflictType.UPDATE_DELETE else None
        self.queue.requeue(action.id, payload, action_type=action_type)
        self._reopen_entity(conn, conflict)

    def _apply_server_wins(self, conn, conflict: Conflict) -> List[str]:
        # Every local change still queued for the entity is discarded with the parked one
        stale = self.queue.outstanding_actions(conflict.entity_type, conflict.entity_id)
        superseded = self._supersede(stale, SUPERSEDED)
        server = conflict.server_payload

        if conflict.entity_type == EntityType.CASE:
            if conflict.conflict_type == ConflictType.UPDATE_DELETE or not server:
                conn.execute(
                    "UPDATE cases SET deleted_at = ?, sync_status = ?, conflict_data = NULL WHERE id = ?",
                    [self.clock(), SyncStatus.SYNCED.value, conflict.entity_id]
                )
            else:
                self.repository.overwrite_case(conn, {**server, "id": conflict.entity_id}, SyncStatus.SYNCED)
        else:
            if conflict.entity_type == EntityType.ATTACHMENT and conflict.conflict_type == ConflictType.UPDATE_DELETE:
                conn.execute(
                    "UPDATE attachments SET deleted_at = ? WHERE id = ?", [self.clock(), conflict.entity_id]
                )
            self.repository.set_sync_status(conn, conflict.entity_type, conflict.entity_id, SyncStatus.SYNCED)
        return superseded

    def _apply_merge(
        self,
        conn,
        conflict: Conflict,
        action: SyncAction,
        merged_data: Optional[Dict[str, Any]],
    ) -> List[str]:
        if merged_data is None:
            if self.merge_function is None:
                raise ConflictResolutionError(
                    "merge requires merged_data or a configured merge function",
                    conflict_id=conflict.id,
                    strategy=ResolutionStrategy.MERGE.value,
                )
            merged_data = self.merge_function(self.local_snapshot(conflict), conflict.server_payload)

        merged = self._rebase(conn, conflict, merged_data)

        superseded: List[str] = []
        if conflict.entity_type == EntityType.CASE and action.action_type != ActionType.DELETE:
            # Later case updates are full snapshots of pre-merge state; the merge replaces them
            later = self.queue.outstanding_actions(conflict.entity_type, conflict.entity_id, exclude_id=action.id)
            superseded = self._supersede([a for a in later if a.action_type == ActionType.UPDATE], FOLDED)
            merged = {**merged, "id": conflict.entity_id}
            case = self.repository.overwrite_case(conn, merged, SyncStatus.PENDING)
            payload: Dict[str, Any] = case.to_payload()
        else:
            payload = merged
            self._reopen_entity(conn, conflict)

        self.queue.requeue(action.id, payload)
        return superseded
