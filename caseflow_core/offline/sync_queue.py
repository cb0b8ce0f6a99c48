# =============================================================================
# caseflow_core/offline/sync_queue.py
# Outbound sync queue (sync_actions table)
# =============================================================================
"""
SyncQueue - persistence and state transitions for queued outbound mutations.

Ordering rules:
- Ready actions drain by priority (higher first), then enqueue order.
- Only the head of each entity's line is ever ready: an action waits while
  any earlier action for the same entity is pending, retrying (even if its
  backoff has not elapsed) or parked in conflict.

Every action reaches exactly one terminal state (completed or failed);
transitions out of a terminal state are refused.
"""

from __future__ import annotations
import sqlite3
from typing import Any, Dict, List, Optional, Union
import logging

import pandas as pd

from caseflow_core.errors import EntityNotFoundError, ValidationError
from caseflow_core.offline.local_store import LocalStore
from caseflow_core.offline.models import (
    OUTSTANDING_STATUSES,
    ActionStatus,
    ActionType,
    EntityType,
    SyncAction,
    map_rows,
    new_id,
    now_ms,
)
from caseflow_core.offline.serialization import canonical_json

logger = logging.getLogger(__name__)

ENTITY_TABLES = {
    EntityType.CASE: "cases",
    EntityType.FORM_SUBMISSION: "form_submissions",
    EntityType.ATTACHMENT: "attachments",
}

_TERMINAL = (ActionStatus.COMPLETED.value, ActionStatus.FAILED.value)


class SyncQueue:
    """Queue of SyncActions stored in the local database."""

    DEFAULT_PRIORITY = 1
    DEFAULT_MAX_RETRIES = 3

    def __init__(
        self,
        store: LocalStore,
        clock=None,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.store = store
        self.clock = clock or store.clock or now_ms
        self.default_max_retries = default_max_retries

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def enqueue(
        self,
        conn: sqlite3.Connection,
        action_type: ActionType,
        entity_type: EntityType,
        entity_id: str,
        payload: Union[Dict[str, Any], str],
        priority: int = DEFAULT_PRIORITY,
        max_retries: Optional[int] = None,
    ) -> SyncAction:
        """
        Insert a SyncAction using the caller's transaction connection.

        The target entity must already exist in the same transaction.
        """
        action_type = ActionType(action_type)
        entity_type = EntityType(entity_type)
        table = ENTITY_TABLES[entity_type]

        exists = conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", [entity_id]).fetchone()
        if exists is None:
            raise EntityNotFoundError(entity_type.value, entity_id)

        action_data = payload if isinstance(payload, str) else canonical_json(payload)
        now = self.clock()
        sequence = conn.execute(
            "SELECT COALESCE(MAX(sequence), 0) + 1 FROM sync_actions"
        ).fetchone()[0]

        action = SyncAction(
            id=new_id("sync", now),
            action_type=action_type,
            entity_type=entity_type,
            entity_id=entity_id,
            action_data=action_data,
            priority=priority,
            retry_count=0,
            max_retries=self.default_max_retries if max_retries is None else max_retries,
            created_at=now,
            scheduled_at=now,
            status=ActionStatus.PENDING,
            sequence=sequence,
            updated_at=now,
        )
        conn.execute(
            """
            INSERT INTO sync_actions (
                id, action_type, entity_type, entity_id, action_data,
                priority, retry_count, max_retries, created_at, scheduled_at,
                status, sequence, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                action.id, action.action_type.value, action.entity_type.value,
                action.entity_id, action.action_data, action.priority,
                action.retry_count, action.max_retries, action.created_at,
                action.scheduled_at, action.status.value, action.sequence,
                action.updated_at,
            ]
        )
        logger.debug(
            f"Queued {action_type.value} {entity_type.value}/{entity_id} as {action.id}"
        )
        return action

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, action_id: str) -> Optional[SyncAction]:
        row = self.store.query_one("SELECT * FROM sync_actions WHERE id = ?", [action_id])
        return SyncAction.from_row(row) if row else None

    def get_ready(self, limit: int = 50, now: Optional[int] = None) -> List[SyncAction]:
        """
        Actions due for replay: at most one per entity, each the oldest
        outstanding action for its entity.
        """
        now = self.clock() if now is None else now
        outstanding = ", ".join("?" for _ in OUTSTANDING_STATUSES)
        rows = self.store.query(
            f"""
            SELECT a.* FROM sync_actions a
            WHERE a.status IN (?, ?)
              AND COALESCE(a.scheduled_at, 0) <= ?
              AND NOT EXISTS (
                  SELECT 1 FROM sync_actions b
                  WHERE b.entity_type = a.entity_type
                    AND b.entity_id = a.entity_id
                    AND b.status IN ({outstanding})
                    AND b.sequence < a.sequence
              )
            ORDER BY a.priority DESC, a.created_at ASC, a.sequence ASC
            LIMIT ?
            """,
            [
                ActionStatus.PENDING.value, ActionStatus.RETRYING.value, now,
                *OUTSTANDING_STATUSES, limit,
            ]
        )
        return map_rows(rows, SyncAction)

    def next_due_at(self) -> Optional[int]:
        """Earliest scheduled_at among drainable actions, if any."""
        row = self.store.query_one(
            "SELECT MIN(scheduled_at) AS due FROM sync_actions WHERE status IN (?, ?)",
            [ActionStatus.PENDING.value, ActionStatus.RETRYING.value]
        )
        return row["due"] if row else None

    def actions_for(self, entity_type: EntityType, entity_id: str) -> List[SyncAction]:
        rows = self.store.query(
            "SELECT * FROM sync_actions WHERE entity_type = ? AND entity_id = ? ORDER BY sequence",
            [EntityType(entity_type).value, entity_id]
        )
        return map_rows(rows, SyncAction)

    def has_outstanding(
        self,
        entity_type: EntityType,
        entity_id: str,
        exclude_id: Optional[str] = None,
    ) -> bool:
        """True if the entity still has pending, retrying or conflicted actions."""
        placeholders = ", ".join("?" for _ in OUTSTANDING_STATUSES)
        params: List[Any] = [EntityType(entity_type).value, entity_id, *OUTSTANDING_STATUSES]
        sql = (
            "SELECT 1 FROM sync_actions WHERE entity_type = ? AND entity_id = ? "
            f"AND status IN ({placeholders})"
        )
        if exclude_id:
            sql += " AND id != ?"
            params.append(exclude_id)
        return self.store.query_one(sql + " LIMIT 1", params) is not None

    def outstanding_actions(
        self,
        entity_type: EntityType,
        entity_id: str,
        exclude_id: Optional[str] = None,
    ) -> List[SyncAction]:
        """Non-terminal actions for one entity, in enqueue order."""
        placeholders = ", ".join("?" for _ in OUTSTANDING_STATUSES)
        params: List[Any] = [EntityType(entity_type).value, entity_id, *OUTSTANDING_STATUSES]
        sql = (
            "SELECT * FROM sync_actions WHERE entity_type = ? AND entity_id = ? "
            f"AND status IN ({placeholders})"
        )
        if exclude_id:
            sql += " AND id != ?"
            params.append(exclude_id)
        return map_rows(self.store.query(sql + " ORDER BY sequence", params), SyncAction)

    def counts(self) -> Dict[str, int]:
        """Retry-queue counts per status, for progress indicators."""
        counts = {status.value: 0 for status in ActionStatus}
        for row in self.store.query("SELECT status, COUNT(*) AS count FROM sync_actions GROUP BY status"):
            counts[row["status"]] = row["count"]
        return counts

    @property
    def pending_count(self) -> int:
        counts = self.counts()
        return counts[ActionStatus.PENDING.value] + counts[ActionStatus.RETRYING.value]

    def failed_actions(self, limit: Optional[int] = None) -> List[SyncAction]:
        sql = "SELECT * FROM sync_actions WHERE status = ? ORDER BY updated_at DESC"
        params: List[Any] = [ActionStatus.FAILED.value]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return map_rows(self.store.query(sql, params), SyncAction)

    def to_dataframe(self, status: Optional[ActionStatus] = None) -> pd.DataFrame:
        """Queue contents as a DataFrame for the retry-queue screen."""
        if status is None:
            return self.store.to_dataframe("sync_actions", order_by="sequence")
        return self.store.to_dataframe(
            "sync_actions", where="status = ?", params=[ActionStatus(status).value], order_by="sequence"
        )

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def _transition(self, action_id: str, status: ActionStatus, **columns: Any) -> bool:
        columns["status"] = ActionStatus(status).value
        columns["updated_at"] = self.clock()
        set_clause = ", ".join(f"{name} = ?" for name in columns)
        changed = self.store.execute(
            f"UPDATE sync_actions SET {set_clause} WHERE id = ? AND status NOT IN (?, ?)",
            [*columns.values(), action_id, *_TERMINAL]
        )
        if not changed:
            logger.warning(f"Sync action {action_id} not transitioned to {columns['status']} (missing or terminal)")
        return changed > 0

    def mark_completed(self, action_id: str) -> bool:
        return self._transition(action_id, ActionStatus.COMPLETED, last_error=None)

    def mark_failed(self, action_id: str, error: Optional[str] = None) -> bool:
        return self._transition(action_id, ActionStatus.FAILED, last_error=error)

    def mark_conflict(self, action_id: str, error: Optional[str] = None) -> bool:
        return self._transition(action_id, ActionStatus.CONFLICT, last_error=error)

    def schedule_retry(
        self,
        action_id: str,
        retry_count: int,
        scheduled_at: int,
        error: Optional[str] = None,
    ) -> bool:
        """Park an action for a delayed retry; refuses to exceed max_retries."""
        columns = {
            "status": ActionStatus.RETRYING.value,
            "retry_count": retry_count,
            "scheduled_at": scheduled_at,
            "last_error": error,
            "updated_at": self.clock(),
        }
        set_clause = ", ".join(f"{name} = ?" for name in columns)
        changed = self.store.execute(
            f"UPDATE sync_actions SET {set_clause} "
            "WHERE id = ? AND status NOT IN (?, ?) AND ? <= max_retries",
            [*columns.values(), action_id, *_TERMINAL, retry_count]
        )
        return changed > 0

    def requeue(
        self,
        action_id: str,
        action_data: Optional[Union[Dict[str, Any], str]] = None,
        reset_retries: bool = True,
        action_type: Optional[ActionType] = None,
    ) -> bool:
        """Return a conflicted action to the pending line, optionally with a new payload."""
        columns: Dict[str, Any] = {"scheduled_at": self.clock(), "last_error": None}
        if reset_retries:
            columns["retry_count"] = 0
        if action_type is not None:
            columns["action_type"] = ActionType(action_type).value
        if action_data is not None:
            columns["action_data"] = action_data if isinstance(action_data, str) else canonical_json(action_data)
        return self._transition(action_id, ActionStatus.PENDING, **columns)

    def retry_failed(self, action_id: str) -> SyncAction:
        """
        User-initiated retry of a permanently failed action.

        The failed row stays as the terminal record; a fresh action with the
        same payload is queued behind any newer work for the entity.
        """
        action = self.get(action_id)
        if action is None:
            raise ValidationError(f"Sync action '{action_id}' does not exist")
        if action.status != ActionStatus.FAILED:
            raise ValidationError(
                f"Only failed actions can be retried (status is {action.status.value})",
                details={"action_id": action_id},
            )
        with self.store.transaction() as conn:
            return self.enqueue(
                conn,
                action.action_type,
                action.entity_type,
                action.entity_id,
                action.action_data,
                priority=action.priority,
                max_retries=action.max_retries,
            )

    def purge_completed(self, older_than: int) -> int:
        """Delete completed actions last touched before `older_than`."""
        return self.store.execute(
            "DELETE FROM sync_actions WHERE status = ? AND COALESCE(updated_at, created_at) < ?",
            [ActionStatus.COMPLETED.value, older_than]
        )
