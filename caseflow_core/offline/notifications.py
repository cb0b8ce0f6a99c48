# =============================================================================
# caseflow_core/offline/notifications.py
# User-facing notifications (persistence only)
# =============================================================================
"""
NotificationCenter - stores messages for the UI layer to surface, such as an
action that exhausted its retries or a conflict awaiting review. Rendering
is left to the host app.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging

from caseflow_core.offline.local_store import LocalStore
from caseflow_core.offline.models import Notification, map_rows, new_id, now_ms
from caseflow_core.offline.serialization import canonical_json

logger = logging.getLogger(__name__)


class NotificationCenter:
    """Persisted notifications in the `notifications` table."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    def __init__(self, store: LocalStore, clock=None):
        self.store = store
        self.clock = clock or store.clock or now_ms

    def emit(
        self,
        title: str,
        message: str,
        type: str = INFO,
        data: Optional[Dict[str, Any]] = None,
        expires_at: Optional[int] = None,
    ) -> Notification:
        now = self.clock()
        notification = Notification(
            id=new_id("notif", now),
            title=title,
            message=message,
            type=type,
            data=data,
            read_status=False,
            created_at=now,
            expires_at=expires_at,
        )
        self.store.execute(
            """
            INSERT INTO notifications (id, title, message, type, data, read_status, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, 0, ?, ?)
            """,
            [
                notification.id, title, message, type,
                canonical_json(data) if data is not None else None,
                now, expires_at,
            ]
        )
        logger.info(f"Notification [{type}] {title}: {message}")
        return notification

    def unread(self) -> List[Notification]:
        """Unread, unexpired notifications, newest first."""
        rows = self.store.query(
            """
            SELECT * FROM notifications
            WHERE read_status = 0 AND (expires_at IS NULL OR expires_at > ?)
            ORDER BY created_at DESC
            """,
            [self.clock()]
        )
        return map_rows(rows, Notification)

    def all(self, limit: Optional[int] = None) -> List[Notification]:
        sql = "SELECT * FROM notifications ORDER BY created_at DESC"
        params: List[Any] = []
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return map_rows(self.store.query(sql, params), Notification)

    def mark_read(self, notification_id: Optional[str] = None) -> int:
        """Mark one notification (or all of them) as read."""
        if notification_id is None:
            return self.store.execute("UPDATE notifications SET read_status = 1 WHERE read_status = 0")
        return self.store.execute(
            "UPDATE notifications SET read_status = 1 WHERE id = ?", [notification_id]
        )

    def clear_expired(self) -> int:
        removed = self.store.execute(
            "DELETE FROM notifications WHERE expires_at IS NOT NULL AND expires_at <= ?",
            [self.clock()]
        )
        if removed:
            logger.debug(f"Removed {removed} expired notifications")
        return removed
