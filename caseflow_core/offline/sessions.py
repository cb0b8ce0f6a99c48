# =============================================================================
# caseflow_core/offline/sessions.py
# Persisted user session (auth token for sync requests)
# =============================================================================
"""
SessionStore - keeps the signed-in user's tokens on device so background
sync can authenticate while the UI is closed.
"""

from __future__ import annotations
from typing import Optional
import logging

from caseflow_core.errors import ValidationError
from caseflow_core.offline.local_store import LocalStore
from caseflow_core.offline.models import UserSession, new_id, now_ms

logger = logging.getLogger(__name__)


class SessionStore:
    """Single active session; saving a new one replaces the old."""

    def __init__(self, store: LocalStore, clock=None):
        self.store = store
        self.clock = clock or store.clock or now_ms

    def save_session(
        self,
        user_id: str,
        token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[int] = None,
    ) -> UserSession:
        if not user_id or not token:
            raise ValidationError("user_id and token are required", entity_type="user_session")

        now = self.clock()
        session = UserSession(
            id=new_id("session", now),
            user_id=user_id,
            token=token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            created_at=now,
            last_activity=now,
        )
        with self.store.transaction() as conn:
            conn.execute("DELETE FROM user_sessions")
            conn.execute(
                """
                INSERT INTO user_sessions (id, user_id, token, refresh_token, expires_at, created_at, last_activity)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [session.id, user_id, token, refresh_token, expires_at, now, now]
            )
        logger.info(f"Session stored for user {user_id}")
        return session

    def active_session(self) -> Optional[UserSession]:
        row = self.store.query_one("SELECT * FROM user_sessions ORDER BY created_at DESC LIMIT 1")
        if row is None:
            return None
        session = UserSession.from_row(row)
        if session.is_expired(self.clock()):
            logger.debug(f"Session for user {session.user_id} has expired")
            return None
        return session

    def current_token(self) -> Optional[str]:
        session = self.active_session()
        return session.token if session else None

    def touch(self) -> bool:
        session = self.active_session()
        if session is None:
            return False
        self.store.execute(
            "UPDATE user_sessions SET last_activity = ? WHERE id = ?", [self.clock(), session.id]
        )
        return True

    def clear(self) -> None:
        self.store.execute("DELETE FROM user_sessions")
        logger.info("Session cleared")
