# =============================================================================
# caseflow_core/offline/repository.py
# Mutation Recorder and read API for mirrored entities
# =============================================================================
"""
OfflineRepository - every local write to a case, form submission or
attachment is paired with a queued SyncAction in the same transaction.

Invariants:
- An entity marked sync_status='pending' always has a matching queued action.
- A queued action always references an entity that exists locally.
- Malformed mutations raise ValidationError and never reach the queue.

Deletes are soft: the row keeps a deleted_at marker and disappears from list
queries, and the delete itself is queued for replay. Only purge_case()
removes rows physically.
"""

from __future__ import annotations
import sqlite3
from dataclasses import replace
from typing import Any, Dict, List, Optional
import logging

from caseflow_core.errors import EntityNotFoundError, ValidationError
from caseflow_core.offline.local_store import LocalStore
from caseflow_core.offline.models import (
    CASE_BUSINESS_FIELDS,
    ActionType,
    Attachment,
    Case,
    EntityType,
    FormSubmission,
    SyncAction,
    SyncStatus,
    UploadStatus,
    map_rows,
    now_ms,
    snake_case,
    to_epoch_ms,
)
from caseflow_core.offline.serialization import canonical_json
from caseflow_core.offline.sync_queue import ENTITY_TABLES, SyncQueue

logger = logging.getLogger(__name__)

CASE_COLUMNS = (
    "id", *CASE_BUSINESS_FIELDS, "created_at", "updated_at", "sync_status",
    "last_modified", "version", "conflict_data", "offline_changes", "deleted_at",
)


def _require(value: Any, field: str, entity_type: EntityType) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(
            f"{entity_type.value} field '{field}' is required",
            field=field,
            entity_type=entity_type.value,
        )


class OfflineRepository:
    """Local read/write API for cases, form submissions and attachments."""

    def __init__(self, store: LocalStore, queue: SyncQueue, clock=None):
        self.store = store
        self.queue = queue
        self.clock = clock or store.clock or now_ms

    # =========================================================================
    # CASES
    # =========================================================================

    def _validate_case(self, case: Case) -> None:
        _require(case.id, "id", EntityType.CASE)
        _require(case.customer_name, "customer_name", EntityType.CASE)
        _require(case.status, "status", EntityType.CASE)
        if not isinstance(case.version, int) or case.version < 0:
            raise ValidationError(
                "case version must be a non-negative integer",
                field="version",
                entity_type=EntityType.CASE.value,
            )

    def _upsert_case(self, conn: sqlite3.Connection, case: Case) -> None:
        values = [getattr(case, column) for column in CASE_COLUMNS]
        values = [v.value if isinstance(v, SyncStatus) else v for v in values]
        placeholders = ", ".join("?" for _ in CASE_COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in CASE_COLUMNS if c != "id")
        conn.execute(
            f"INSERT INTO cases ({', '.join(CASE_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            values
        )

    def _load_case(self, conn: sqlite3.Connection, case_id: str) -> Optional[Case]:
        row = conn.execute("SELECT * FROM cases WHERE id = ?", [case_id]).fetchone()
        return Case.from_row(row) if row else None

    def save_case(self, case: Case, priority: int = SyncQueue.DEFAULT_PRIORITY) -> SyncAction:
        """
        Create or update a case locally and queue the mutation.

        Returns:
            The queued SyncAction (create for new cases, update otherwise)
        """
        self._validate_case(case)
        now = self.clock()

        with self.store.transaction() as conn:
            existing = self._load_case(conn, case.id)
            if existing is not None and existing.is_deleted:
                raise ValidationError(
                    f"case '{case.id}' has been deleted",
                    entity_type=EntityType.CASE.value,
                )

            record = replace(
                case,
                created_at=case.created_at or (existing.created_at if existing else None) or now,
                updated_at=now,
                sync_status=SyncStatus.PENDING,
                last_modified=now,
                version=existing.version if existing else case.version,
                conflict_data=existing.conflict_data if existing else None,
                deleted_at=None,
            )
            self._upsert_case(conn, record)
            action_type = ActionType.UPDATE if existing else ActionType.CREATE
            return self.queue.enqueue(
                conn, action_type, EntityType.CASE, record.id, record.to_payload(), priority=priority
            )

    def update_case(self, case_id: str, priority: int = SyncQueue.DEFAULT_PRIORITY, **changes: Any) -> SyncAction:
        """Apply field changes to an existing case and queue an update."""
        unknown = set(changes) - set(CASE_BUSINESS_FIELDS)
        if unknown:
            raise ValidationError(
                f"Unknown or read-only case fields: {sorted(unknown)}",
                entity_type=EntityType.CASE.value,
            )
        if not changes:
            raise ValidationError("No case changes supplied", entity_type=EntityType.CASE.value)

        now = self.clock()
        with self.store.transaction() as conn:
            existing = self._load_case(conn, case_id)
            if existing is None or existing.is_deleted:
                raise EntityNotFoundError(EntityType.CASE.value, case_id)

            record = replace(
                existing,
                **changes,
                updated_at=now,
                sync_status=SyncStatus.PENDING,
                last_modified=now,
            )
            self._validate_case(record)
            self._upsert_case(conn, record)
            return self.queue.enqueue(
                conn, ActionType.UPDATE, EntityType.CASE, case_id, record.to_payload(), priority=priority
            )

    def update_case_status(self, case_id: str, status: str) -> SyncAction:
        return self.update_case(case_id, status=getattr(status, "value", status))

    def delete_case(self, case_id: str) -> SyncAction:
        """Soft-delete a case and queue the delete for replay."""
        now = self.clock()
        with self.store.transaction() as conn:
            existing = self._load_case(conn, case_id)
            if existing is None or existing.is_deleted:
                raise EntityNotFoundError(EntityType.CASE.value, case_id)

            conn.execute(
                "UPDATE cases SET deleted_at = ?, sync_status = ?, last_modified = ? WHERE id = ?",
                [now, SyncStatus.PENDING.value, now, case_id]
            )
            return self.queue.enqueue(
                conn, ActionType.DELETE, EntityType.CASE, case_id,
                {"id": case_id, "version": existing.version},
            )

    def get_case(self, case_id: str, include_deleted: bool = False) -> Optional[Case]:
        sql = "SELECT * FROM cases WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        row = self.store.query_one(sql, [case_id])
        return Case.from_row(row) if row else None

    def get_cases(
        self,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
        sync_status: Optional[SyncStatus] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Case]:
        """Filtered case list, most recently updated first."""
        sql = "SELECT * FROM cases WHERE deleted_at IS NULL"
        params: List[Any] = []

        if status:
            sql += " AND status = ?"
            params.append(getattr(status, "value", status))
        if assigned_to:
            sql += " AND assigned_to = ?"
            params.append(assigned_to)
        if sync_status:
            sql += " AND sync_status = ?"
            params.append(SyncStatus(sync_status).value)

        sql += " ORDER BY updated_at DESC"

        if limit:
            sql += " LIMIT ?"
            params.append(limit)
            if offset:
                sql += " OFFSET ?"
                params.append(offset)

        return map_rows(self.store.query(sql, params), Case)

    def apply_server_case(self, data: Dict[str, Any]) -> bool:
        """
        Materialize or refresh a case pushed by the server.

        The row is stored as synced and no action is queued. A case with
        outstanding local actions is left untouched so pending edits are
        never overwritten by inbound sync.

        Returns:
            True if the local copy was written
        """
        server_case = Case.from_payload(data)
        self._validate_case(server_case)

        with self.store.transaction() as conn:
            if self.queue.has_outstanding(EntityType.CASE, server_case.id):
                logger.info(f"Skipping server refresh of case {server_case.id}: local changes pending")
                return False

            now = self.clock()
            record = replace(
                server_case,
                sync_status=SyncStatus.SYNCED,
                last_modified=now,
                created_at=server_case.created_at or now,
                updated_at=server_case.updated_at or now,
                conflict_data=None,
                offline_changes=None,
            )
            self._upsert_case(conn, record)
        return True

    def apply_server_delete(self, case_id: str) -> bool:
        """Soft-delete a case the server reports as deleted, unless edits are pending."""
        with self.store.transaction() as conn:
            if self.queue.has_outstanding(EntityType.CASE, case_id):
                logger.info(f"Skipping server delete of case {case_id}: local changes pending")
                return False
            changed = conn.execute(
                "UPDATE cases SET deleted_at = ?, sync_status = ? WHERE id = ? AND deleted_at IS NULL",
                [self.clock(), SyncStatus.SYNCED.value, case_id]
            ).rowcount
        return changed > 0

    def overwrite_case(self, conn: sqlite3.Connection, data: Dict[str, Any], sync_status: SyncStatus) -> Case:
        """
        Replace the local copy of a case from a snapshot (conflict resolution).

        A partial snapshot (no customer name) is laid over the current row, so
        only the fields it carries change.
        """
        case_id = data.get("id")
        existing = self._load_case(conn, case_id)
        if existing is None:
            raise EntityNotFoundError(EntityType.CASE.value, case_id)
        if "customer_name" not in {snake_case(key) for key in data}:
            data = {**existing.to_payload(), **data}
        snapshot = Case.from_payload(data)
        now = self.clock()
        record = replace(
            snapshot,
            created_at=snapshot.created_at or existing.created_at,
            updated_at=snapshot.updated_at or now,
            sync_status=sync_status,
            last_modified=now,
            conflict_data=None,
            offline_changes=None,
        )
        self._validate_case(record)
        self._upsert_case(conn, record)
        return record

    def purge_case(self, case_id: str) -> int:
        """
        Administrative hard delete of a case and everything hanging off it.

        Returns:
            Number of rows removed
        """
        removed = 0
        with self.store.transaction() as conn:
            forms = [r["id"] for r in conn.execute(
                "SELECT id FROM form_submissions WHERE case_id = ?", [case_id])]
            attachments = [r["id"] for r in conn.execute(
                "SELECT id FROM attachments WHERE case_id = ? "
                "OR form_submission_id IN (SELECT id FROM form_submissions WHERE case_id = ?)",
                [case_id, case_id])]

            targets = [(EntityType.CASE, [case_id]), (EntityType.FORM_SUBMISSION, forms),
                       (EntityType.ATTACHMENT, attachments)]
            for entity_type, ids in targets:
                for entity_id in ids:
                    for table in ("sync_actions", "conflicts"):
                        removed += conn.execute(
                            f"DELETE FROM {table} WHERE entity_type = ? AND entity_id = ?",
                            [entity_type.value, entity_id]
                        ).rowcount

            for attachment_id in attachments:
                removed += conn.execute("DELETE FROM attachments WHERE id = ?", [attachment_id]).rowcount
            removed += conn.execute("DELETE FROM form_submissions WHERE case_id = ?", [case_id]).rowcount
            removed += conn.execute("DELETE FROM cases WHERE id = ?", [case_id]).rowcount

        logger.warning(f"Purged case {case_id} ({removed} rows)")
        return removed

    # =========================================================================
    # FORM SUBMISSIONS
    # =========================================================================

    def _require_live_case(self, conn: sqlite3.Connection, case_id: str, entity_type: EntityType) -> None:
        _require(case_id, "case_id", entity_type)
        row = conn.execute(
            "SELECT 1 FROM cases WHERE id = ? AND deleted_at IS NULL", [case_id]
        ).fetchone()
        if row is None:
            raise EntityNotFoundError(EntityType.CASE.value, case_id)

    def save_form_submission(
        self,
        submission: FormSubmission,
        priority: int = SyncQueue.DEFAULT_PRIORITY,
    ) -> SyncAction:
        """
        Persist a completed form for an existing case and queue its upload.

        Submissions are immutable once saved.
        """
        _require(submission.id, "id", EntityType.FORM_SUBMISSION)
        _require(submission.form_type, "form_type", EntityType.FORM_SUBMISSION)
        if not isinstance(submission.form_data, dict):
            raise ValidationError(
                "form_data must be a mapping",
                field="form_data",
                entity_type=EntityType.FORM_SUBMISSION.value,
            )
        form_json = canonical_json(submission.form_data)
        device_json = canonical_json(submission.device_info or {})
        location = submission.location
        now = self.clock()

        with self.store.transaction() as conn:
            self._require_live_case(conn, submission.case_id, EntityType.FORM_SUBMISSION)
            if conn.execute("SELECT 1 FROM form_submissions WHERE id = ?", [submission.id]).fetchone():
                raise ValidationError(
                    f"form submission '{submission.id}' already exists and is immutable",
                    entity_type=EntityType.FORM_SUBMISSION.value,
                )

            conn.execute(
                """
                INSERT INTO form_submissions (
                    id, case_id, form_type, form_data, submission_time,
                    location_latitude, location_longitude, location_accuracy,
                    location_address, device_info, app_version, sync_status,
                    created_at, updated_at, last_modified
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    submission.id, submission.case_id, submission.form_type, form_json,
                    submission.submission_time or now,
                    location.latitude if location else None,
                    location.longitude if location else None,
                    location.accuracy if location else None,
                    location.address if location else None,
                    device_json, submission.app_version, SyncStatus.PENDING.value,
                    now, now, now,
                ]
            )
            payload = submission.to_payload()
            payload["submission_time"] = submission.submission_time or now
            return self.queue.enqueue(
                conn, ActionType.CREATE, EntityType.FORM_SUBMISSION, submission.id, payload, priority=priority
            )

    def get_form_submission(self, submission_id: str) -> Optional[FormSubmission]:
        row = self.store.query_one("SELECT * FROM form_submissions WHERE id = ?", [submission_id])
        return FormSubmission.from_row(row) if row else None

    def get_form_submissions(self, case_id: str) -> List[FormSubmission]:
        rows = self.store.query(
            "SELECT * FROM form_submissions WHERE case_id = ? ORDER BY submission_time DESC",
            [case_id]
        )
        return map_rows(rows, FormSubmission)

    # =========================================================================
    # ATTACHMENTS
    # =========================================================================

    def save_attachment(
        self,
        attachment: Attachment,
        priority: int = SyncQueue.DEFAULT_PRIORITY,
    ) -> SyncAction:
        """Record a captured file and queue its metadata for replay."""
        for name in ("id", "file_name", "file_type", "file_path"):
            _require(getattr(attachment, name), name, EntityType.ATTACHMENT)
        if attachment.file_size is not None and attachment.file_size < 0:
            raise ValidationError("file_size cannot be negative", field="file_size",
                                  entity_type=EntityType.ATTACHMENT.value)
        upload_status = UploadStatus(attachment.upload_status)
        progress = self._validate_progress(attachment.upload_progress)
        metadata_json = canonical_json(attachment.metadata or {})
        now = self.clock()

        with self.store.transaction() as conn:
            self._require_live_case(conn, attachment.case_id, EntityType.ATTACHMENT)
            if attachment.form_submission_id:
                form = conn.execute(
                    "SELECT case_id FROM form_submissions WHERE id = ?", [attachment.form_submission_id]
                ).fetchone()
                if form is None:
                    raise EntityNotFoundError(EntityType.FORM_SUBMISSION.value, attachment.form_submission_id)
                if form["case_id"] != attachment.case_id:
                    raise ValidationError(
                        "attachment form submission belongs to a different case",
                        field="form_submission_id",
                        entity_type=EntityType.ATTACHMENT.value,
                    )

            existing = conn.execute(
                "SELECT created_at, deleted_at FROM attachments WHERE id = ?", [attachment.id]
            ).fetchone()
            if existing is not None and existing["deleted_at"] is not None:
                raise ValidationError(f"attachment '{attachment.id}' has been deleted",
                                      entity_type=EntityType.ATTACHMENT.value)

            conn.execute(
                """
                INSERT INTO attachments (
                    id, case_id, form_submission_id, file_name, file_type,
                    file_size, file_path, thumbnail_path, compressed_path,
                    upload_status, upload_progress, metadata, created_at,
                    updated_at, sync_status, last_modified
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    case_id = excluded.case_id,
                    form_submission_id = excluded.form_submission_id,
                    file_name = excluded.file_name,
                    file_type = excluded.file_type,
                    file_size = excluded.file_size,
                    file_path = excluded.file_path,
                    thumbnail_path = excluded.thumbnail_path,
                    compressed_path = excluded.compressed_path,
                    upload_status = excluded.upload_status,
                    upload_progress = excluded.upload_progress,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at,
                    sync_status = excluded.sync_status,
                    last_modified = excluded.last_modified
                """,
                [
                    attachment.id, attachment.case_id, attachment.form_submission_id,
                    attachment.file_name, attachment.file_type, attachment.file_size,
                    attachment.file_path, attachment.thumbnail_path, attachment.compressed_path,
                    upload_status.value, progress, metadata_json,
                    existing["created_at"] if existing else now, now,
                    SyncStatus.PENDING.value, now,
                ]
            )
            action_type = ActionType.UPDATE if existing else ActionType.CREATE
            return self.queue.enqueue(
                conn, action_type, EntityType.ATTACHMENT, attachment.id,
                attachment.to_payload(), priority=priority,
            )

    @staticmethod
    def _validate_progress(progress: Any) -> float:
        try:
            value = float(progress or 0)
        except (TypeError, ValueError):
            raise ValidationError("upload_progress must be a number", field="upload_progress",
                                  entity_type=EntityType.ATTACHMENT.value) from None
        if not 0 <= value <= 100:
            raise ValidationError("upload_progress must be between 0 and 100", field="upload_progress",
                                  entity_type=EntityType.ATTACHMENT.value)
        return value

    def update_attachment_upload(
        self,
        attachment_id: str,
        upload_status: UploadStatus,
        upload_progress: Optional[float] = None,
    ) -> Attachment:
        """
        Track file upload progress.

        Upload status is device-local bookkeeping that moves independently of
        the attachment's sync_status, so no action is queued.
        """
        upload_status = UploadStatus(upload_status)
        if upload_progress is None:
            upload_progress = 100.0 if upload_status == UploadStatus.UPLOADED else None
        columns: Dict[str, Any] = {"upload_status": upload_status.value, "updated_at": self.clock()}
        if upload_progress is not None:
            columns["upload_progress"] = self._validate_progress(upload_progress)

        set_clause = ", ".join(f"{name} = ?" for name in columns)
        changed = self.store.execute(
            f"UPDATE attachments SET {set_clause} WHERE id = ? AND deleted_at IS NULL",
            [*columns.values(), attachment_id]
        )
        if not changed:
            raise EntityNotFoundError(EntityType.ATTACHMENT.value, attachment_id)
        return self.get_attachment(attachment_id)

    def delete_attachment(self, attachment_id: str) -> SyncAction:
        now = self.clock()
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT id FROM attachments WHERE id = ? AND deleted_at IS NULL", [attachment_id]
            ).fetchone()
            if row is None:
                raise EntityNotFoundError(EntityType.ATTACHMENT.value, attachment_id)
            conn.execute(
                "UPDATE attachments SET deleted_at = ?, sync_status = ?, last_modified = ? WHERE id = ?",
                [now, SyncStatus.PENDING.value, now, attachment_id]
            )
            return self.queue.enqueue(
                conn, ActionType.DELETE, EntityType.ATTACHMENT, attachment_id, {"id": attachment_id}
            )

    def get_attachment(self, attachment_id: str, include_deleted: bool = False) -> Optional[Attachment]:
        sql = "SELECT * FROM attachments WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        row = self.store.query_one(sql, [attachment_id])
        return Attachment.from_row(row) if row else None

    def get_attachments(self, case_id: str) -> List[Attachment]:
        rows = self.store.query(
            "SELECT * FROM attachments WHERE case_id = ? AND deleted_at IS NULL ORDER BY created_at DESC",
            [case_id]
        )
        return map_rows(rows, Attachment)

    # =========================================================================
    # SYNC RECONCILIATION
    # =========================================================================

    def set_sync_status(
        self,
        conn: sqlite3.Connection,
        entity_type: EntityType,
        entity_id: str,
        sync_status: SyncStatus,
    ) -> None:
        table = ENTITY_TABLES[EntityType(entity_type)]
        conn.execute(
            f"UPDATE {table} SET sync_status = ? WHERE id = ?",
            [SyncStatus(sync_status).value, entity_id]
        )

    def reconcile_case(self, conn: sqlite3.Connection, case_id: str, server_entity: Dict[str, Any]) -> None:
        """Adopt the server's canonical version and updated_at after a replay."""
        columns: Dict[str, Any] = {}
        if server_entity.get("version") is not None:
            columns["version"] = int(server_entity["version"])
        updated_at = to_epoch_ms(server_entity.get("updated_at", server_entity.get("updatedAt")))
        if updated_at is not None:
            columns["updated_at"] = updated_at
        if columns:
            set_clause = ", ".join(f"{name} = ?" for name in columns)
            conn.execute(f"UPDATE cases SET {set_clause} WHERE id = ?", [*columns.values(), case_id])

    def mark_synced(self, conn: sqlite3.Connection, entity_type: EntityType, entity_id: str) -> bool:
        """
        Flip an entity to synced if nothing else is outstanding for it.

        Returns:
            True if the entity is now synced
        """
        if self.queue.has_outstanding(entity_type, entity_id):
            return False
        entity_type = EntityType(entity_type)
        table = ENTITY_TABLES[entity_type]
        if entity_type == EntityType.CASE:
            conn.execute(
                f"UPDATE {table} SET sync_status = ?, conflict_data = NULL WHERE id = ?",
                [SyncStatus.SYNCED.value, entity_id]
            )
        else:
            self.set_sync_status(conn, entity_type, entity_id, SyncStatus.SYNCED)
        return True

    def base_version(self, entity_type: EntityType, entity_id: str) -> Optional[int]:
        """Server version a replay is based on (cases only)."""
        if EntityType(entity_type) != EntityType.CASE:
            return None
        row = self.store.query_one("SELECT version FROM cases WHERE id = ?", [entity_id])
        return row["version"] if row else None
