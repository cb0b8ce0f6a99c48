# =============================================================================
# caseflow_core/offline/models.py
# Typed records for the on-device store
# =============================================================================
"""
Typed row structures for every table in the local store.

Rows are mapped at the store boundary: `from_row()` raises RowMappingError
when a required column is missing or holds an invalid value, so a malformed
row fails fast instead of leaking half-populated records to the UI layer.

Timestamps are integer epoch milliseconds throughout.
"""

from __future__ import annotations
import re
import time
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from caseflow_core.errors import RowMappingError, ValidationError
from caseflow_core.offline.serialization import loads


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id(prefix: str, timestamp: Optional[int] = None) -> str:
    """Generate a locally unique, time-prefixed identifier."""
    ts = timestamp if timestamp is not None else now_ms()
    return f"{prefix}_{ts}_{uuid.uuid4().hex[:9]}"


_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(key: str) -> str:
    """Convert a camelCase server key to the local snake_case column name."""
    return _CAMEL_RE.sub("_", key).lower()


def to_epoch_ms(value: Any) -> Optional[int]:
    """Normalise a server timestamp (epoch ms or ISO-8601 text) to epoch ms."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        if value.strip().lstrip("-").isdigit():
            return int(value)
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


# =============================================================================
# ENUMERATIONS
# =============================================================================

class SyncStatus(str, Enum):
    """Per-entity flag, distinct from business status."""
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"


class ActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EntityType(str, Enum):
    CASE = "case"
    FORM_SUBMISSION = "form_submission"
    ATTACHMENT = "attachment"


class ActionStatus(str, Enum):
    """
    SyncAction lifecycle.

    pending/retrying are drained by the processor, conflict is parked until
    an explicit resolution, completed/failed are terminal.
    """
    PENDING = "pending"
    RETRYING = "retrying"
    CONFLICT = "conflict"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ActionStatus.COMPLETED, ActionStatus.FAILED)


OUTSTANDING_STATUSES = (
    ActionStatus.PENDING.value,
    ActionStatus.RETRYING.value,
    ActionStatus.CONFLICT.value,
)


class ConflictStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class ConflictType(str, Enum):
    VERSION_MISMATCH = "version_mismatch"
    DELETE_UPDATE = "delete_update"     # local delete vs. server update
    UPDATE_DELETE = "update_delete"     # local update vs. server delete


class ResolutionStrategy(str, Enum):
    LOCAL_WINS = "local_wins"
    SERVER_WINS = "server_wins"
    MERGE = "merge"


class CaseStatus(str, Enum):
    """Known case statuses; the store accepts any non-empty status string."""
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CasePriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


# =============================================================================
# ROW HELPERS
# =============================================================================

def _row_dict(row: Mapping[str, Any], table: str, required: Iterable[str]) -> Dict[str, Any]:
    data = dict(row)
    for column in required:
        if data.get(column) is None:
            raise RowMappingError(
                f"Row in '{table}' is missing required column '{column}'",
                table=table,
                column=column,
            )
    return data


def _enum(enum_cls, value: Any, table: str, column: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise RowMappingError(
            f"Invalid {column} '{value}' in '{table}'",
            table=table,
            column=column,
        ) from None


def _json(value: Optional[str], table: str, column: str, default: Any) -> Any:
    try:
        return loads(value, default)
    except ValueError:
        raise RowMappingError(
            f"Column '{column}' in '{table}' does not hold valid JSON",
            table=table,
            column=column,
        ) from None


# =============================================================================
# MIRRORED ENTITIES
# =============================================================================

CASE_BUSINESS_FIELDS = (
    "customer_name", "customer_phone", "customer_email", "address",
    "verification_type", "applicant_type", "product", "client", "priority",
    "status", "assigned_to", "assigned_by", "created_by",
    "backend_contact_number", "trigger_info", "customer_calling_code", "notes",
)


@dataclass
class Case:
    """A verification work item mirrored from the server."""
    id: str
    customer_name: str
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    address: Optional[str] = None
    verification_type: Optional[str] = None
    applicant_type: Optional[str] = None
    product: Optional[str] = None
    client: Optional[str] = None
    priority: str = CasePriority.MEDIUM.value
    status: str = CaseStatus.PENDING.value
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    created_by: Optional[str] = None
    backend_contact_number: Optional[str] = None
    trigger_info: Optional[str] = None
    customer_calling_code: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    last_modified: Optional[int] = None
    version: int = 1
    conflict_data: Optional[str] = None
    offline_changes: Optional[str] = None
    deleted_at: Optional[int] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_payload(self) -> Dict[str, Any]:
        """Snapshot of the server-visible state (local bookkeeping excluded)."""
        payload = {name: getattr(self, name) for name in CASE_BUSINESS_FIELDS}
        payload.update(
            id=self.id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            version=self.version,
        )
        return payload

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> Case:
        """Build a Case from a payload or server dict (camelCase tolerated)."""
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            name = snake_case(key)
            if name == "trigger":
                name = "trigger_info"
            if name in known:
                values[name] = value
        if "sync_status" in values:
            values["sync_status"] = SyncStatus(values["sync_status"])
        for name in ("created_at", "updated_at", "deleted_at"):
            if name in values:
                values[name] = to_epoch_ms(values[name])
        if values.get("version") is None:
            values.pop("version", None)
        for name in ("id", "customer_name"):
            if values.get(name) is None:
                raise ValidationError(f"case payload is missing '{name}'", field=name, entity_type="case")
        return cls(**values)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Case:
        data = _row_dict(row, "cases", ("id", "customer_name"))
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["sync_status"] = _enum(SyncStatus, data.get("sync_status") or "pending", "cases", "sync_status")
        values["version"] = data.get("version") or 1
        return cls(**values)


@dataclass
class GeoLocation:
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "address": self.address,
        }


@dataclass
class FormSubmission:
    """One completed verification form; the payload is opaque to this layer."""
    id: str
    case_id: str
    form_type: str
    form_data: Dict[str, Any]
    submission_time: Optional[int] = None
    location: Optional[GeoLocation] = None
    device_info: Dict[str, Any] = field(default_factory=dict)
    app_version: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    last_modified: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "form_type": self.form_type,
            "form_data": self.form_data,
            "submission_time": self.submission_time,
            "location": self.location.to_dict() if self.location else None,
            "device_info": self.device_info,
            "app_version": self.app_version,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> FormSubmission:
        data = _row_dict(row, "form_submissions", ("id", "case_id", "form_type", "form_data"))
        location = None
        if data.get("location_latitude") is not None:
            location = GeoLocation(
                latitude=data["location_latitude"],
                longitude=data["location_longitude"],
                accuracy=data.get("location_accuracy"),
                address=data.get("location_address"),
            )
        return cls(
            id=data["id"],
            case_id=data["case_id"],
            form_type=data["form_type"],
            form_data=_json(data["form_data"], "form_submissions", "form_data", {}),
            submission_time=data.get("submission_time"),
            location=location,
            device_info=_json(data.get("device_info"), "form_submissions", "device_info", {}),
            app_version=data.get("app_version"),
            sync_status=_enum(SyncStatus, data.get("sync_status") or "pending", "form_submissions", "sync_status"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            last_modified=data.get("last_modified"),
        )


@dataclass
class Attachment:
    """A captured photo/document tied to a case and optionally a form."""
    id: str
    case_id: str
    file_name: str
    file_type: str
    file_path: str
    form_submission_id: Optional[str] = None
    file_size: Optional[int] = None
    thumbnail_path: Optional[str] = None
    compressed_path: Optional[str] = None
    upload_status: UploadStatus = UploadStatus.PENDING
    upload_progress: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    last_modified: Optional[int] = None
    deleted_at: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "form_submission_id": self.form_submission_id,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Attachment:
        data = _row_dict(row, "attachments", ("id", "file_name", "file_type", "file_path"))
        return cls(
            id=data["id"],
            case_id=data.get("case_id"),
            file_name=data["file_name"],
            file_type=data["file_type"],
            file_path=data["file_path"],
            form_submission_id=data.get("form_submission_id"),
            file_size=data.get("file_size"),
            thumbnail_path=data.get("thumbnail_path"),
            compressed_path=data.get("compressed_path"),
            upload_status=_enum(UploadStatus, data.get("upload_status") or "pending", "attachments", "upload_status"),
            upload_progress=data.get("upload_progress") or 0.0,
            metadata=_json(data.get("metadata"), "attachments", "metadata", {}),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            sync_status=_enum(SyncStatus, data.get("sync_status") or "pending", "attachments", "sync_status"),
            last_modified=data.get("last_modified"),
            deleted_at=data.get("deleted_at"),
        )


# =============================================================================
# SYNC BOOKKEEPING
# =============================================================================

@dataclass
class SyncAction:
    """A queued outbound mutation; `action_data` is kept verbatim."""
    id: str
    action_type: ActionType
    entity_type: EntityType
    entity_id: str
    action_data: str
    priority: int = 1
    retry_count: int = 0
    max_retries: int = 3
    created_at: Optional[int] = None
    scheduled_at: Optional[int] = None
    status: ActionStatus = ActionStatus.PENDING
    sequence: Optional[int] = None
    last_error: Optional[str] = None
    updated_at: Optional[int] = None

    @property
    def payload(self) -> Dict[str, Any]:
        return loads(self.action_data, {})

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> SyncAction:
        table = "sync_actions"
        data = _row_dict(row, table, ("id", "action_type", "entity_type", "entity_id", "action_data"))
        return cls(
            id=data["id"],
            action_type=_enum(ActionType, data["action_type"], table, "action_type"),
            entity_type=_enum(EntityType, data["entity_type"], table, "entity_type"),
            entity_id=data["entity_id"],
            action_data=data["action_data"],
            priority=data.get("priority") if data.get("priority") is not None else 1,
            retry_count=data.get("retry_count") or 0,
            max_retries=data.get("max_retries") if data.get("max_retries") is not None else 3,
            created_at=data.get("created_at"),
            scheduled_at=data.get("scheduled_at"),
            status=_enum(ActionStatus, data.get("status") or "pending", table, "status"),
            sequence=data.get("sequence"),
            last_error=data.get("last_error"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class Conflict:
    """A recorded divergence; both snapshots are preserved verbatim."""
    id: str
    entity_type: EntityType
    entity_id: str
    local_data: str
    server_data: str
    conflict_type: ConflictType
    resolution_strategy: Optional[ResolutionStrategy] = None
    created_at: Optional[int] = None
    resolved_at: Optional[int] = None
    status: ConflictStatus = ConflictStatus.PENDING
    sync_action_id: Optional[str] = None
    server_version: Optional[int] = None

    @property
    def local_payload(self) -> Dict[str, Any]:
        return loads(self.local_data, {})

    @property
    def server_payload(self) -> Dict[str, Any]:
        return loads(self.server_data, {})

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Conflict:
        table = "conflicts"
        data = _row_dict(row, table, ("id", "entity_type", "entity_id", "local_data", "server_data", "conflict_type"))
        strategy = data.get("resolution_strategy")
        return cls(
            id=data["id"],
            entity_type=_enum(EntityType, data["entity_type"], table, "entity_type"),
            entity_id=data["entity_id"],
            local_data=data["local_data"],
            server_data=data["server_data"],
            conflict_type=_enum(ConflictType, data["conflict_type"], table, "conflict_type"),
            resolution_strategy=_enum(ResolutionStrategy, strategy, table, "resolution_strategy") if strategy else None,
            created_at=data.get("created_at"),
            resolved_at=data.get("resolved_at"),
            status=_enum(ConflictStatus, data.get("status") or "pending", table, "status"),
            sync_action_id=data.get("sync_action_id"),
            server_version=data.get("server_version"),
        )


@dataclass
class Notification:
    id: str
    title: str
    message: str
    type: str = "info"
    data: Optional[Dict[str, Any]] = None
    read_status: bool = False
    created_at: Optional[int] = None
    expires_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Notification:
        data = _row_dict(row, "notifications", ("id", "title", "message"))
        return cls(
            id=data["id"],
            title=data["title"],
            message=data["message"],
            type=data.get("type") or "info",
            data=_json(data.get("data"), "notifications", "data", None),
            read_status=bool(data.get("read_status")),
            created_at=data.get("created_at"),
            expires_at=data.get("expires_at"),
        )


@dataclass
class CacheEntry:
    key: str
    data: str
    expires_at: int
    created_at: Optional[int] = None

    def is_expired(self, now: int) -> bool:
        return self.expires_at <= now

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> CacheEntry:
        data = _row_dict(row, "cache", ("key", "data", "expires_at"))
        return cls(
            key=data["key"],
            data=data["data"],
            expires_at=data["expires_at"],
            created_at=data.get("created_at"),
        )


@dataclass
class UserSession:
    id: str
    user_id: str
    token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    created_at: Optional[int] = None
    last_activity: Optional[int] = None

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> UserSession:
        data = _row_dict(row, "user_sessions", ("id", "user_id", "token"))
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class PerformanceMetric:
    id: str
    metric_type: str
    metric_value: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> PerformanceMetric:
        data = _row_dict(row, "performance_metrics", ("id", "metric_type", "metric_value"))
        return cls(
            id=data["id"],
            metric_type=data["metric_type"],
            metric_value=data["metric_value"],
            metadata=_json(data.get("metadata"), "performance_metrics", "metadata", {}),
            timestamp=data.get("timestamp"),
        )


def map_rows(rows: Iterable[Mapping[str, Any]], record_cls) -> List[Any]:
    """Map query rows to typed records."""
    return [record_cls.from_row(row) for row in rows]
