# =============================================================================
# caseflow_core/errors/exceptions.py
# Custom Exception Hierarchy for the Caseflow offline engine
# =============================================================================

from typing import Optional, Dict, Any


class CaseflowError(Exception):
    """
    Base exception for all Caseflow errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "SYNC_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "CF_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# LOCAL STORE EXCEPTIONS
# =============================================================================

class StoreInitializationError(CaseflowError):
    """Raised when the on-device database cannot be opened or created"""

    def __init__(
        self,
        message: str,
        db_path: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", None) or {}
        if db_path:
            details["db_path"] = db_path

        super().__init__(
            message=message,
            code="STORE_001",
            details=details,
            recoverable=False,
            **kwargs,
        )


class MigrationError(CaseflowError):
    """Raised when a schema migration step fails"""

    def __init__(
        self,
        message: str,
        version: Optional[int] = None,
        step: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", None) or {}
        if version is not None:
            details["version"] = version
        if step:
            details["step"] = step

        super().__init__(
            message=message,
            code="STORE_002",
            details=details,
            recoverable=False,
            **kwargs,
        )


class RowMappingError(CaseflowError):
    """Raised when a stored row cannot be mapped to its typed record"""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        column: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", None) or {}
        if table:
            details["table"] = table
        if column:
            details["column"] = column

        super().__init__(
            message=message,
            code="STORE_003",
            details=details,
            **kwargs,
        )


# =============================================================================
# MUTATION EXCEPTIONS
# =============================================================================

class ValidationError(CaseflowError):
    """Raised when a mutation is rejected before it reaches the sync queue"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        entity_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", None) or {}
        if field:
            details["field"] = field
        if entity_type:
            details["entity_type"] = entity_type

        super().__init__(
            message=message,
            code=kwargs.pop("code", "VALID_001"),
            details=details,
            **kwargs,
        )


class EntityNotFoundError(ValidationError):
    """Raised when a mutation or lookup references an unknown entity"""

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        **kwargs,
    ):
        details = kwargs.pop("details", None) or {}
        details["entity_id"] = entity_id

        super().__init__(
            message=f"{entity_type} '{entity_id}' does not exist locally",
            entity_type=entity_type,
            code="VALID_002",
            details=details,
            **kwargs,
        )


# =============================================================================
# SYNC EXCEPTIONS
# =============================================================================

class SyncTransportError(CaseflowError):
    """Raised on network failures, timeouts and server 5xx (retryable)"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", None) or {}
        if status_code is not None:
            details["status_code"] = status_code

        super().__init__(
            message=message,
            code="SYNC_001",
            details=details,
            **kwargs,
        )
        self.status_code = status_code


class SyncConflictError(CaseflowError):
    """Raised when the server rejects a replay because its copy has diverged"""

    def __init__(
        self,
        message: str,
        server_data: Optional[Dict[str, Any]] = None,
        server_version: Optional[int] = None,
        conflict_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", None) or {}
        if server_version is not None:
            details["server_version"] = server_version
        if conflict_type:
            details["conflict_type"] = conflict_type

        super().__init__(
            message=message,
            code="SYNC_002",
            details=details,
            **kwargs,
        )
        self.server_data = server_data
        self.server_version = server_version
        self.conflict_type = conflict_type


class SyncRejectedError(CaseflowError):
    """Raised when the server permanently rejects a replay (4xx, not 409)"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", None) or {}
        if status_code is not None:
            details["status_code"] = status_code

        super().__init__(
            message=message,
            code="SYNC_003",
            details=details,
            **kwargs,
        )
        self.status_code = status_code


class ConflictResolutionError(CaseflowError):
    """Raised when a conflict cannot be resolved as requested"""

    def __init__(
        self,
        message: str,
        conflict_id: Optional[str] = None,
        strategy: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", None) or {}
        if conflict_id:
            details["conflict_id"] = conflict_id
        if strategy:
            details["strategy"] = strategy

        super().__init__(
            message=message,
            code="SYNC_004",
            details=details,
            **kwargs,
        )


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(CaseflowError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", None) or {}
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
