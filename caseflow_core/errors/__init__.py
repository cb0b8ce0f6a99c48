# =============================================================================
# caseflow_core/errors/__init__.py
# Centralized Error Handling for the Caseflow offline engine
# =============================================================================

from .exceptions import (
    CaseflowError,
    StoreInitializationError,
    MigrationError,
    RowMappingError,
    ValidationError,
    EntityNotFoundError,
    SyncTransportError,
    SyncConflictError,
    SyncRejectedError,
    ConflictResolutionError,
    ConfigurationError,
)

from .handlers import (
    handle_error,
    safe_execute,
    ErrorContext,
)

__all__ = [
    # Exceptions
    "CaseflowError",
    "StoreInitializationError",
    "MigrationError",
    "RowMappingError",
    "ValidationError",
    "EntityNotFoundError",
    "SyncTransportError",
    "SyncConflictError",
    "SyncRejectedError",
    "ConflictResolutionError",
    "ConfigurationError",
    # Handlers
    "handle_error",
    "safe_execute",
    "ErrorContext",
]
