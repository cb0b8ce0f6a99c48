# =============================================================================
# caseflow_core/errors/handlers.py
# Error Handling Utilities for the Caseflow offline engine
# =============================================================================

from __future__ import annotations
import traceback
from typing import Optional, Callable, TypeVar, Dict, Any

from caseflow_core.logging import get_logger
from .exceptions import CaseflowError

logger = get_logger(__name__)

T = TypeVar("T")


def handle_error(
    error: Exception,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Centralized error handling function.

    Args:
        error: The exception to handle
        log_error: Whether to log the error
        user_message: Custom message to report (uses error message if None)

    Returns:
        Error description dict suitable for a notification payload
    """
    if isinstance(error, CaseflowError):
        message = user_message or error.message
        code = error.code
        details = error.details
        recoverable = error.recoverable
    else:
        message = user_message or str(error)
        code = "UNKNOWN"
        details = {"traceback": traceback.format_exc()}
        recoverable = True

    if log_error:
        logger.error(
            f"[{code}] {message}",
            extra={"details": details},
            exc_info=error,
        )

    return {
        "code": code,
        "message": message,
        "details": details,
        "recoverable": recoverable,
    }


def safe_execute(
    func: Callable[..., T],
    *args,
    default: Optional[T] = None,
    error_message: Optional[str] = None,
    reraise: bool = False,
    **kwargs,
) -> Optional[T]:
    """
    Execute a function with automatic error handling.

    Usage:
        count = safe_execute(cache.clear_expired, default=0)
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        handle_error(e, user_message=error_message)
        if reraise:
            raise
        return default


class ErrorContext:
    """
    Context manager for error handling with automatic logging.

    Recoverable errors are logged and suppressed; errors flagged as not
    recoverable (store initialization, configuration) always propagate.

    Usage:
        with ErrorContext("Background sync cycle"):
            processor.process_queue()
    """

    def __init__(self, operation: str, recoverable: bool = True):
        self.operation = operation
        self.recoverable = recoverable
        self.error: Optional[Dict[str, Any]] = None

    def __enter__(self) -> ErrorContext:
        logger.debug(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            logger.debug(f"Completed: {self.operation}")
            return False

        if isinstance(exc_val, CaseflowError):
            self.error = handle_error(exc_val)
            if not exc_val.recoverable:
                return False
        else:
            self.error = handle_error(
                exc_val,
                user_message=f"Error during: {self.operation}",
            )

        return self.recoverable
