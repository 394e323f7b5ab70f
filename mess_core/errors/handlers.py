# =============================================================================
# mess_core/errors/handlers.py
# Turning sync-core failures into messages the member can act on
# =============================================================================
"""
Failures reach the page in three ways:

- handle_error(e): log it and show one message for it
- ErrorContext("Saving meals"): wrap a UI action
- safe_execute(load_settings, default=None): call a function, show the
  error, hand back a default

Offline conditions are not bugs. A write that could not be stored on
the device is the one case the member must hear about, because it is
neither sent nor queued.
"""

from __future__ import annotations
import traceback
from typing import Any, Callable, Dict, Optional, Type, TypeVar
import streamlit as st

from mess_core.logging import get_logger
from .exceptions import (
    CacheInstallError,
    ConfigurationError,
    MessManagerError,
    NetworkUnavailableError,
    QueueStorageError,
    UnknownCategoryError,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Shown instead of the raw message; {category} comes from error.details
USER_MESSAGES: Dict[Type[MessManagerError], str] = {
    QueueStorageError: (
        "Not saved: this {category} entry could not be stored on this device "
        "and was not queued. Please try again."
    ),
    NetworkUnavailableError: (
        "You are offline and this page has not been saved for offline use yet."
    ),
    CacheInstallError: (
        "Offline pages could not be prepared. They will be saved as you browse."
    ),
    UnknownCategoryError: "This kind of entry cannot be saved offline.",
}

# Offline is an expected state; show it as a warning
WARNING_ERRORS = (NetworkUnavailableError, CacheInstallError)


def user_message_for(error: Exception) -> str:
    """Member-facing text for an error."""
    for error_type, template in USER_MESSAGES.items():
        if isinstance(error, error_type):
            category = error.details.get("category") or "offline"
            return template.format(category=category)
    if isinstance(error, MessManagerError):
        return error.message
    return str(error)


def handle_error(
    error: Exception,
    show_user_message: bool = True,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> None:
    """
    Log an error and show it on the page.

    Args:
        error: The exception to handle
        show_user_message: Whether to render a message
        log_error: Whether to log the error
        user_message: Overrides the text from user_message_for()
    """
    message = user_message or user_message_for(error)

    if log_error:
        if isinstance(error, MessManagerError):
            level = "warning" if isinstance(error, WARNING_ERRORS) else "error"
            getattr(logger, level)(str(error), extra={"details": error.to_dict()})
        else:
            logger.error(
                f"[UNKNOWN] {error}",
                extra={"details": {"traceback": traceback.format_exc()}},
                exc_info=True,
            )

    if not show_user_message:
        return

    if isinstance(error, WARNING_ERRORS):
        st.warning(message)
    elif isinstance(error, MessManagerError) and not error.recoverable:
        st.error(f"Critical Error: {message}. Please contact support.")
    else:
        st.error(f"Error: {message}")


def safe_execute(
    func: Callable[..., T],
    *args: Any,
    default: Optional[T] = None,
    error_message: Optional[str] = None,
    reraise: bool = False,
    **kwargs: Any,
) -> Optional[T]:
    """
    Call func; on failure show the error and return default.

    Usage:
        settings = safe_execute(load_settings, error_message="Could not read offline settings")
        if settings is None:
            st.stop()
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
    Wrap a UI action; errors are shown, recoverable ones swallowed.

    After the block, `failed` tells the page whether to show its own
    success message.

    Usage:
        with ErrorContext("Saving meals") as ctx:
            result = runtime.run(service.record_meal(...))
        if not ctx.failed:
            ...
    """

    def __init__(
        self,
        operation: str,
        recoverable: bool = True,
        show_success: bool = False,
        success_message: Optional[str] = None,
    ):
        self.operation = operation
        self.recoverable = recoverable
        self.show_success = show_success
        self.success_message = success_message
        self.error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def __enter__(self) -> ErrorContext:
        logger.debug(f"{self.operation}: started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            logger.debug(f"{self.operation}: done")
            if self.show_success:
                st.success(self.success_message or f"{self.operation} completed")
            return False

        self.error = exc_val
        if isinstance(exc_val, MessManagerError):
            handle_error(exc_val)
        else:
            handle_error(exc_val, user_message=f"Error during: {self.operation}")

        if isinstance(exc_val, ConfigurationError):
            return False
        return self.recoverable
