# =============================================================================
# mess_core/errors/__init__.py
# Centralized Error Handling for the Mess Manager client
# =============================================================================

from .exceptions import (
    MessManagerError,
    QueueStorageError,
    UnknownCategoryError,
    NetworkUnavailableError,
    CacheInstallError,
    ConfigurationError,
)

from .handlers import (
    handle_error,
    safe_execute,
    user_message_for,
    ErrorContext,
)

__all__ = [
    # Exceptions
    "MessManagerError",
    "QueueStorageError",
    "UnknownCategoryError",
    "NetworkUnavailableError",
    "CacheInstallError",
    "ConfigurationError",
    # Handlers
    "handle_error",
    "safe_execute",
    "user_message_for",
    "ErrorContext",
]
