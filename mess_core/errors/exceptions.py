# =============================================================================
# mess_core/errors/exceptions.py
# Custom Exception Hierarchy for the Mess Manager client
# =============================================================================

from typing import Optional, Dict, Any, List


class MessManagerError(Exception):
    """
    Base exception for all Mess Manager client errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "QUEUE_001")
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
        self.code = code or "MM_000"
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
# OFFLINE QUEUE EXCEPTIONS
# =============================================================================

class QueueStorageError(MessManagerError):
    """Raised when a queue mutation could not be persisted"""

    def __init__(
        self,
        message: str,
        category: Optional[str] = None,
        item_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if category:
            details["category"] = category
        if item_id:
            details["item_id"] = item_id

        super().__init__(
            message=message,
            code="QUEUE_001",
            details=details,
            **kwargs,
        )


class UnknownCategoryError(MessManagerError):
    """Raised when a queue category is not one of the known partitions"""

    def __init__(self, category: str, **kwargs):
        super().__init__(
            message=f"Unknown queue category: {category!r}",
            code="QUEUE_002",
            details={"category": category},
            recoverable=False,
            **kwargs,
        )


# =============================================================================
# NETWORK / CACHE EXCEPTIONS
# =============================================================================

class NetworkUnavailableError(MessManagerError):
    """Raised when the network failed and no cached fallback exists"""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        cause: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if url:
            details["url"] = url
        if cause:
            details["cause"] = cause

        super().__init__(
            message=message,
            code="NET_001",
            details=details,
            **kwargs,
        )


class CacheInstallError(MessManagerError):
    """Raised when precaching a URL list fails"""

    def __init__(
        self,
        message: str,
        cache_name: Optional[str] = None,
        failed_urls: Optional[List[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if cache_name:
            details["cache_name"] = cache_name
        if failed_urls:
            details["failed_urls"] = failed_urls

        super().__init__(
            message=message,
            code="CACHE_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(MessManagerError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
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
