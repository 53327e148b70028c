"""
Error taxonomy for device-lens.

Lookup misses are not errors: they return None. Everything below is raised by
an operation that could not complete, and most of it is caught again at the
command layer and reported inside a result object.
"""

from __future__ import annotations
from typing import Optional


class DeviceLensError(Exception):
    """Base class for all device-lens exceptions."""


class DefinitionParseError(DeviceLensError):
    """Raised when a hardware-ID definition payload is empty or unusable."""


class NetworkError(DeviceLensError):
    """Raised when a remote fetch fails (connection error, non-2xx, bad payload)."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source

    def __str__(self) -> str:
        message = super().__str__()
        if self.source:
            return f"{self.source}: {message}"
        return message


class FetchTimeout(NetworkError):
    """Raised when a remote fetch exceeds its time budget."""


class CacheIOError(DeviceLensError):
    """Raised when a cache entry cannot be written or renamed into place."""


class ImageValidationError(DeviceLensError):
    """Raised when downloaded bytes are not a supported image."""


class DataDirectoryError(DeviceLensError):
    """Raised when the data directory cannot be created or written."""


class DeviceNotFoundError(DeviceLensError):
    """Raised by a prober when no attached device matches the requested key."""


class InvalidCacheKeyError(DeviceLensError):
    """Raised when a caller-chosen image cache key is not a plain file name."""
