"""
Exception hierarchy for the gesture control pipeline.

Only CatalogLoadError (and an unreadable graph) abort startup. The other
errors are raised close to their source and recovered by the caller so the
pipeline keeps the last known-good prediction.
"""

from typing import Any, Dict, Optional


class GesturePipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class DeviceUnavailableError(GesturePipelineError):
    """Capture device is absent or has stopped delivering frames."""
    pass


class BackendUnsupportedError(GesturePipelineError):
    """Requested execution backend cannot run on this platform."""
    pass


class AsyncTransferError(GesturePipelineError):
    """A device-to-host readback reported failure."""
    pass


class CatalogLoadError(GesturePipelineError):
    """Label catalog file is missing or malformed."""
    pass
