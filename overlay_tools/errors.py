"""Exceptions raised by the template tiling and compositing pipeline."""
from __future__ import annotations


class OverlayError(RuntimeError):
    """Base class for template pipeline failures."""


class DecodeFailure(OverlayError):
    """Raised when input bytes cannot be decoded as an image."""


class CapacityExceeded(OverlayError):
    """Raised when the registry already holds its maximum number of templates."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"You can have up to {limit} templates. Remove one to add another.")
        self.limit = limit


class MalformedAnchor(OverlayError, ValueError):
    """Raised when anchor coordinates are missing, non-numeric or negative."""


class DuplicateTemplate(OverlayError):
    """Raised when a template id key is already registered."""


class PersistenceFailure(OverlayError):
    """Raised when the key-value store rejects a write."""


class SlicingCancelled(OverlayError):
    """Raised when an in-flight slice is aborted through its cancel event."""
