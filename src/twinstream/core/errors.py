"""Error taxonomy for comparisons, backends, delivery and storage."""

from __future__ import annotations


class TwinStreamError(Exception):
    """Base class for all twinstream errors."""


class ValidationError(TwinStreamError):
    """Malformed or incomplete comparison request. Nothing is started or stored."""


class UnknownModel(ValidationError):
    def __init__(self, model_id: str):
        super().__init__(f"Unknown model: {model_id}")
        self.model_id = model_id


class BackendError(TwinStreamError):
    """A model backend failed to start or failed mid-stream."""

    def __init__(self, message: str, model_id: str | None = None):
        super().__init__(message)
        self.model_id = model_id


class TransportError(TwinStreamError):
    """The delivery channel can no longer deliver events."""


class StorageError(TwinStreamError):
    """The history store could not complete an operation."""
