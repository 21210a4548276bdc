from __future__ import annotations


class ManifestError(Exception):
    """Base class for persistence errors raised by the core."""


class DecodeError(ManifestError):
    """Persisted bytes could not be turned back into records."""


class SaveError(ManifestError):
    """Encoding or writing a collection failed."""


class SaveFailed(SaveError):
    """A restored backup could not be persisted; previous data was kept."""

    def __init__(self, message: str = "Failed to save the restored data. Your previous data has been preserved."):
        super().__init__(message)


class InvalidBackup(ManifestError):
    def __init__(self, message: str = "The backup file is invalid or corrupted."):
        super().__init__(message)


class RecoveryExhausted(ManifestError):
    """Local data was unreadable and no usable cloud copy exists."""
