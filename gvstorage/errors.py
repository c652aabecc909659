"""Errors raised by the library backup/restore engine.

Phase-level failures (space check, archive and manifest validation, the
category and tag transactions) end the whole operation. Per-asset failures are
recorded in the import result instead of being raised. ``Cancelled`` is an
expected outcome, not a failure, and callers should present it as such.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for all export/import errors."""


class InsufficientSpace(BackupError):
    def __init__(self, required_bytes: int, available_bytes: Optional[int] = None):
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        message = f"Insufficient disk space: export requires {required_bytes} bytes"
        if available_bytes is not None:
            message += f", only {available_bytes} bytes available"
        super().__init__(message)


class InvalidArchive(BackupError):
    """The bundle file is missing, empty, or not a readable ZIP container."""


class CorruptBundle(BackupError):
    """The bundle is a readable container but its contents are inconsistent."""


class InvalidManifest(CorruptBundle):
    """database.json is absent, unparseable, or does not have the expected shape."""


class CategoryNotFound(BackupError):
    def __init__(self, category_id: str, slug: Optional[str] = None):
        self.category_id = category_id
        self.slug = slug
        target = f" for asset '{slug}'" if slug else ""
        super().__init__(f"Category '{category_id}' not found{target}")


class PerAssetImportError(BackupError):
    def __init__(self, slug: str, cause: Exception):
        self.slug = slug
        self.cause = cause
        super().__init__(f"Failed to import asset '{slug}': {cause}")


class Cancelled(BackupError):
    def __init__(self, message: str = "Operation was cancelled by user"):
        super().__init__(message)


class ExportFailed(BackupError):
    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Export failed: {cause}")


class ImportFailed(BackupError):
    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Import failed: {cause}")


class JobConflict(BackupError):
    """Another operation of the same kind is already running."""
