"""Application-level exception types.

Convention:
- Save-level and catalog-level errors (``SaveUnavailableError``,
  ``SaveNotFoundError``, ``CatalogTransactionError``,
  ``ConcurrentRunConflictError``, ``RunCancelledError``) abort a backup run.
  The orchestrator records them on the run report as the failure reason.
- File-level errors (``FileReadError``, ``FileStoreError`` and subclasses) are
  collected per path and attached to the run report; they never abort a run.

Every error carries a stable ``kind`` string used in reports and CLI output.
"""

from __future__ import annotations


class SaveSyncError(Exception):
    """Base class for all save-sync errors."""

    kind = "SaveSyncError"


class SaveUnavailableError(SaveSyncError):
    """The save's root directory is missing or unreadable."""

    kind = "SaveUnavailable"


class SaveNotFoundError(SaveSyncError):
    """No save with the requested identity exists in the catalog."""

    kind = "SaveNotFound"


class InvalidSaveError(SaveSyncError, ValueError):
    """Save registration input is invalid (empty name, overlapping paths, duplicate path)."""

    kind = "InvalidSave"


class FileReadError(SaveSyncError):
    """A single file inside a save could not be read."""

    kind = "FileReadError"

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class FileStoreError(SaveSyncError):
    """A blob could not be written to or read from the content store."""

    kind = "FileStoreError"

    def __init__(self, digest: bytes, message: str) -> None:
        super().__init__(f"{digest.hex()[:12]}: {message}")
        self.digest = digest


class BlobNotFoundError(FileStoreError):
    """The content store holds no blob for the requested digest."""

    kind = "BlobNotFound"


class DigestMismatchError(FileStoreError):
    """Bytes read or stored do not hash to the expected digest."""

    kind = "DigestMismatch"


class CatalogTransactionError(SaveSyncError):
    """A catalog transaction failed and was rolled back."""

    kind = "CatalogTransactionError"


class ConcurrentRunConflictError(SaveSyncError):
    """A backup run for this save is already active."""

    kind = "ConcurrentRunConflict"

    def __init__(self, save_id: int) -> None:
        super().__init__(f"A backup run for save {save_id} is already in progress")
        self.save_id = save_id


class RunCancelledError(SaveSyncError):
    """The run was cancelled cooperatively or its deadline passed."""

    kind = "Cancelled"
