"""Error types raised by the file lifecycle components.

Routes translate these into JSON bodies with explicit status codes. Background
paths (watcher dispatch, reconciliation, retention sweeps) catch them and report
through logs or processing events instead.
"""
from typing import Any, Dict, Optional


class FileShareError(Exception):
    """Base exception for all file sharing errors.

    `error` is the short label clients see in the `{error, message}` body;
    `message` carries the specific reason.
    """

    status_code = 500
    error = "Server error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class FileValidationError(FileShareError):
    """Raised when an upload is missing its file or is otherwise malformed."""

    status_code = 400
    error = "File processing failed"


class FileNotFoundInStorageError(FileShareError):
    """Raised when a filename is unknown to storage or metadata."""

    status_code = 404
    error = "File not found"

    def __init__(self, filename: str):
        super().__init__("File not found", {"filename": filename})
        self.filename = filename


class StorageIOError(FileShareError):
    """Raised when reading or writing the upload directory fails."""

    status_code = 500


class MetadataConsistencyError(FileShareError):
    """Raised when reconciliation cannot line up storage with metadata."""

    status_code = 500


def safe_error_message(e: Exception, fallback: str = "Unknown error") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions produce an empty str(e). This helper falls back to the
    exception class name.
    """
    if isinstance(e, FileShareError):
        return e.message
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg
