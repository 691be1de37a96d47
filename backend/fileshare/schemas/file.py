"""File and file-event schemas shared by the HTTP routes and the WebSocket channel."""
from datetime import datetime
from enum import Enum
from typing import Optional

from fileshare.schemas.base import CamelModel

DEFAULT_MIME_TYPE = "application/octet-stream"


class FileInfo(CamelModel):
    filename: str
    display_name: str
    size: int = 0
    mime_type: str = DEFAULT_MIME_TYPE
    created_at: datetime
    delete_on_download: bool = False
    url: str = ""


class UploadResponse(CamelModel):
    message: str = "File uploaded successfully"
    file: FileInfo


class FileEvent(str, Enum):
    FILES_CHANGED = "files-changed"


class FileProcessingEvent(str, Enum):
    STARTED = "file-processing-started"
    COMPLETED = "file-processing-completed"
    ERROR = "file-processing-error"


class FileProcessingPayload(CamelModel):
    filename: str
    file_info: Optional[FileInfo] = None
    error: Optional[str] = None


class HealthResponse(CamelModel):
    status: str = "ok"
    scheduler_active: bool
    files: int
