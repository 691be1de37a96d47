"""Files API routes."""
import logging
import os
from typing import AsyncIterator, Optional
from urllib.parse import quote

import aiofiles
from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from fileshare.exceptions import FileNotFoundInStorageError, FileValidationError, safe_error_message
from fileshare.schemas.file import DEFAULT_MIME_TYPE, FileInfo, UploadResponse
from fileshare.services.file_service import FileService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])


def get_file_service(request: Request) -> FileService:
    """FastAPI dependency returning the coordinator built in the lifespan."""
    return request.app.state.file_service


@router.post("/upload", response_model=UploadResponse, status_code=201)
async def upload_file(
    file: Optional[UploadFile] = File(None),
    delete_on_download: str = Form("false", alias="deleteOnDownload"),
    service: FileService = Depends(get_file_service),
):
    """Upload a file and create its metadata record."""
    if file is None:
        return JSONResponse({"error": "No file uploaded"}, status_code=400)

    try:
        contents = await file.read()
        info = await service.upload(
            contents,
            file.filename,
            delete_on_download=delete_on_download.strip().lower() == "true",
            content_type=file.content_type,
        )
    except FileValidationError:
        return JSONResponse({"error": "File processing failed"}, status_code=400)
    except Exception as e:
        logger.error(f"Error uploading file: {e}")
        return JSONResponse(
            {"error": "Server error during file processing", "message": safe_error_message(e)},
            status_code=500,
        )

    return UploadResponse(file=info)


_CHUNK_SIZE = 64 * 1024


def _content_disposition(display_name: str) -> str:
    quoted = quote(display_name)
    if quoted != display_name:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{display_name}"'


async def _iter_file(f) -> AsyncIterator[bytes]:
    try:
        while True:
            chunk = await f.read(_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        await f.close()


@router.get("/download/{filename}")
async def download_file(
    filename: str,
    service: FileService = Depends(get_file_service),
):
    """Stream a file; delete-on-download files are removed once the body is sent."""
    try:
        path = await service.get_path(filename)
        if path is None:
            raise FileNotFoundInStorageError(filename)
        info = await service.get_metadata(filename)
        # The open handle keeps serving the bytes if the blob is unlinked before the body is sent
        f = await aiofiles.open(path, "rb")
    except (FileNotFoundError, FileNotFoundInStorageError):
        return JSONResponse({"error": "File not found"}, status_code=404)
    except Exception as e:
        logger.error(f"Error downloading file: {e}")
        return JSONResponse(
            {"error": "Server error during file download", "message": safe_error_message(e)},
            status_code=500,
        )

    display_name = info.display_name if info else filename
    size = os.fstat(f.fileno()).st_size
    # Background tasks only run after the full response body went out
    return StreamingResponse(
        _iter_file(f),
        media_type=info.mime_type if info else DEFAULT_MIME_TYPE,
        headers={
            "Content-Disposition": _content_disposition(display_name),
            "Content-Length": str(size),
        },
        background=BackgroundTask(service.consume_delete_on_download, filename),
    )


@router.get("/files", response_model=list[FileInfo])
async def list_files(service: FileService = Depends(get_file_service)):
    """List every known file with its metadata."""
    return await service.list()


@router.delete("/files/{filename}", status_code=204)
async def delete_file(
    filename: str,
    service: FileService = Depends(get_file_service),
):
    """Delete a file and its record. Unknown names are a no-op."""
    await service.delete(filename)
    return Response(status_code=204)
