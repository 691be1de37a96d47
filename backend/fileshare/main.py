"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fileshare import __version__
from fileshare.config import Settings, settings
from fileshare.database import build_engine, build_session_factory
from fileshare.exceptions import FileShareError, FileValidationError, safe_error_message
from fileshare.schemas.file import HealthResponse
from fileshare.services.broadcaster import FileBroadcaster
from fileshare.services.file_service import FileService
from fileshare.services.file_storage import LocalFileStorage
from fileshare.services.metadata_store import SqlMetadataStore
from fileshare.services.retention import RetentionScheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build storage, metadata, scheduler and coordinator; tear them down on shutdown."""
    cfg: Settings = app.state.settings

    engine = build_engine(cfg.DATABASE_URL)
    metadata = SqlMetadataStore(build_session_factory(engine), base_url=cfg.PUBLIC_BASE_URL)
    await metadata.init()

    storage = LocalFileStorage(
        cfg.UPLOAD_DIR,
        stability_seconds=cfg.WATCHER_STABILITY_SECONDS,
        poll_seconds=cfg.WATCHER_POLL_SECONDS,
    )
    scheduler = RetentionScheduler(
        storage,
        file_ttl=cfg.FILE_TTL_SECONDS,
        cleanup_interval=cfg.CLEANUP_INTERVAL_SECONDS,
        settle_delay=cfg.SCHEDULER_SETTLE_SECONDS,
    )
    file_service = FileService(scheduler, metadata, delete_delay_seconds=cfg.DOWNLOAD_DELETE_DELAY_SECONDS)
    broadcaster = FileBroadcaster(file_service)

    app.state.scheduler = scheduler
    app.state.file_service = file_service
    app.state.broadcaster = broadcaster

    await scheduler.start()
    await file_service.start()
    logger.info(f"Serving files from {storage.base_path}")

    yield

    # Cleanup
    await file_service.close()
    await scheduler.close()
    await engine.dispose()


async def file_share_error_handler(request: Request, exc: FileShareError):
    body = {"error": exc.error}
    if exc.message != exc.error:
        body["message"] = exc.message
    return JSONResponse(body, status_code=exc.status_code)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed requests (e.g. a text field where the upload part belongs) are 400s."""
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    logger.warning(f"Rejected {request.method} {request.url.path}: {message}")
    return JSONResponse(
        {"error": FileValidationError.error, "message": message},
        status_code=400,
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        {"error": FileShareError.error, "message": safe_error_message(exc)},
        status_code=500,
    )


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    app_settings = app_settings or settings

    app = FastAPI(
        title="Fly Share API",
        version=__version__,
        description="Local network file sharing with a live file list.",
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    # CORS
    origins = [o.strip() for o in app_settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(FileShareError, file_share_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Report scheduler state and the number of known files."""
        files = await request.app.state.file_service.list()
        return HealthResponse(
            scheduler_active=request.app.state.scheduler.is_active,
            files=len(files),
        )

    # Register routers
    from fileshare.routes.files import router as files_router
    from fileshare.routes.ws import router as ws_router
    app.include_router(files_router)
    app.include_router(ws_router)

    return app


app = create_app()
