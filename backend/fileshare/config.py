"""Application configuration from environment variables."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All config comes from env vars or .env file."""

    API_HOST: str = "0.0.0.0"
    API_PORT: int = 4001
    CORS_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"

    UPLOAD_DIR: str = "./uploads"
    DATABASE_URL: str = "sqlite+aiosqlite:///./metadata/metadata.db"
    PUBLIC_BASE_URL: str = "http://localhost:4001"

    # Retention (defaults: keep files 12h, sweep every 6h)
    FILE_TTL_SECONDS: float = 12 * 60 * 60
    CLEANUP_INTERVAL_SECONDS: float = 6 * 60 * 60
    SCHEDULER_SETTLE_SECONDS: float = 0.1

    # Watcher write-finish detection
    WATCHER_STABILITY_SECONDS: float = 0.5
    WATCHER_POLL_SECONDS: float = 0.1

    DOWNLOAD_DELETE_DELAY_SECONDS: float = 0.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
