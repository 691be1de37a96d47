"""Run the server: python -m fileshare"""
import uvicorn

from fileshare.config import settings
from fileshare.logging_config import setup_logging


def main():
    setup_logging(settings.LOG_LEVEL)
    uvicorn.run(
        "fileshare.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_config=None,
    )


if __name__ == "__main__":
    main()
