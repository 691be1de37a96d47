"""FileRecord model - file metadata (actual bytes live in the upload directory)."""
from datetime import datetime
from sqlalchemy import BigInteger, Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column
from fileshare.models.base import Base, UpdatedAtMixin


class FileRecord(Base, UpdatedAtMixin):
    __tablename__ = "files"

    filename: Mapped[str] = mapped_column(String(1000), primary_key=True)
    # Nullable: rows written by older versions or partial writes are filled with defaults on read
    display_name: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delete_on_download: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
