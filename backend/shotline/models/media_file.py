import uuid
from enum import Enum
from typing import Any

from sqlalchemy import BigInteger, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from shotline.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class FileStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


TERMINAL_FILE_STATUSES = (FileStatus.READY.value, FileStatus.FAILED.value)


class MediaFile(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "media_files"

    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, default=0)
    storage_key: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    cdn_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Status: uploading (import in flight), processing, ready, failed
    status: Mapped[str] = mapped_column(String(20), default=FileStatus.PROCESSING.value, index=True)

    # duration (s), width, height, has_audio, codecs
    media_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    import_progress: Mapped[int] = mapped_column(Integer, default=0)
    import_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<MediaFile {self.id} {self.name} ({self.status})>"
