import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import DateTime, Float, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from shotline.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class TranscriptionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TRANSCRIPTION_STATUSES = (TranscriptionStatus.COMPLETED.value, TranscriptionStatus.FAILED.value)
OPEN_TRANSCRIPTION_STATUSES = (TranscriptionStatus.PENDING.value, TranscriptionStatus.PROCESSING.value)


class Transcription(Base, UUIDMixin, TimestampMixin):
    """Speech-to-text result for one source file.

    Shared by every caption project that references the same file.
    """

    __tablename__ = "transcriptions"

    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    file_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Status: pending, processing, completed, failed
    status: Mapped[str] = mapped_column(String(20), default=TranscriptionStatus.PENDING.value, index=True)

    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    words: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    speakers: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    language: Mapped[str | None] = mapped_column(String(10), nullable=True)
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    provider_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    transcription_model: Mapped[str | None] = mapped_column(String(50), nullable=True)

    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Transcription {self.id} ({self.status})>"
