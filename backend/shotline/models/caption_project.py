import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from shotline.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class CaptionStatus(str, Enum):
    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    GENERATING = "generating"
    RENDERING = "rendering"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_CAPTION_STATUSES = (CaptionStatus.COMPLETED.value, CaptionStatus.FAILED.value)
ACTIVE_CAPTION_STATUSES = (
    CaptionStatus.PENDING.value,
    CaptionStatus.TRANSCRIBING.value,
    CaptionStatus.GENERATING.value,
    CaptionStatus.RENDERING.value,
)


class CaptionPreset(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "caption_presets"

    owner_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Font, colours, paging: merged under the project's own settings
    styles: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)


class CaptionProject(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "caption_projects"

    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    file_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    preset_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    transcription_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    render_job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    settings: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    composition: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    # Status: pending, transcribing, generating, rendering, completed, failed
    status: Mapped[str] = mapped_column(String(20), default=CaptionStatus.PENDING.value, index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)

    output_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Stage timing
    transcription_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transcription_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    generation_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    generation_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    render_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    render_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<CaptionProject {self.id} ({self.status} {self.progress}%)>"
