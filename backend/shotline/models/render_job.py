import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from shotline.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class RenderStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RENDERING = "rendering"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RenderType(str, Enum):
    """Which pipeline produced the job; routes render-minute usage."""

    CAPTION = "caption"
    TEMPLATE = "template"


TERMINAL_RENDER_STATUSES = (
    RenderStatus.COMPLETED.value,
    RenderStatus.FAILED.value,
    RenderStatus.CANCELLED.value,
)
CLAIMABLE_RENDER_STATUSES = (RenderStatus.PENDING.value, RenderStatus.QUEUED.value)


class RenderJob(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "render_jobs"

    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    caption_project_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    template_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    # No default: every creation path must say which pipeline it belongs to
    render_type: Mapped[str] = mapped_column(String(20), nullable=False)

    input_spec: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    output_format: Mapped[str] = mapped_column(String(10), default="mp4")
    resolution: Mapped[str] = mapped_column(String(10), default="1080p")
    fps: Mapped[int] = mapped_column(Integer, default=30)

    # External handle, written once when the provider accepts the render
    render_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bucket_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Status: pending, queued, rendering, completed, failed, cancelled
    status: Mapped[str] = mapped_column(String(20), default=RenderStatus.PENDING.value, index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)

    # Output
    output_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Provider metrics, refreshed on every poll
    frames_rendered: Mapped[int | None] = mapped_column(Integer, nullable=True)
    estimated_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    cost_display: Mapped[str | None] = mapped_column(String(50), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    encoding_status: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    render_metrics: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    render_errors: Mapped[list[Any] | None] = mapped_column(JSONType, nullable=True)

    # Timing
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Notification
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_sent: Mapped[bool] = mapped_column(Boolean, default=False)

    # Error handling
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RENDER_STATUSES

    def __repr__(self) -> str:
        return f"<RenderJob {self.id} ({self.status})>"
