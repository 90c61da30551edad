from typing import Any

from pydantic import BaseModel, Field


class RenderHandle(BaseModel):
    """Identifiers the render provider returns on start; needed to resume polling."""

    render_id: str
    bucket_name: str


class RenderProgress(BaseModel):
    fraction_done: float = Field(default=0.0, ge=0.0, le=1.0)
    done: bool = False
    fatal_error: str | None = None
    output_url: str | None = None
    output_size: int | None = None

    # Incidental metrics
    frames_rendered: int | None = None
    estimated_cost: float | None = None
    cost_display: str | None = None
    currency: str | None = None
    encoding_status: dict[str, Any] | None = None
    errors: list[Any] = Field(default_factory=list)

    @property
    def percent(self) -> int:
        return round(self.fraction_done * 100)

    def metrics(self) -> dict[str, Any]:
        return {
            "frames_rendered": self.frames_rendered,
            "estimated_cost": self.estimated_cost,
            "cost_display": self.cost_display,
            "currency": self.currency,
            "encoding_status": self.encoding_status,
            "render_errors": self.errors or None,
        }
