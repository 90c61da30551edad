from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class BackoffPolicy(BaseModel):
    type: Literal["exponential", "fixed"] = "exponential"
    delay: float = 5.0  # seconds
    max_delay: float = 600.0

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next attempt, after ``attempts_made`` failures."""
        if self.type == "fixed":
            return min(self.delay, self.max_delay)
        exponent = max(attempts_made - 1, 0)
        return min(self.delay * (2**exponent), self.max_delay)


class RetentionPolicy(BaseModel):
    age: int  # seconds
    count: int


class JobOptions(BaseModel):
    attempts: int = Field(default=3, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    # True drops the job on finish, False keeps everything
    remove_on_complete: bool | RetentionPolicy = Field(
        default_factory=lambda: RetentionPolicy(age=3600, count=100)
    )
    remove_on_fail: bool | RetentionPolicy = Field(default_factory=lambda: RetentionPolicy(age=86400, count=50))
    priority: int | None = Field(default=None, ge=0, le=9)  # 0 is highest
    delay: float | None = None  # seconds before first delivery

    def merged(self, overrides: "JobOptions | dict[str, Any] | None") -> "JobOptions":
        if overrides is None:
            return self
        if isinstance(overrides, JobOptions):
            overrides = overrides.model_dump(exclude_unset=True)
        return JobOptions.model_validate({**self.model_dump(), **overrides})


class JobEnvelope(BaseModel):
    """What travels on the broker for one job.

    Immutable once enqueued; only ``attempt`` changes, by copy, as the
    broker redelivers.
    """

    model_config = ConfigDict(frozen=True)

    queue_name: str
    job_id: str
    job_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1
    options: JobOptions = Field(default_factory=JobOptions)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def with_attempt(self, attempt: int) -> "JobEnvelope":
        return self.model_copy(update={"attempt": attempt})

    @property
    def attempts_left(self) -> int:
        return max(self.options.attempts - self.attempt, 0)
