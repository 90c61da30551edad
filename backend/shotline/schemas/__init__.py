from shotline.schemas.jobs import BackoffPolicy, JobEnvelope, JobOptions, RetentionPolicy
from shotline.schemas.render import RenderHandle, RenderProgress
from shotline.schemas.transcription import TranscriptResult, TranscriptWord

__all__ = [
    "BackoffPolicy",
    "JobEnvelope",
    "JobOptions",
    "RetentionPolicy",
    "RenderHandle",
    "RenderProgress",
    "TranscriptResult",
    "TranscriptWord",
]
