from shotline.models.base import Base
from shotline.models.caption_project import CaptionPreset, CaptionProject, CaptionStatus
from shotline.models.media_file import FileStatus, MediaFile
from shotline.models.render_job import RenderJob, RenderStatus, RenderType
from shotline.models.transcription import Transcription, TranscriptionStatus
from shotline.models.usage import UsageCounter
from shotline.models.webhook import Webhook, WebhookLog

__all__ = [
    "Base",
    "CaptionPreset",
    "CaptionProject",
    "CaptionStatus",
    "FileStatus",
    "MediaFile",
    "RenderJob",
    "RenderStatus",
    "RenderType",
    "Transcription",
    "TranscriptionStatus",
    "UsageCounter",
    "Webhook",
    "WebhookLog",
]
