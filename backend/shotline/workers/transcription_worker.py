"""transcription queue: speech-to-text for one Transcription record."""

import logging
from typing import Any

import httpx

from shotline.models.media_file import MediaFile
from shotline.models.transcription import (
    OPEN_TRANSCRIPTION_STATUSES,
    TERMINAL_TRANSCRIPTION_STATUSES,
    Transcription,
    TranscriptionStatus,
)
from shotline.runtime.retry import retry_with_backoff
from shotline.runtime.worker import JobContext, WorkerHandle, WorkerRuntime
from shotline.services.quota_service import QuotaKind
from shotline.workers.common import Services, job_logger, skipped

logger = logging.getLogger(__name__)

QUEUE_NAME = "transcription"


class TranscriptionProcessor:
    def __init__(self, services: Services):
        self.services = services

    def __call__(self, job: JobContext) -> dict[str, Any]:
        store = self.services.store
        clock = self.services.clock
        transcription_id = job.payload["transcription_id"]
        log = job_logger(logger, "Transcription", transcription_id)

        record = store.get(Transcription, transcription_id)
        if record is None:
            log.warning("Transcription not found, skipping")
            return skipped("not found")
        if record.status in TERMINAL_TRANSCRIPTION_STATUSES:
            return skipped(f"already {record.status}")

        # Terminal records are never rewritten: every write below is gated on an open status
        if not store.conditional_update(
            Transcription,
            record.id,
            statuses=OPEN_TRANSCRIPTION_STATUSES,
            status=TranscriptionStatus.PROCESSING.value,
        ):
            return skipped("settled concurrently")

        file_url = job.payload.get("file_url") or self._file_url(record)
        language = job.payload.get("language")
        try:
            if not file_url:
                raise ValueError("Source file has no URL")
            result = retry_with_backoff(
                lambda: self.services.transcription.submit(file_url, language),
                retry_on=(httpx.HTTPError,),
                **self.services.retry_kwargs(log),
            )
        except Exception as e:
            log.error(f"Transcription failed: {e}")
            store.conditional_update(
                Transcription,
                record.id,
                statuses=OPEN_TRANSCRIPTION_STATUSES,
                status=TranscriptionStatus.FAILED.value,
                error=str(e),
                processed_at=clock.now(),
            )
            raise

        if not store.conditional_update(
            Transcription,
            record.id,
            statuses=OPEN_TRANSCRIPTION_STATUSES,
            status=TranscriptionStatus.COMPLETED.value,
            text=result.text,
            words=[word.model_dump() for word in result.words],
            speakers=result.speakers,
            language=result.language or language,
            duration=result.duration,
            provider_id=result.provider_id,
            transcription_model=self.services.settings.transcription_model,
            error=None,
            processed_at=clock.now(),
        ):
            return skipped("settled concurrently")
        log.info(f"Completed ({len(result.words)} words, {result.duration or 0:.1f}s)")

        side_effects = self.services.side_effects
        if result.duration:
            side_effects.run(
                "Quota commit",
                self.services.quota.commit,
                record.owner_id,
                QuotaKind.TRANSCRIPTION_MINUTES,
                result.duration / 60,
                log=log,
            )
        side_effects.fire(
            "Webhook trigger",
            self.services.webhooks.trigger,
            record.owner_id,
            "transcription.completed",
            {"transcription_id": str(record.id), "text": result.text},
            log=log,
        )
        return {"transcription_id": str(record.id), "word_count": len(result.words), "duration": result.duration}

    def _file_url(self, record: Transcription) -> str | None:
        file = self.services.store.get(MediaFile, record.file_id)
        return file.cdn_url if file else None


def create_transcription_worker(runtime: WorkerRuntime, services: Services) -> WorkerHandle:
    settings = services.settings
    return runtime.create_worker(
        QUEUE_NAME,
        TranscriptionProcessor(services),
        concurrency=settings.transcription_concurrency,
        lock_duration=settings.default_lock_duration_s,
    )
