"""file-processing queue: probe an uploaded file and mark it ready."""

import logging
from typing import Any

from shotline.models.media_file import TERMINAL_FILE_STATUSES, FileStatus, MediaFile
from shotline.runtime.retry import retry_with_backoff
from shotline.runtime.worker import JobContext, WorkerHandle, WorkerRuntime
from shotline.workers.common import Services, job_logger, skipped

logger = logging.getLogger(__name__)

QUEUE_NAME = "file-processing"


class FileProcessor:
    def __init__(self, services: Services):
        self.services = services

    def __call__(self, job: JobContext) -> dict[str, Any]:
        store = self.services.store
        file_id = job.payload["file_id"]
        log = job_logger(logger, "File", file_id)

        file = store.get(MediaFile, file_id)
        if file is None:
            log.warning("File not found, skipping")
            return skipped("not found")
        if file.status in TERMINAL_FILE_STATUSES:
            return skipped(f"already {file.status}")
        if file.status == FileStatus.UPLOADING.value:
            # The import worker owns files still being fetched
            return skipped("import in progress")

        source = file.cdn_url or self.services.storage.get_public_url(file.storage_key)
        try:
            metadata = retry_with_backoff(lambda: self.services.probe(source), **self.services.retry_kwargs(log))
        except Exception as e:
            log.error(f"Metadata extraction failed: {e}")
            store.conditional_update(
                MediaFile, file.id, statuses=(FileStatus.PROCESSING,), status=FileStatus.FAILED.value, error=str(e)
            )
            raise

        if not store.conditional_update(
            MediaFile, file.id, statuses=(FileStatus.PROCESSING,), status=FileStatus.READY.value, media_metadata=metadata
        ):
            return skipped("settled concurrently")
        log.info(f"Processed ({metadata.get('duration')}s, {metadata.get('width')}x{metadata.get('height')})")

        if metadata.get("has_video") and not file.thumbnail_url:
            self.services.side_effects.fire("Thumbnail", self._thumbnail, file, source, log=log)
        return {"file_id": str(file.id), "metadata": metadata}

    def _thumbnail(self, file: MediaFile, source: str) -> None:
        url = self.services.thumbnails.create_thumbnail(source, f"thumbnails/files/{file.owner_id}/{file.id}.jpg")
        self.services.store.update(MediaFile, file.id, thumbnail_url=url)


def create_file_worker(runtime: WorkerRuntime, services: Services) -> WorkerHandle:
    settings = services.settings
    return runtime.create_worker(
        QUEUE_NAME,
        FileProcessor(services),
        concurrency=settings.file_processing_concurrency,
        lock_duration=settings.default_lock_duration_s,
    )
