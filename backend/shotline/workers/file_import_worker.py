"""file-import queue: fetch a remote file into object storage.

Two job names share the queue: ``import-from-url`` and
``import-from-google-drive``. Both stream the source to a temp file while
reporting progress in the 5-95% band, upload it, then probe metadata.
"""

import logging
import tempfile
from pathlib import Path
from typing import Any

from shotline.exceptions import ImportSourceError
from shotline.models.media_file import TERMINAL_FILE_STATUSES, FileStatus, MediaFile
from shotline.runtime.worker import JobContext, WorkerHandle, WorkerRuntime
from shotline.services.quota_service import QuotaKind
from shotline.workers.common import Services, job_logger, skipped

logger = logging.getLogger(__name__)

QUEUE_NAME = "file-import"

GOOGLE_DRIVE_DOWNLOAD_URL = "https://www.googleapis.com/drive/v3/files/{file_id}?alt=media"
USER_AGENT = "Mozilla/5.0 (compatible; ShotlineBot/1.0)"
CHUNK_SIZE = 1024 * 1024

IN_FLIGHT = (FileStatus.UPLOADING.value, FileStatus.PROCESSING.value)

DRIVE_ERRORS = {
    401: "Google Drive access token expired. Please try again.",
    403: "Access denied to Google Drive file. Please check permissions.",
    404: "File not found in Google Drive.",
}


def import_progress(loaded: int, total: int) -> int:
    """5% reserved before download and after upload."""
    return min(round(loaded / total * 90) + 5, 95)


def url_error_message(error: Exception) -> str:
    return str(error) or "Import failed"


def drive_error_message(error: Exception) -> str:
    status_code = getattr(error, "status_code", None)
    return DRIVE_ERRORS.get(status_code) or url_error_message(error)


class FileImportProcessor:
    def __init__(self, services: Services):
        self.services = services

    def __call__(self, job: JobContext) -> dict[str, Any]:
        if job.name == "import-from-url":
            url = job.payload["url"]
            headers = {"User-Agent": USER_AGENT}
            map_error = url_error_message
        elif job.name == "import-from-google-drive":
            url = GOOGLE_DRIVE_DOWNLOAD_URL.format(file_id=job.payload["drive_file_id"])
            headers = {"Authorization": f"Bearer {job.payload['access_token']}"}
            map_error = drive_error_message
        else:
            raise ValueError(f"Unknown job type: {job.name}")
        return self._import(job, url, headers, map_error)

    def _import(self, job: JobContext, url: str, headers: dict[str, str], map_error) -> dict[str, Any]:
        store = self.services.store
        file_id = job.payload["file_id"]
        log = job_logger(logger, "Import", file_id)

        file = store.get(MediaFile, file_id)
        if file is None:
            log.warning("File not found, skipping")
            return skipped("not found")
        if file.status in TERMINAL_FILE_STATUSES:
            return skipped(f"already {file.status}")

        key = job.payload.get("key") or file.storage_key
        log.info(f"Starting {job.name}")
        self._set_progress(file.id, 5)

        try:
            with tempfile.TemporaryDirectory(prefix="shotline-import-") as temp_dir:
                local_path = str(Path(temp_dir) / "source")
                size, content_type = self._download(
                    file.id, url, headers, local_path, job.payload.get("content_length"), job.payload.get("content_type")
                )
                cdn_url = self.services.storage.upload_file(local_path, key, content_type)
        except Exception as e:
            message = map_error(e)
            log.error(f"Import failed: {message}")
            store.conditional_update(
                MediaFile, file.id, statuses=IN_FLIGHT, status=FileStatus.FAILED.value, import_error=message
            )
            raise

        metadata = self.services.side_effects.run("Metadata extraction", self.services.probe, cdn_url, log=log) or {}
        if not store.conditional_update(
            MediaFile,
            file.id,
            statuses=IN_FLIGHT,
            status=FileStatus.READY.value,
            size=size,
            mime_type=content_type,
            cdn_url=cdn_url,
            media_metadata=metadata,
            import_progress=100,
            import_error=None,
        ):
            return skipped("settled concurrently")
        log.info(f"Imported {size} bytes")

        if size > 0:
            self.services.side_effects.run(
                "Quota commit", self.services.quota.commit, file.owner_id, QuotaKind.STORAGE_BYTES, size, log=log
            )
        return {"file_id": str(file.id), "size": size, "cdn_url": cdn_url}

    def _download(
        self,
        file_id: Any,
        url: str,
        headers: dict[str, str],
        local_path: str,
        content_length: int | None,
        content_type: str | None,
    ) -> tuple[int, str]:
        timeout = self.services.settings.import_timeout_s
        with self.services.http.stream("GET", url, headers=headers, timeout=timeout) as response:
            if response.status_code >= 400:
                raise ImportSourceError(
                    f"Download failed: HTTP {response.status_code}", status_code=response.status_code
                )
            total = content_length or int(response.headers.get("content-length") or 0)
            content_type = content_type or response.headers.get("content-type") or "video/mp4"

            loaded = 0
            reported = 5
            with open(local_path, "wb") as fh:
                for chunk in response.iter_bytes(chunk_size=CHUNK_SIZE):
                    fh.write(chunk)
                    loaded += len(chunk)
                    if total > 0:
                        percent = import_progress(loaded, total)
                        if percent >= reported + 5:
                            self._set_progress(file_id, percent)
                            reported = percent
        return total or loaded, content_type.split(";")[0].strip()

    def _set_progress(self, file_id: Any, percent: int) -> None:
        self.services.side_effects.run(
            "Progress update",
            self.services.store.conditional_update,
            MediaFile,
            file_id,
            MediaFile.import_progress < percent,
            statuses=IN_FLIGHT,
            import_progress=percent,
        )


def create_file_import_worker(runtime: WorkerRuntime, services: Services) -> WorkerHandle:
    settings = services.settings
    return runtime.create_worker(
        QUEUE_NAME,
        FileImportProcessor(services),
        concurrency=settings.file_import_concurrency,
        lock_duration=settings.default_lock_duration_s,
    )
