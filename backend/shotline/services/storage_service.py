"""Object storage for imported files and generated thumbnails."""

import logging
import shutil
from pathlib import Path
from typing import Protocol

from shotline.config import Settings

logger = logging.getLogger(__name__)


class StorageService(Protocol):
    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str: ...

    def get_public_url(self, storage_key: str) -> str: ...


class LocalStorageService:
    """Directory-backed storage for development without GCS."""

    def __init__(self, settings: Settings) -> None:
        self.base_url = settings.local_storage_base_url.rstrip("/")
        self.base_path = Path(settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def path_for(self, storage_key: str) -> Path:
        return self.base_path / storage_key

    def get_public_url(self, storage_key: str) -> str:
        return f"{self.base_url}/{storage_key}"

    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        target = self.path_for(storage_key)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy(local_path, target)
        return self.get_public_url(storage_key)


class GCSStorageService:
    """Google Cloud Storage for production."""

    def __init__(self, settings: Settings) -> None:
        from google.cloud import storage

        self.settings = settings
        self._storage = storage
        self._bucket = None

    @property
    def bucket(self):
        # Client creation needs credentials; deferred until the first upload
        if self._bucket is None:
            if self.settings.gcs_project_id:
                client = self._storage.Client(project=self.settings.gcs_project_id)
            else:
                client = self._storage.Client()
            self._bucket = client.bucket(self.settings.gcs_bucket_name)
        return self._bucket

    def get_public_url(self, storage_key: str) -> str:
        if self.settings.cdn_url:
            return f"{self.settings.cdn_url.rstrip('/')}/{storage_key}"
        return f"https://storage.googleapis.com/{self.settings.gcs_bucket_name}/{storage_key}"

    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        self.bucket.blob(storage_key).upload_from_filename(
            local_path, content_type=content_type or "application/octet-stream"
        )
        logger.debug(f"Uploaded {storage_key} to gs://{self.settings.gcs_bucket_name}")
        return self.get_public_url(storage_key)


def create_storage_service(settings: Settings) -> StorageService:
    if settings.use_local_storage:
        return LocalStorageService(settings)
    return GCSStorageService(settings)
