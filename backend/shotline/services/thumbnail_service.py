"""Poster-frame extraction with FFmpeg."""

import logging
import subprocess
import tempfile
from pathlib import Path

from shotline.config import Settings
from shotline.services.storage_service import StorageService

logger = logging.getLogger(__name__)


class ThumbnailService:
    def __init__(self, settings: Settings, storage: StorageService):
        self.settings = settings
        self.storage = storage

    def extract_frame(self, video_url: str, output_path: str, at_seconds: float = 1.0, width: int = 640) -> str:
        cmd = [
            self.settings.ffmpeg_path,
            "-y",
            "-ss", str(at_seconds),
            "-i", video_url,
            "-frames:v", "1",
            "-vf", f"scale={width}:-2",
            "-q:v", "3",
            output_path,
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.settings.probe_timeout_s)
        except subprocess.TimeoutExpired:
            raise RuntimeError(f"ffmpeg timed out after {self.settings.probe_timeout_s}s")
        if result.returncode != 0 or not Path(output_path).exists():
            raise RuntimeError(f"ffmpeg frame extraction failed: {result.stderr[-500:]}")
        return output_path

    def create_thumbnail(self, video_url: str, storage_key: str) -> str:
        """Extract a frame, upload it and return its public URL."""
        with tempfile.TemporaryDirectory(prefix="shotline-thumb-") as temp_dir:
            local_path = str(Path(temp_dir) / "thumbnail.jpg")
            self.extract_frame(video_url, local_path)
            url = self.storage.upload_file(local_path, storage_key, content_type="image/jpeg")
        logger.info(f"Thumbnail uploaded to {storage_key}")
        return url
