"""Tests for the file-processing, transcription, webhook and file-import workers."""

import uuid
from unittest.mock import MagicMock

import httpx
import pytest

from shotline.exceptions import ImportSourceError, TranscriptionProviderError
from shotline.models import MediaFile, Transcription, Webhook, WebhookLog
from shotline.services.quota_service import QuotaKind
from shotline.workers.file_import_worker import FileImportProcessor, drive_error_message, import_progress
from shotline.workers.file_worker import FileProcessor
from shotline.workers.transcription_worker import TranscriptionProcessor
from shotline.workers.webhook_worker import WebhookProcessor

from conftest import OWNER_ID, job_context


class TestFileProcessing:
    """Metadata extraction for uploaded files."""

    def test_marks_ready_with_metadata(self, services, records, store):
        file = records.file(status="processing")

        result = FileProcessor(services)(job_context("file-processing", "process", {"file_id": str(file.id)}))

        assert result["file_id"] == str(file.id)
        saved = store.get(MediaFile, file.id)
        assert saved.status == "ready"
        assert saved.media_metadata["width"] == 1920
        services.probe.assert_called_once_with(file.cdn_url)
        assert saved.thumbnail_url == "https://cdn.test/thumbnails/thumb.jpg"

    def test_ready_file_is_skipped(self, services, records):
        file = records.file(status="ready")

        result = FileProcessor(services)(job_context("file-processing", "process", {"file_id": str(file.id)}))

        assert result == {"skipped": True, "reason": "already ready"}
        services.probe.assert_not_called()

    def test_uploading_file_is_left_to_import(self, services, records):
        file = records.file(status="uploading")

        result = FileProcessor(services)(job_context("file-processing", "process", {"file_id": str(file.id)}))

        assert result["skipped"] is True

    def test_probe_failure_marks_failed(self, services, records, store, clock):
        services.probe.side_effect = RuntimeError("ffprobe failed: moov atom not found")
        file = records.file(status="processing")

        with pytest.raises(RuntimeError):
            FileProcessor(services)(job_context("file-processing", "process", {"file_id": str(file.id)}))

        saved = store.get(MediaFile, file.id)
        assert saved.status == "failed"
        assert "moov atom" in saved.error
        assert services.probe.call_count == 3
        assert clock.sleeps == [1.0, 2.0]


class TestTranscription:
    def run(self, services, transcription, **payload):
        payload.setdefault("file_url", "https://cdn.test/uploads/interview.mp4")
        payload["transcription_id"] = str(transcription.id)
        return TranscriptionProcessor(services)(job_context("transcription", "transcribe", payload))

    def test_completes(self, services, records, store, quota, transcription_provider):
        transcription = records.transcription(records.file())

        result = self.run(services, transcription, language="en")

        assert result["word_count"] == 5
        saved = store.get(Transcription, transcription.id)
        assert saved.status == "completed"
        assert saved.text == "Hello from the studio"
        assert saved.words[0]["text"] == "Hello"
        assert saved.speakers == [
            {"id": "speaker_0", "name": "Speaker 1"},
            {"id": "speaker_1", "name": "Speaker 2"},
        ]
        assert saved.duration == 90.0
        assert saved.provider_id == "stt-123"
        assert saved.processed_at is not None
        assert transcription_provider.calls == [("https://cdn.test/uploads/interview.mp4", "en")]
        assert quota.usage(OWNER_ID, QuotaKind.TRANSCRIPTION_MINUTES) == pytest.approx(1.5)

    def test_terminal_is_never_rewritten(self, services, records, store, transcription_provider):
        transcription = records.transcription(records.file(), status="completed", text="original")

        result = self.run(services, transcription)

        assert result["skipped"] is True
        assert transcription_provider.calls == []
        assert store.get(Transcription, transcription.id).text == "original"

    def test_provider_rejection_fails_without_retry(self, services, records, store, transcription_provider):
        transcription_provider.errors = [TranscriptionProviderError("Unsupported audio format")]
        transcription = records.transcription(records.file())

        with pytest.raises(TranscriptionProviderError):
            self.run(services, transcription)

        saved = store.get(Transcription, transcription.id)
        assert saved.status == "failed"
        assert saved.error == "Unsupported audio format"
        assert len(transcription_provider.calls) == 1

    def test_transport_errors_are_retried(self, services, records, store, transcription_provider):
        transcription_provider.errors = [httpx.ConnectError("refused")]
        transcription = records.transcription(records.file())

        self.run(services, transcription)

        assert len(transcription_provider.calls) == 2
        assert store.get(Transcription, transcription.id).status == "completed"

    def test_completion_triggers_webhook(self, services, records, store, queues):
        store.create(
            Webhook(
                owner_id=OWNER_ID,
                name="app",
                url="https://hooks.test/app",
                secret="whsec",
                events=["transcription.completed"],
            )
        )
        transcription = records.transcription(records.file())

        self.run(services, transcription)

        deliveries = queues.for_queue("webhooks")
        assert len(deliveries) == 1
        assert deliveries[0].payload["event"] == "transcription.completed"


class TestWebhookDelivery:
    @pytest.fixture
    def webhook(self, store):
        return store.create(
            Webhook(
                owner_id=OWNER_ID,
                name="app",
                url="https://hooks.test/app",
                secret="whsec",
                events=["render.completed"],
            )
        )

    def run(self, services, **payload):
        payload.setdefault("event", "render.completed")
        payload.setdefault("payload", {"event": "render.completed", "data": {"render_job_id": "abc"}})
        return WebhookProcessor(services)(job_context("webhooks", "deliver", payload))

    def test_delivers_and_records(self, services, webhook, store, webhook_client):
        webhook_client.post.return_value = httpx.Response(200, text="ok")

        result = self.run(services, webhook_id=str(webhook.id))

        assert result == {"success": True, "status_code": 200}
        saved = store.get(Webhook, webhook.id)
        assert saved.success_count == 1
        assert saved.last_triggered_at is not None
        logs = store.find_all(WebhookLog, WebhookLog.webhook_id == webhook.id)
        assert [log.status_code for log in logs] == [200]

    def test_server_errors_are_retried(self, services, webhook, store, webhook_client, clock):
        webhook_client.post.side_effect = [httpx.Response(503), httpx.Response(200)]

        result = self.run(services, webhook_id=str(webhook.id))

        assert result["success"] is True
        assert clock.sleeps == [3.0]
        saved = store.get(Webhook, webhook.id)
        assert (saved.success_count, saved.fail_count) == (1, 1)

    def test_client_errors_are_not_retried(self, services, webhook, webhook_client):
        webhook_client.post.return_value = httpx.Response(404)

        result = self.run(services, webhook_id=str(webhook.id))

        assert result == {"success": False, "status_code": 404}
        assert webhook_client.post.call_count == 1

    def test_exhausted_retries_fail_the_job(self, services, webhook, webhook_client, clock):
        webhook_client.post.side_effect = httpx.ConnectError("refused")

        with pytest.raises(httpx.ConnectError):
            self.run(services, webhook_id=str(webhook.id))

        assert webhook_client.post.call_count == 5
        assert clock.sleeps == [3.0, 6.0, 12.0, 24.0]

    def test_inactive_webhook_is_skipped(self, services, webhook, store, webhook_client):
        store.update(Webhook, webhook.id, is_active=False)

        assert self.run(services, webhook_id=str(webhook.id)) == {"skipped": True, "reason": "inactive"}
        webhook_client.post.assert_not_called()

    def test_ad_hoc_url_uses_default_secret(self, services, webhook_client, settings):
        webhook_client.post.return_value = httpx.Response(204)

        self.run(services, webhook_url="https://client.test/hook")

        args, kwargs = webhook_client.post.call_args
        assert args == ("https://client.test/hook",)
        assert kwargs["headers"]["X-Webhook-Event"] == "render.completed"
        assert len(kwargs["headers"]["X-Webhook-Signature"]) == 64


def stream_response(chunks, status_code=200, headers=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers if headers is not None else {"content-length": str(sum(map(len, chunks)))}
    response.iter_bytes.return_value = chunks
    return response


class TestFileImport:
    def setup_stream(self, services, response):
        services.http.stream.return_value.__enter__.return_value = response

    def test_import_from_url(self, services, records, store, quota):
        file = records.file(status="uploading", cdn_url=None, media_metadata=None)
        self.setup_stream(services, stream_response([b"a" * 600, b"b" * 400], headers={"content-length": "1000", "content-type": "video/webm; codecs=vp9"}))

        result = FileImportProcessor(services)(
            job_context("file-import", "import-from-url", {"file_id": str(file.id), "url": "https://example.com/v.webm"})
        )

        assert result["size"] == 1000
        saved = store.get(MediaFile, file.id)
        assert saved.status == "ready"
        assert saved.size == 1000
        assert saved.mime_type == "video/webm"
        assert saved.import_progress == 100
        assert saved.cdn_url == f"https://cdn.test/{file.storage_key}"
        assert saved.media_metadata["duration"] == 30.0
        assert quota.usage(OWNER_ID, QuotaKind.STORAGE_BYTES) == 1000
        method, url = services.http.stream.call_args.args
        assert (method, url) == ("GET", "https://example.com/v.webm")

    def test_probe_failure_is_not_fatal(self, services, records, store):
        services.probe.side_effect = RuntimeError("ffprobe missing")
        file = records.file(status="uploading", cdn_url=None)
        self.setup_stream(services, stream_response([b"x" * 10]))

        FileImportProcessor(services)(
            job_context("file-import", "import-from-url", {"file_id": str(file.id), "url": "https://example.com/v.mp4"})
        )

        saved = store.get(MediaFile, file.id)
        assert saved.status == "ready"
        assert saved.media_metadata == {}

    def test_google_drive_denied(self, services, records, store):
        file = records.file(status="uploading", cdn_url=None)
        self.setup_stream(services, stream_response([], status_code=403))

        with pytest.raises(ImportSourceError):
            FileImportProcessor(services)(
                job_context(
                    "file-import",
                    "import-from-google-drive",
                    {"file_id": str(file.id), "drive_file_id": "1AbC", "access_token": "ya29.token"},
                )
            )

        saved = store.get(MediaFile, file.id)
        assert saved.status == "failed"
        assert saved.import_error == "Access denied to Google Drive file. Please check permissions."
        kwargs = services.http.stream.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer ya29.token"

    def test_unknown_job_name(self, services):
        with pytest.raises(ValueError, match="Unknown job type"):
            FileImportProcessor(services)(job_context("file-import", "import-from-ftp", {"file_id": str(uuid.uuid4())}))

    def test_progress_band(self):
        assert import_progress(0, 100) == 5
        assert import_progress(50, 100) == 50
        assert import_progress(100, 100) == 95

    def test_drive_error_messages(self):
        assert drive_error_message(ImportSourceError("x", status_code=404)) == "File not found in Google Drive."
        assert drive_error_message(ImportSourceError("Download failed: HTTP 500", status_code=500)) == (
            "Download failed: HTTP 500"
        )
