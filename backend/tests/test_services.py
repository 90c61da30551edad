"""Tests for webhook fan-out, quota counters, provider clients and storage."""

import hashlib
import hmac
import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from shotline.exceptions import RenderProviderError, TranscriptionProviderError, WebhookDeliveryError
from shotline.models import Webhook, WebhookLog
from shotline.services.quota_service import DatabaseQuotaGate, QuotaKind, render_minutes_kind
from shotline.services.render_service import HttpRenderProvider, output_key
from shotline.services.storage_service import LocalStorageService, create_storage_service
from shotline.services.thumbnail_service import ThumbnailService
from shotline.services.transcription_service import ElevenLabsTranscriptionProvider
from shotline.services.webhook_service import WebhookService, encode_payload, sign_payload

from conftest import OWNER_ID, FakeClock


def mock_client(handler, base_url: str = "https://provider.test") -> httpx.Client:
    return httpx.Client(base_url=base_url, transport=httpx.MockTransport(handler))


# =============================================================================
# Webhooks
# =============================================================================


class TestWebhookService:
    @pytest.fixture
    def service(self, store, queues, settings, webhook_client, clock):
        return WebhookService(store, queues, settings, client=webhook_client, clock=clock)

    def subscribe(self, store, events, **values):
        values.setdefault("owner_id", OWNER_ID)
        return store.create(Webhook(name="app", url="https://hooks.test/app", secret="whsec", events=events, **values))

    def test_signature_is_hmac_of_body(self):
        body = encode_payload({"event": "render.completed", "data": {"id": 1}})

        expected = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
        assert sign_payload(body, "whsec") == expected
        assert body == b'{"event":"render.completed","data":{"id":1}}'

    def test_trigger_only_subscribed_active_webhooks(self, service, store, queues):
        wanted = self.subscribe(store, ["render.completed", "caption.completed"])
        self.subscribe(store, ["caption.failed"])
        self.subscribe(store, ["render.completed"], is_active=False)

        queued = service.trigger(OWNER_ID, "render.completed", {"render_job_id": "abc"})

        assert queued == 1
        [job] = queues.for_queue("webhooks")
        assert job.payload["webhook_id"] == str(wanted.id)
        assert job.payload["payload"]["data"] == {"render_job_id": "abc"}
        assert job.payload["payload"]["timestamp"] == "2026-03-10T12:00:00+00:00"

    def test_notify_url(self, service, queues):
        service.notify_url("https://client.test/hook", "render.completed", {"status": "completed"})

        [job] = queues.for_queue("webhooks")
        assert job.payload["webhook_url"] == "https://client.test/hook"
        assert "webhook_id" not in job.payload

    def test_deliver_signs_exact_body(self, service, webhook_client):
        webhook_client.post.return_value = httpx.Response(200)
        payload = {"event": "caption.completed", "data": {"caption_project_id": "p1"}}

        service.deliver("https://hooks.test/app", "whsec", "caption.completed", payload)

        kwargs = webhook_client.post.call_args.kwargs
        assert json.loads(kwargs["content"]) == payload
        assert kwargs["headers"]["X-Webhook-Signature"] == sign_payload(kwargs["content"], "whsec")
        assert kwargs["headers"]["Content-Type"] == "application/json"

    def test_response_is_truncated_in_log(self, service, store, webhook_client, settings):
        webhook_client.post.return_value = httpx.Response(200, text="x" * 5000)

        service.deliver("https://hooks.test/app", "whsec", "render.completed", {})

        [log] = store.find_all(WebhookLog)
        assert len(log.response) == settings.webhook_response_max_chars
        assert log.webhook_id is None

    def test_retryable_statuses_raise(self, service, store, webhook_client):
        webhook = self.subscribe(store, ["render.completed"])
        webhook_client.post.return_value = httpx.Response(429)

        with pytest.raises(WebhookDeliveryError) as exc:
            service.deliver(webhook.url, webhook.secret, "render.completed", {}, webhook)

        assert exc.value.status_code == 429
        assert store.get(Webhook, webhook.id).fail_count == 1

    def test_transport_error_is_recorded(self, service, store, webhook_client):
        webhook_client.post.side_effect = httpx.ConnectTimeout("timed out")

        with pytest.raises(httpx.ConnectTimeout):
            service.deliver("https://hooks.test/app", "whsec", "render.completed", {})

        [log] = store.find_all(WebhookLog)
        assert log.success is False
        assert log.error == "timed out"


# =============================================================================
# Quota
# =============================================================================


class TestQuotaGate:
    def test_unlimited_kind_always_admits(self, database, clock):
        gate = DatabaseQuotaGate(database, {}, clock)
        assert gate.check_and_reserve(OWNER_ID, QuotaKind.CAPTION_PROJECTS, 1000) is True

    def test_limit_counts_committed_usage(self, database, clock):
        gate = DatabaseQuotaGate(database, {"caption_projects": 2}, clock)

        gate.commit(OWNER_ID, QuotaKind.CAPTION_PROJECTS, 1)
        assert gate.check_and_reserve(OWNER_ID, QuotaKind.CAPTION_PROJECTS, 1) is True
        gate.commit(OWNER_ID, QuotaKind.CAPTION_PROJECTS, 1)
        assert gate.check_and_reserve(OWNER_ID, QuotaKind.CAPTION_PROJECTS, 1) is False

    def test_commit_accumulates_per_period(self, database):
        clock = FakeClock()
        gate = DatabaseQuotaGate(database, {}, clock)

        gate.commit(OWNER_ID, QuotaKind.RENDER_MINUTES, 1.5)
        gate.commit(OWNER_ID, QuotaKind.RENDER_MINUTES, 0.5)
        assert gate.usage(OWNER_ID, QuotaKind.RENDER_MINUTES) == pytest.approx(2.0)

        clock.advance(31 * 24 * 3600)
        assert gate.period() == "2026-04"
        assert gate.usage(OWNER_ID, QuotaKind.RENDER_MINUTES) == 0

    def test_zero_commit_is_ignored(self, database, clock):
        gate = DatabaseQuotaGate(database, {}, clock)
        gate.commit(OWNER_ID, QuotaKind.STORAGE_BYTES, 0)
        assert gate.usage(OWNER_ID, QuotaKind.STORAGE_BYTES) == 0

    def test_render_minutes_kind(self):
        assert render_minutes_kind("caption") is QuotaKind.CAPTION_RENDER_MINUTES
        assert render_minutes_kind("template") is QuotaKind.RENDER_MINUTES
        assert render_minutes_kind("user") is QuotaKind.RENDER_MINUTES


# =============================================================================
# Render provider
# =============================================================================


class TestHttpRenderProvider:
    @pytest.fixture
    def job(self, records):
        return records.render_job(
            output_format="mp4",
            input_spec={"project": {"width": 1080}, "elements": [{"type": "video"}]},
        )

    def test_start(self, settings, job):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"render_id": "r-1", "bucket_name": "bucket-a"})

        handle = HttpRenderProvider(settings, client=mock_client(handler)).start(job)

        assert (handle.render_id, handle.bucket_name) == ("r-1", "bucket-a")
        body = seen[0]
        assert body["codec"] == "h264"
        assert body["out_name"] == output_key(job) == f"renders/{OWNER_ID}/{job.id}.mp4"
        assert body["input_props"]["elements"] == [{"type": "video"}]

    def test_start_client_error_is_fatal(self, settings, job):
        client = mock_client(lambda request: httpx.Response(400, text="bad composition"))

        with pytest.raises(RenderProviderError, match="HTTP 400 bad composition"):
            HttpRenderProvider(settings, client=client).start(job)

    def test_start_server_error_is_transient(self, settings, job):
        client = mock_client(lambda request: httpx.Response(503))

        with pytest.raises(httpx.HTTPStatusError):
            HttpRenderProvider(settings, client=client).start(job)

    def test_poll_progress(self, settings):
        def handler(request):
            assert request.url.params["bucket_name"] == "bucket-a"
            return httpx.Response(
                200,
                json={
                    "overall_progress": 0.42,
                    "done": False,
                    "frames_rendered": 120,
                    "costs": {"accrued_so_far": 0.1, "display_cost": "$0.10", "currency": "USD"},
                },
            )

        result = HttpRenderProvider(settings, client=mock_client(handler)).poll_progress("r-1", "bucket-a")

        assert result.percent == 42
        assert result.frames_rendered == 120
        assert result.cost_display == "$0.10"
        assert result.fatal_error is None

    def test_poll_fatal_error(self, settings):
        client = mock_client(
            lambda request: httpx.Response(
                200,
                json={"overall_progress": 0.3, "fatal_error_encountered": True, "errors": [{"message": "OOM"}]},
            )
        )

        result = HttpRenderProvider(settings, client=client).poll_progress("r-1", "b")

        assert result.fatal_error == "OOM"
        assert result.metrics()["render_errors"] == [{"message": "OOM"}]


# =============================================================================
# Transcription provider
# =============================================================================


class TestElevenLabsTranscriptionProvider:
    def test_submit_converts_words(self, settings):
        forms = []

        def handler(request):
            forms.append(request.content.decode())
            return httpx.Response(
                200,
                json={
                    "transcription_id": "tx-9",
                    "text": "Hi there",
                    "language_code": "en",
                    "words": [
                        {"text": "Hi", "start": 0.0, "end": 0.3, "type": "word", "speaker_id": "speaker_0"},
                        {"text": " ", "start": 0.3, "end": 0.35, "type": "spacing"},
                        {"text": "there", "start": 0.35, "end": 0.9, "type": "word", "speaker_id": "speaker_0"},
                    ],
                },
            )

        provider = ElevenLabsTranscriptionProvider(settings, client=mock_client(handler))
        result = provider.submit("https://cdn.test/a.mp4", "en")

        assert result.provider_id == "tx-9"
        assert len(result.words) == 3
        assert result.duration == 0.9
        assert result.speakers == [{"id": "speaker_0", "name": "Speaker 1"}]
        assert "language_code=en" in forms[0]
        assert "timestamps_granularity=word" in forms[0]

    def test_client_error_detail(self, settings):
        client = mock_client(
            lambda request: httpx.Response(422, json={"detail": {"message": "Unsupported audio format"}})
        )

        with pytest.raises(TranscriptionProviderError, match="Unsupported audio format"):
            ElevenLabsTranscriptionProvider(settings, client=client).submit("https://cdn.test/a.mp4")

    def test_rate_limit_is_transient(self, settings):
        client = mock_client(lambda request: httpx.Response(429))

        with pytest.raises(httpx.HTTPStatusError):
            ElevenLabsTranscriptionProvider(settings, client=client).submit("https://cdn.test/a.mp4")


# =============================================================================
# Storage
# =============================================================================


class TestLocalStorage:
    def test_upload_copies_under_key(self, settings, tmp_path):
        storage = LocalStorageService(settings)
        source = tmp_path / "clip.mp4"
        source.write_bytes(b"video")

        url = storage.upload_file(str(source), "renders/owner/clip.mp4", "video/mp4")

        assert url == "http://localhost:8000/storage/renders/owner/clip.mp4"
        assert storage.path_for("renders/owner/clip.mp4").read_bytes() == b"video"

    def test_factory_prefers_local(self, settings):
        assert isinstance(create_storage_service(settings), LocalStorageService)


class TestThumbnailService:
    def test_extracts_and_uploads(self, settings):
        storage = MagicMock()
        storage.upload_file.return_value = "https://cdn.test/thumbnails/t.jpg"

        def fake_ffmpeg(cmd, **kwargs):
            Path(cmd[-1]).write_bytes(b"jpeg")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        with patch("shotline.services.thumbnail_service.subprocess.run", side_effect=fake_ffmpeg) as run:
            url = ThumbnailService(settings, storage).create_thumbnail("https://cdn.test/out.mp4", "thumbnails/t.jpg")

        assert url == "https://cdn.test/thumbnails/t.jpg"
        cmd = run.call_args.args[0]
        assert cmd[0] == settings.ffmpeg_path
        assert "https://cdn.test/out.mp4" in cmd
        local_path, key = storage.upload_file.call_args.args
        assert key == "thumbnails/t.jpg"
        assert storage.upload_file.call_args.kwargs == {"content_type": "image/jpeg"}

    def test_ffmpeg_failure(self, settings):
        failed = subprocess.CompletedProcess([], 1, stdout="", stderr="Invalid data found")

        with patch("shotline.services.thumbnail_service.subprocess.run", return_value=failed):
            with pytest.raises(RuntimeError, match="Invalid data found"):
                ThumbnailService(settings, MagicMock()).create_thumbnail("https://cdn.test/x.mp4", "k.jpg")
