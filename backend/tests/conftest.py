"""
Pytest fixtures for shotline job engine tests.

Workers run against a real SQLAlchemy store on a temporary SQLite file.
Time is a FakeClock: ``sleep`` advances instantly and runs registered
hooks, which is how tests drive "the outside world" (a provider finishing,
a user cancelling, another queue draining) between poll iterations.
"""

import uuid
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from unittest.mock import MagicMock

import pytest

from shotline.config import Settings
from shotline.models import (
    CaptionPreset,
    CaptionProject,
    MediaFile,
    RenderJob,
    Transcription,
)
from shotline.models.database import Database
from shotline.runtime.worker import JobContext
from shotline.schemas.jobs import JobEnvelope, JobOptions
from shotline.schemas.render import RenderHandle, RenderProgress
from shotline.schemas.transcription import TranscriptResult, TranscriptWord
from shotline.services.quota_service import DatabaseQuotaGate
from shotline.services.webhook_service import WebhookService
from shotline.store import Store
from shotline.workers.common import Services, SideEffects

OWNER_ID = uuid.UUID("00000000-0000-4000-8000-000000000001")


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Clock whose sleep returns immediately after advancing time."""

    def __init__(self, start: datetime | None = None):
        self.start = start or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        self.t = 0.0
        self.sleeps: list[float] = []
        self._hooks: list[Callable[[], None]] = []

    def monotonic(self) -> float:
        return self.t

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.t)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds
        for hook in list(self._hooks):
            hook()

    def on_sleep(self, hook: Callable[[], None]) -> None:
        self._hooks.append(hook)

    def advance(self, seconds: float) -> None:
        self.t += seconds


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


# =============================================================================
# Queues
# =============================================================================


@dataclass
class EnqueuedJob:
    queue_name: str
    job_name: str
    payload: dict[str, Any]
    options: dict[str, Any]
    job_id: str


def job_context(
    queue_name: str,
    job_name: str,
    payload: dict[str, Any],
    attempt: int = 1,
    job_id: str | None = None,
    options: JobOptions | None = None,
) -> JobContext:
    envelope = JobEnvelope(
        queue_name=queue_name,
        job_id=job_id or f"{queue_name}-{uuid.uuid4().hex[:8]}",
        job_name=job_name,
        payload=payload,
        attempt=attempt,
        options=options or JobOptions(),
    )
    return JobContext(envelope, queue_name)


@dataclass
class InlineQueues:
    """Stands in for the queue registry: records every enqueue and can run
    registered processors on demand."""

    jobs: list[EnqueuedJob] = field(default_factory=list)
    pending: list[EnqueuedJob] = field(default_factory=list)
    processors: dict[str, Callable[[JobContext], Any]] = field(default_factory=dict)
    results: list[Any] = field(default_factory=list)
    _draining: bool = False

    def enqueue(self, queue_name, job_name, payload, options=None) -> str:
        if isinstance(options, JobOptions):
            options = options.model_dump(exclude_unset=True)
        job = EnqueuedJob(queue_name, job_name, payload, dict(options or {}), f"{queue_name}-{len(self.jobs) + 1}")
        self.jobs.append(job)
        self.pending.append(job)
        return job.job_id

    def for_queue(self, queue_name: str) -> list[EnqueuedJob]:
        return [job for job in self.jobs if job.queue_name == queue_name]

    def drain(self) -> None:
        # Processors sleep on the same clock; nested drains are no-ops
        if self._draining:
            return
        self._draining = True
        try:
            while self.pending:
                job = self.pending.pop(0)
                processor = self.processors.get(job.queue_name)
                if processor is not None:
                    ctx = job_context(job.queue_name, job.job_name, job.payload, job_id=job.job_id)
                    self.results.append(processor(ctx))
        finally:
            self._draining = False


# =============================================================================
# Providers
# =============================================================================


def progress(fraction: float, done: bool = False, **kwargs) -> RenderProgress:
    return RenderProgress(fraction_done=fraction, done=done, **kwargs)


def finished(url: str = "https://cdn.test/renders/out.mp4", **kwargs) -> RenderProgress:
    return RenderProgress(fraction_done=1.0, done=True, output_url=url, output_size=2048, **kwargs)


class FakeRenderProvider:
    """Plays back a script of poll results; the last entry repeats.

    Script entries that are exceptions are raised from ``poll_progress``.
    """

    def __init__(self):
        self.started: list[Any] = []
        self.polls: list[str] = []
        self.script: list[RenderProgress | Exception] = [finished()]
        self.start_errors: list[Exception] = []
        self.on_start: Callable[[RenderJob], None] | None = None

    def start(self, render_job: RenderJob) -> RenderHandle:
        self.started.append(render_job.id)
        if self.start_errors:
            raise self.start_errors.pop(0)
        if self.on_start is not None:
            self.on_start(render_job)
        return RenderHandle(render_id=f"render-{len(self.started)}", bucket_name="renders-bucket")

    def poll_progress(self, render_id: str, bucket_name: str) -> RenderProgress:
        self.polls.append(render_id)
        step = self.script[min(len(self.polls), len(self.script)) - 1]
        if isinstance(step, Exception):
            raise step
        return step


WORDS = [
    TranscriptWord(text="Hello", start=0.0, end=0.4, speaker_id="speaker_0"),
    TranscriptWord(text=" ", start=0.4, end=0.5, type="spacing"),
    TranscriptWord(text="from", start=0.5, end=0.8, speaker_id="speaker_0"),
    TranscriptWord(text="the", start=0.8, end=1.0, speaker_id="speaker_0"),
    TranscriptWord(text="studio", start=1.0, end=1.6, speaker_id="speaker_1"),
]


class FakeTranscriptionProvider:
    def __init__(self):
        self.calls: list[tuple[str, str | None]] = []
        self.errors: list[Exception] = []
        self.result = TranscriptResult(
            provider_id="stt-123", text="Hello from the studio", words=WORDS, language="en", duration=90.0
        )

    def submit(self, audio_url: str, language: str | None = None) -> TranscriptResult:
        self.calls.append((audio_url, language))
        if self.errors:
            raise self.errors.pop(0)
        return self.result


# =============================================================================
# Records
# =============================================================================


class Records:
    """Creates rows with sensible defaults."""

    def __init__(self, store: Store):
        self.store = store

    def file(self, **values) -> MediaFile:
        values.setdefault("owner_id", OWNER_ID)
        values.setdefault("name", "interview.mp4")
        values.setdefault("mime_type", "video/mp4")
        values.setdefault("storage_key", f"uploads/{uuid.uuid4()}.mp4")
        values.setdefault("cdn_url", "https://cdn.test/uploads/interview.mp4")
        values.setdefault("status", "ready")
        values.setdefault(
            "media_metadata", {"width": 1080, "height": 1920, "duration": 30.0, "fps": 30, "has_video": True}
        )
        return self.store.create(MediaFile(**values))

    def render_job(self, **values) -> RenderJob:
        values.setdefault("owner_id", OWNER_ID)
        values.setdefault("render_type", "template")
        values.setdefault("input_spec", {"project": {"name": "Promo", "duration": 120}})
        values.setdefault("status", "queued")
        return self.store.create(RenderJob(**values))

    def transcription(self, file: MediaFile, **values) -> Transcription:
        values.setdefault("owner_id", file.owner_id)
        values.setdefault("status", "pending")
        return self.store.create(Transcription(file_id=file.id, **values))

    def completed_transcription(self, file: MediaFile) -> Transcription:
        return self.transcription(
            file,
            status="completed",
            text="Hello from the studio",
            words=[word.model_dump() for word in WORDS],
            language="en",
            duration=90.0,
        )

    def preset(self, **styles) -> CaptionPreset:
        return self.store.create(CaptionPreset(name="Bold", styles={"highlight_color": "#00FF00", **styles}))

    def caption_project(self, file: MediaFile, **values) -> CaptionProject:
        values.setdefault("owner_id", file.owner_id)
        values.setdefault("name", "Interview captions")
        values.setdefault("status", "pending")
        values.setdefault("settings", {"language": "en"})
        return self.store.create(CaptionProject(file_id=file.id, **values))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'shotline.db'}",
        local_storage_path=str(tmp_path / "storage"),
        poll_interval_s=2.0,
        render_timeout_s=20.0,
        transcription_timeout_s=20.0,
        render_transient_error_delay_s=5.0,
        quota_limits_raw="{}",
    )


@pytest.fixture
def database(settings):
    db = Database(settings.database_url)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def store(database) -> Store:
    return Store(database)


@pytest.fixture
def records(store) -> Records:
    return Records(store)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queues() -> InlineQueues:
    return InlineQueues()


@pytest.fixture
def render_provider() -> FakeRenderProvider:
    return FakeRenderProvider()


@pytest.fixture
def transcription_provider() -> FakeTranscriptionProvider:
    return FakeTranscriptionProvider()


@pytest.fixture
def quota(database, clock) -> DatabaseQuotaGate:
    return DatabaseQuotaGate(database, {}, clock)


@pytest.fixture
def webhook_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def services(
    settings, store, queues, clock, quota, render_provider, transcription_provider, webhook_client
) -> Services:
    thumbnails = MagicMock()
    thumbnails.create_thumbnail.return_value = "https://cdn.test/thumbnails/thumb.jpg"
    storage = MagicMock()
    storage.get_public_url.side_effect = lambda key: f"https://cdn.test/{key}"
    storage.upload_file.side_effect = lambda path, key, content_type=None: f"https://cdn.test/{key}"
    return Services(
        settings=settings,
        store=store,
        registry=queues,
        quota=quota,
        storage=storage,
        transcription=transcription_provider,
        render=render_provider,
        webhooks=WebhookService(store, queues, settings, client=webhook_client, clock=clock),
        thumbnails=thumbnails,
        side_effects=SideEffects(InlineExecutor()),
        clock=clock,
        http=MagicMock(),
        probe=MagicMock(
            return_value={"duration": 30.0, "width": 1920, "height": 1080, "fps": 30.0, "has_video": True}
        ),
    )
