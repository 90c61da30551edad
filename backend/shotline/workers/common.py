"""Pieces shared by every worker: skip results, job-scoped logging,
best-effort side effects and the collaborator container."""

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from shotline.clock import Clock, system_clock
from shotline.config import Settings
from shotline.queues.registry import QueueRegistry
from shotline.services.quota_service import QuotaGate
from shotline.services.render_service import RenderProvider
from shotline.services.storage_service import StorageService
from shotline.services.thumbnail_service import ThumbnailService
from shotline.services.transcription_service import TranscriptionProvider
from shotline.services.webhook_service import WebhookService
from shotline.store import Store
from shotline.utils.media_info import probe_media

logger = logging.getLogger(__name__)


def skipped(reason: str) -> dict[str, Any]:
    """Benign no-op result: record gone, already settled, or claimed elsewhere."""
    return {"skipped": True, "reason": reason}


class JobLogger(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['prefix']}] {msg}", kwargs


def job_logger(base: logging.Logger, kind: str, record_id: Any) -> JobLogger:
    return JobLogger(base, {"prefix": f"{kind}:{str(record_id)[-6:]}"})


class SideEffects:
    """Post-commit actions whose failure is logged and never propagated."""

    def __init__(self, executor: Executor | None = None, max_workers: int = 4):
        self.executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="side-effect")

    def run(self, name: str, fn: Callable[..., Any], *args: Any, log: logging.LoggerAdapter | None = None, **kwargs: Any) -> Any:
        """Run inline, return None on failure."""
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            (log or logger).warning(f"{name} failed: {e}")
            return None

    def fire(self, name: str, fn: Callable[..., Any], *args: Any, log: logging.LoggerAdapter | None = None, **kwargs: Any) -> Future:
        """Run on the side-effect pool without waiting."""
        return self.executor.submit(self.run, name, fn, *args, log=log, **kwargs)

    def close(self, wait: bool = True) -> None:
        """With ``wait=False`` queued actions are cancelled and running ones left to finish."""
        self.executor.shutdown(wait=wait, cancel_futures=not wait)


@dataclass
class Services:
    settings: Settings
    store: Store
    registry: QueueRegistry
    quota: QuotaGate
    storage: StorageService
    transcription: TranscriptionProvider
    render: RenderProvider
    webhooks: WebhookService
    thumbnails: ThumbnailService
    side_effects: SideEffects
    clock: Clock = system_clock
    http: httpx.Client = field(default_factory=lambda: httpx.Client(follow_redirects=True))
    probe: Callable[[str], dict] = probe_media

    def retry_kwargs(self, log: logging.LoggerAdapter) -> dict[str, Any]:
        """Default retry_with_backoff arguments for a single external call."""

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            log.warning(f"Attempt {attempt} failed: {error}. Retrying in {delay:.1f}s")

        return {
            "max_retries": self.settings.provider_max_retries,
            "initial_delay": self.settings.provider_initial_delay_s,
            "max_delay": self.settings.provider_max_delay_s,
            "on_retry": on_retry,
            "sleep": self.clock.sleep,
        }
