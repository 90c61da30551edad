"""Process assembly: one broker connection, one database, one set of workers."""

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any

import httpx
from celery.signals import worker_shutting_down

from shotline.celery_app import BrokerConnection
from shotline.clock import system_clock
from shotline.config import Settings, get_settings
from shotline.models.database import Database
from shotline.queues.registry import QueueRegistry
from shotline.runtime.log_limiter import LogLimiter
from shotline.runtime.worker import WorkerHandle, WorkerRuntime
from shotline.services.quota_service import DatabaseQuotaGate
from shotline.services.render_service import HttpRenderProvider
from shotline.services.storage_service import create_storage_service
from shotline.services.thumbnail_service import ThumbnailService
from shotline.services.transcription_service import ElevenLabsTranscriptionProvider
from shotline.services.webhook_service import WebhookService
from shotline.shutdown import ShutdownCoordinator
from shotline.store import Store
from shotline.utils.media_info import probe_media
from shotline.workers import WORKERS, start_workers
from shotline.workers.common import Services, SideEffects

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: Settings
    broker: BrokerConnection
    database: Database
    store: Store
    registry: QueueRegistry
    coordinator: ShutdownCoordinator
    runtime: WorkerRuntime
    services: Services
    workers: list[WorkerHandle] = field(default_factory=list)

    def start(self, enabled: list[str] | None = None) -> list[WorkerHandle]:
        self.workers = start_workers(self.runtime, self.services, enabled)
        return self.workers

    @property
    def queue_names(self) -> list[str]:
        return [worker.name for worker in self.workers]


def build_engine(
    settings: Settings,
    providers: dict[str, Any] | None = None,
    broker: BrokerConnection | None = None,
    database: Database | None = None,
) -> Engine:
    """
    Wire every collaborator explicitly.

    ``providers`` replaces individual adapters by name: ``storage``,
    ``transcription``, ``render``, ``quota``, ``thumbnails``, ``probe``,
    ``http``, ``clock`` and ``side_effects``.
    """
    providers = providers or {}
    broker = broker or BrokerConnection.from_settings(settings)
    database = database or Database.from_settings(settings)
    store = Store(database)

    registry = QueueRegistry(broker)
    coordinator = ShutdownCoordinator(
        registry,
        worker_timeout=settings.worker_shutdown_timeout_s,
        queue_timeout=settings.queue_shutdown_timeout_s,
        overall_timeout=settings.shutdown_timeout_s,
    )

    storage = providers.get("storage") or create_storage_service(settings)
    clock = providers.get("clock") or system_clock
    services = Services(
        settings=settings,
        store=store,
        registry=registry,
        quota=providers.get("quota") or DatabaseQuotaGate(database, settings.quota_limits),
        storage=storage,
        transcription=providers.get("transcription") or ElevenLabsTranscriptionProvider(settings),
        render=providers.get("render") or HttpRenderProvider(settings),
        webhooks=providers.get("webhooks")
        or WebhookService(store, registry, settings, clock=clock),
        thumbnails=providers.get("thumbnails") or ThumbnailService(settings, storage),
        side_effects=providers.get("side_effects") or SideEffects(),
        http=providers.get("http") or httpx.Client(follow_redirects=True),
        clock=clock,
        probe=providers.get("probe") or partial(probe_media, settings=settings),
    )

    runtime = WorkerRuntime(
        broker,
        registry,
        coordinator,
        log_limiter=LogLimiter(settings.log_dedup_interval_s, clock=clock),
        clock=clock,
    )

    # Closed after workers and queues, in this order
    coordinator.register_resource("side effects", lambda: services.side_effects.close(wait=False))
    for name, resource in (
        ("webhook client", services.webhooks),
        ("transcription client", services.transcription),
        ("render client", services.render),
        ("http client", services.http),
    ):
        close = getattr(resource, "close", None)
        if callable(close):
            coordinator.register_resource(name, close)
    coordinator.register_resource("broker", broker.close)
    coordinator.register_resource("database", database.dispose)

    return Engine(
        settings=settings,
        broker=broker,
        database=database,
        store=store,
        registry=registry,
        coordinator=coordinator,
        runtime=runtime,
        services=services,
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def prepare_engine(settings: Settings) -> Engine:
    engine = build_engine(settings)
    if settings.environment == "development":
        engine.database.create_all()
    engine.start(settings.enabled_workers)
    return engine


def run(engine: Engine) -> None:
    """Consume the started workers' queues until Celery exits."""
    settings = engine.settings
    if not engine.workers:
        logger.error(f"No workers enabled; known workers are {[name for name, _ in WORKERS]}")
        return

    # Celery replaces these handlers once its worker starts; the signal below covers that phase
    engine.coordinator.install_signal_handlers()

    def on_worker_shutting_down(sig=None, how=None, exitcode=None, **kwargs):
        engine.coordinator.shutdown(f"celery {how or 'shutdown'} ({sig})")

    worker_shutting_down.connect(on_worker_shutting_down, weak=False)

    concurrency = max(engine.runtime.total_concurrency(), 1)
    logger.info(f"Starting Celery worker on {engine.queue_names} (pool size {concurrency})")
    try:
        engine.broker.app.worker_main(
            [
                "worker",
                "--pool=threads",
                f"--concurrency={concurrency}",
                f"--queues={','.join(engine.queue_names)}",
                f"--loglevel={settings.log_level.upper()}",
            ]
        )
    finally:
        engine.coordinator.shutdown("worker exited")


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    run(prepare_engine(settings))


if __name__ == "__main__":
    main()
