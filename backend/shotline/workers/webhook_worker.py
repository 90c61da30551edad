"""webhooks queue: one signed delivery per job.

Retries live here, not in the broker: the queue runs a single attempt so a
receiver never sees the same event from two enqueues.
"""

import logging
from typing import Any

import httpx

from shotline.exceptions import WebhookDeliveryError
from shotline.models.webhook import Webhook
from shotline.runtime.retry import retry_with_backoff
from shotline.runtime.worker import JobContext, WorkerHandle, WorkerRuntime
from shotline.workers.common import Services, job_logger, skipped

logger = logging.getLogger(__name__)

QUEUE_NAME = "webhooks"


class WebhookProcessor:
    def __init__(self, services: Services):
        self.services = services

    def __call__(self, job: JobContext) -> dict[str, Any]:
        settings = self.services.settings
        payload = job.payload.get("payload") or {}
        event = job.payload.get("event") or payload.get("event", "unknown")

        webhook = None
        if job.payload.get("webhook_id"):
            log = job_logger(logger, "Webhook", job.payload["webhook_id"])
            webhook = self.services.store.get(Webhook, job.payload["webhook_id"])
            if webhook is None:
                log.warning("Webhook not found, skipping")
                return skipped("not found")
            if not webhook.is_active:
                return skipped("inactive")
            url, secret = webhook.url, webhook.secret
        else:
            url = job.payload.get("webhook_url")
            log = job_logger(logger, "Webhook", job.job_id)
            if not url:
                return skipped("no target")
            secret = settings.webhook_default_secret

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            log.warning(f"Delivery attempt {attempt} failed: {error}. Retrying in {delay:.1f}s")

        result = retry_with_backoff(
            lambda: self.services.webhooks.deliver(url, secret, event, payload, webhook),
            max_retries=settings.webhook_max_retries,
            initial_delay=settings.webhook_initial_delay_s,
            max_delay=settings.webhook_max_delay_s,
            on_retry=on_retry,
            sleep=self.services.clock.sleep,
            retry_on=(WebhookDeliveryError, httpx.TransportError),
        )
        return {"success": result.success, "status_code": result.status_code}


def create_webhook_worker(runtime: WorkerRuntime, services: Services) -> WorkerHandle:
    settings = services.settings
    return runtime.create_worker(
        QUEUE_NAME,
        WebhookProcessor(services),
        concurrency=settings.webhook_concurrency,
        lock_duration=settings.default_lock_duration_s,
    )
