"""Celery application and the shared broker connection.

The bootstrap builds one ``BrokerConnection`` per process and passes it to
the queue registry and worker runtime; nothing here is a module singleton.
"""

import logging
from dataclasses import dataclass

import redis
from celery import Celery

from shotline.config import Settings

logger = logging.getLogger(__name__)


def create_celery_app(settings: Settings) -> Celery:
    app = Celery(settings.app_name.lower().replace(" ", "-"), broker=settings.redis_url)

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        # Job state lives in the database; no result backend
        task_ignore_result=True,
        worker_prefetch_multiplier=1,  # Never hold jobs another worker could take
        task_acks_late=True,  # Acknowledge after the processor returns
        task_reject_on_worker_lost=True,  # Requeue if the worker dies mid-job
        task_default_priority=5,
        broker_connection_retry_on_startup=True,
        broker_transport_options={
            "visibility_timeout": settings.broker_visibility_timeout_s,
            "priority_steps": list(range(10)),
            "sep": ":",
            "queue_order_strategy": "priority",
        },
        worker_hijack_root_logger=False,
    )
    return app


@dataclass
class BrokerConnection:
    """Celery app plus a plain Redis client on the same server.

    The Redis client backs job leases and finished-job history.
    """

    app: Celery
    redis: redis.Redis

    @classmethod
    def from_settings(cls, settings: Settings) -> "BrokerConnection":
        return cls(
            app=create_celery_app(settings),
            redis=redis.Redis.from_url(settings.redis_url, decode_responses=True),
        )

    def close(self) -> None:
        try:
            self.redis.close()
        finally:
            self.app.close()
        logger.info("Broker connection closed")
