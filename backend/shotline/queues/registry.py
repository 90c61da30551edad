"""Queue Registry: named durable queues over the shared broker connection."""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable

from shotline.celery_app import BrokerConnection
from shotline.exceptions import RegistryClosedError
from shotline.queues.retention import JobHistory
from shotline.schemas.jobs import BackoffPolicy, JobEnvelope, JobOptions, RetentionPolicy

logger = logging.getLogger(__name__)

DEFAULT_JOB_OPTIONS = JobOptions(
    attempts=3,
    backoff=BackoffPolicy(type="exponential", delay=5.0, max_delay=600.0),
    remove_on_complete=RetentionPolicy(age=3600, count=100),
    remove_on_fail=RetentionPolicy(age=86400, count=50),
)

QUEUE_OVERRIDES: dict[str, dict[str, Any]] = {
    # Render payloads are large
    "render": {"remove_on_complete": RetentionPolicy(age=1800, count=20)},
    "transcription": {"attempts": 2, "backoff": BackoffPolicy(type="exponential", delay=10.0)},
    # Delivery retries happen inside the worker
    "webhooks": {"attempts": 1},
    # The pipeline retries inside its stages
    "caption": {"attempts": 1, "remove_on_complete": True, "remove_on_fail": False},
    "file-import": {
        "attempts": 3,
        "remove_on_complete": True,
        "remove_on_fail": RetentionPolicy(age=86400, count=20),
    },
}


def task_name_for(queue_name: str) -> str:
    return f"{queue_name}.process"


def default_options_for(queue_name: str) -> JobOptions:
    return DEFAULT_JOB_OPTIONS.merged(QUEUE_OVERRIDES.get(queue_name))


class QueueHandle:
    """One named queue. Publishing goes through the Celery app."""

    def __init__(
        self,
        name: str,
        broker: BrokerConnection,
        history: JobHistory,
        default_options: JobOptions,
        is_closing: Callable[[], bool],
    ):
        self.name = name
        self.broker = broker
        self.history = history
        self.default_options = default_options
        self._is_closing = is_closing
        self.closed = False

    @property
    def task_name(self) -> str:
        return task_name_for(self.name)

    def add(
        self,
        job_name: str,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
        job_id: str | None = None,
    ) -> str:
        opts = self.default_options.merged(options)
        envelope = JobEnvelope(
            queue_name=self.name,
            job_id=job_id or str(uuid.uuid4()),
            job_name=job_name,
            payload=payload,
            attempt=1,
            options=opts,
        )
        try:
            self.broker.app.send_task(
                self.task_name,
                args=[envelope.model_dump(mode="json")],
                queue=self.name,
                task_id=envelope.job_id,
                priority=opts.priority,
                countdown=opts.delay,
            )
        except Exception as e:
            self.on_error(e)
            raise
        logger.debug(f"[Queue:{self.name}] Enqueued {job_name} job {envelope.job_id}")
        return envelope.job_id

    def on_error(self, error: BaseException) -> None:
        """Queue-level error listener, silent once shutdown has begun."""
        if self._is_closing() or self.closed:
            return
        logger.error(f"[Queue:{self.name}] Error: {error}")

    def record_finished(self, job_id: str, state: str) -> None:
        policy = self.default_options.remove_on_complete if state == "completed" else self.default_options.remove_on_fail
        try:
            self.history.record(self.name, job_id, state, policy)
        except Exception as e:
            self.on_error(e)

    def recent(self, state: str, limit: int = 20) -> list[str]:
        return self.history.recent(self.name, state, limit)

    def counts(self) -> dict[str, int]:
        return self.history.counts(self.name)

    def close(self) -> None:
        self.closed = True


class QueueRegistry:
    def __init__(self, broker: BrokerConnection, history: JobHistory | None = None):
        self.broker = broker
        self.history = history or JobHistory(broker.redis)
        self._queues: dict[str, QueueHandle] = {}
        self._lock = threading.Lock()
        self._closing = False

    @property
    def is_closing(self) -> bool:
        return self._closing

    def begin_shutdown(self) -> None:
        self._closing = True

    def get_or_create_queue(self, name: str, options: JobOptions | dict[str, Any] | None = None) -> QueueHandle:
        with self._lock:
            if self._closing:
                raise RegistryClosedError(name)
            queue = self._queues.get(name)
            if queue is None:
                defaults = default_options_for(name).merged(options)
                queue = QueueHandle(name, self.broker, self.history, defaults, lambda: self._closing)
                self._queues[name] = queue
                logger.info(f"[Queue:{name}] Created (attempts={defaults.attempts})")
            return queue

    def get_queue(self, name: str) -> QueueHandle | None:
        return self._queues.get(name)

    def list_queues(self) -> list[str]:
        return list(self._queues)

    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> str:
        return self.get_or_create_queue(queue_name).add(job_name, payload, options)

    def close_all(self, timeout: float = 5.0) -> bool:
        """Close every queue within ``timeout`` seconds. Returns False on timeout."""
        self.begin_shutdown()
        with self._lock:
            queues = list(self._queues.values())
        if not queues:
            return True

        executor = ThreadPoolExecutor(max_workers=len(queues), thread_name_prefix="queue-close")
        futures = {executor.submit(queue.close): queue.name for queue in queues}
        done, pending = wait(futures, timeout=timeout)
        executor.shutdown(wait=False, cancel_futures=True)

        for future in done:
            if future.exception() is not None:
                logger.warning(f"[Queue:{futures[future]}] Close failed: {future.exception()}")
        for future in pending:
            logger.warning(f"[Queue:{futures[future]}] Close timed out after {timeout}s")

        try:
            # Drop pooled producer connections
            self.broker.app.pool.force_close_all()
        except Exception as e:
            logger.warning(f"Failed to release broker producer pool: {e}")

        with self._lock:
            self._queues.clear()
        return not pending

    def reset(self) -> None:
        """Forget all queues. A closed registry stays closed; bootstrap builds a new one."""
        with self._lock:
            self._queues.clear()
