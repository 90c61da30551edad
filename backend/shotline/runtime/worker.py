"""Worker Runtime: turns a queue plus a processor function into a supervised consumer.

Each worker registers one Celery task named after its queue. The task
rebuilds the job envelope, and the worker handle adds what Celery does not
give per queue: a concurrency ceiling, a renewable lease, failure
classification with rate-limited logging, finished-job history and a
drainable shutdown.
"""

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from celery.exceptions import Reject

from shotline.celery_app import BrokerConnection
from shotline.clock import Clock, system_clock
from shotline.exceptions import WorkerClosedError
from shotline.queues.registry import QueueHandle, QueueRegistry
from shotline.runtime.errors import error_class, is_connection_error
from shotline.runtime.lease import JobLease, LeaseState
from shotline.runtime.log_limiter import LogLimiter
from shotline.schemas.jobs import JobEnvelope, JobOptions

if TYPE_CHECKING:
    from shotline.shutdown import ShutdownCoordinator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobContext:
    """What a processor receives for one delivery."""

    envelope: JobEnvelope
    worker_name: str

    @property
    def payload(self) -> dict[str, Any]:
        return self.envelope.payload

    @property
    def job_id(self) -> str:
        return self.envelope.job_id

    @property
    def name(self) -> str:
        return self.envelope.job_name

    @property
    def attempt(self) -> int:
        return self.envelope.attempt


Processor = Callable[[JobContext], Any]


class WorkerHandle:
    def __init__(
        self,
        name: str,
        processor: Processor,
        queue: QueueHandle,
        broker: BrokerConnection,
        log_limiter: LogLimiter,
        clock: Clock = system_clock,
        concurrency: int = 5,
        lock_duration: float = 60.0,
    ):
        self.name = name
        self.processor = processor
        self.queue = queue
        self.broker = broker
        self.log_limiter = log_limiter
        self.clock = clock
        self.concurrency = concurrency
        self.lock_duration = lock_duration
        self.task = None

        self.stats: Counter[str] = Counter()
        self._slots = threading.BoundedSemaphore(concurrency)
        self._state = threading.Condition()
        self._in_flight = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def process(self, envelope: JobEnvelope) -> Any:
        """Run one delivery under the concurrency ceiling and a lease."""
        with self._state:
            if self._closed:
                raise WorkerClosedError(self.name)
            self._in_flight += 1
        try:
            with self._slots:
                return self._run(envelope)
        finally:
            with self._state:
                self._in_flight -= 1
                self._state.notify_all()

    def _run(self, envelope: JobEnvelope) -> Any:
        lease = JobLease(self.broker.redis, self.name, envelope.job_id, envelope.attempt, self.lock_duration)
        try:
            state = lease.acquire()
        except Exception as e:
            lease.release()
            self._on_failure(envelope, e)
            raise
        if state is LeaseState.HELD:
            self._count("skipped")
            logger.info(f"[Worker:{self.name}] Job {envelope.job_id} is leased by another worker, skipping")
            return {"skipped": True, "reason": "lease held"}
        if state is LeaseState.STALLED:
            self._count("stalled")
            logger.warning(
                f"[Worker:{self.name}] Job {envelope.job_id} stalled (attempt {envelope.attempt}), reclaiming"
            )

        started = self.clock.monotonic()
        try:
            result = self.processor(JobContext(envelope, self.name))
        except Exception as e:
            self._on_failure(envelope, e)
            raise
        finally:
            lease.release()
            elapsed = self.clock.monotonic() - started
            logger.debug(f"[Worker:{self.name}] Job {envelope.job_id} ({envelope.job_name}) took {elapsed:.2f}s")

        self._count("completed")
        self.queue.record_finished(envelope.job_id, "completed")
        return result

    def _on_failure(self, envelope: JobEnvelope, error: Exception) -> None:
        kind = error_class(error)
        if is_connection_error(error):
            # Broker or provider unreachable; not a functional failure
            self._count("transient")
            if self.log_limiter.should_log(self.name, kind):
                logger.warning(f"[Worker:{self.name}] Connection error on job {envelope.job_id}: {error}")
        else:
            self._count("failed")
            if self.log_limiter.should_log(self.name, kind):
                logger.error(
                    f"[Worker:{self.name}] Job {envelope.job_id} failed "
                    f"(attempt {envelope.attempt}/{envelope.options.attempts}): {error}"
                )
        if envelope.attempts_left == 0:
            self.queue.record_finished(envelope.job_id, "failed")

    def _count(self, key: str) -> None:
        with self._state:
            self.stats[key] += 1

    def stop(self) -> None:
        """Stop accepting deliveries; new ones are rejected back to the queue."""
        with self._state:
            self._closed = True

    def wait_drained(self, timeout: float | None = None) -> bool:
        with self._state:
            return self._state.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    def close(self, timeout: float | None = None) -> bool:
        self.stop()
        drained = self.wait_drained(timeout)
        if drained:
            logger.info(f"[Worker:{self.name}] Closed")
        else:
            logger.warning(f"[Worker:{self.name}] Closed with {self._in_flight} job(s) still running")
        return drained


class WorkerRuntime:
    def __init__(
        self,
        broker: BrokerConnection,
        registry: QueueRegistry,
        coordinator: "ShutdownCoordinator",
        log_limiter: LogLimiter | None = None,
        clock: Clock = system_clock,
    ):
        self.broker = broker
        self.registry = registry
        self.coordinator = coordinator
        self.log_limiter = log_limiter or LogLimiter(clock=clock)
        self.clock = clock
        self.workers: dict[str, WorkerHandle] = {}

    def create_worker(
        self,
        name: str,
        processor: Processor,
        concurrency: int = 5,
        lock_duration: float = 60.0,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> WorkerHandle:
        if self.coordinator.is_shutting_down or self.registry.is_closing:
            raise WorkerClosedError(name, creating=True)

        queue = self.registry.get_or_create_queue(name, options)
        handle = WorkerHandle(
            name,
            processor,
            queue,
            self.broker,
            self.log_limiter,
            clock=self.clock,
            concurrency=concurrency,
            lock_duration=lock_duration,
        )
        handle.task = self._register_task(handle)
        self.coordinator.register_worker(handle)
        self.workers[name] = handle
        logger.info(f"[Worker:{name}] Started (concurrency={concurrency}, lock={lock_duration}s)")
        return handle

    def _register_task(self, handle: WorkerHandle):
        @self.broker.app.task(
            name=handle.queue.task_name,
            # Kept off other apps; a later bootstrap must not inherit this handle
            shared=False,
            bind=True,
            acks_late=True,
            reject_on_worker_lost=True,
        )
        def process(task, envelope_data: dict[str, Any]):
            envelope = JobEnvelope.model_validate(envelope_data).with_attempt(task.request.retries + 1)
            try:
                return handle.process(envelope)
            except WorkerClosedError:
                raise Reject(f"worker {handle.name} closed", requeue=True)
            except Exception as e:
                if envelope.attempts_left > 0:
                    raise task.retry(
                        exc=e,
                        countdown=envelope.options.backoff.delay_for(envelope.attempt),
                        max_retries=envelope.options.attempts - 1,
                    )
                raise

        return process

    def total_concurrency(self) -> int:
        return sum(handle.concurrency for handle in self.workers.values())
