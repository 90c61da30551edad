"""Process shutdown: drain workers, close queues, release resources.

Every step is best-effort. Failures are logged and the sequence moves on,
so ``shutdown()`` always returns within its outer bound.
"""

import logging
import signal
import threading
import time
from typing import TYPE_CHECKING, Callable

from shotline.queues.registry import QueueRegistry

if TYPE_CHECKING:
    from shotline.runtime.worker import WorkerHandle

logger = logging.getLogger(__name__)


class ShutdownCoordinator:
    def __init__(
        self,
        registry: QueueRegistry,
        worker_timeout: float = 5.0,
        queue_timeout: float = 5.0,
        overall_timeout: float = 30.0,
    ):
        self.registry = registry
        self.worker_timeout = worker_timeout
        self.queue_timeout = queue_timeout
        self.overall_timeout = overall_timeout
        self._workers: list["WorkerHandle"] = []
        self._resources: list[tuple[str, Callable[[], None]]] = []
        self._lock = threading.Lock()
        self._shutting_down = False
        self._done = threading.Event()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def workers(self) -> list["WorkerHandle"]:
        return list(self._workers)

    def register_worker(self, worker: "WorkerHandle") -> None:
        with self._lock:
            self._workers.append(worker)

    def register_resource(self, name: str, close: Callable[[], None]) -> None:
        """Closed after workers and queues, in registration order."""
        with self._lock:
            self._resources.append((name, close))

    def shutdown(self, reason: str = "shutdown") -> None:
        with self._lock:
            if self._shutting_down:
                first = False
            else:
                self._shutting_down = True
                first = True
        if not first:
            # A concurrent caller is already running the sequence
            self._done.wait(self.overall_timeout)
            return

        logger.info(f"Shutting down ({reason})")
        started = time.monotonic()
        # Daemon thread so a hung close cannot hold the process past the bound
        sequence = threading.Thread(target=self._run_sequence, name="shutdown", daemon=True)
        sequence.start()
        sequence.join(self.overall_timeout)
        if sequence.is_alive():
            logger.warning(f"Shutdown did not finish within {self.overall_timeout}s, abandoning remaining steps")

        with self._lock:
            self._workers.clear()
            self._resources.clear()
        self.registry.reset()
        self._done.set()
        logger.info(f"Shutdown complete in {time.monotonic() - started:.2f}s")

    def _run_sequence(self) -> None:
        with self._lock:
            workers = list(self._workers)
            resources = list(self._resources)
        try:
            self.registry.begin_shutdown()
            self._close_workers(workers)
            self._close_queues()
            self._close_resources(resources)
        except Exception as e:
            logger.error(f"Unexpected error during shutdown: {e}")

    def _close_workers(self, workers: list["WorkerHandle"]) -> None:
        for worker in workers:
            worker.stop()

        deadline = time.monotonic() + self.worker_timeout
        for worker in workers:
            remaining = max(deadline - time.monotonic(), 0.0)
            try:
                if not worker.wait_drained(remaining):
                    logger.warning(
                        f"[Worker:{worker.name}] Did not drain within {self.worker_timeout}s, continuing"
                    )
            except Exception as e:
                logger.warning(f"[Worker:{worker.name}] Close failed: {e}")

    def _close_queues(self) -> None:
        try:
            if not self.registry.close_all(self.queue_timeout):
                logger.warning(f"Queues did not close within {self.queue_timeout}s")
        except Exception as e:
            logger.warning(f"Failed to close queues: {e}")

    def _close_resources(self, resources: list[tuple[str, Callable[[], None]]]) -> None:
        for name, close in resources:
            try:
                close()
            except Exception as e:
                logger.warning(f"Failed to close {name}: {e}")

    def install_signal_handlers(self) -> None:
        """Run ``shutdown`` on SIGTERM/SIGINT. Main thread only."""

        def _handler(signum, _frame):
            self.shutdown(signal.Signals(signum).name)

        signal.signal(signal.SIGTERM, _handler)
        signal.signal(signal.SIGINT, _handler)
