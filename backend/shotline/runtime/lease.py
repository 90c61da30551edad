"""Renewable per-job lease held in Redis while a processor runs.

A started marker outlives the lease so a redelivery can tell a job that is
still running elsewhere (lease held) from one whose worker died (marker
present, lease expired).
"""

import logging
import threading
from enum import Enum

import redis
from redis.exceptions import LockError

logger = logging.getLogger(__name__)

LEASE_PREFIX = "shotline:lease"
MARKER_TTL_S = 86400


class LeaseState(str, Enum):
    ACQUIRED = "acquired"
    HELD = "held"  # another live worker owns the job
    STALLED = "stalled"  # previous owner stopped renewing


def lease_key(queue_name: str, job_id: str, attempt: int) -> str:
    return f"{LEASE_PREFIX}:{queue_name}:{job_id}:{attempt}"


class JobLease:
    def __init__(self, client: redis.Redis, queue_name: str, job_id: str, attempt: int, duration: float):
        self.client = client
        self.key = lease_key(queue_name, job_id, attempt)
        self.marker_key = f"{self.key}:started"
        self.duration = duration
        self.lock = client.lock(self.key, timeout=duration, blocking=False, thread_local=False)
        self._stop = threading.Event()
        self._heartbeat: threading.Thread | None = None
        self.renewals = 0

    def acquire(self) -> LeaseState:
        if not self.lock.acquire(blocking=False):
            return LeaseState.HELD
        fresh = self.client.set(self.marker_key, "1", nx=True, ex=MARKER_TTL_S)
        self._heartbeat = threading.Thread(target=self._renew_loop, name=f"lease-{self.key}", daemon=True)
        self._heartbeat.start()
        return LeaseState.ACQUIRED if fresh else LeaseState.STALLED

    def _renew_loop(self) -> None:
        interval = self.duration / 2
        while not self._stop.wait(interval):
            try:
                self.lock.reacquire()
                self.renewals += 1
            except LockError as e:
                logger.warning(f"Lease {self.key} lost: {e}")
                return
            except redis.RedisError as e:
                logger.warning(f"Lease {self.key} renewal failed: {e}")

    def release(self) -> None:
        self._stop.set()
        if self._heartbeat is not None:
            self._heartbeat.join(timeout=5)
        try:
            self.client.delete(self.marker_key)
            self.lock.release()
        except LockError:
            logger.debug(f"Lease {self.key} already expired")
        except redis.RedisError as e:
            logger.warning(f"Lease {self.key} release failed: {e}")
