"""Finished-job history kept in Redis sorted sets.

Celery forgets a message once it is acked, so the registry records finished
jobs itself and trims them by age and count per queue and state.
"""

import logging

import redis

from shotline.clock import Clock, system_clock
from shotline.schemas.jobs import RetentionPolicy

logger = logging.getLogger(__name__)

KEY_PREFIX = "shotline:jobs"
STATES = ("completed", "failed")


def history_key(queue_name: str, state: str) -> str:
    return f"{KEY_PREFIX}:{queue_name}:{state}"


class JobHistory:
    def __init__(self, client: redis.Redis, clock: Clock = system_clock):
        self.client = client
        self.clock = clock

    def record(self, queue_name: str, job_id: str, state: str, policy: bool | RetentionPolicy) -> None:
        """Remember a finished job.

        ``True`` means remove immediately (nothing recorded), ``False`` keeps
        every job, a policy trims by age in seconds and then by count.
        """
        if policy is True:
            return
        key = history_key(queue_name, state)
        now = self.clock.now().timestamp()
        pipe = self.client.pipeline()
        pipe.zadd(key, {job_id: now})
        if isinstance(policy, RetentionPolicy):
            pipe.zremrangebyscore(key, "-inf", now - policy.age)
            # Keep the newest ``count`` members
            pipe.zremrangebyrank(key, 0, -(policy.count + 1))
        pipe.execute()

    def recent(self, queue_name: str, state: str, limit: int = 20) -> list[str]:
        return list(self.client.zrevrange(history_key(queue_name, state), 0, limit - 1))

    def counts(self, queue_name: str) -> dict[str, int]:
        return {state: int(self.client.zcard(history_key(queue_name, state))) for state in STATES}
