from shotline.queues.registry import (
    DEFAULT_JOB_OPTIONS,
    QUEUE_OVERRIDES,
    QueueHandle,
    QueueRegistry,
    default_options_for,
    task_name_for,
)
from shotline.queues.retention import JobHistory

__all__ = [
    "DEFAULT_JOB_OPTIONS",
    "QUEUE_OVERRIDES",
    "JobHistory",
    "QueueHandle",
    "QueueRegistry",
    "default_options_for",
    "task_name_for",
]
