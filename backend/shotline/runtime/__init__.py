from shotline.runtime.errors import error_class, is_connection_error
from shotline.runtime.lease import JobLease, LeaseState
from shotline.runtime.log_limiter import LogLimiter
from shotline.runtime.retry import backoff_delays, retry_with_backoff
from shotline.runtime.worker import JobContext, WorkerHandle, WorkerRuntime

__all__ = [
    "JobContext",
    "JobLease",
    "LeaseState",
    "LogLimiter",
    "WorkerHandle",
    "WorkerRuntime",
    "backoff_delays",
    "error_class",
    "is_connection_error",
    "retry_with_backoff",
]
