import threading
from collections import Counter

from shotline.clock import Clock, system_clock


class LogLimiter:
    """Allows one log line per (worker, error class) within ``interval`` seconds."""

    def __init__(self, interval: float = 30.0, clock: Clock = system_clock):
        self.interval = interval
        self.clock = clock
        self._last_logged: dict[tuple[str, str], float] = {}
        self._suppressed: Counter[tuple[str, str]] = Counter()
        self._lock = threading.Lock()

    def should_log(self, worker_name: str, error_class: str) -> bool:
        key = (worker_name, error_class)
        now = self.clock.monotonic()
        with self._lock:
            last = self._last_logged.get(key)
            if last is not None and now - last < self.interval:
                self._suppressed[key] += 1
                return False
            self._last_logged[key] = now
            return True

    def suppressed(self, worker_name: str, error_class: str) -> int:
        with self._lock:
            return self._suppressed[(worker_name, error_class)]

    def reset(self) -> None:
        with self._lock:
            self._last_logged.clear()
            self._suppressed.clear()
