"""Classification of job failures into transient connection errors and real failures."""

import httpx
import kombu.exceptions
import redis.exceptions

CONNECTION_ERROR_TYPES: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    kombu.exceptions.OperationalError,
    httpx.TransportError,
)

# Driver errors that only surface the errno in their message
CONNECTION_ERROR_MARKERS = (
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "EPIPE",
    "Connection refused",
    "Connection reset",
    "Connection closed",
    "Connection is closed",
    "Broken pipe",
    "timed out",
)


def is_connection_error(error: BaseException) -> bool:
    if isinstance(error, CONNECTION_ERROR_TYPES):
        return True
    message = str(error)
    return any(marker in message for marker in CONNECTION_ERROR_MARKERS)


def error_class(error: BaseException) -> str:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code
    return type(error).__name__
