"""
Utility functions for the order ingestion backend.
Includes retry logic, batching helpers and string sanitizers.
"""
import asyncio
import functools
import logging
import random
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, Type, TypeVar

from sqlalchemy.exc import (
    OperationalError,
    InterfaceError,
    TimeoutError as SQLAlchemyTimeoutError,
    DisconnectionError,
)

from settings import MAX_BIND_PARAMS

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Transient database errors that should be retried
TRANSIENT_DB_ERRORS: Tuple[Type[Exception], ...] = (
    OperationalError,
    InterfaceError,
    SQLAlchemyTimeoutError,
    DisconnectionError,
    ConnectionError,
    TimeoutError,
)

_TRANSIENT_PATTERNS = (
    "connection refused",
    "connection reset",
    "connection timed out",
    "too many connections",
    "server closed the connection",
    "connection pool exhausted",
    "could not connect",
    "temporarily unavailable",
    "could not serialize access",
    "deadlock detected",
    "40001",  # serialization_failure
    "40p01",  # deadlock_detected
)


def is_transient_error(exc: Exception) -> bool:
    """Check if an exception is a transient error that should be retried."""
    if isinstance(exc, TRANSIENT_DB_ERRORS):
        return True
    error_msg = str(exc).lower()
    return any(pattern in error_msg for pattern in _TRANSIENT_PATTERNS)


def retry_async(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    jitter: bool = True,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Decorator for async functions that retries on transient failures.

    Only wrap operations that are safe to repeat: read-only snapshot loads and
    the ingestion transaction, which rolls back as a whole and is idempotent.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds (doubled per attempt)
        max_delay: Maximum delay between retries in seconds
        jitter: Whether to add random jitter to delays
        retry_on: Exception types to retry on (defaults to transient DB errors)
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if retry_on:
                        should_retry = isinstance(e, retry_on)
                    else:
                        should_retry = is_transient_error(e)

                    if not should_retry or attempt >= max_retries:
                        raise

                    delay = min(base_delay * (2 ** attempt), max_delay)
                    if jitter:
                        delay = delay * (0.5 + random.random())

                    logger.warning(
                        f"Retry {attempt + 1}/{max_retries} for {func.__name__} "
                        f"after {delay:.2f}s due to: {type(e).__name__}: {str(e)[:100]}"
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Split a sequence into consecutive lists of at most ``size`` items."""
    if size <= 0:
        if items:
            yield list(items)
        return
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def chunk_size_for(column_count: int, preferred: int) -> int:
    """Largest chunk not above ``preferred`` whose bound parameters fit one statement."""
    if column_count <= 0:
        return preferred
    return max(1, min(preferred, MAX_BIND_PARAMS // column_count))


def sanitize_string(value: Optional[str], max_length: int = 1000, default: str = "") -> str:
    """Sanitize a string value for safe storage."""
    if value is None:
        return default
    cleaned = str(value).replace("\x00", "").strip()
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return cleaned
