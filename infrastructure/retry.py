"""Retry decorator for transient I/O failures in coroutines.

Side-channel files are written by other processes (editors, shell scripts)
and can be momentarily absent or half-written when polled. The decorator
retries the wrapped coroutine on the given exceptions with exponential
backoff and never blocks the event loop (``asyncio.sleep``).

Usage::

    from infrastructure.retry import with_retry

    @with_retry(max_attempts=2, base_seconds=0.05, exceptions=(OSError,))
    async def read_command(path: Path) -> str:
        return path.read_text(encoding="utf-8")
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

# Default exceptions that trigger a retry (transient failures)
_DEFAULT_RETRYABLE: tuple[type[Exception], ...] = (
    OSError,
    TimeoutError,
)


def with_retry(
    *,
    max_attempts: int = 2,
    base_seconds: float = 0.05,
    max_seconds: float = 1.0,
    jitter: bool = False,
    exceptions: tuple[type[Exception], ...] = _DEFAULT_RETRYABLE,
) -> Callable[[F], F]:
    """Decorator factory for exponential backoff retry of a coroutine.

    Args:
        max_attempts: Total attempts including the first try (default: 2,
            i.e. one retry).
        base_seconds: Base wait time in seconds (default: 0.05).
        max_seconds: Maximum wait time cap in seconds (default: 1.0).
        jitter: Add random jitter ±25% to the wait (default: False).
        exceptions: Tuple of exception types that trigger a retry.

    Returns:
        Decorator that wraps the coroutine function with retry logic.

    Raises:
        ValueError: If ``max_attempts`` is less than 1.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exc: Exception | None = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as exc:
                    last_exc = exc
                    if attempt == max_attempts:
                        break
                    wait = min(base_seconds * (2 ** (attempt - 1)), max_seconds)
                    if jitter:
                        wait *= 1 + random.uniform(-0.25, 0.25)  # noqa: S311
                    logger.debug(
                        "retry: %s attempt %d/%d failed (%s), retrying in %.2fs",
                        func.__name__,
                        attempt,
                        max_attempts,
                        exc,
                        wait,
                    )
                    await asyncio.sleep(wait)
            raise RuntimeError(
                f"{func.__name__} failed after {max_attempts} attempts"
            ) from last_exc

        return wrapper  # type: ignore[return-value]

    return decorator
