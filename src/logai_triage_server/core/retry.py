"""Bounded retries with exponential backoff for upstream calls."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import TriageError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, *, base: float, cap: float = 8.0) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    if base <= 0:
        return 0.0
    return min(cap, base * 2 ** (attempt - 1))


def call_with_retries(
    fn: Callable[[], T],
    *,
    what: str,
    max_attempts: int,
    base_delay: float,
) -> T:
    """Call fn, retrying failures; raise UpstreamUnavailableError when exhausted.

    TriageErrors other than UpstreamUnavailableError are caller/domain errors
    and propagate immediately.
    """
    last_err: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except TriageError as e:
            if not isinstance(e, UpstreamUnavailableError):
                raise
            last_err = e
        except Exception as e:
            last_err = e
        if attempt >= max_attempts:
            break
        logger.warning("%s failed (attempt %s/%s): %s", what, attempt, max_attempts, last_err)
        time.sleep(backoff_delay(attempt, base=base_delay))

    raise UpstreamUnavailableError(
        f"{what} failed after {max_attempts} attempts: {last_err}"
    ) from last_err


async def acall_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    what: str,
    max_attempts: int,
    base_delay: float,
) -> T:
    """Async variant of call_with_retries."""
    last_err: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except TriageError as e:
            if not isinstance(e, UpstreamUnavailableError):
                raise
            last_err = e
        except Exception as e:
            last_err = e
        if attempt >= max_attempts:
            break
        logger.warning("%s failed (attempt %s/%s): %s", what, attempt, max_attempts, last_err)
        await asyncio.sleep(backoff_delay(attempt, base=base_delay))

    raise UpstreamUnavailableError(
        f"{what} failed after {max_attempts} attempts: {last_err}"
    ) from last_err
