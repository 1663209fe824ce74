"""
Retry policy for remote operations
"""
import asyncio
import functools
from typing import Optional
from .logging import log, warn
from .. import config as _cfg


def retry_delay(attempt: int, base: Optional[float] = None) -> float:
    """Seconds to wait before retry number *attempt* (1-based); grows linearly."""
    if base is None:
        base = _cfg.RETRY_BASE_DELAY
    return max(attempt, 1) * base


def retried(*retry_on):
    """Decorator: retry an async fn up to RETRY_MAX times with linear back-off.

    Only the given exception types are retried; anything else propagates
    on the first failure.
    """
    retry_on = retry_on or (Exception,)

    def decorate(fn):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            attempts = _cfg.RETRY_MAX
            for attempt in range(1, attempts + 1):
                try:
                    return await fn(*args, **kwargs)
                except retry_on as exc:
                    if attempt == attempts:
                        raise
                    delay = retry_delay(attempt)
                    warn(f"{fn.__name__} failed (attempt {attempt}/{attempts}): {exc}")
                    log(f"  retrying in {delay:.0f}s …")
                    await asyncio.sleep(delay)

        return wrapper

    return decorate
