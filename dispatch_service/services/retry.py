from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

_LOGGER = logging.getLogger(__name__)
_T = TypeVar("_T")

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "network",
    "econnreset",
    "connection reset",
    "temporarily unavailable",
    "database is locked",
)


class TransientError(Exception):
    """Transient failure that survived every retry."""


def is_transient_error(exc: BaseException) -> bool:
    """True for failures worth retrying: timeouts, dropped connections."""
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, (OperationalError, InterfaceError, OSError)):
        message = str(exc).lower()
        return any(marker in message for marker in _TRANSIENT_MARKERS)
    return False


async def call_with_retry(
    factory: Callable[[], Awaitable[_T]],
    *,
    attempts: int = 1,
    delay_ms: int = 300,
    op: str = "read",
) -> _T:
    """Run a read *factory*, retrying transient failures with doubling backoff.

    *attempts* counts retries after the first call. Non-transient errors
    propagate immediately; exhausted retries raise ``TransientError``.
    Never wrap a write whose outcome could be unknown.
    """
    delay = max(delay_ms, 0) / 1000
    for attempt in range(attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            if not is_transient_error(exc):
                raise
            if attempt >= attempts:
                _LOGGER.error("%s: giving up after %s attempts: %s", op, attempt + 1, exc)
                raise TransientError(str(exc)) from exc
            _LOGGER.warning(
                "%s: transient failure (attempt %s/%s), retrying in %.2fs: %s",
                op,
                attempt + 1,
                attempts + 1,
                delay,
                exc,
            )
        await asyncio.sleep(delay)
        delay = min(delay * 2, 30.0)
    raise AssertionError("unreachable")
