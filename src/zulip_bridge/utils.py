"""Miscellaneous helpers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import AsyncIterator, TypeVar

_T = TypeVar("_T")

logger = logging.getLogger(__name__)


class ChannelProcessingGuard:
    """Coordinate access to channel-specific operations across coroutines."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    @asynccontextmanager
    async def lock(self, channel_id: str) -> AsyncIterator[None]:
        async with self._registry_lock:
            lock = self._locks.get(channel_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[channel_id] = lock
        async with lock:
            yield


async def retry_async(
    factory: Callable[[], Awaitable[_T]],
    *,
    attempts: int = 3,
    delay: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> _T:
    """Await ``factory()`` up to ``attempts`` times, sleeping ``delay`` between failures."""

    for attempt in range(1, max(1, attempts) + 1):
        try:
            return await factory()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            logger.warning("Attempt %d/%d failed: %s", attempt, attempts, exc)
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")


def parse_bool(value: object, default: bool = False) -> bool:
    """Parse textual boolean configuration values.

    Supported truthy values: ``on``, ``true``, ``yes``, ``1`` (case-insensitive).
    Supported falsy values: ``off``, ``false``, ``no``, ``0``.
    Real booleans are returned as-is. Any other value returns ``default``.
    """

    if isinstance(value, bool):
        return value
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if not normalized:
        return default
    if normalized in {"on", "true", "yes", "1"}:
        return True
    if normalized in {"off", "false", "no", "0"}:
        return False
    return default


def truncate_text(text: str, limit: int, ellipsis: str = "…") -> str:
    """Cut ``text`` to ``limit`` characters, ending with ``ellipsis`` when shortened."""

    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(ellipsis))] + ellipsis
