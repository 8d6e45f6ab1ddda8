from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any

LOGGER = logging.getLogger(__name__)

WriteFn = Callable[[Hashable, Any], Awaitable[None] | None]


@dataclass
class _PendingWrite:
    value: Any
    handle: asyncio.TimerHandle


class DebouncedWriter:
    """Coalesces rapid edits per key into one write of the final value.

    Each key owns a single pending slot. A newer edit replaces the value and restarts
    the timer, so intermediate values are never written.
    """

    def __init__(self, write: WriteFn, *, delay_seconds: float | None = None):
        if delay_seconds is None:
            from content_sync.core.config import settings

            delay_seconds = settings.CONFIG_DEBOUNCE_SECONDS
        self._write = write
        self._delay_seconds = float(delay_seconds)
        self._pending: dict[Hashable, _PendingWrite] = {}
        self._in_flight: set[asyncio.Task] = set()

    def submit(self, key: Hashable, value: Any) -> None:
        loop = asyncio.get_running_loop()
        existing = self._pending.get(key)
        if existing is not None:
            existing.handle.cancel()
        handle = loop.call_later(self._delay_seconds, self._fire, key)
        self._pending[key] = _PendingWrite(value=value, handle=handle)

    def has_pending(self, key: Hashable | None = None) -> bool:
        if key is None:
            return bool(self._pending)
        return key in self._pending

    def pending_value(self, key: Hashable, default: Any = None) -> Any:
        slot = self._pending.get(key)
        return slot.value if slot is not None else default

    def _fire(self, key: Hashable) -> None:
        slot = self._pending.pop(key, None)
        if slot is None:
            return
        task = asyncio.get_running_loop().create_task(self._write_logged(key, slot.value))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _write_now(self, key: Hashable, value: Any) -> None:
        outcome = self._write(key, value)
        if inspect.isawaitable(outcome):
            await outcome

    async def _write_logged(self, key: Hashable, value: Any) -> None:
        try:
            await self._write_now(key, value)
        except Exception:
            LOGGER.exception("debounced_write_failed", extra={"event": "debounced_write_failed", "key": str(key)})

    async def flush(self, key: Hashable | None = None) -> None:
        """Write pending values now (one key or all) and wait for timer-started writes."""
        keys = [key] if key is not None else list(self._pending)
        for item in keys:
            slot = self._pending.pop(item, None)
            if slot is None:
                continue
            slot.handle.cancel()
            await self._write_now(item, slot.value)
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight))
