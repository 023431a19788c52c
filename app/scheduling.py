"""Cancelable periodic tasks bound to the lifetime of an active context."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PollHandle:
    """A running poll loop; ``cancel`` always stops it."""

    def __init__(self, name: str, task: asyncio.Task[None]):
        self.name = name
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    async def cancel(self) -> None:
        if self._task.done():
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        logger.info("Stopped poll loop %s", self.name)


def start_polling(
    name: str,
    callback: Callable[[], Awaitable[object]],
    interval_seconds: float,
) -> PollHandle:
    """Run ``callback`` every ``interval_seconds`` until the handle is cancelled."""

    async def _loop() -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await callback()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Poll loop %s failed: %s", name, exc)

    logger.info("Started poll loop %s every %ss", name, interval_seconds)
    return PollHandle(name, asyncio.create_task(_loop()))


class ActiveContexts:
    """Tracks which contexts are active and owns their poll loops.

    Deactivating a context, or closing the registry, cancels every loop
    started for it.
    """

    def __init__(self) -> None:
        self._handles: dict[str, list[PollHandle]] = {}

    def is_active(self, context: str) -> bool:
        return context in self._handles

    @property
    def active(self) -> list[str]:
        return sorted(self._handles)

    def activate(self, context: str) -> bool:
        """Mark ``context`` active; returns ``False`` when it already was."""

        if context in self._handles:
            return False
        self._handles[context] = []
        return True

    def poll(
        self,
        context: str,
        name: str,
        callback: Callable[[], Awaitable[object]],
        interval_seconds: float,
    ) -> PollHandle:
        if context not in self._handles:
            raise KeyError(f"Context {context} is not active")
        handle = start_polling(name, callback, interval_seconds)
        self._handles[context].append(handle)
        return handle

    async def deactivate(self, context: str) -> bool:
        handles = self._handles.pop(context, None)
        if handles is None:
            return False
        for handle in handles:
            await handle.cancel()
        return True

    async def close(self) -> None:
        for context in list(self._handles):
            await self.deactivate(context)
