from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, List, Set

logger = logging.getLogger(__name__)

OnlineCallback = Callable[[], Any]


class ConnectivityMonitor:
    """Tracks online/offline transitions reported by the platform.

    The monitor never polls: whatever observes the network calls
    :meth:`set_online` and registered callbacks fire once for every
    offline to online transition.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._callbacks: List[OnlineCallback] = []
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_online(self) -> bool:
        return self._online

    def on_online(self, callback: OnlineCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Connectivity restored")
            self._notify()
        elif was_online and not online:
            logger.info("Connectivity lost")

    def _notify(self) -> None:
        for callback in list(self._callbacks):
            try:
                result = callback()
            except Exception:
                logger.exception("Online callback %r failed", callback)
                continue
            if inspect.iscoroutine(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    result.close()
                    logger.warning("No running event loop for online callback %r", callback)
                    continue
                task = loop.create_task(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Online callback task failed: %s", exc)

    async def drain(self) -> None:
        """Wait for callbacks scheduled by the last transition to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
