"""Unloads the model after a period without requests."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from llm_supervisor.services.supervisor import ProcessSupervisor


class IdleManager:
    """Inactivity timer layered on a ProcessSupervisor.

    Every successful request calls `touch()`, which re-arms the timer. When it
    fires and the model is not pinned ("keep loaded"), the supervisor unloads
    the server. A timeout of 0 disables the timer entirely.
    """

    def __init__(self, supervisor: ProcessSupervisor, idle_timeout: float) -> None:
        self._supervisor = supervisor
        self.idle_timeout = idle_timeout
        self.last_use_time = 0.0
        self._timer: asyncio.Task[None] | None = None

    @property
    def is_armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def touch(self) -> None:
        """Record activity and restart the countdown."""
        self.last_use_time = time.time()
        self.cancel()
        if self.idle_timeout <= 0:
            return
        self._timer = asyncio.create_task(self._expire(self.idle_timeout))

    def cancel(self) -> None:
        """Disarm the timer; safe to call at any time."""
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()

    def update_timeout(self, idle_timeout: float) -> None:
        self.idle_timeout = idle_timeout
        if idle_timeout <= 0:
            self.cancel()

    async def _expire(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Detach first so stop_server() does not cancel the task running it
        self._timer = None
        if self._supervisor.keep_model_loaded or not self._supervisor.has_process:
            return
        logger.info(f"No requests for {delay:.0f}s, unloading model")
        await self._supervisor.unload_idle()
