"""Background memory watchdog for the supervised server."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from llm_supervisor.errors import HealthRestartFailure, SupervisorClosedError
from llm_supervisor.services.resource_estimator import memory_ceiling
from llm_supervisor.utils.notifications import safe_notify

if TYPE_CHECKING:
    from llm_supervisor.services.supervisor import ProcessSupervisor


class HealthMonitor:
    """Samples the server's resident memory and restarts it when too large.

    Runs while a process handle exists. A restart is triggered only when usage
    is strictly above `memory_ceiling(model size)`. Restart failures are logged
    and notified; the next tick re-evaluates.
    """

    def __init__(self, supervisor: ProcessSupervisor, interval: float = 30.0) -> None:
        self._supervisor = supervisor
        self.interval = interval
        self._task: asyncio.Task[None] | None = None
        self.restart_task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sampling loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._health_check_loop())

    def stop(self) -> None:
        """Stop the sampling loop. An in-flight restart keeps running."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    def cancel_restart(self) -> None:
        task, self.restart_task = self.restart_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _health_check_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.check()
            except Exception as e:
                logger.debug(f"Health check: {e}")

    def check(self) -> bool:
        """Sample memory once; returns True when a restart was triggered."""
        if self._supervisor.is_cleaning_up:
            return False
        if self.restart_task is not None and not self.restart_task.done():
            return False

        snapshot = self._supervisor.get_process_health()
        usage = snapshot.memory_usage_mb
        if usage is None:
            return False

        ceiling = memory_ceiling(self._supervisor.model.size_mb)
        logger.debug(f"Server health: {snapshot.describe()} (ceiling {ceiling:.0f} MB)")
        if usage <= ceiling:
            return False

        logger.warning(
            f"llama-server memory {usage:.0f} MB exceeds ceiling {ceiling:.0f} MB, restarting"
        )
        self.restart_task = asyncio.create_task(self._restart(usage, self._supervisor.epoch))
        return True

    async def _restart(self, usage: float, epoch: int) -> None:
        try:
            try:
                await self._supervisor.restart_server(epoch=epoch)
            except SupervisorClosedError:
                logger.debug("Health restart abandoned: supervisor is cleaning up")
                return
            except Exception as e:
                raise HealthRestartFailure(
                    f"Automatic restart after high memory usage ({usage:.0f} MB) failed: {e}"
                ) from e
            logger.info("llama-server restarted after high memory usage")
        except HealthRestartFailure as failure:
            logger.error(str(failure))
            safe_notify(self._supervisor.notifier, str(failure))
