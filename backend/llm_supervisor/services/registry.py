"""Process-wide ownership of the LlamaService."""

from __future__ import annotations

import threading
from collections.abc import Callable

from loguru import logger

from llm_supervisor.config import Settings
from llm_supervisor.errors import SupervisorBusyError
from llm_supervisor.services.llama_service import LlamaService

ServiceFactory = Callable[[Settings], LlamaService]


class SupervisorRegistry:
    """Guarantees at most one supervised server per registry.

    Construction is guarded by a lock: a second caller arriving while the
    service is still being built gets SupervisorBusyError instead of a
    duplicate server.
    """

    def __init__(self, factory: ServiceFactory = LlamaService) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._constructing = False
        self._service: LlamaService | None = None

    @property
    def service(self) -> LlamaService | None:
        return self._service

    def create(self, settings: Settings) -> LlamaService:
        """Return the existing service, building it on first use.

        Raises:
            SupervisorBusyError: If another caller is constructing the service
        """
        with self._lock:
            if self._service is not None:
                return self._service
            if self._constructing:
                raise SupervisorBusyError("LlamaService construction already in progress")
            self._constructing = True

        try:
            service = self._factory(settings)
        finally:
            with self._lock:
                self._constructing = False

        with self._lock:
            self._service = service
        logger.debug("LlamaService created")
        return service

    async def shutdown(self) -> None:
        """Clean up and forget the service."""
        with self._lock:
            service, self._service = self._service, None
        if service is not None:
            await service.cleanup()
            logger.debug("LlamaService shut down")
