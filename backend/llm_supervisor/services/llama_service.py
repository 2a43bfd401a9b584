"""Facade composing the supervisor, request executor and downloader."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import httpx
from loguru import logger

from llm_supervisor.config import Settings
from llm_supervisor.models import (
    ClassificationResult,
    CompletionOptions,
    HealthSnapshot,
    LoadingState,
    ModelConfig,
)
from llm_supervisor.services.model_downloader import ModelDownloader
from llm_supervisor.services.request_executor import RequestExecutor
from llm_supervisor.services.supervisor import ProcessSupervisor, SpawnFn
from llm_supervisor.types import DownloadStatus
from llm_supervisor.utils.notifications import Notifier, log_notifier


class LlamaService:
    """Single entry point for classification and completion on a local model."""

    def __init__(
        self,
        settings: Settings,
        *,
        spawn: SpawnFn | None = None,
        notifier: Notifier | None = log_notifier,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.supervisor = ProcessSupervisor(settings, spawn=spawn, notifier=notifier)
        self.executor = RequestExecutor(self.supervisor, transport=transport)
        self.downloader = ModelDownloader(settings, transport=transport)
        self.supervisor.add_cleanup_hook(self.downloader.cancel)

    @property
    def is_available(self) -> bool:
        return self.supervisor.is_available

    @property
    def model(self) -> ModelConfig:
        return self.supervisor.model

    async def ensure_ready(self) -> bool:
        return await self.supervisor.ensure_ready()

    async def classify(self, text: str) -> ClassificationResult:
        return await self.executor.classify(text)

    async def complete(self, prompt: str, options: CompletionOptions | None = None) -> str:
        return await self.executor.complete(prompt, options)

    def get_loading_state(self) -> LoadingState:
        return self.supervisor.get_loading_state()

    def get_process_health(self) -> HealthSnapshot:
        return self.supervisor.get_process_health()

    async def stop_server(self) -> None:
        await self.supervisor.stop_server()

    async def cleanup(self) -> None:
        await self.supervisor.cleanup()

    def update_settings(self, settings: Settings) -> None:
        logger.debug("Applying updated supervisor settings")
        self.settings = settings
        self.supervisor.update_settings(settings)
        self.downloader.settings = settings

    def download_model(
        self, model: ModelConfig | None = None
    ) -> AsyncGenerator[DownloadStatus, None]:
        """Download a model, the configured one by default."""
        return self.downloader.download(model or self.supervisor.model)
