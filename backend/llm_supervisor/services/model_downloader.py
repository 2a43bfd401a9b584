"""GGUF model downloads with progress reporting."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path

import httpx
from loguru import logger

from llm_supervisor.config import Settings
from llm_supervisor.models import ModelConfig
from llm_supervisor.types import DownloadStatus

CHUNK_SIZE = 1024 * 1024
PARTIAL_SUFFIX = ".part"
PROGRESS_LOG_EVERY = 256  # chunks


class ModelDownloader:
    """Streams model files into the models directory.

    Data is written to `<file>.part` and renamed once complete, so the path
    resolver never sees a half-written model. `cancel()` stops every
    in-flight download; their partial files are removed.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._cancel_event = asyncio.Event()
        self._active: set[str] = set()

    @property
    def active_downloads(self) -> set[str]:
        return set(self._active)

    def target_path(self, model: ModelConfig) -> Path:
        return self.settings.models_dir / model.file_name

    def is_downloaded(self, model: ModelConfig) -> bool:
        return self.target_path(model).is_file()

    def cancel(self) -> None:
        """Signal every in-flight download to stop."""
        if self._active:
            logger.info(f"Cancelling downloads: {', '.join(sorted(self._active))}")
        self._cancel_event.set()

    async def download(self, model: ModelConfig) -> AsyncGenerator[DownloadStatus, None]:
        """Download a model, yielding status updates.

        The final update is "completed", "cancelled" or "failed".
        """
        if self.settings.offline_mode:
            logger.warning(f"Download blocked for {model.key} - offline mode enabled")
            yield DownloadStatus(
                status="failed",
                model_key=model.key,
                error="Offline mode - cannot download models",
            )
            return

        if not model.download_url:
            yield DownloadStatus(
                status="failed", model_key=model.key, error="No download URL for this model"
            )
            return

        target = self.target_path(model)
        if target.is_file():
            size = target.stat().st_size
            yield DownloadStatus(
                status="completed",
                model_key=model.key,
                local_path=str(target),
                total_bytes=size,
                downloaded_bytes=size,
                progress=100,
            )
            return

        # A new download starts with a clean cancellation state
        if not self._active:
            self._cancel_event.clear()
        self._active.add(model.key)

        partial = target.with_name(target.name + PARTIAL_SUFFIX)
        logger.info(f"Downloading {model.name} from {model.download_url}")
        yield DownloadStatus(
            status="starting", model_key=model.key, total_bytes=0, downloaded_bytes=0, progress=0
        )

        downloaded = 0
        total_bytes = 0
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with httpx.AsyncClient(
                transport=self._transport, follow_redirects=True, timeout=30.0
            ) as client:
                async with client.stream("GET", model.download_url) as response:
                    response.raise_for_status()
                    total_bytes = int(response.headers.get("content-length", 0))
                    chunks = 0
                    with partial.open("wb") as f:
                        async for chunk in response.aiter_bytes(CHUNK_SIZE):
                            if self._cancel_event.is_set():
                                break
                            f.write(chunk)
                            downloaded += len(chunk)
                            chunks += 1
                            progress = int(downloaded * 100 / total_bytes) if total_bytes else 0
                            if chunks % PROGRESS_LOG_EVERY == 0:
                                logger.debug(
                                    f"Download progress for {model.key}: "
                                    f"{downloaded}/{total_bytes} bytes ({progress}%)"
                                )
                            yield DownloadStatus(
                                status="downloading",
                                model_key=model.key,
                                total_bytes=total_bytes,
                                downloaded_bytes=downloaded,
                                progress=min(progress, 99),
                            )

            if self._cancel_event.is_set():
                partial.unlink(missing_ok=True)
                logger.info(f"Download cancelled for {model.key}")
                yield DownloadStatus(
                    status="cancelled",
                    model_key=model.key,
                    total_bytes=total_bytes,
                    downloaded_bytes=downloaded,
                    progress=0,
                )
                return

            partial.replace(target)
            logger.info(f"Download completed for {model.key}: {target}")
            yield DownloadStatus(
                status="completed",
                model_key=model.key,
                local_path=str(target),
                total_bytes=total_bytes or downloaded,
                downloaded_bytes=downloaded,
                progress=100,
            )
        except (httpx.HTTPError, OSError) as e:
            logger.error(f"Download failed for {model.key}: {e}")
            partial.unlink(missing_ok=True)
            yield DownloadStatus(status="failed", model_key=model.key, error=str(e))
        finally:
            self._active.discard(model.key)
