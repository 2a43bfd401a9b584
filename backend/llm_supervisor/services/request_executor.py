"""Completion requests against the supervised llama-server."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from llm_supervisor.errors import (
    NetworkError,
    ParseError,
    ProviderUnavailableError,
    RequestTimeoutError,
    ServiceUnavailableError,
)
from llm_supervisor.models import (
    ClassificationResult,
    CompletionOptions,
    LoadingState,
    RetryContext,
    TaskType,
)
from llm_supervisor.prompts import construct_prompt, parse_classification
from llm_supervisor.services.resource_estimator import request_timeout
from llm_supervisor.services.supervisor import ProcessSupervisor
from llm_supervisor.utils.system_info import describe_memory_pressure

COMPLETION_PATH = "/completion"

CLASSIFICATION_OPTIONS = CompletionOptions(
    temperature=0.1,
    predicted_tokens=128,
    stop=["}"],
    task_type=TaskType.CLASSIFICATION,
)

# Delays between attempts, in seconds
PROCESS_GONE_DELAY = 0.5
SERVER_BUSY_DELAY = 1.0
NETWORK_RETRY_DELAY = 1.0
READY_WAIT_SECONDS = 2.0


class RequestExecutor:
    """Sends prompts to llama-server with readiness checks and bounded retries.

    Every call first makes sure the server is ready (starting it on demand),
    re-arms the idle timer and then POSTs to /completion. Transport failures
    and 503 responses are retried up to `max_retries` times; timeouts and other
    HTTP errors surface immediately.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int = 2,
    ) -> None:
        self.supervisor = supervisor
        self.max_retries = max_retries
        self._transport = transport
        self.process_gone_delay = PROCESS_GONE_DELAY
        self.server_busy_delay = SERVER_BUSY_DELAY
        self.network_retry_delay = NETWORK_RETRY_DELAY

    async def classify(self, text: str) -> ClassificationResult:
        """Suggest a category and tags for text.

        Unparseable output yields ClassificationResult.empty().
        """
        try:
            data = await self._execute(construct_prompt(text), CLASSIFICATION_OPTIONS)
        except ParseError as e:
            logger.warning(f"Classification response was not JSON: {e}")
            return ClassificationResult.empty()

        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, str):
            logger.warning("Classification response has no content")
            return ClassificationResult.empty()
        return parse_classification(content)

    async def complete(self, prompt: str, options: CompletionOptions | None = None) -> str:
        """Return the raw generated text for prompt.

        Raises:
            ParseError: If the response has no content field
        """
        data = await self._execute(prompt, options or CompletionOptions())
        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, str):
            raise ParseError("llama-server response has no content field")
        return content

    async def _execute(self, prompt: str, options: CompletionOptions) -> Any:
        supervisor = self.supervisor
        epoch = supervisor.epoch
        await self._ensure_ready(epoch)
        supervisor.idle_manager.touch()

        timeout = request_timeout(
            supervisor.model.size_mb,
            options.task_type,
            options.predicted_tokens,
            supervisor.settings.llm_timeout,
        )
        payload = {
            "prompt": prompt,
            "n_predict": options.predicted_tokens,
            "temperature": options.temperature,
            "stop": list(options.stop),
        }

        retry = RetryContext(max_retries=self.max_retries)
        while True:
            if retry.attempt > 0:
                await self._recover(epoch)
            try:
                return await self._post(payload, timeout)
            except ServiceUnavailableError as e:
                retry.last_error = e
                if retry.exhausted:
                    raise ServiceUnavailableError(self._unavailable_message(retry)) from e
                if supervisor.is_process_alive():
                    delay = self.server_busy_delay
                    logger.warning("llama-server busy (503), retrying")
                else:
                    supervisor.mark_process_gone()
                    delay = self.process_gone_delay
                    logger.warning("llama-server returned 503 and its process is gone, retrying")
            except NetworkError as e:
                if e.status_code is not None:
                    raise
                retry.last_error = e
                if retry.exhausted:
                    raise
                delay = self.network_retry_delay
                logger.warning(f"Request to llama-server failed, retrying: {e}")

            retry.attempt += 1
            await supervisor.wait(delay, epoch=epoch)

    async def _ensure_ready(self, epoch: int) -> None:
        if not await self.supervisor.ensure_ready(epoch):
            raise ProviderUnavailableError(self.supervisor.paths.describe_missing())

    async def _recover(self, epoch: int) -> None:
        """Bring the server back before a retry, unless a cleanup ran meanwhile."""
        supervisor = self.supervisor
        if not supervisor.is_process_alive():
            await self._ensure_ready(epoch)
            await supervisor.wait(self.process_gone_delay, epoch=epoch)
        elif supervisor.get_loading_state() is not LoadingState.READY:
            await supervisor.wait_for_ready(
                READY_WAIT_SECONDS, raise_on_exit=False, epoch=epoch
            )

    async def _post(self, payload: dict[str, Any], timeout: float) -> Any:
        url = f"{self.supervisor.settings.server_url}{COMPLETION_PATH}"
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await asyncio.wait_for(
                    client.post(url, json=payload, timeout=timeout), timeout=timeout
                )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise RequestTimeoutError(
                f"Request timed out after {timeout:.0f}s", timeout_seconds=timeout
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Could not reach llama-server: {e}") from e

        if response.status_code == 503:
            raise ServiceUnavailableError("llama-server returned 503 Service Unavailable")
        if not response.is_success:
            raise NetworkError(
                f"llama-server returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ParseError(f"llama-server returned invalid JSON: {response.text[:200]}") from e

    def _unavailable_message(self, retry: RetryContext) -> str:
        return (
            f"llama-server returned 503 Service Unavailable after {retry.attempt + 1} attempts. "
            f"The server may have run out of RAM/VRAM. "
            f"{describe_memory_pressure(self.supervisor.model)}"
        )
