"""Tests for RequestExecutor against a mocked llama-server."""

import asyncio
import json

import httpx
import pytest

from llm_supervisor.errors import (
    ConfigurationError,
    NetworkError,
    ParseError,
    ProviderUnavailableError,
    RequestTimeoutError,
    ServiceUnavailableError,
    SupervisorClosedError,
)
from llm_supervisor.models import ClassificationResult, CompletionOptions, TaskType
from llm_supervisor.services.request_executor import RequestExecutor
from llm_supervisor.services.supervisor import ProcessSupervisor

CLASSIFICATION_CONTENT = '\n  "category": "game",\n  "tags": ["rpg", "fantasy"]\n'


def _ok(content: str = CLASSIFICATION_CONTENT) -> httpx.Response:
    return httpx.Response(200, json={"content": content, "stop": True})


@pytest.fixture
def make_executor(supervisor):
    """Build an executor whose HTTP traffic goes to a scripted handler.

    The handler receives (request, call_number) and returns a response or
    raises an httpx exception.
    """

    def factory(handler, sup: ProcessSupervisor | None = None):
        calls: list[httpx.Request] = []

        def record(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return handler(request, len(calls))

        executor = RequestExecutor(sup or supervisor, transport=httpx.MockTransport(record))
        executor.process_gone_delay = 0
        executor.server_busy_delay = 0
        executor.network_retry_delay = 0
        return executor, calls

    return factory


class TestClassify:
    """Tests for classify."""

    async def test_parses_truncated_completion(self, make_executor):
        executor, calls = make_executor(lambda request, n: _ok())

        result = await executor.classify("An RPG about gardening")

        assert result == ClassificationResult(
            category="game", tags=["rpg", "fantasy"], confidence=0.8
        )
        assert len(calls) == 1

    async def test_request_payload(self, make_executor):
        executor, calls = make_executor(lambda request, n: _ok())

        await executor.classify("A CLI for notes")

        request = calls[0]
        assert request.method == "POST"
        assert str(request.url) == "http://127.0.0.1:8080/completion"
        payload = json.loads(request.content)
        assert payload["n_predict"] == 128
        assert payload["temperature"] == 0.1
        assert payload["stop"] == ["}"]
        assert payload["prompt"].endswith("{")
        assert 'Idea: "A CLI for notes"' in payload["prompt"]

    async def test_non_json_body_yields_empty_result(self, make_executor):
        executor, _ = make_executor(lambda request, n: httpx.Response(200, text="<html>oops"))

        assert await executor.classify("anything") == ClassificationResult.empty()

    async def test_unparseable_content_yields_empty_result(self, make_executor):
        executor, _ = make_executor(lambda request, n: _ok("I would rather not"))

        assert await executor.classify("anything") == ClassificationResult.empty()

    async def test_touches_idle_timer(self, make_executor, supervisor):
        executor, _ = make_executor(lambda request, n: _ok())

        await executor.classify("anything")

        assert supervisor.idle_manager.last_use_time > 0
        assert supervisor.idle_manager.is_armed


class TestComplete:
    """Tests for complete."""

    async def test_returns_raw_content(self, make_executor):
        executor, calls = make_executor(lambda request, n: _ok("Once upon a time"))

        options = CompletionOptions(
            temperature=0.9, predicted_tokens=64, stop=[], task_type=TaskType.EXPANSION
        )
        assert await executor.complete("Tell a story", options) == "Once upon a time"

        payload = json.loads(calls[0].content)
        assert payload == {
            "prompt": "Tell a story",
            "n_predict": 64,
            "temperature": 0.9,
            "stop": [],
        }

    async def test_missing_content_raises_parse_error(self, make_executor):
        executor, _ = make_executor(lambda request, n: httpx.Response(200, json={"tokens": []}))

        with pytest.raises(ParseError, match="no content"):
            await executor.complete("prompt")

    async def test_non_json_body_raises_parse_error(self, make_executor):
        executor, _ = make_executor(lambda request, n: httpx.Response(200, text="not json"))

        with pytest.raises(ParseError, match="invalid JSON"):
            await executor.complete("prompt")


class TestRetries:
    """Tests for retry behaviour."""

    async def test_503_twice_then_success(self, make_executor):
        def handler(request, n):
            return httpx.Response(503) if n < 3 else _ok()

        executor, calls = make_executor(handler)

        result = await executor.classify("anything")

        assert result.category == "game"
        assert len(calls) == 3

    @pytest.mark.parametrize("method", ["classify", "complete"])
    async def test_503_exhausted_reports_memory_diagnostic(self, make_executor, method):
        executor, calls = make_executor(lambda request, n: httpx.Response(503))

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await getattr(executor, method)("anything")

        message = str(exc_info.value)
        assert "503" in message
        assert "RAM" in message
        assert "6-8GB" in message
        assert exc_info.value.status_code == 503
        assert len(calls) == 3

    async def test_503_with_dead_process_restarts_server(
        self, make_executor, supervisor, spawner
    ):
        def handler(request, n):
            if n == 1:
                spawner.handles[0].returncode = -9
                return httpx.Response(503)
            return _ok()

        executor, calls = make_executor(handler)

        result = await executor.classify("anything")

        assert result.category == "game"
        assert len(calls) == 2
        assert spawner.call_count == 2
        assert supervisor.handle is spawner.handles[1]

    async def test_other_status_is_not_retried(self, make_executor):
        executor, calls = make_executor(lambda request, n: httpx.Response(500, text="boom"))

        with pytest.raises(NetworkError) as exc_info:
            await executor.complete("prompt")

        assert exc_info.value.status_code == 500
        assert len(calls) == 1

    async def test_transport_error_is_retried(self, make_executor):
        def handler(request, n):
            if n == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return _ok("fine")

        executor, calls = make_executor(handler)

        assert await executor.complete("prompt") == "fine"
        assert len(calls) == 2

    async def test_transport_errors_exhausted(self, make_executor):
        def handler(request, n):
            raise httpx.ConnectError("connection refused", request=request)

        executor, calls = make_executor(handler)

        with pytest.raises(NetworkError, match="connection refused") as exc_info:
            await executor.complete("prompt")

        assert exc_info.value.status_code is None
        assert len(calls) == 3

    async def test_timeout_is_not_retried(self, make_executor):
        def handler(request, n):
            raise httpx.ReadTimeout("timed out", request=request)

        executor, calls = make_executor(handler)

        with pytest.raises(RequestTimeoutError, match="15s") as exc_info:
            await executor.classify("anything")

        assert exc_info.value.timeout_seconds == 15.0
        assert len(calls) == 1


class TestReadiness:
    """Tests for the readiness gate in front of requests."""

    async def test_unavailable_provider(self, make_executor, settings, spawner):
        sup = ProcessSupervisor(settings.model_copy(update={"llm_provider": "none"}), spawn=spawner)
        executor, calls = make_executor(lambda request, n: _ok(), sup)

        with pytest.raises(ProviderUnavailableError):
            await executor.classify("anything")

        assert calls == []
        assert spawner.call_count == 0

    async def test_configuration_error_propagates(self, make_executor, settings, spawner, tmp_path):
        sup = ProcessSupervisor(
            settings.model_copy(update={"llama_binary_path": str(tmp_path / "missing")}),
            spawn=spawner,
        )
        executor, calls = make_executor(lambda request, n: _ok(), sup)

        with pytest.raises(ConfigurationError):
            await executor.complete("prompt")

        assert calls == []
        assert spawner.call_count == 0


class TestCleanupDuringRequest:
    """A request in flight when cleanup() runs must not bring the server back."""

    async def _blocked_request(self, supervisor, failure):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def handler(request):
            entered.set()
            await release.wait()
            return failure(request)

        executor = RequestExecutor(supervisor, transport=httpx.MockTransport(handler))
        executor.process_gone_delay = 0
        executor.server_busy_delay = 0
        executor.network_retry_delay = 0
        task = asyncio.create_task(executor.complete("prompt"))
        await entered.wait()
        return task, release

    async def test_transport_error_after_cleanup(self, supervisor, spawner):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        task, release = await self._blocked_request(supervisor, refuse)

        await supervisor.cleanup()
        release.set()

        with pytest.raises(SupervisorClosedError):
            await task
        assert spawner.call_count == 1
        assert supervisor.has_process is False

    async def test_503_after_cleanup(self, supervisor, spawner):
        task, release = await self._blocked_request(
            supervisor, lambda request: httpx.Response(503)
        )

        await supervisor.cleanup()
        release.set()

        with pytest.raises(SupervisorClosedError):
            await task
        assert spawner.call_count == 1
        assert supervisor.has_process is False
