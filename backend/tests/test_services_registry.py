"""Tests for SupervisorRegistry and the LlamaService facade."""

import threading
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from llm_supervisor.errors import SupervisorBusyError
from llm_supervisor.models import LoadingState
from llm_supervisor.services.llama_service import LlamaService
from llm_supervisor.services.registry import SupervisorRegistry


def _service_mock():
    service = MagicMock()
    service.cleanup = AsyncMock()
    return service


class TestSupervisorRegistry:
    """Tests for create/shutdown."""

    def test_create_returns_same_instance(self, settings):
        factory = MagicMock(side_effect=lambda s: _service_mock())
        registry = SupervisorRegistry(factory)

        first = registry.create(settings)
        second = registry.create(settings)

        assert first is second
        factory.assert_called_once_with(settings)

    def test_reentrant_create_is_busy(self, settings):
        registry = SupervisorRegistry()

        def factory(s):
            with pytest.raises(SupervisorBusyError):
                registry.create(s)
            return _service_mock()

        registry._factory = factory
        assert registry.create(settings) is registry.service

    def test_concurrent_create_from_another_thread_is_busy(self, settings):
        started = threading.Event()
        release = threading.Event()

        def factory(s):
            started.set()
            release.wait(5)
            return _service_mock()

        registry = SupervisorRegistry(factory)
        worker = threading.Thread(target=registry.create, args=(settings,))
        worker.start()
        try:
            assert started.wait(5)
            with pytest.raises(SupervisorBusyError):
                registry.create(settings)
        finally:
            release.set()
            worker.join(5)

        assert registry.service is not None

    def test_failed_construction_can_be_retried(self, settings):
        attempts = []

        def factory(s):
            attempts.append(s)
            if len(attempts) == 1:
                raise RuntimeError("boom")
            return _service_mock()

        registry = SupervisorRegistry(factory)
        with pytest.raises(RuntimeError):
            registry.create(settings)

        assert registry.create(settings) is not None
        assert len(attempts) == 2

    async def test_shutdown_cleans_up_and_forgets(self, settings):
        service = _service_mock()
        registry = SupervisorRegistry(lambda s: service)
        registry.create(settings)

        await registry.shutdown()

        service.cleanup.assert_awaited_once()
        assert registry.service is None

    async def test_shutdown_without_service(self):
        await SupervisorRegistry().shutdown()


class TestLlamaService:
    """Tests for the facade wiring."""

    async def test_classify_end_to_end(self, settings, spawner):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(
                200, json={"content": '"category": "tool", "tags": ["cli"]'}
            )
        )
        service = LlamaService(settings, spawn=spawner, notifier=None, transport=transport)

        result = await service.classify("A terminal notes app")

        assert result.category == "tool"
        assert service.get_loading_state() is LoadingState.READY
        assert service.get_process_health().is_running is True
        await service.cleanup()
        assert service.get_loading_state() is LoadingState.NOT_LOADED

    async def test_cleanup_cancels_downloads(self, settings, spawner):
        service = LlamaService(settings, spawn=spawner, notifier=None)

        await service.cleanup()

        assert service.downloader._cancel_event.is_set()

    def test_update_settings_propagates(self, settings, spawner):
        service = LlamaService(settings, spawn=spawner, notifier=None)
        updated = settings.model_copy(update={"model_key": "llama-3.1-8b", "offline_mode": True})

        service.update_settings(updated)

        assert service.model.key == "llama-3.1-8b"
        assert service.downloader.settings.offline_mode is True

    def test_availability_follows_provider(self, settings):
        assert LlamaService(settings).is_available is True
        other = settings.model_copy(update={"llm_provider": "anthropic"})
        assert LlamaService(other).is_available is False
