"""Pytest fixtures for supervisor tests."""

import os
import stat

import pytest
from fakes import FakeSpawner

from llm_supervisor.config import Settings
from llm_supervisor.models import MODELS


@pytest.fixture
def model_files(tmp_path):
    """A fake executable binary and a default-named model file."""
    binary = tmp_path / "bin" / "llama-server"
    binary.parent.mkdir()
    binary.write_text("#!/bin/sh\n")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    models_dir = tmp_path / "models"
    models_dir.mkdir()
    model = models_dir / MODELS["phi-3.5-mini"].file_name
    model.write_bytes(b"GGUF")
    return binary, model


@pytest.fixture
def settings(tmp_path, model_files):
    """Settings with resolvable paths and fast timing knobs."""
    binary, model = model_files
    return Settings(
        llama_binary_path=str(binary),
        models_dir=model.parent,
        model_key="phi-3.5-mini",
        startup_grace_seconds=0.01,
        stop_grace_seconds=0.05,
        ready_poll_interval=0.01,
        restart_delay_seconds=0.0,
        health_check_interval=3600,
    )


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def notifications():
    return []


@pytest.fixture
async def supervisor(settings, spawner, notifications):
    """A ProcessSupervisor wired to the fake spawner."""
    from llm_supervisor.services.supervisor import ProcessSupervisor

    sup = ProcessSupervisor(settings, spawn=spawner, notifier=notifications.append)
    yield sup
    await sup.cleanup()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep developer LLM_SUPERVISOR_* variables out of the tests."""
    for key in list(os.environ):
        if key.startswith("LLM_SUPERVISOR_"):
            monkeypatch.delenv(key, raising=False)
