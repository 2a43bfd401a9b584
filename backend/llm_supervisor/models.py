"""Domain models for the llama-server supervisor."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import StrEnum

from loguru import logger


class LoadingState(StrEnum):
    """Lifecycle state of the supervised server.

    - NOT_LOADED: no process (initial and terminal state)
    - LOADING: process spawned, HTTP endpoint may be up, model still loading
    - READY: model loaded and serving
    - IDLE: idle timeout reached, unload in progress
    """

    NOT_LOADED = "not-loaded"
    LOADING = "loading"
    READY = "ready"
    IDLE = "idle"


class TaskType(StrEnum):
    """Kind of request, used to scale timeouts."""

    CLASSIFICATION = "classification"
    COMPLETION = "completion"
    EXPANSION = "expansion"


@dataclass(frozen=True, slots=True)
class ModelConfig:
    """Immutable description of a downloadable GGUF model."""

    key: str
    name: str
    file_name: str
    size_mb: int
    ram_requirement: str  # e.g. "6-8GB", "48GB+"
    download_url: str = ""

    @property
    def ram_requirement_gb(self) -> int:
        """First integer of the RAM requirement ("48GB+" -> 48, "6-8GB" -> 6)."""
        match = re.search(r"(\d+)", self.ram_requirement)
        return int(match.group(1)) if match else 0


MODELS: dict[str, ModelConfig] = {
    "phi-3.5-mini": ModelConfig(
        key="phi-3.5-mini",
        name="Phi-3.5 Mini",
        file_name="Phi-3.5-mini-instruct-Q8_0.gguf",
        size_mb=4200,
        ram_requirement="6-8GB",
        download_url="https://huggingface.co/bartowski/Phi-3.5-mini-instruct-GGUF/resolve/main/Phi-3.5-mini-instruct-Q8_0.gguf",  # noqa: E501
    ),
    "qwen-2.5-7b": ModelConfig(
        key="qwen-2.5-7b",
        name="Qwen 2.5 7B",
        file_name="Qwen2.5-7B-Instruct-Q8_0.gguf",
        size_mb=7800,
        ram_requirement="10GB",
        download_url="https://huggingface.co/bartowski/Qwen2.5-7B-Instruct-GGUF/resolve/main/Qwen2.5-7B-Instruct-Q8_0.gguf",  # noqa: E501
    ),
    "llama-3.1-8b": ModelConfig(
        key="llama-3.1-8b",
        name="Llama 3.1 8B",
        file_name="Meta-Llama-3.1-8B-Instruct-Q8_0.gguf",
        size_mb=8500,
        ram_requirement="10-12GB",
        download_url="https://huggingface.co/bartowski/Meta-Llama-3.1-8B-Instruct-GGUF/resolve/main/Meta-Llama-3.1-8B-Instruct-Q8_0.gguf",  # noqa: E501
    ),
    "llama-3.3-70b": ModelConfig(
        key="llama-3.3-70b",
        name="Llama 3.3 70B",
        file_name="Llama-3.3-70B-Instruct-Q4_K_M.gguf",
        size_mb=42500,
        ram_requirement="48GB+",
        download_url="https://huggingface.co/bartowski/Llama-3.3-70B-Instruct-GGUF/resolve/main/Llama-3.3-70B-Instruct-Q4_K_M.gguf",  # noqa: E501
    ),
}

DEFAULT_MODEL_KEY = "phi-3.5-mini"


def get_model_config(model_key: str | None) -> ModelConfig:
    """Look up a model by key, falling back to the default model."""
    if model_key and model_key in MODELS:
        return MODELS[model_key]
    if model_key:
        logger.warning(f"Unknown model key '{model_key}', using {DEFAULT_MODEL_KEY}")
    return MODELS[DEFAULT_MODEL_KEY]


def smallest_model() -> ModelConfig:
    """Model suggested when the configured one does not fit in memory."""
    return min(MODELS.values(), key=lambda m: m.size_mb)


@dataclass(slots=True)
class HealthSnapshot:
    """OS-level sample of the supervised process."""

    memory_usage_mb: float | None
    timestamp: float = field(default_factory=time.time)
    pid: int | None = None
    is_running: bool = False
    uptime_seconds: float | None = None

    def describe(self) -> str:
        """Human-readable one-line status."""
        if not self.is_running:
            return "Not running"

        parts = [f"PID: {self.pid}"]
        if self.uptime_seconds is not None:
            minutes, seconds = divmod(int(self.uptime_seconds), 60)
            parts.append(f"Uptime: {minutes}m {seconds}s")
        if self.memory_usage_mb is not None:
            parts.append(f"Memory: {self.memory_usage_mb:.1f} MB")
        return ", ".join(parts)


@dataclass(slots=True)
class ClassificationResult:
    """Category and tags suggested for a piece of text."""

    category: str
    tags: list[str] = field(default_factory=list)
    confidence: float = 0.0

    @classmethod
    def empty(cls) -> ClassificationResult:
        """Result used when the model output cannot be parsed."""
        return cls(category="", tags=[], confidence=0.0)


@dataclass(slots=True)
class CompletionOptions:
    """Generation parameters for a completion request."""

    temperature: float = 0.7
    predicted_tokens: int = 256
    stop: list[str] = field(default_factory=lambda: ["}"])
    task_type: TaskType = TaskType.COMPLETION


@dataclass(slots=True)
class RetryContext:
    """Per-call retry bookkeeping."""

    max_retries: int = 2
    attempt: int = 0
    last_error: Exception | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_retries
