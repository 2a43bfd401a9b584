"""Application configuration.

Environment Variables:
    LLM_SUPERVISOR_LLM_PROVIDER: Active provider; the supervisor only runs for "llama"
    LLM_SUPERVISOR_LLAMA_BINARY_PATH: Explicit llama-server binary (optional)
    LLM_SUPERVISOR_MODEL_PATH: Explicit GGUF model file (optional)
    LLM_SUPERVISOR_MODEL_KEY: Registry key of the model (default: phi-3.5-mini)
    LLM_SUPERVISOR_MODELS_DIR: Directory holding downloaded models
    LLM_SUPERVISOR_KEEP_MODEL_LOADED: Disable idle unloading (default: false)
    LLM_SUPERVISOR_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR). Default: INFO
    LLM_SUPERVISOR_LOG_DIR: Log directory path (default: logs/)
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PORT = 8080
DEFAULT_IDLE_TIMEOUT_SECONDS = 15 * 60


class Settings(BaseSettings):
    """Supervisor settings.

    All settings can be configured via environment variables with the
    LLM_SUPERVISOR_ prefix. For example, LLM_SUPERVISOR_PORT=8181 moves the
    llama-server to another port.

    Logging is configured separately via LLM_SUPERVISOR_LOG_LEVEL and
    LLM_SUPERVISOR_LOG_DIR environment variables (see logging_config.py).
    """

    model_config = SettingsConfigDict(env_prefix="LLM_SUPERVISOR_", extra="ignore")

    # Provider selection - anything other than "llama" makes the supervisor unavailable
    llm_provider: str = "llama"

    # Paths (None = resolve automatically)
    llama_binary_path: str | None = None
    model_path: str | None = None
    model_key: str = "phi-3.5-mini"
    # Directory containing binaries/<platform>-<arch>/llama-server
    bundle_dir: Path | None = None
    models_dir: Path = Path.home() / ".llm-supervisor" / "models"

    # llama-server binding
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    concurrency: int = Field(default=1, ge=1, le=16)

    # User-configured request timeout floor in seconds
    llm_timeout: float = Field(default=15.0, ge=0.0)

    # Lifecycle
    keep_model_loaded: bool = False
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS
    health_check_interval: float = 30.0
    offline_mode: bool = False

    # Timing knobs
    startup_grace_seconds: float = 2.0
    stop_grace_seconds: float = 2.0
    ready_poll_interval: float = 0.1
    restart_delay_seconds: float = 2.0

    @property
    def server_url(self) -> str:
        """Base URL of the supervised llama-server."""
        return f"http://{self.host}:{self.port}"

    @property
    def effective_idle_timeout(self) -> float:
        """Idle timeout in seconds, 0 when the model must stay loaded."""
        if self.keep_model_loaded:
            return 0.0
        return self.idle_timeout_seconds


def get_settings() -> Settings:
    """Load settings from the environment."""
    return Settings()
