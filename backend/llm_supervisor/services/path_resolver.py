"""Resolution of the llama-server binary and the GGUF model file."""

from __future__ import annotations

import os
import platform
import re
import shutil
from pathlib import Path

from loguru import logger

from llm_supervisor.config import Settings
from llm_supervisor.errors import ConfigurationError
from llm_supervisor.models import ModelConfig

MODEL_EXTENSIONS = (".gguf",)
PATH_BINARY_NAMES = ("llama-server", "server")

INSTALL_HINT = (
    "Installation options:\n"
    "  - Homebrew: brew install llama.cpp\n"
    "  - Build from source: https://github.com/ggerganov/llama.cpp\n"
    "  - Or set LLM_SUPERVISOR_LLAMA_BINARY_PATH to an existing llama-server binary"
)


def platform_key() -> str:
    """Bundle directory name for this host, e.g. 'darwin-arm64'."""
    machine = platform.machine().lower()
    arch = {"x86_64": "x64", "amd64": "x64", "aarch64": "arm64"}.get(machine, machine)
    return f"{platform.system().lower()}-{arch}"


def binary_name() -> str:
    return "llama-server.exe" if platform.system() == "Windows" else "llama-server"


def _normalize_name(name: str) -> str:
    """Lowercase and strip every non-alphanumeric character."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class PathResolver:
    """Finds the binary and model the supervisor should launch."""

    def __init__(self, settings: Settings, model: ModelConfig) -> None:
        self.settings = settings
        self.model = model

    def find_binary(self) -> Path | None:
        """Resolve the binary: explicit setting, bundled binary, then PATH."""
        if self.settings.llama_binary_path:
            return Path(self.settings.llama_binary_path).expanduser()

        bundled = self._bundled_binary()
        if bundled is not None:
            return bundled

        for name in PATH_BINARY_NAMES:
            found = shutil.which(name)
            if found and _is_executable(Path(found)):
                logger.warning(
                    f"Using fallback binary from PATH: {found} (bundled binary not found)"
                )
                return Path(found)
        return None

    def _bundled_binary(self) -> Path | None:
        if self.settings.bundle_dir is None:
            return None

        path = self.settings.bundle_dir / "binaries" / platform_key() / binary_name()
        if not path.is_file():
            logger.debug(f"Bundled binary not found at {path}")
            return None

        if not os.access(path, os.X_OK):
            try:
                path.chmod(0o755)
                logger.debug(f"Made bundled binary executable: {path}")
            except OSError as e:
                logger.warning(f"Bundled binary exists but cannot be made executable: {path} ({e})")
        return path

    def find_model(self) -> Path | None:
        """Resolve the model: explicit setting, default location, then fuzzy match."""
        if self.settings.model_path:
            explicit = Path(self.settings.model_path).expanduser()
            if explicit.is_file() and explicit.suffix.lower() in MODEL_EXTENSIONS:
                return explicit
            logger.warning(f"Configured model path is not a usable GGUF file: {explicit}")

        default = self.settings.models_dir / self.model.file_name
        if default.is_file():
            logger.debug(f"Using model at default location: {default}")
            return default

        return self._fuzzy_match()

    def _fuzzy_match(self) -> Path | None:
        models_dir = self.settings.models_dir
        if not models_dir.is_dir():
            return None

        candidates = sorted(
            p for p in models_dir.iterdir() if p.is_file() and p.suffix.lower() in MODEL_EXTENSIONS
        )
        if not candidates:
            return None

        wanted = _normalize_name(Path(self.model.file_name).stem)
        for candidate in candidates:
            stem = _normalize_name(candidate.stem)
            if wanted in stem or stem in wanted:
                logger.debug(f"Fuzzy-matched model file: {candidate}")
                return candidate

        logger.debug(f"Using first GGUF model in {models_dir}: {candidates[0]}")
        return candidates[0]

    def resolve_binary(self) -> Path:
        """Resolve and validate the binary or raise ConfigurationError."""
        path = self.find_binary()
        if path is None:
            raise ConfigurationError(f"llama-server binary not found.\n{INSTALL_HINT}")
        if not path.is_file():
            raise ConfigurationError(f"llama-server binary does not exist: {path}\n{INSTALL_HINT}")
        if not os.access(path, os.X_OK):
            raise ConfigurationError(
                f"llama-server binary is not executable: {path}. Run: chmod +x {path}"
            )
        return path

    def resolve_model(self) -> Path:
        """Resolve and validate the model file or raise ConfigurationError."""
        path = self.find_model()
        if path is None:
            configured = self.settings.model_path or str(
                self.settings.models_dir / self.model.file_name
            )
            raise ConfigurationError(
                f"Model file not found: {configured}. Download '{self.model.name}' "
                f"or set LLM_SUPERVISOR_MODEL_PATH to a .gguf file."
            )
        if not os.access(path, os.R_OK):
            raise ConfigurationError(f"Model file is not readable: {path}")
        return path

    def describe_missing(self) -> str:
        """Explain which of binary/model cannot be found."""
        binary = self.find_binary()
        model = self.find_model()
        message = "Llama binary or model path not found. "
        if binary is None and model is None:
            return message + (
                "Please configure paths in settings or install llama-server "
                "and download the model."
            )
        if binary is None:
            return message + (
                f"Please configure the llama binary path or install llama-server.\n{INSTALL_HINT}"
            )
        return message + "Please configure the model path in settings or download the model."
