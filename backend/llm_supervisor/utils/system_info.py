"""Host capability reporting."""

import platform
import subprocess

import psutil
from loguru import logger

from llm_supervisor.models import ModelConfig, smallest_model
from llm_supervisor.types import CompatibilityReport, SystemCapabilities

BYTES_PER_GIB = 1024**3


def get_physical_memory_bytes() -> int:
    """Get accurate physical memory in bytes.

    On macOS, psutil.virtual_memory().total can return inflated values
    due to including compressed memory or swap, so sysctl is preferred there.
    """
    if platform.system() == "Darwin":
        try:
            result = subprocess.run(
                ["sysctl", "-n", "hw.memsize"],
                capture_output=True,
                text=True,
            )
            if result.returncode == 0:
                return int(result.stdout.strip())
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            logger.debug(f"sysctl failed, falling back to psutil: {e}")
    return psutil.virtual_memory().total


def get_system_capabilities() -> SystemCapabilities:
    """Total/available RAM and platform of the host."""
    return SystemCapabilities(
        total_ram_gb=get_physical_memory_bytes() / BYTES_PER_GIB,
        available_ram_gb=psutil.virtual_memory().available / BYTES_PER_GIB,
        platform=platform.system().lower(),
        arch=platform.machine().lower(),
    )


def check_model_compatibility(
    model: ModelConfig,
    capabilities: SystemCapabilities | None = None,
) -> CompatibilityReport:
    """Check whether the host has enough RAM for a model.

    A model needing more than the total RAM is incompatible; one needing more
    than 80% of it is compatible but flagged with a warning.
    """
    caps = capabilities or get_system_capabilities()
    required = model.ram_requirement_gb
    total = caps["total_ram_gb"]

    if required > total:
        fallback = smallest_model()
        return CompatibilityReport(
            is_compatible=False,
            ram_available=caps["available_ram_gb"],
            warning=(
                f"This model requires {model.ram_requirement} RAM, but your system has "
                f"{total:.1f}GB total RAM. The model may fail to load."
            ),
            recommendation=(
                f'Consider using a smaller model like "{fallback.name}" '
                f"(requires {fallback.ram_requirement} RAM) instead."
            ),
        )

    if required > total * 0.8:
        return CompatibilityReport(
            is_compatible=True,
            ram_available=caps["available_ram_gb"],
            warning=(
                f"This model requires {model.ram_requirement} RAM. Your system has "
                f"{total:.1f}GB total RAM. The model may struggle or fail to load if "
                f"other applications are using memory."
            ),
            recommendation=(
                f"Ensure you have at least {required}GB free RAM before loading this model."
            ),
        )

    return CompatibilityReport(is_compatible=True, ram_available=caps["available_ram_gb"])


def get_system_info_string(capabilities: SystemCapabilities | None = None) -> str:
    """One-line summary such as 'System: darwin arm64, 32.0GB total RAM'."""
    caps = capabilities or get_system_capabilities()
    return (
        f"System: {caps['platform']} {caps['arch']}, "
        f"{caps['total_ram_gb']:.1f}GB total RAM, {caps['available_ram_gb']:.1f}GB available"
    )


def describe_memory_pressure(model: ModelConfig) -> str:
    """Diagnostic appended to errors that look like RAM/VRAM exhaustion."""
    fallback = smallest_model()
    parts = [
        f"The model '{model.name}' requires {model.ram_requirement} RAM.",
        get_system_info_string() + ".",
    ]
    if fallback.key != model.key:
        parts.append(
            f'Try a smaller model such as "{fallback.name}" ({fallback.ram_requirement}) '
            f"or close other applications."
        )
    else:
        parts.append("Close other applications to free memory.")
    return " ".join(parts)
