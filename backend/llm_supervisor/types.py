"""Type definitions for the llama-server supervisor."""

from typing import TypedDict


class SystemCapabilities(TypedDict):
    """RAM and platform of the host."""

    total_ram_gb: float
    available_ram_gb: float
    platform: str
    arch: str


class CompatibilityReport(TypedDict, total=False):
    """Whether a model fits the host's memory."""

    is_compatible: bool
    ram_available: float
    warning: str
    recommendation: str


class DownloadStatus(TypedDict, total=False):
    """Status update for model download."""

    status: str  # "starting", "downloading", "completed", "cancelled", "failed"
    model_key: str
    total_bytes: int
    downloaded_bytes: int
    local_path: str
    progress: int  # 0-100
    error: str
