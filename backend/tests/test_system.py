"""Tests for host capability reporting."""

from unittest.mock import MagicMock, patch

import pytest

from llm_supervisor.models import MODELS
from llm_supervisor.types import SystemCapabilities
from llm_supervisor.utils.system_info import (
    check_model_compatibility,
    describe_memory_pressure,
    get_physical_memory_bytes,
    get_system_info_string,
)


def _caps(total: float, available: float = 8.0) -> SystemCapabilities:
    return SystemCapabilities(
        total_ram_gb=total, available_ram_gb=available, platform="darwin", arch="arm64"
    )


class TestPhysicalMemory:
    """Tests for get_physical_memory_bytes."""

    def test_uses_sysctl_on_macos(self):
        result = MagicMock(returncode=0, stdout="34359738368\n")
        with (
            patch("llm_supervisor.utils.system_info.platform.system", return_value="Darwin"),
            patch("llm_supervisor.utils.system_info.subprocess.run", return_value=result),
        ):
            assert get_physical_memory_bytes() == 34359738368

    def test_falls_back_to_psutil(self):
        memory = MagicMock(total=16 * 1024**3)
        with (
            patch("llm_supervisor.utils.system_info.platform.system", return_value="Linux"),
            patch(
                "llm_supervisor.utils.system_info.psutil.virtual_memory", return_value=memory
            ),
        ):
            assert get_physical_memory_bytes() == 16 * 1024**3

    def test_sysctl_failure_falls_back(self):
        memory = MagicMock(total=8 * 1024**3)
        with (
            patch("llm_supervisor.utils.system_info.platform.system", return_value="Darwin"),
            patch(
                "llm_supervisor.utils.system_info.subprocess.run",
                side_effect=OSError("no sysctl"),
            ),
            patch(
                "llm_supervisor.utils.system_info.psutil.virtual_memory", return_value=memory
            ),
        ):
            assert get_physical_memory_bytes() == 8 * 1024**3


class TestCheckModelCompatibility:
    """Tests for check_model_compatibility."""

    def test_fits_comfortably(self):
        report = check_model_compatibility(MODELS["phi-3.5-mini"], _caps(32))
        assert report["is_compatible"] is True
        assert "warning" not in report

    def test_tight_fit_warns(self):
        # 10GB needed, 80% of 12GB is 9.6GB
        report = check_model_compatibility(MODELS["qwen-2.5-7b"], _caps(12))
        assert report["is_compatible"] is True
        assert "may struggle" in report["warning"]

    def test_too_large(self):
        report = check_model_compatibility(MODELS["llama-3.3-70b"], _caps(32))
        assert report["is_compatible"] is False
        assert "Phi-3.5 Mini" in report["recommendation"]


class TestDiagnostics:
    """Tests for the human-readable summaries."""

    def test_system_info_string(self):
        assert get_system_info_string(_caps(32, 12.5)) == (
            "System: darwin arm64, 32.0GB total RAM, 12.5GB available"
        )

    @pytest.mark.parametrize(
        ("key", "suggests_smaller"),
        [("llama-3.3-70b", True), ("phi-3.5-mini", False)],
    )
    def test_memory_pressure(self, key, suggests_smaller):
        with patch(
            "llm_supervisor.utils.system_info.get_system_capabilities", return_value=_caps(16)
        ):
            message = describe_memory_pressure(MODELS[key])

        assert MODELS[key].ram_requirement in message
        assert "16.0GB total RAM" in message
        assert ("Try a smaller model" in message) is suggests_smaller
