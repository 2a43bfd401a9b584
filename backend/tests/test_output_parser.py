"""Tests for llama-server output classification."""

import pytest

from llm_supervisor.services.output_parser import (
    OutputEvent,
    OutputRingBuffer,
    classify_line,
    is_error_line,
    is_memory_error,
)


class TestClassifyLine:
    """Tests for classify_line."""

    @pytest.mark.parametrize(
        "line",
        [
            "llama_model_load: model loaded",
            "srv  update_slots: all slots are idle",
            "main: server is listening on http://127.0.0.1:8080 - starting the main loop",
        ],
    )
    def test_model_loaded_markers(self, line):
        assert classify_line(line) is OutputEvent.MODEL_LOADED

    @pytest.mark.parametrize(
        "line",
        [
            "main: HTTP server listening on 127.0.0.1:8080",
            "server is listening on 127.0.0.1:8080",
            "Listening on http://127.0.0.1:8080",
        ],
    )
    def test_listening_markers(self, line):
        assert classify_line(line) is OutputEvent.LISTENING

    def test_error_line(self):
        assert classify_line("llama_model_load: error loading model") is OutputEvent.ERROR

    def test_info_line(self):
        assert classify_line("llm_load_tensors: offloading 32 layers") is OutputEvent.INFO


class TestIsErrorLine:
    """Tests for is_error_line."""

    @pytest.mark.parametrize(
        "line",
        [
            "ggml_metal_init: error: failed to compile kernel, falling back",
            "system info: n_threads = 8 | failed checks: none",
            "llama_model_loader: - kv 0: general.error_rate f32",
            "print_info: file error handling = default",
            "load: special tokens cache size failed = 0",
            "main: build failed to detect remote features",
            "build: 4000 (error-free) with clang",
            "llama_context: n_ctx fatal? no",
        ],
    )
    def test_benign_lines(self, line):
        assert is_error_line(line) is False

    def test_requires_keyword(self):
        assert is_error_line("everything is fine") is False

    def test_memory_errors_override_benign_context(self):
        line = "ggml_backend_cuda_buffer_type_alloc_buffer: failed to allocate 4096 MiB"
        assert is_error_line(line) is True


class TestIsMemoryError:
    """Tests for is_memory_error."""

    @pytest.mark.parametrize(
        "text",
        [
            "CUDA error: out of memory",
            "Metal OOM while loading",
            "try to reduce --n-gpu-layers",
            "failed to allocate buffer",
            "unable to allocate 1024 MB",
            "insufficient memory for the KV cache",
            "cudaMalloc failed: out of memory",
            "vk::Device::allocateMemory: ErrorOutOfMemory",
        ],
    )
    def test_detects_memory_exhaustion(self, text):
        assert is_memory_error(text) is True

    def test_room_is_not_oom(self):
        assert is_memory_error("error: no room in context") is False


class TestOutputRingBuffer:
    """Tests for OutputRingBuffer."""

    def test_drops_oldest(self):
        buffer = OutputRingBuffer(max_lines=3)
        for i in range(5):
            buffer.append("stderr", f"line {i}")

        assert len(buffer) == 3
        assert [line.text for line in buffer.lines()] == ["line 2", "line 3", "line 4"]

    def test_ignores_blank_lines(self):
        buffer = OutputRingBuffer()
        buffer.append("stdout", "   ")
        assert len(buffer) == 0

    def test_tail_formats_stream(self):
        buffer = OutputRingBuffer()
        buffer.append("stdout", "hello")
        buffer.append("stderr", "oops")
        assert buffer.tail(1) == ["[stderr] oops"]
        assert buffer.tail(0) == []

    def test_clear(self):
        buffer = OutputRingBuffer(max_lines=10)
        buffer.append("stdout", "x")
        buffer.clear()
        assert len(buffer) == 0
        assert buffer.max_lines == 10
