"""Classification of llama-server output lines.

llama.cpp writes nearly everything, including informational chatter, to
stderr. Readiness and errors are therefore detected from an ordered marker
table rather than from the stream a line arrived on.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass
from enum import StrEnum


class OutputEvent(StrEnum):
    """What a single output line tells us about the server."""

    MODEL_LOADED = "model_loaded"
    LISTENING = "listening"
    ERROR = "error"
    INFO = "info"


# Ordered: the first matching marker wins. "main: server is listening on ... -
# starting the main loop" is printed once the model is loaded, so the
# model-loaded markers are checked before the listening ones.
READINESS_MARKERS: tuple[tuple[str, OutputEvent], ...] = (
    ("model loaded", OutputEvent.MODEL_LOADED),
    ("all slots are idle", OutputEvent.MODEL_LOADED),
    ("starting the main loop", OutputEvent.MODEL_LOADED),
    ("http server listening", OutputEvent.LISTENING),
    ("server is listening", OutputEvent.LISTENING),
    ("listening on http", OutputEvent.LISTENING),
)

ERROR_KEYWORDS: tuple[str, ...] = ("error", "failed", "fatal")

# Driver/backend initialisation chatter that contains error keywords
BENIGN_SUBSTRINGS: tuple[str, ...] = (
    "ggml_metal",
    "ggml_cuda",
    "ggml_vulkan",
    "ggml_backend",
    "system info",
    "llama_model_loader",
    "print_info",
    "llama_context",
)

# Log prefixes of informational sections (not "llama_model_load: error ...")
BENIGN_PREFIXES: tuple[str, ...] = ("load:", "main:", "build:")

MEMORY_ERROR_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"out of memory", re.IGNORECASE),
    re.compile(r"\boom\b", re.IGNORECASE),
    re.compile(r"reduce\s+(--)?n?-?gpu-layers", re.IGNORECASE),
    re.compile(r"failed to allocate", re.IGNORECASE),
    re.compile(r"unable to allocate", re.IGNORECASE),
    re.compile(r"buffer.*(alloc|fail)", re.IGNORECASE),
    re.compile(r"insufficient memory", re.IGNORECASE),
    re.compile(r"cudaMalloc failed", re.IGNORECASE),
    re.compile(r"ErrorOutOfMemory", re.IGNORECASE),
)


def classify_line(line: str) -> OutputEvent:
    """Map one output line to an event."""
    lowered = line.lower()
    for marker, event in READINESS_MARKERS:
        if marker in lowered:
            return event
    if is_error_line(line):
        return OutputEvent.ERROR
    return OutputEvent.INFO


def is_error_line(line: str) -> bool:
    """True for genuine error lines, ignoring known-benign chatter."""
    lowered = line.lower()
    if not any(keyword in lowered for keyword in ERROR_KEYWORDS):
        return False
    # Allocation failures are reported from backend init code paths too
    if is_memory_error(line):
        return True
    if lowered.lstrip().startswith(BENIGN_PREFIXES):
        return False
    return not any(benign in lowered for benign in BENIGN_SUBSTRINGS)


def is_memory_error(text: str) -> bool:
    """True when the text suggests RAM/VRAM exhaustion."""
    return any(pattern.search(text) for pattern in MEMORY_ERROR_PATTERNS)


@dataclass(frozen=True, slots=True)
class OutputLine:
    stream: str  # "stdout" or "stderr"
    text: str


class OutputRingBuffer:
    """Bounded buffer of recent output lines, oldest dropped first."""

    def __init__(self, max_lines: int = 1000) -> None:
        self._lines: deque[OutputLine] = deque(maxlen=max_lines)

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def max_lines(self) -> int:
        return self._lines.maxlen or 0

    def append(self, stream: str, text: str) -> None:
        if text.strip():
            self._lines.append(OutputLine(stream, text))

    def lines(self) -> list[OutputLine]:
        return list(self._lines)

    def tail(self, count: int = 20) -> list[str]:
        """Last `count` lines formatted for diagnostics."""
        if count <= 0:
            return []
        return [f"[{line.stream}] {line.text}" for line in list(self._lines)[-count:]]

    def clear(self) -> None:
        self._lines.clear()
