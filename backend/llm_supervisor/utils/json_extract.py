"""Extract and repair JSON from model output.

Model output is often wrapped in prose or code fences, and generation stops
at the first "}" (the classification prompt already opened the object), so
the JSON is usually truncated. This module finds the JSON portion and closes
whatever the model left open.
"""

from __future__ import annotations

import json
import re

CODE_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
TRAILING_COMMA_PATTERN = re.compile(r",\s*([}\]])")
DANGLING_KEY_PATTERN = re.compile(r'(?<=[{,])\s*"[^"]*"\s*:?\s*$')


class JSONExtractionError(ValueError):
    """No JSON could be recovered from the text."""


def extract_and_repair_json(text: str) -> str:
    """Return a parseable JSON string recovered from model output.

    Args:
        text: Raw model output

    Returns:
        JSON text accepted by json.loads

    Raises:
        JSONExtractionError: If nothing resembling JSON can be repaired
    """
    candidate = _strip_code_fence(text).strip()
    if not candidate:
        raise JSONExtractionError("Empty model output")

    # The classification prompt ends with "{", so the completion starts inside the object
    if candidate.startswith('"') and ":" in candidate:
        candidate = "{" + candidate

    start = _find_start(candidate)
    if start is None:
        raise JSONExtractionError("No JSON object found in model output")

    candidate = _balanced_slice(candidate[start:])
    repaired = repair_json(candidate)

    try:
        json.loads(repaired)
    except json.JSONDecodeError as e:
        raise JSONExtractionError(f"Invalid JSON after repair: {e.msg} at position {e.pos}") from e
    return repaired


def repair_json(text: str) -> str:
    """Close unterminated strings, arrays and objects; drop trailing commas."""
    repaired = TRAILING_COMMA_PATTERN.sub(r"\1", text.strip())

    stack: list[str] = []
    in_string = False
    escape_next = False

    for char in repaired:
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()

    if in_string:
        repaired += '"'

    repaired = repaired.rstrip()
    if stack and stack[-1] == "}":
        # A dangling key cannot be completed meaningfully
        repaired = DANGLING_KEY_PATTERN.sub("", repaired)
    repaired = repaired.rstrip().rstrip(",").rstrip()

    return repaired + "".join(reversed(stack))


def _strip_code_fence(text: str) -> str:
    match = CODE_FENCE_PATTERN.search(text)
    return match.group(1) if match else text


def _find_start(text: str) -> int | None:
    positions = [pos for pos in (text.find("{"), text.find("[")) if pos != -1]
    return min(positions) if positions else None


def _balanced_slice(text: str) -> str:
    """Cut the text after its first balanced JSON value, if it has one."""
    open_char = text[0]
    close_char = "}" if open_char == "{" else "]"
    depth = 0
    in_string = False
    escape_next = False

    for i, char in enumerate(text):
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return text[: i + 1]

    return text
