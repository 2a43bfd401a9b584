"""Prompt templates and response normalization for classification."""

from __future__ import annotations

import json
from typing import Any

from loguru import logger

from llm_supervisor.models import ClassificationResult
from llm_supervisor.utils.json_extract import JSONExtractionError, extract_and_repair_json

VALID_CATEGORIES = (
    "game",
    "saas",
    "tool",
    "story",
    "mechanic",
    "hardware",
    "ip",
    "brand",
    "ux",
    "personal",
)

MAX_TAGS = 5
PARSED_CONFIDENCE = 0.8

CLASSIFICATION_TEMPLATE = """Classify this idea into one category and suggest 2-4 relevant tags.

Idea: "{text}"

Categories: {categories}

Rules:
- Choose the single best category
- Tags should be specific and relevant (2-4 tags)
- Use lowercase for category and tags

Example response:
{{
  "category": "game",
  "tags": ["rpg", "fantasy", "multiplayer"]
}}

Response:
{{"""


def construct_prompt(text: str) -> str:
    """Build the classification prompt.

    The prompt ends with an opening brace so the model continues inside the
    JSON object; generation stops at the closing brace.
    """
    return CLASSIFICATION_TEMPLATE.format(text=text, categories=", ".join(VALID_CATEGORIES))


def validate_category(category: Any) -> str:
    """Normalize a category, returning "" when it is not one we know."""
    if not isinstance(category, str):
        return ""
    normalized = category.lower().strip()
    return normalized if normalized in VALID_CATEGORIES else ""


def parse_classification(content: str) -> ClassificationResult:
    """Turn raw model output into a ClassificationResult.

    Any failure yields ClassificationResult.empty() rather than an error.
    """
    try:
        parsed = json.loads(extract_and_repair_json(content))
    except (JSONExtractionError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to parse classification output {content!r}: {e}")
        return ClassificationResult.empty()

    if not isinstance(parsed, dict):
        logger.warning(f"Classification output is not an object: {content!r}")
        return ClassificationResult.empty()

    tags = parsed.get("tags")
    return ClassificationResult(
        category=validate_category(parsed.get("category")),
        tags=[str(tag) for tag in tags[:MAX_TAGS]] if isinstance(tags, list) else [],
        confidence=PARSED_CONFIDENCE,
    )
