"""Heuristic token estimation and lossy payload summaries for the history log.

Both strategies are approximate and sit behind small protocols, so callers
(and tests) can swap in deterministic stand-ins.
"""

from __future__ import annotations

import json
import math
from typing import Any, Protocol

# Compaction thresholds (characters)
MAX_RESULT_CHARS = 500
MAX_FIELD_CHARS = 200
MAX_CODE_CHARS = 200

# 1 token ~= 4 characters of serialized JSON
CHARS_PER_TOKEN = 4


class TokenEstimator(Protocol):
    def estimate(self, value: Any) -> int: ...


class Summarizer(Protocol):
    def summarize(self, text: str) -> str: ...


def _serialize(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


class CharRatioEstimator:
    """Estimate tokens as serialized length divided by a fixed ratio."""

    def __init__(self, chars_per_token: int = CHARS_PER_TOKEN):
        self.chars_per_token = chars_per_token

    def estimate(self, value: Any) -> int:
        return math.ceil(len(_serialize(value)) / self.chars_per_token)


class HeuristicSummarizer:
    """Classify text as error, console output, JSON or generic and describe it."""

    def summarize(self, text: str) -> str:
        if "Error:" in text or "error" in text:
            return f"Error message about {text[:50]}..."

        if "console.log" in text or "print" in text:
            return f"Code execution output with {len(text.splitlines())} lines"

        if "{" in text and "}" in text:
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                return f"JSON data structure with {len(parsed)} fields"
            if isinstance(parsed, list):
                return f"JSON array with {len(parsed)} items"

        return f"Text content ({len(text)} chars): {text[:100]}..."


def compact_value(
    value: Any,
    summarizer: Summarizer,
    max_chars: int = MAX_RESULT_CHARS,
    max_field_chars: int = MAX_FIELD_CHARS,
) -> Any:
    """Replace oversized strings with summaries.

    A top-level string is summarized past ``max_chars``; strings nested in
    objects or arrays are summarized past ``max_field_chars``.
    """
    if isinstance(value, str):
        return summarizer.summarize(value) if len(value) > max_chars else value
    if isinstance(value, dict):
        return {
            key: compact_value(item, summarizer, max_field_chars, max_field_chars)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [compact_value(item, summarizer, max_field_chars, max_field_chars) for item in value]
    return value


def detect_language(code: str) -> str:
    """Best-effort language label for a code snippet."""
    if "def " in code or "import " in code:
        return "Python"
    if "function " in code or "const " in code:
        return "JavaScript"
    if "package main" in code:
        return "Go"
    if "fn main()" in code:
        return "Rust"
    if "#include" in code:
        return "C/C++"
    if "#!/bin/bash" in code:
        return "Bash"
    return "Unknown"


def compact_code(code: str, max_chars: int = MAX_CODE_CHARS) -> str:
    """Summarize long code as ``<Language> code (<n> lines): <head>...``."""
    if len(code) <= max_chars:
        return code
    lines = len(code.split("\n"))
    return f"{detect_language(code)} code ({lines} lines): {code[:100]}..."


def extract_text(result: Any) -> str:
    """Pull the text of the first text content block out of a tool result."""
    if isinstance(result, dict):
        content = result.get("content")
        if isinstance(content, list) and content:
            first = content[0]
            if isinstance(first, dict) and first.get("type") == "text":
                return str(first.get("text", ""))
    if isinstance(result, str):
        return result
    return _serialize(result)
