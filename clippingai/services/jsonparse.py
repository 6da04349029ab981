"""
Extraction of JSON objects from free-form model output.

Completion responses often wrap the JSON we asked for in prose or markdown
fences. Every stage that parses a completion goes through
``extract_json_object`` so they all fail the same way.
"""
from __future__ import annotations

import json
from typing import Any, Dict, Iterator


class JSONExtractionError(ValueError):
    """Raised when no decodable JSON object can be found in a response."""


def _balanced_spans(text: str) -> Iterator[tuple[int, int]]:
    """
    Yield (start, end) spans of balanced top-level ``{...}`` blocks.

    Braces inside JSON string literals are ignored, including escaped quotes.
    """
    depth = 0
    start = -1
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield start, i + 1


def extract_json_object(text: str | None) -> Dict[str, Any]:
    """
    Return the first balanced JSON object in ``text`` that decodes to a dict.

    Raises:
        JSONExtractionError: when the text holds no such object.
    """
    if not text or not text.strip():
        raise JSONExtractionError("Empty response")

    for start, end in _balanced_spans(text):
        candidate = text[start:end]
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    # A stray unmatched brace in the prose can swallow the real object; retry
    # decoding from every opening brace.
    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            parsed, _ = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
        idx = text.find("{", idx + 1)

    raise JSONExtractionError(f"No JSON object found in response: {text[:200]!r}")
