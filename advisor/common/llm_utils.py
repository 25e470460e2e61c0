"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import re

from .errors import InvalidArgumentsError

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


def parse_llm_json(raw: str) -> dict:
    """Parse JSON from an LLM response, handling code fences and preamble text.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Direct json.loads on the raw string
    3. Extract substring between first '{' and last '}', then json.loads
    4. Return empty dict
    """
    if not raw:
        return {}

    text = raw
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        text = "\n".join(lines)

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            return json.loads(raw[start:end])
        except json.JSONDecodeError:
            pass

    return {}


def strip_think_tags(text: str) -> str:
    """Remove <think>...</think> reasoning blocks some models emit."""
    if not text:
        return ""
    return _THINK_RE.sub("", text).strip()


def parse_tool_arguments(raw) -> dict:
    """Decode tool-call arguments into a dict.

    Unlike parse_llm_json this is strict: a tool call whose arguments are not
    a JSON object is rejected rather than guessed at.
    """
    if isinstance(raw, dict):
        return raw
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return {}
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise InvalidArgumentsError(f"Invalid tool arguments: {e}") from e
    if not isinstance(data, dict):
        raise InvalidArgumentsError("Invalid tool arguments: expected a JSON object")
    return data
