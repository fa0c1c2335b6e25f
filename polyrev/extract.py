"""Locate structured JSON or YAML inside free-form LLM output."""

from __future__ import annotations

import json
import re
from typing import Any

import yaml

_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
_YAML_BLOCK_RE = re.compile(r"```(?:yaml)?\s*\n([\s\S]*?)\n?```")


def _loads(text: str) -> Any | None:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def unwrap_envelope(text: str) -> str | None:
    """Return the `result` string when `text` is a CLI `{result: ...}` envelope."""
    data = _loads(text.strip())
    if isinstance(data, dict) and isinstance(data.get("result"), str):
        return data["result"]
    return None


def _brace_span(text: str) -> str | None:
    # Depth counting ignores string literals, so a stray brace inside a quoted
    # value can end the span early.
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    for i in range(start, len(text)):
        ch = text[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def extract_json(text: str, *, allow_array: bool = False) -> Any | None:
    """Find the first parseable JSON value in `text`.

    Tries, in order: the trimmed whole string, each fenced code block, then
    the span from the first `{` to its matching `}`.
    """
    trimmed = text.strip()
    if trimmed.startswith("{") or (allow_array and trimmed.startswith("[")):
        data = _loads(trimmed)
        if data is not None:
            return data

    for match in _CODE_BLOCK_RE.finditer(text):
        data = _loads(match.group(1).strip())
        if data is not None:
            return data

    span = _brace_span(text)
    if span is not None:
        return _loads(span)
    return None


def extract_json_payload(text: str, *, allow_array: bool = False) -> Any | None:
    """Like `extract_json`, looking inside a `{result: ...}` envelope first."""
    inner = unwrap_envelope(text)
    if inner is not None:
        data = extract_json(inner, allow_array=allow_array)
        if data is not None:
            return data
    return extract_json(text, allow_array=allow_array)


def _safe_yaml(text: str) -> Any | None:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return None


def extract_yaml_mapping(text: str, required_key: str) -> dict[str, Any] | None:
    """Find a YAML mapping containing `required_key`.

    Tries a fenced block, the whole text, then everything from
    `required_key:` onward.
    """
    inner = unwrap_envelope(text)
    if inner is not None:
        text = inner

    candidates: list[str] = [m.group(1) for m in _YAML_BLOCK_RE.finditer(text)]
    candidates.append(text)
    marker = text.find(f"{required_key}:")
    if marker != -1:
        candidates.append(text[marker:])

    for candidate in candidates:
        data = _safe_yaml(candidate)
        if isinstance(data, dict) and required_key in data:
            return data
    return None
