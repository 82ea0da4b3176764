"""Pull a JSON object out of free-form agent output.

Agent output is untrusted text. Strategies run in order and the first one
that yields an object carrying the required keys wins:

1. the whole payload is an object;
2. a fenced code block (```json or bare ```);
3. the longest balanced-brace substring mentioning a required key.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

FENCED_BLOCK = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\n?(.*?)```", re.DOTALL)


@dataclass(slots=True)
class ParsedPayload:
    data: dict[str, Any]
    strategy: str


@dataclass(slots=True)
class ExtractionError:
    reason: str
    strategies_tried: list[str] = field(default_factory=list)


Extraction = ParsedPayload | ExtractionError


def _balanced_objects(text: str) -> list[str]:
    """Every ``{...}`` span whose braces balance, ignoring braces inside strings."""
    spans: list[str] = []
    for start, char in enumerate(text):
        if char != "{":
            continue
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            current = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif current == "\\":
                    escaped = True
                elif current == '"':
                    in_string = False
                continue
            if current == '"':
                in_string = True
            elif current == "{":
                depth += 1
            elif current == "}":
                depth -= 1
                if depth == 0:
                    spans.append(text[start : index + 1])
                    break
    return spans


def _candidates(text: str, required_fields: tuple[str, ...]) -> Iterator[tuple[str, str]]:
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        yield "whole_payload", stripped

    for match in FENCED_BLOCK.finditer(text):
        block = match.group(1).strip()
        if block:
            yield "fenced_block", block

    spans = _balanced_objects(text)
    if required_fields:
        markers = [f'"{name}"' for name in required_fields]
        spans = [span for span in spans if any(marker in span for marker in markers)]
    for span in sorted(spans, key=len, reverse=True):
        yield "balanced_braces", span


def _parse_object(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_json(text: str | None, required_fields: Iterable[str] = ("epics",)) -> Extraction:
    required = tuple(required_fields)
    if not text or not text.strip():
        return ExtractionError("Agent output was empty.")

    tried: list[str] = []
    for strategy, raw in _candidates(text, required):
        if strategy not in tried:
            tried.append(strategy)
        data = _parse_object(raw)
        if data is None:
            continue
        if all(name in data for name in required):
            return ParsedPayload(data=data, strategy=strategy)

    expected = ", ".join(required) if required else "any object"
    return ExtractionError(
        f"No JSON object with required fields ({expected}) could be extracted.",
        strategies_tried=tried,
    )


def find_field(data: Any, name: str) -> Any | None:
    """Depth-first search for ``name`` at any nesting level."""
    if isinstance(data, dict):
        if name in data:
            return data[name]
        for value in data.values():
            found = find_field(value, name)
            if found is not None:
                return found
    elif isinstance(data, list):
        for item in data:
            found = find_field(item, name)
            if found is not None:
                return found
    return None


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return len(value) > 0
    return True


def lenient_extract(text: str | None, required_fields: Iterable[str]) -> ParsedPayload | None:
    """Accept any extracted object whose required fields appear, non-empty, at any depth.

    Matched fields are lifted to the top level of the returned data.
    """
    required = tuple(required_fields)
    if not text or not text.strip():
        return None
    for strategy, raw in _candidates(text, ()):
        data = _parse_object(raw)
        if data is None:
            continue
        values = {name: find_field(data, name) for name in required}
        if all(_present(value) for value in values.values()):
            lifted = dict(data)
            lifted.update(values)
            return ParsedPayload(data=lifted, strategy=f"lenient_{strategy}")
    return None


def salvage_objects(text: str | None) -> list[dict[str, Any]]:
    """Whatever JSON objects can be parsed from ``text``, largest first."""
    if not text:
        return []
    salvaged: list[dict[str, Any]] = []
    for _, raw in _candidates(text, ()):
        data = _parse_object(raw)
        if data is not None and data not in salvaged:
            salvaged.append(data)
    return salvaged
