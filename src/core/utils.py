"""
Small shared utilities.
"""
from __future__ import annotations

import json
from typing import Any


_CLOSERS = {"{": "}", "[": "]"}


def find_json_span(text: str) -> str | None:
    """Return the first balanced ``{...}`` or ``[...]`` span in *text*.

    Brackets inside JSON string literals are ignored.  Returns None when no
    balanced span exists.
    """
    start = None
    for i, ch in enumerate(text):
        if ch in _CLOSERS:
            start = i
            break
    if start is None:
        return None

    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]"):
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return text[start:i + 1]
    return None


def extract_json(text: str) -> Any:
    """Parse the first embedded JSON object/array out of free text.

    Raises
    ------
    ValueError
        When no balanced span is found or it is not valid JSON.
    """
    span = find_json_span(text or "")
    if span is None:
        raise ValueError("No JSON object or array found in text")
    try:
        return json.loads(span)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Embedded JSON is invalid: {exc}") from exc
