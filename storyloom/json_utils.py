"""Helpers for pulling a JSON value out of free-form model output."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_OBJECT_SPAN = re.compile(r"\{[\s\S]*\}")
_ARRAY_SPAN = re.compile(r"\[[\s\S]*\]")


def _loads(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def extract_json(text: Optional[str]) -> Optional[Any]:
    """Extract a JSON object or array from ``text``.

    Tries, in order: the whole text, each fenced code block, the widest
    ``{...}`` span, and the widest ``[...]`` span. Returns ``None`` when no
    candidate parses.

    >>> extract_json('Here you go:\\n```json\\n{"patches": []}\\n```')
    {'patches': []}
    """
    if not text or not text.strip():
        return None

    value = _loads(text.strip())
    if value is not None:
        return value

    for match in _FENCED_BLOCK.finditer(text):
        value = _loads(match.group(1).strip())
        if value is not None:
            return value

    for pattern in (_OBJECT_SPAN, _ARRAY_SPAN):
        match = pattern.search(text)
        if match:
            value = _loads(match.group(0))
            if value is not None:
                return value

    return None
