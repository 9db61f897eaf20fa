"""Detection of over-specified and technical content in user-facing text.

User-facing sections should describe what a person observes, not how the
system is built. These patterns flag exact colours, pixel measurements, font
specifications and implementation vocabulary.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List

EXACT_COLOR_PATTERN = re.compile(
    r"#[\da-fA-F]{3,8}\b|rgba?\s*\([^)]+\)|hsla?\s*\([^)]+\)"
)
PIXEL_MEASUREMENT_PATTERN = re.compile(r"\b\d+px\b|\b\d+rem\b|\b\d+em\b")
FONT_SPEC_PATTERN = re.compile(
    r"\bfont-family\s*:\s*[\"']?(?:Helvetica|Arial|Inter)[\"']?"
    r"|(?:Helvetica|Arial|Inter)\s+\d+px"
    r"|\d+px\s+(?:Helvetica|Arial|Inter)"
    r"|font-weight\s*:\s*\d+"
    r"|font-size\s*:\s*\d+px",
    re.IGNORECASE,
)

TECHNICAL_TERMS = (
    "api",
    "endpoint",
    "cache",
    "database",
    "schema",
    "payload",
    "component",
    "redux",
    "webhook",
    "json",
    "http",
    "latency",
    "debounce",
    "telemetry",
    "callback",
    "mutation",
)
TECHNICAL_TERM_PATTERN = re.compile(
    r"\b(?:" + "|".join(TECHNICAL_TERMS) + r")s?\b", re.IGNORECASE
)

# Stable identifiers minted for system entities never belong in user-facing text.
SYSTEM_ID_PATTERN = re.compile(r"\b(?:COMP|C-STATE|E|DF)-[A-Z0-9][A-Z0-9-]*(?:_\d+)?\b")


@dataclass(frozen=True, slots=True)
class OverspecCounts:
    exact_color: int = 0
    pixel_measurement: int = 0
    font_spec: int = 0

    @property
    def total(self) -> int:
        return self.exact_color + self.pixel_measurement + self.font_spec

    def to_dict(self) -> Dict[str, int]:
        return {
            "exactColor": self.exact_color,
            "pixelMeasurement": self.pixel_measurement,
            "fontSpec": self.font_spec,
            "total": self.total,
        }


def count_overspecification(text: str) -> OverspecCounts:
    return OverspecCounts(
        exact_color=len(EXACT_COLOR_PATTERN.findall(text)),
        pixel_measurement=len(PIXEL_MEASUREMENT_PATTERN.findall(text)),
        font_spec=len(FONT_SPEC_PATTERN.findall(text)),
    )


def has_overspecification(text: str) -> bool:
    return bool(
        EXACT_COLOR_PATTERN.search(text)
        or PIXEL_MEASUREMENT_PATTERN.search(text)
        or FONT_SPEC_PATTERN.search(text)
    )


def technical_terms(text: str) -> List[str]:
    """Implementation vocabulary found in ``text``, lower-cased, in order of appearance."""
    found: List[str] = []
    for match in TECHNICAL_TERM_PATTERN.finditer(text):
        term = match.group(0).lower()
        if term not in found:
            found.append(term)
    return found


def is_technical(text: str) -> bool:
    """True if ``text`` reads as an implementation detail rather than observable behavior."""
    return (
        has_overspecification(text)
        or bool(SYSTEM_ID_PATTERN.search(text))
        or bool(TECHNICAL_TERM_PATTERN.search(text))
    )


def technical_reason(text: str) -> str:
    """Why ``text`` reads as technical, for violation reports. Empty if it does not."""
    parts: List[str] = []
    counts = count_overspecification(text)
    if counts.total:
        parts.append(f"{counts.total} exact visual specification(s)")
    ids = SYSTEM_ID_PATTERN.findall(text)
    if ids:
        parts.append("system identifiers: " + ", ".join(ids))
    terms = technical_terms(text)
    if terms:
        parts.append("implementation terms: " + ", ".join(terms))
    return "; ".join(parts)
