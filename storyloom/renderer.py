"""Deterministic rendering of story documents to canonical markdown.

Rendering is a pure function of the document: section order and formatting
are fixed, so the same document always produces byte-identical text.
"""

from __future__ import annotations

import re
from typing import Dict, List

from .models import Entry, StoryDocument, StoryInterconnections, UIMappingItem
from .paths import IMPLEMENTATION_NOTE_PATHS, NARRATIVE_PATHS, PatchPath, resolve_path

_BLANK_RUNS = re.compile(r"\n{3,}")

# Collections rendered only when non-empty, in this order.
_OPTIONAL_SECTIONS = (
    PatchPath.UI_MAPPING,
    PatchPath.OPEN_QUESTIONS,
    PatchPath.EDGE_CASES,
    PatchPath.NON_GOALS,
)

# Always rendered, even when empty.
_REQUIRED_SECTIONS = (
    PatchPath.USER_VISIBLE_BEHAVIOR,
    PatchPath.OUTCOME_ACCEPTANCE_CRITERIA,
    PatchPath.SYSTEM_ACCEPTANCE_CRITERIA,
)

IMPLEMENTATION_NOTES_HEADING = "Implementation Notes"

RELATIONSHIP_GROUPS = (
    ("prerequisite", "Prerequisites"),
    ("parallel", "Parallel"),
    ("dependent", "Dependent"),
    ("related", "Related"),
)


def escape_heading(text: str) -> str:
    return text.replace("#", "").strip()


def escape_inline(text: str) -> str:
    """Escape the markdown characters that would change how an item reads."""
    return (
        text.replace("\\", "\\\\")
        .replace("*", "\\*")
        .replace("_", "\\_")
        .replace("[", "\\[")
    )


class StoryRenderer:
    """Projects a ``StoryDocument`` onto the canonical text template."""

    def render(self, document: StoryDocument) -> str:
        lines: List[str] = [f"# {escape_heading(document.title)}", ""]

        for path in NARRATIVE_PATHS:
            label = resolve_path(path).label
            lines.append(f"- {label} {escape_inline(document.narrative_line(path))}".rstrip())
        lines.append("")

        for path in _REQUIRED_SECTIONS:
            lines.extend(self._section(resolve_path(path).label, document.collection(path)))

        if not document.implementation_notes.is_empty():
            lines.extend([f"## {IMPLEMENTATION_NOTES_HEADING}", ""])
            for path in IMPLEMENTATION_NOTE_PATHS:
                entries = document.collection(path)
                if entries:
                    lines.extend([f"### {resolve_path(path).label}", ""])
                    lines.extend(self._items(entries))
                    lines.append("")

        for path in _OPTIONAL_SECTIONS:
            entries = document.collection(path)
            if entries:
                lines.extend(self._section(resolve_path(path).label, entries))

        return _join(lines)

    def append_interconnections(self, text: str, interconnections: StoryInterconnections) -> str:
        """Append Pass 2 metadata to rendered text.

        Appending the same interconnections to text that already carries them
        returns the text unchanged.
        """
        base = text.rstrip()
        block = self.render_interconnections(interconnections)
        if not block or base.endswith(block):
            return base
        return f"{base}\n\n{block}"

    def render_interconnections(self, interconnections: StoryInterconnections) -> str:
        parts: List[str] = []

        if interconnections.ui_mapping:
            parts.append("## UI Mapping\n\n" + "\n".join(
                f'- "{term}" → {component_id}' for term, component_id in interconnections.ui_mapping.items()
            ))

        if interconnections.contract_dependencies:
            parts.append("## Contract Dependencies\n\n" + "\n".join(
                f"- {dep}" for dep in interconnections.contract_dependencies
            ))

        ownership = interconnections.ownership
        if not ownership.is_empty():
            rows = [
                ("Owns State", ownership.owns_state),
                ("Consumes State", ownership.consumes_state),
                ("Emits Events", ownership.emits_events),
                ("Listens To", ownership.listens_to_events),
            ]
            parts.append("## Ownership\n\n" + "\n".join(
                f"**{label}**: {', '.join(values)}" for label, values in rows if values
            ))

        if interconnections.related_stories:
            grouped: Dict[str, List[str]] = {}
            for rel in interconnections.related_stories:
                line = f"- {rel.story_id}: {rel.description}" if rel.description else f"- {rel.story_id}"
                grouped.setdefault(rel.relationship, []).append(line)
            groups = [
                f"**{label}**:\n" + "\n".join(grouped[key])
                for key, label in RELATIONSHIP_GROUPS
                if grouped.get(key)
            ]
            if groups:
                parts.append("## Related Stories\n\n" + "\n\n".join(groups))

        return "\n\n".join(parts)

    def _section(self, heading: str, entries: List[Entry]) -> List[str]:
        lines = [f"## {heading}", ""]
        lines.extend(self._items(entries))
        lines.append("")
        return lines

    @staticmethod
    def _items(entries: List[Entry]) -> List[str]:
        rendered = []
        for entry in entries:
            prefix = f"- [{entry.id}] " if entry.id else "- "
            if isinstance(entry, UIMappingItem):
                body = f"**{escape_inline(entry.product_term)}**: {escape_inline(entry.component_name)}"
            else:
                body = escape_inline(entry.text)
            rendered.append(prefix + body)
        return rendered


def _join(lines: List[str]) -> str:
    return _BLANK_RUNS.sub("\n\n", "\n".join(lines)).rstrip()


def render_story(document: StoryDocument) -> str:
    """Module-level shortcut for ``StoryRenderer().render``."""
    return StoryRenderer().render(document)
