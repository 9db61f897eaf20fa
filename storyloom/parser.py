"""Canonical markdown back to a story document.

The inverse of ``StoryRenderer.render``. Tolerates text produced by an
external rewriter: a section that occurs more than once has its items merged
in order and is reported as a duplicate, and interconnection metadata
appended after rendering is ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .models import DuplicateSection, Item, StoryDocument, UIMappingItem
from .paths import IMPLEMENTATION_NOTE_PATHS, NARRATIVE_PATHS, PatchPath, PathKind, resolve_path
from .renderer import IMPLEMENTATION_NOTES_HEADING

_HEADING = re.compile(r"^(#{1,3})\s+(.*?)\s*$")
_ITEM = re.compile(r"^[-*]\s+\[(?P<id>[^\]\s]+)\]\s?(?P<text>.*)$")
_BARE_ITEM = re.compile(r"^[-*]\s+(?P<text>.*)$")
_UI_BODY = re.compile(r"^\*\*(?P<term>.*?)\*\*:\s*(?P<component>.*)$")
_ESCAPED = re.compile(r"\\([\\*_\[])")

_SECTION_BY_HEADING: Dict[str, PatchPath] = {
    resolve_path(p).label.lower(): p
    for p in PatchPath
    if resolve_path(p).kind is PathKind.COLLECTION
}
_NOTE_BY_HEADING: Dict[str, PatchPath] = {
    resolve_path(p).label.lower(): p for p in IMPLEMENTATION_NOTE_PATHS
}
_NARRATIVE_BY_LABEL = [(resolve_path(p).label, p) for p in NARRATIVE_PATHS]


def unescape_inline(text: str) -> str:
    return _ESCAPED.sub(r"\1", text)


@dataclass(slots=True)
class ParsedStory:
    document: StoryDocument
    duplicate_sections: List[DuplicateSection] = field(default_factory=list)
    unknown_sections: List[str] = field(default_factory=list)


@dataclass(slots=True)
class _Cursor:
    path: Optional[PatchPath] = None
    name: str = ""
    counted: bool = False


class StoryParser:
    """Reads canonical story text into a ``StoryDocument``.

    A section is counted once per heading occurrence that contributes at
    least one entry, so an empty repeated heading is not a duplicate.
    """

    def parse(self, text: str, story_id: str = "") -> ParsedStory:
        document = StoryDocument.empty(title="", story_id=story_id)
        counts: Dict[str, int] = {}
        unknown: List[str] = []
        cursor = _Cursor()
        in_notes = False
        in_preamble = True

        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                continue

            heading = _HEADING.match(line)
            if heading:
                level, title = len(heading.group(1)), heading.group(2)
                if level == 1:
                    if not document.title:
                        document.title = title
                    continue
                in_preamble = False
                key = title.lower()
                if level == 2:
                    in_notes = key == IMPLEMENTATION_NOTES_HEADING.lower()
                    cursor = _Cursor(path=_SECTION_BY_HEADING.get(key), name=title)
                    if cursor.path is None and not in_notes:
                        unknown.append(title)
                elif in_notes:
                    cursor = _Cursor(path=_NOTE_BY_HEADING.get(key), name=f"{IMPLEMENTATION_NOTES_HEADING} / {title}")
                else:
                    cursor = _Cursor()
                continue

            if in_preamble:
                self._narrative_line(document, line)
                continue

            if cursor.path is not None and self._item_line(document, cursor.path, line) and not cursor.counted:
                cursor.counted = True
                counts[cursor.name] = counts.get(cursor.name, 0) + 1

        duplicates = [
            DuplicateSection(section=name, count=count) for name, count in counts.items() if count > 1
        ]
        return ParsedStory(document=document, duplicate_sections=duplicates, unknown_sections=unknown)

    @staticmethod
    def _narrative_line(document: StoryDocument, line: str) -> None:
        bare = _BARE_ITEM.match(line)
        body = bare.group("text") if bare else line
        for label, path in _NARRATIVE_BY_LABEL:
            if body == label or body.startswith(label + " "):
                # first occurrence wins
                if not document.narrative_line(path):
                    document.set_narrative_line(path, unescape_inline(body[len(label):].strip()))
                return

    @staticmethod
    def _item_line(document: StoryDocument, path: PatchPath, line: str) -> bool:
        entries = document.collection(path)
        item = _ITEM.match(line)
        if path is PatchPath.UI_MAPPING:
            # appended interconnection entries carry no id
            ui = _UI_BODY.match(item.group("text")) if item else None
            if ui is None:
                return False
            entries.append(UIMappingItem(
                id=item.group("id"),
                product_term=unescape_inline(ui.group("term")),
                component_name=unescape_inline(ui.group("component")),
            ))
            return True

        if item:
            entries.append(Item(id=item.group("id"), text=unescape_inline(item.group("text"))))
            return True
        bare = _BARE_ITEM.match(line)
        if bare:
            entries.append(Item(id="", text=unescape_inline(bare.group("text"))))
            return True
        if entries:
            # wrapped continuation of the previous item
            last = entries[-1]
            entries[-1] = Item(id=last.id, text=f"{last.text} {unescape_inline(line)}")
        return False


def parse_story(text: str, story_id: str = "") -> ParsedStory:
    return StoryParser().parse(text, story_id=story_id)
