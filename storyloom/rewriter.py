"""Rewriting stories from judge violations.

The injected rewriter capability returns corrected story text. This module
checks that text for degenerate output, reads it back into a document,
consolidates repeated sections, moves flagged technical lines verbatim out of
user-facing sections, and expresses the result as patches so the corrected
document still passes through the validator and orchestrator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from .capabilities import violation_quotes
from .errors import EvaluationError, RewriteOutputError
from .models import (
    Entry,
    Item,
    JudgeRubric,
    Patch,
    PatchItem,
    PatchMatch,
    StoryDocument,
    SystemContext,
    UIMappingItem,
)
from .orchestrator import BatchResult, PatchOrchestrator
from .overspec import is_technical
from .parser import StoryParser
from .paths import NARRATIVE_PATHS, PatchPath, PathKind, all_paths, resolve_path
from .renderer import StoryRenderer

logger = logging.getLogger("storyloom.rewriter")

REWRITER_ADVISOR_ID = "rewriter"

# Where technical lines from user-facing collections are moved.
TECHNICAL_TARGET = PatchPath.SYSTEM_ACCEPTANCE_CRITERIA
_USER_FACING_COLLECTIONS = (PatchPath.USER_VISIBLE_BEHAVIOR, PatchPath.OUTCOME_ACCEPTANCE_CRITERIA)

REQUIRED_HEADINGS = tuple(
    f"## {resolve_path(p).label}"
    for p in (
        PatchPath.USER_VISIBLE_BEHAVIOR,
        PatchPath.OUTCOME_ACCEPTANCE_CRITERIA,
        PatchPath.SYSTEM_ACCEPTANCE_CRITERIA,
    )
)

REWRITER_SYSTEM_PROMPT = (
    "You rewrite user stories for section separation. Keep user-observable content in the story, "
    "user-visible behavior and outcome acceptance criteria. Move technical content verbatim to the "
    "system acceptance criteria or implementation notes. Merge repeated sections into one. Keep every "
    "item identifier. Output only the full story markdown."
)


def check_rewrite_output(text: Optional[str]) -> str:
    """Return ``text`` stripped, or raise ``RewriteOutputError`` if it is degenerate."""
    if text is None or not str(text).strip():
        raise RewriteOutputError("Empty response from rewriter")
    stripped = str(text).strip()
    if stripped.startswith("```"):
        raise RewriteOutputError("Rewriter wrapped its output in a code fence")
    if not stripped.startswith("# "):
        raise RewriteOutputError("Rewriter output does not start with a story title")
    missing = [h for h in REQUIRED_HEADINGS if h not in stripped.splitlines()]
    if missing:
        raise RewriteOutputError(f"Rewriter output is missing sections: {', '.join(missing)}")
    return stripped


def _next_id(prefix: str, taken: Set[str]) -> str:
    n = 1
    while f"{prefix}{n}" in taken:
        n += 1
    return f"{prefix}{n}"


def consolidate(document: StoryDocument) -> List[str]:
    """Deduplicate every collection in place.

    Exact repeats are dropped. An id reused for different text keeps the
    first entry; the later one gets a fresh id so no unique line is lost.
    Entries without an id get one. Returns a note per change.
    """
    notes: List[str] = []
    for path in all_paths():
        spec = resolve_path(path)
        if spec.kind is PathKind.NARRATIVE:
            continue
        entries = document.collection(path)
        taken = {e.id for e in entries if e.id}
        seen: Dict[str, Entry] = {}
        kept: List[Entry] = []
        for entry in entries:
            if entry.id and entry.id in seen:
                if seen[entry.id].text == entry.text:
                    notes.append(f"Dropped repeated {entry.id} in {path.value}")
                    continue
                fresh = _next_id(spec.prefix, taken)
                taken.add(fresh)
                notes.append(f"Renumbered repeated {entry.id} to {fresh} in {path.value}")
                entry = _with_id(entry, fresh)
            elif not entry.id:
                if any(e.text == entry.text for e in kept):
                    continue
                fresh = _next_id(spec.prefix, taken)
                taken.add(fresh)
                entry = _with_id(entry, fresh)
            seen[entry.id] = entry
            kept.append(entry)
        entries[:] = kept
    return notes


def _with_id(entry: Entry, new_id: str) -> Entry:
    if isinstance(entry, UIMappingItem):
        return UIMappingItem(id=new_id, product_term=entry.product_term, component_name=entry.component_name)
    return Item(id=new_id, text=entry.text)


def separate_technical(document: StoryDocument, quotes: List[str], detect: bool = False) -> List[str]:
    """Move technical lines from user-facing collections to the technical section, verbatim.

    A line moves when its text matches a violation quote (or contains one),
    or, with ``detect``, when it reads as technical. Returns the moved texts.
    """
    target = document.collection(TECHNICAL_TARGET)
    taken = {e.id for e in target}
    prefix = resolve_path(TECHNICAL_TARGET).prefix
    moved: List[str] = []
    for path in _USER_FACING_COLLECTIONS:
        entries = document.collection(path)
        kept: List[Entry] = []
        for entry in entries:
            flagged = any(q and (entry.text == q or q in entry.text) for q in quotes)
            if flagged or (detect and is_technical(entry.text)):
                if not any(e.text == entry.text for e in target):
                    new_id = _next_id(prefix, taken)
                    taken.add(new_id)
                    target.append(Item(id=new_id, text=entry.text))
                moved.append(entry.text)
            else:
                kept.append(entry)
        entries[:] = kept
    return moved


def diff_documents(old: StoryDocument, new: StoryDocument, advisor_id: str = REWRITER_ADVISOR_ID) -> List[Patch]:
    """Patches that turn ``old`` into ``new``: removals, then replacements, then additions."""
    metadata = {"advisorId": advisor_id}
    removes: List[Patch] = []
    replaces: List[Patch] = []
    adds: List[Patch] = []

    for path in NARRATIVE_PATHS:
        before, after = old.narrative_line(path), new.narrative_line(path)
        if after and after != before:
            replaces.append(Patch(path=path.value, op="replace", item=PatchItem(text=after), metadata=dict(metadata)))

    for path in all_paths():
        if resolve_path(path).is_narrative:
            continue
        before = {e.id: e for e in old.collection(path)}
        after = {e.id: e for e in new.collection(path)}
        for entry_id in before:
            if entry_id not in after:
                removes.append(Patch(
                    path=path.value, op="remove", match=PatchMatch(id=entry_id), metadata=dict(metadata),
                ))
        for entry_id, entry in after.items():
            if entry_id in before:
                if before[entry_id] != entry:
                    replaces.append(Patch(
                        path=path.value, op="replace", item=_patch_item(entry),
                        match=PatchMatch(id=entry_id), metadata=dict(metadata),
                    ))
            else:
                adds.append(Patch(path=path.value, op="add", item=_patch_item(entry), metadata=dict(metadata)))

    return removes + replaces + adds


def _patch_item(entry: Entry) -> PatchItem:
    if isinstance(entry, UIMappingItem):
        return PatchItem(id=entry.id, product_term=entry.product_term, component_name=entry.component_name)
    return PatchItem(id=entry.id, text=entry.text)


@dataclass(slots=True)
class RewriteResult:
    document: StoryDocument
    text: str
    batch: BatchResult
    notes: List[str] = field(default_factory=list)
    moved: List[str] = field(default_factory=list)


class StoryRewriter:
    """Turns a rewriter capability's text into a validated document update."""

    def __init__(
        self,
        rewriter,
        orchestrator: Optional[PatchOrchestrator] = None,
        parser: Optional[StoryParser] = None,
        renderer: Optional[StoryRenderer] = None,
    ):
        self.rewriter = rewriter
        self.orchestrator = orchestrator or PatchOrchestrator()
        self.parser = parser or StoryParser()
        self.renderer = renderer or StoryRenderer()

    def rewrite(
        self,
        document: StoryDocument,
        text: str,
        rubric: JudgeRubric,
        context: SystemContext,
    ) -> RewriteResult:
        """Rewrite ``document`` from ``rubric``.

        Raises ``EvaluationError`` (usually ``RewriteOutputError``) when the
        rewriter call fails or returns degenerate output.
        """
        try:
            raw = self.rewriter.rewrite(text, rubric, context)
        except EvaluationError:
            raise
        except Exception as e:
            raise EvaluationError(f"Rewriter call failed: {e}", cause=e) from e

        cleaned = check_rewrite_output(raw)
        parsed = self.parser.parse(cleaned, story_id=document.story_id)
        corrected = parsed.document
        corrected.title = corrected.title or document.title

        notes = consolidate(corrected)
        if parsed.duplicate_sections:
            notes.append("Merged repeated sections: " + ", ".join(
                f"{d.section} x{d.count}" for d in parsed.duplicate_sections
            ))
        moved = separate_technical(corrected, violation_quotes(rubric.violations))

        patches = diff_documents(document, corrected)
        batch = self.orchestrator.apply_batch(document, patches)
        if batch.rejected:
            logger.warning(
                f"Rewrite of {document.story_id}: {len(batch.rejected)} change(s) rejected - "
                + "; ".join(batch.rejected_reasons[:3])
            )
        logger.info(
            f"Rewrote {document.story_id}: {len(batch.applied)} change(s) applied, "
            f"{len(moved)} technical line(s) moved"
        )
        return RewriteResult(
            document=batch.document,
            text=self.renderer.render(batch.document),
            batch=batch,
            notes=notes,
            moved=moved,
        )


class RuleBasedRewriter:
    """Deterministic rewriter capability.

    Re-renders the story in canonical form, which merges repeated sections,
    and moves technical lines out of user-facing sections verbatim.
    """

    def __init__(self):
        self.parser = StoryParser()
        self.renderer = StoryRenderer()

    def rewrite(self, text: str, rubric: JudgeRubric, context: SystemContext) -> str:
        document = self.parser.parse(text).document
        consolidate(document)
        separate_technical(document, violation_quotes(rubric.violations), detect=True)
        return self.renderer.render(document)


class PromptedRewriter:
    """Rewriter capability backed by a text completion function."""

    def __init__(self, complete: Callable[[str, str], str], system_prompt: str = REWRITER_SYSTEM_PROMPT):
        self.complete = complete
        self.system_prompt = system_prompt

    def rewrite(self, text: str, rubric: JudgeRubric, context: SystemContext) -> str:
        violations = "\n".join(
            f"- [{v.section or 'unknown'}] {v.quote}" + (f" ({v.reason})" if v.reason else "")
            for v in rubric.violations
        ) or "(none listed)"
        duplicates = ", ".join(f"{d.section} x{d.count}" for d in rubric.duplicate_sections) or "(none)"
        message = (
            f"## System context\n{context.describe()}\n\n## Violations to fix\n{violations}\n\n"
            f"## Duplicate sections\n{duplicates}\n\n## Current story\n{text}\n\n"
            "Rewrite the story to fix the violations. Output only the full story markdown."
        )
        content = self.complete(self.system_prompt, message)
        if not content or not content.strip():
            raise RewriteOutputError("Empty response from rewriter")
        return content.strip()
