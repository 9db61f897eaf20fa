"""Cross-story linking (Pass 2) and corpus consistency (Pass 2b).

Pass 2 extracts ``StoryInterconnections`` for every converged story. The
extraction only reads shared state, so it runs on a thread pool. Pass 2b asks
a corpus-level judge for issues and fixes and applies each fix whose
confidence reaches the auto-apply threshold, in a single pass. Fixes below
the threshold are deferred to manual review. All writes to the shared graph
go through one lock.
"""

from __future__ import annotations

import copy
import logging
import math
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import ErrorKind, EvaluationError
from .models import (
    FIX_TYPES,
    RELATIONSHIP_TYPES,
    ConsistencyFix,
    GlobalConsistencyReport,
    Ownership,
    RelatedStory,
    Relationship,
    StoryDocument,
    StoryInterconnections,
    SystemContext,
    ValidationResult,
)
from .orchestrator import PatchOrchestrator
from .overspec import SYSTEM_ID_PATTERN
from .parser import StoryParser
from .paths import coerce_path
from .relationship_merger import ManualReviewItem, merge_new_relationships
from .renderer import StoryRenderer
from .storyloom_logging import (
    ObservabilityHooks,
    log_error_with_context,
    log_fix_applied,
    log_fix_deferred,
    observability_hooks,
)

logger = logging.getLogger("storyloom.interconnection")

DEFAULT_AUTO_APPLY_THRESHOLD = 0.75
CONSISTENCY_ADVISOR_ID = "global-consistency"


def _dedupe(values: Sequence[str]) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def normalize_interconnections(
    record: StoryInterconnections,
    story_id: str,
    corpus_ids: Sequence[str],
) -> StoryInterconnections:
    """Pin ``story_id``, drop self and unknown links, and de-duplicate lists."""
    known = set(corpus_ids)
    related: List[RelatedStory] = []
    seen: set = set()
    for rel in record.related_stories:
        if rel.story_id == story_id:
            continue
        if rel.story_id not in known:
            logger.warning(f"{story_id}: dropping link to unknown story {rel.story_id}")
            continue
        relationship = rel.relationship if rel.relationship in RELATIONSHIP_TYPES else "related"
        key = (rel.story_id, relationship)
        if key in seen:
            continue
        seen.add(key)
        related.append(RelatedStory(story_id=rel.story_id, relationship=relationship, description=rel.description))

    ownership = record.ownership
    return StoryInterconnections(
        story_id=story_id,
        ui_mapping=dict(record.ui_mapping),
        contract_dependencies=_dedupe(record.contract_dependencies),
        ownership=Ownership(
            owns_state=_dedupe(ownership.owns_state),
            consumes_state=_dedupe(ownership.consumes_state),
            emits_events=_dedupe(ownership.emits_events),
            listens_to_events=_dedupe(ownership.listens_to_events),
        ),
        related_stories=related,
    )


def find_orphans(interconnections: Dict[str, StoryInterconnections]) -> List[str]:
    """Stories whose own links reach no other story of the corpus."""
    if len(interconnections) <= 1:
        return []
    ids = set(interconnections)
    return [
        story_id
        for story_id, record in interconnections.items()
        if not any(rel.story_id != story_id and rel.story_id in ids for rel in record.related_stories)
    ]


def check_no_orphans(
    interconnections: Dict[str, StoryInterconnections],
    hooks: Optional[ObservabilityHooks] = None,
) -> ValidationResult:
    """Every story in a corpus of more than one must link to at least one other."""
    orphans = find_orphans(interconnections)
    if not orphans:
        return ValidationResult(valid=True)
    hooks = hooks or observability_hooks
    for story_id in orphans:
        hooks.log_event("orphan_story_detected", story_id)
    return ValidationResult(
        valid=False,
        errors=[f'Story "{story_id}" has no relationship to any other story in the corpus' for story_id in orphans],
        kind=ErrorKind.SEMANTIC,
    )


@dataclass(slots=True)
class AppliedFix:
    fix: ConsistencyFix

    def to_dict(self) -> Dict[str, Any]:
        return {"fix": self.fix.to_dict(), "description": self.fix.describe()}


@dataclass(slots=True)
class DeferredFix:
    fix: ConsistencyFix
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"fix": self.fix.to_dict(), "description": self.fix.describe(), "reason": self.reason}


@dataclass(slots=True)
class ExtractionResult:
    interconnections: Dict[str, StoryInterconnections] = field(default_factory=dict)
    failures: Dict[str, EvaluationError] = field(default_factory=dict)


@dataclass(slots=True)
class ConsolidationResult:
    documents: Dict[str, StoryDocument]
    interconnections: Dict[str, StoryInterconnections]
    context: SystemContext
    texts: Dict[str, str] = field(default_factory=dict)
    report: Optional[GlobalConsistencyReport] = None
    evaluation_failure: Optional[EvaluationError] = None
    applied: List[AppliedFix] = field(default_factory=list)
    deferred: List[DeferredFix] = field(default_factory=list)
    relationship_review: List[ManualReviewItem] = field(default_factory=list)
    orphan_check: ValidationResult = field(default_factory=lambda: ValidationResult(valid=True))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interconnections": {k: v.to_dict() for k, v in self.interconnections.items()},
            "report": self.report.to_dict() if self.report else None,
            "evaluationFailure": self.evaluation_failure.to_dict() if self.evaluation_failure else None,
            "applied": [a.to_dict() for a in self.applied],
            "deferred": [d.to_dict() for d in self.deferred],
            "relationshipReview": [m.to_dict() for m in self.relationship_review],
            "orphanCheck": self.orphan_check.to_dict(),
        }


class InterconnectionEngine:
    """Pass 2 extraction and Pass 2b consolidation for a corpus."""

    def __init__(
        self,
        interconnector,
        consistency_judge=None,
        orchestrator: Optional[PatchOrchestrator] = None,
        renderer: Optional[StoryRenderer] = None,
        auto_apply_threshold: float = DEFAULT_AUTO_APPLY_THRESHOLD,
        workers: int = 4,
        hooks: Optional[ObservabilityHooks] = None,
    ):
        self.interconnector = interconnector
        self.consistency_judge = consistency_judge
        self.orchestrator = orchestrator or PatchOrchestrator()
        self.renderer = renderer or StoryRenderer()
        self.auto_apply_threshold = auto_apply_threshold
        self.workers = max(1, workers)
        self.hooks = hooks or observability_hooks
        self._graph_lock = threading.Lock()

    # Pass 2 ------------------------------------------------------------

    def extract_all(self, texts: Dict[str, str], context: SystemContext) -> ExtractionResult:
        """Extract interconnections for every story, in parallel, keyed in corpus order."""
        corpus_ids = list(texts)
        result = ExtractionResult()

        def extract(story_id: str) -> Tuple[str, Optional[StoryInterconnections], Optional[EvaluationError]]:
            try:
                raw = self.interconnector.extract(story_id, texts[story_id], context, corpus_ids)
            except EvaluationError as e:
                return story_id, None, e
            except Exception as e:
                log_error_with_context(e, {"operation": "extract_interconnections", "story_id": story_id})
                return story_id, None, EvaluationError(f"Interconnection extraction failed: {e}", cause=e)
            if not isinstance(raw, StoryInterconnections):
                return story_id, None, EvaluationError(
                    f"Interconnector returned {type(raw).__name__} for {story_id}"
                )
            return story_id, normalize_interconnections(raw, story_id, corpus_ids), None

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            outcomes = list(pool.map(extract, corpus_ids))

        for story_id, record, failure in outcomes:
            if failure is not None:
                logger.warning(f"Pass 2 extraction failed for {story_id}: {failure}")
                result.failures[story_id] = failure
                record = StoryInterconnections(story_id=story_id)
            result.interconnections[story_id] = record

        logger.info(f"Pass 2: extracted interconnections for {len(corpus_ids)} stories ({len(result.failures)} failed)")
        return result

    # Pass 2b -----------------------------------------------------------

    def consolidate(
        self,
        documents: Dict[str, StoryDocument],
        interconnections: Dict[str, StoryInterconnections],
        context: SystemContext,
        new_relationships: Sequence[Relationship] = (),
    ) -> ConsolidationResult:
        """Merge discovered relationships, judge the corpus and auto-apply fixes once."""
        with self._graph_lock:
            merge = merge_new_relationships(context, list(new_relationships))
        result = ConsolidationResult(
            documents=dict(documents),
            interconnections=copy.deepcopy(interconnections),
            context=merge.context,
            relationship_review=list(merge.manual_review),
        )

        texts = self._render_all(result)
        if self.consistency_judge is not None:
            try:
                result.report = self.consistency_judge.judge(texts, result.interconnections, result.context)
            except EvaluationError as e:
                result.evaluation_failure = e
            except Exception as e:
                log_error_with_context(e, {"operation": "judge_global_consistency"})
                result.evaluation_failure = EvaluationError(f"Consistency judge failed: {e}", cause=e)
            if result.evaluation_failure is not None:
                logger.warning(f"Pass 2b: consistency judge failed: {result.evaluation_failure}")

        if result.report is not None:
            for fix in result.report.fixes:
                self._handle_fix(result, fix)

        result.texts = self._render_all(result)
        result.orphan_check = check_no_orphans(result.interconnections, self.hooks)
        logger.info(
            f"Pass 2b: {len(result.applied)} fix(es) auto-applied, {len(result.deferred)} deferred, "
            f"{len(result.orphan_check.errors)} orphan(s)"
        )
        return result

    def _render_all(self, result: ConsolidationResult) -> Dict[str, str]:
        texts: Dict[str, str] = {}
        for story_id, document in result.documents.items():
            text = self.renderer.render(document)
            record = result.interconnections.get(story_id)
            texts[story_id] = self.renderer.append_interconnections(text, record) if record else text
        return texts

    def _handle_fix(self, result: ConsolidationResult, fix: ConsistencyFix) -> None:
        if fix.type not in FIX_TYPES:
            reason = f"Unknown fix type: {fix.type}"
        elif math.isnan(fix.confidence) or fix.confidence < self.auto_apply_threshold:
            reason = f"Confidence {fix.confidence:.2f} below auto-apply threshold {self.auto_apply_threshold:.2f}"
        elif fix.story_id not in result.documents:
            reason = f"Unknown story: {fix.story_id}"
        else:
            with self._graph_lock:
                reason = self._apply_fix(result, fix)

        if reason is not None:
            self._defer(result, fix, reason)
            return

        result.applied.append(AppliedFix(fix=fix))
        logger.info(f"Auto-applied {fix.describe()} (confidence {fix.confidence:.2f})")
        log_fix_applied(self.hooks, fix.story_id, fix.type, fix.confidence, reasoning=fix.reasoning)

    def _apply_fix(self, result: ConsolidationResult, fix: ConsistencyFix) -> Optional[str]:
        """Apply ``fix``; return a reason string if it could not be applied."""
        if fix.path:
            if coerce_path(fix.path) is None:
                return f'Path "{fix.path}" does not refer to a collection or story line'
            batch = self.orchestrator.apply_batch(
                result.documents[fix.story_id], [fix.to_patch(CONSISTENCY_ADVISOR_ID)]
            )
            if batch.rejected:
                return "; ".join(batch.rejected_reasons)
            result.documents[fix.story_id] = batch.document
            return None

        record = result.interconnections.setdefault(fix.story_id, StoryInterconnections(story_id=fix.story_id))

        if fix.type == "add-bidirectional-link":
            rel = fix.related_story
            if rel is None or not rel.story_id:
                return "add-bidirectional-link fix names no related story"
            if rel.story_id == fix.story_id or rel.story_id not in result.documents:
                return f"Cannot link {fix.story_id} to {rel.story_id}"
            if not any(r.story_id == rel.story_id and r.relationship == rel.relationship for r in record.related_stories):
                relationship = rel.relationship if rel.relationship in RELATIONSHIP_TYPES else "related"
                record.related_stories.append(
                    RelatedStory(story_id=rel.story_id, relationship=relationship, description=rel.description)
                )
            return None

        old = fix.match.text_equals or fix.match.id if fix.match else None
        new = fix.item.effective_text if fix.item else None
        if not old or not new:
            return f"{fix.type} fix needs match.textEquals and item.text"

        if fix.type == "normalize-contract-id":
            if old not in record.contract_dependencies:
                return f"{fix.story_id} has no contract dependency {old}"
            record.contract_dependencies = _dedupe([new if d == old else d for d in record.contract_dependencies])
            return None

        # normalize-term-to-vocabulary
        if old not in record.ui_mapping:
            return f"{fix.story_id} has no UI term {old}"
        record.ui_mapping = {(new if term == old else term): comp for term, comp in record.ui_mapping.items()}
        return None

    def _defer(self, result: ConsolidationResult, fix: ConsistencyFix, reason: str) -> None:
        result.deferred.append(DeferredFix(fix=fix, reason=reason))
        logger.info(f"Deferred {fix.describe()} to manual review: {reason}")
        log_fix_deferred(self.hooks, fix.story_id, fix.type, reason)


class RuleBasedInterconnector:
    """Deterministic Pass 2 extractor.

    Reads the story's own UI mapping, the stable identifiers it mentions,
    and the corpus story ids that appear in its text.
    """

    def __init__(self, parser: Optional[StoryParser] = None):
        self.parser = parser or StoryParser()

    def extract(
        self,
        story_id: str,
        text: str,
        context: SystemContext,
        corpus_ids: Sequence[str],
    ) -> StoryInterconnections:
        document = self.parser.parse(text, story_id=story_id).document
        by_name = {c.product_name.lower(): c.id for c in context.components.values()}

        ui_mapping: Dict[str, str] = {}
        for entry in document.ui_mapping:
            component = entry.component_name.strip()
            component_id = component if component in context.components else by_name.get(component.lower())
            if component_id:
                ui_mapping[entry.product_term] = component_id

        owned = {s.id for s in context.state_models if s.owner and s.owner in ui_mapping.values()}
        emitted = {e.id for e in context.events if e.emitter and e.emitter in ui_mapping.values()}
        mentioned = _dedupe([m.group(0) for m in SYSTEM_ID_PATTERN.finditer(text)])
        state_ids = {s.id for s in context.state_models}
        event_ids = {e.id for e in context.events}

        related = [
            RelatedStory(story_id=other, relationship="related")
            for other in corpus_ids
            if other != story_id and re.search(rf"(?<![\w-]){re.escape(other)}(?![\w-])", text)
        ]
        return StoryInterconnections(
            story_id=story_id,
            ui_mapping=ui_mapping,
            contract_dependencies=[i for i in mentioned if i not in ui_mapping.values()],
            ownership=Ownership(
                owns_state=sorted(owned),
                consumes_state=[i for i in mentioned if i in state_ids and i not in owned],
                emits_events=sorted(emitted),
                listens_to_events=[i for i in mentioned if i in event_ids and i not in emitted],
            ),
            related_stories=related,
        )
