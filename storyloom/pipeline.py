"""End-to-end corpus processing.

Discovery mints identifiers and builds the system context; the registry is
frozen afterwards. Each story then starts as an empty document, passes
through the advisor sequence one advisor at a time, and is refined until it
is approved or flagged. Finally the converged corpus is linked (Pass 2) and
reconciled (Pass 2b).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .advisors import AdvisorDefinition, applicable_advisors, get_advisor, parse_advisor_output
from .capabilities import (
    Advisor,
    AdvisorRequest,
    ConsistencyJudge,
    DiscoveryResult,
    Discoverer,
    Interconnector,
    Rewriter,
    Scorer,
    StoryInput,
    optional_capability,
)
from .config import EngineConfig
from .errors import AdvisorOutputError, EvaluationError
from .id_registry import EntityKind, FrozenIdentifierRegistry, IdentifierRegistry
from .interconnection import (
    ConsolidationResult,
    InterconnectionEngine,
    RuleBasedInterconnector,
)
from .judge import RubricJudge, RuleBasedConsistencyJudge, RuleBasedScorer
from .models import (
    Component,
    DataFlow,
    EventDefinition,
    Patch,
    Relationship,
    StateModel,
    StoryDocument,
    SystemContext,
)
from .orchestrator import BatchResult, PatchOrchestrator
from .refinement import RefinementController, RefinementResult
from .renderer import StoryRenderer
from .rewriter import RuleBasedRewriter, StoryRewriter
from .storyloom_logging import (
    ObservabilityHooks,
    log_error_with_context,
    log_operation,
    log_performance,
    observability_hooks,
)
from .validator import PatchValidator

logger = logging.getLogger("storyloom.pipeline")

COMPOSITION_EDGE = "composition"
COORDINATION_EDGE = "coordination"
DATA_FLOW_EDGE = "dataFlow"


@dataclass(slots=True)
class AdvisorFailure:
    advisor_id: str
    error: EvaluationError

    def to_dict(self) -> Dict[str, Any]:
        return {"advisorId": self.advisor_id, "error": self.error.to_dict()}


@dataclass(slots=True)
class StoryResult:
    story_id: str
    batches: Dict[str, BatchResult] = field(default_factory=dict)
    advisor_failures: List[AdvisorFailure] = field(default_factory=list)
    refinement: Optional[RefinementResult] = None
    document: Optional[StoryDocument] = None
    text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storyId": self.story_id,
            "batches": {k: v.metrics for k, v in self.batches.items()},
            "advisorFailures": [f.to_dict() for f in self.advisor_failures],
            "refinement": self.refinement.to_dict() if self.refinement else None,
            "text": self.text,
        }


@dataclass(slots=True)
class CorpusResult:
    """Everything a corpus run produced, per story and corpus-wide."""

    stories: Dict[str, StoryResult]
    context: SystemContext
    registry: FrozenIdentifierRegistry
    consolidation: Optional[ConsolidationResult] = None
    extraction_failures: Dict[str, EvaluationError] = field(default_factory=dict)

    @property
    def orphan_errors(self) -> List[str]:
        return list(self.consolidation.orphan_check.errors) if self.consolidation else []

    @property
    def flagged(self) -> List[str]:
        return [
            story_id for story_id, story in self.stories.items()
            if story.refinement is not None and story.refinement.review is not None
        ]

    @property
    def manual_review(self) -> List[Dict[str, Any]]:
        """Flagged stories, deferred fixes and unmerged relationships, in that order."""
        items: List[Dict[str, Any]] = []
        for story_id in self.flagged:
            items.append({"kind": "story", "storyId": story_id, **self.stories[story_id].refinement.review.to_dict()})
        if self.consolidation:
            items.extend({"kind": "fix", **d.to_dict()} for d in self.consolidation.deferred)
            items.extend({"kind": "relationship", **m.to_dict()} for m in self.consolidation.relationship_review)
        return items

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stories": {k: v.to_dict() for k, v in self.stories.items()},
            "context": self.context.to_dict(),
            "identifiers": [e.to_dict() for e in self.registry.entries()],
            "consolidation": self.consolidation.to_dict() if self.consolidation else None,
            "extractionFailures": {k: v.to_dict() for k, v in self.extraction_failures.items()},
            "orphanErrors": self.orphan_errors,
            "manualReview": self.manual_review,
        }


def build_system_context(
    discovery: DiscoveryResult,
    registry: IdentifierRegistry,
    hooks: Optional[ObservabilityHooks] = None,
) -> SystemContext:
    """Mint identifiers for every discovered entity and assemble the context."""
    hooks = hooks or observability_hooks
    context = SystemContext(vocabulary=dict(discovery.vocabulary))
    ids: Dict[str, str] = {}

    def mint(kind: EntityKind, name: str) -> str:
        is_new = registry.lookup(kind, name) is None
        identifier = registry.mint(kind, name)
        if is_new:
            hooks.log_event("identifier_minted", None, entity_kind=kind.value, canonical_name=name, identifier=identifier)
        return identifier

    for mention in discovery.entities:
        try:
            kind = EntityKind(mention.kind)
        except ValueError:
            logger.warning(f"Skipping entity '{mention.name}' of unknown kind '{mention.kind}'")
            continue
        identifier = mint(kind, mention.name)
        ids[mention.name] = identifier
        if kind is EntityKind.COMPONENT:
            context.components.setdefault(
                identifier, Component(id=identifier, product_name=mention.name, description=mention.description)
            )
        elif kind is EntityKind.STATE_MODEL and all(s.id != identifier for s in context.state_models):
            context.state_models.append(StateModel(id=identifier, name=mention.name))
        elif kind is EntityKind.EVENT and all(e.id != identifier for e in context.events):
            context.events.append(EventDefinition(id=identifier, name=mention.name))
        elif kind is EntityKind.DATA_FLOW and all(d.id != identifier for d in context.data_flows):
            context.data_flows.append(DataFlow(id=identifier, description=mention.description or mention.name))

    for edge in discovery.edges:
        source = ids.get(edge.source) or registry.lookup(EntityKind.COMPONENT, edge.source)
        target = ids.get(edge.target) or registry.lookup(EntityKind.COMPONENT, edge.target)
        if not source or not target:
            logger.warning(f"Skipping {edge.kind} edge {edge.source} -> {edge.target}: unknown entity")
            continue
        if edge.kind == COMPOSITION_EDGE:
            if (source, target) not in context.composition_edges:
                context.composition_edges.append((source, target))
        elif edge.kind == COORDINATION_EDGE:
            if (source, target, edge.via) not in context.coordination_edges:
                context.coordination_edges.append((source, target, edge.via))
        elif edge.kind == DATA_FLOW_EDGE:
            flow_id = mint(EntityKind.DATA_FLOW, f"{edge.source} to {edge.target}")
            if all(d.id != flow_id for d in context.data_flows):
                context.data_flows.append(DataFlow(id=flow_id, source=source, target=target, description=edge.via))
        else:
            logger.warning(f"Skipping edge of unknown kind '{edge.kind}'")

    return context


def intake(story: StoryInput) -> StoryDocument:
    """Create the empty document a story starts from."""
    document = StoryDocument.empty(title=story.title, story_id=story.story_id)
    document.narrative.as_a = story.as_a
    document.narrative.i_want = story.i_want
    document.narrative.so_that = story.so_that
    return document


def _default_advisor_prompt(advisor_id: str) -> str:
    definition = get_advisor(advisor_id)
    focus = f" {definition.description}." if definition and definition.description else ""
    return (
        f"You are the '{advisor_id}' advisor for user stories.{focus} Propose patches as JSON "
        '{"patches": [...]} touching only the allowed paths.'
    )


class PromptedAdvisor:
    """Advisor capability backed by a text completion function."""

    def __init__(self, complete: Callable[[str, str], str], prompts: Optional[Dict[str, str]] = None):
        self.complete = complete
        self.prompts = prompts or {}

    def propose(self, advisor_id: str, request: AdvisorRequest) -> List[Patch]:
        system_prompt = self.prompts.get(advisor_id) or _default_advisor_prompt(advisor_id)
        message = (
            f"## System context\n{request.context.describe()}\n\n"
            f"## Allowed paths\n{', '.join(p.value for p in request.allowed_paths)}\n\n"
            f"## Product type\n{request.product_type}\n\n## Current story\n{request.text}"
        )
        return parse_advisor_output(self.complete(system_prompt, message), advisor_id)


class StoryPipeline:
    """Runs a corpus of stories through discovery, advisors, refinement and linking."""

    def __init__(
        self,
        advisor: Optional[Advisor] = None,
        scorer: Optional[Scorer] = None,
        rewriter: Optional[Rewriter] = None,
        discoverer: Optional[Discoverer] = None,
        interconnector: Optional[Interconnector] = None,
        consistency_judge: Optional[ConsistencyJudge] = None,
        config: Optional[EngineConfig] = None,
        hooks: Optional[ObservabilityHooks] = None,
        registry: Optional[IdentifierRegistry] = None,
    ):
        self.config = config or EngineConfig()
        issues = self.config.validate()
        if issues:
            raise ValueError("Invalid engine configuration: " + "; ".join(issues))

        self.hooks = hooks or observability_hooks
        self.registry = registry if registry is not None else IdentifierRegistry()
        self.advisor = optional_capability(advisor, Advisor)
        self.discoverer = optional_capability(discoverer, Discoverer)

        self.renderer = StoryRenderer()
        self.orchestrator = PatchOrchestrator(
            validator=PatchValidator(max_text_length=self.config.max_text_length),
            hooks=self.hooks,
        )
        self.judge = RubricJudge(
            optional_capability(scorer, Scorer) or RuleBasedScorer(threshold=self.config.quality_threshold)
        )
        self.refinement = RefinementController(
            judge=self.judge,
            rewriter=StoryRewriter(
                optional_capability(rewriter, Rewriter) or RuleBasedRewriter(),
                orchestrator=self.orchestrator,
                renderer=self.renderer,
            ),
            threshold=self.config.quality_threshold,
            renderer=self.renderer,
            hooks=self.hooks,
        )
        self.interconnection = InterconnectionEngine(
            interconnector=optional_capability(interconnector, Interconnector) or RuleBasedInterconnector(),
            consistency_judge=optional_capability(consistency_judge, ConsistencyJudge) or RuleBasedConsistencyJudge(),
            orchestrator=self.orchestrator,
            renderer=self.renderer,
            auto_apply_threshold=self.config.auto_apply_threshold,
            workers=self.config.pass2_workers,
            hooks=self.hooks,
        )

    def discover(self, stories: Sequence[StoryInput]) -> SystemContext:
        if self.discoverer is None:
            return SystemContext()
        try:
            discovery = self.discoverer.discover(stories)
        except EvaluationError as e:
            logger.warning(f"Discovery failed, continuing with an empty system context: {e}")
            return SystemContext()
        except Exception as e:
            log_error_with_context(e, {"operation": "discover_system", "story_count": len(stories)})
            return SystemContext()
        if not isinstance(discovery, DiscoveryResult):
            logger.warning(f"Discoverer returned {type(discovery).__name__}, continuing with an empty system context")
            return SystemContext()
        return build_system_context(discovery, self.registry, self.hooks)

    def run_advisors(self, document: StoryDocument, context: SystemContext, result: StoryResult) -> StoryDocument:
        """Run each applicable advisor in order; each sees the previous advisor's edits."""
        advisors: List[AdvisorDefinition] = applicable_advisors(self.config.product_type)
        if self.advisor is None:
            return document

        for definition in advisors:
            request = AdvisorRequest(
                story_id=document.story_id,
                text=self.renderer.render(document),
                context=context,
                allowed_paths=definition.allowed_paths,
                product_type=self.config.product_type,
            )
            try:
                patches = self.advisor.propose(definition.id, request)
            except EvaluationError as e:
                logger.warning(f"Advisor '{definition.id}' failed for {document.story_id}: {e}")
                result.advisor_failures.append(AdvisorFailure(advisor_id=definition.id, error=e))
                continue
            except Exception as e:
                log_error_with_context(
                    e, {"operation": "run_advisor", "advisor_id": definition.id, "story_id": document.story_id}
                )
                error = EvaluationError(f"Advisor '{definition.id}' call failed: {e}", cause=e)
                result.advisor_failures.append(AdvisorFailure(advisor_id=definition.id, error=error))
                continue

            if not isinstance(patches, list) or not all(isinstance(p, Patch) for p in patches):
                error = AdvisorOutputError(
                    f"Advisor '{definition.id}' returned {type(patches).__name__}, expected a list of patches"
                )
                logger.warning(str(error))
                result.advisor_failures.append(AdvisorFailure(advisor_id=definition.id, error=error))
                continue

            for patch in patches:
                if not patch.advisor_id:
                    patch.metadata["advisorId"] = definition.id

            batch = self.orchestrator.apply_batch(document, patches, allowed_paths=definition.allowed_paths)
            result.batches[definition.id] = batch
            document = batch.document

        return document

    @log_performance("process_story")
    def process_story(self, story: StoryInput, context: SystemContext) -> StoryResult:
        result = StoryResult(story_id=story.story_id)
        document = self.run_advisors(intake(story), context, result)
        refinement = self.refinement.refine(document, context)
        result.refinement = refinement
        result.document = refinement.document
        result.text = refinement.text
        return result

    def run(self, stories: Sequence[StoryInput]) -> CorpusResult:
        ids = [s.story_id for s in stories]
        if len(set(ids)) != len(ids):
            raise ValueError("Story ids must be unique within a corpus")

        with log_operation("process_corpus", story_count=len(stories)):
            context = self.discover(stories)
            frozen = self.registry.freeze()
            logger.info(f"Discovery: {len(frozen)} identifier(s) minted")

            results: Dict[str, StoryResult] = {}
            new_relationships: List[Relationship] = []
            for story in stories:
                results[story.story_id] = self.process_story(story, context)
                for outcome in results[story.story_id].refinement.outcomes:
                    if outcome.rubric is not None:
                        new_relationships.extend(outcome.rubric.new_relationships)

            corpus = CorpusResult(stories=results, context=context, registry=frozen)
            documents = {sid: r.document for sid, r in results.items()}
            texts = {sid: r.text for sid, r in results.items()}

            extraction = self.interconnection.extract_all(texts, context)
            corpus.extraction_failures = extraction.failures
            consolidation = self.interconnection.consolidate(
                documents, extraction.interconnections, context, new_relationships
            )
            corpus.consolidation = consolidation
            corpus.context = consolidation.context
            for story_id, story in results.items():
                story.document = consolidation.documents[story_id]
                story.text = consolidation.texts[story_id]

        if corpus.orphan_errors:
            logger.warning(f"Corpus has orphan stories: {'; '.join(corpus.orphan_errors)}")
        return corpus
