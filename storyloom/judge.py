"""Rubric judging of rendered stories and of the corpus as a whole.

``RubricJudge`` wraps an injected ``Scorer`` and always returns a
``JudgeOutcome``. An outcome either carries a rubric (the judge ran; the
score may be low) or an evaluation failure (the judge could not run). The
two are never merged: a failed call is not a score of zero.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import EvaluationError
from .json_utils import extract_json
from .models import (
    INVERSE_RELATIONSHIP,
    RECOMMENDATIONS,
    ConsistencyFix,
    ConsistencyIssue,
    DimensionScore,
    DuplicateSection,
    GlobalConsistencyReport,
    JudgeRubric,
    PatchItem,
    PatchMatch,
    RelatedStory,
    Relationship,
    StoryInterconnections,
    SystemContext,
    Violation,
)
from .overspec import SYSTEM_ID_PATTERN, is_technical, technical_reason
from .parser import StoryParser
from .paths import USER_FACING_PATHS, PatchPath, resolve_path
from .storyloom_logging import log_error_with_context

logger = logging.getLogger("storyloom.judge")

MAX_SCORE = 5

# (system prompt, user message) -> raw model text
CompletionFn = Callable[[str, str], str]


@dataclass(slots=True)
class JudgeOutcome:
    """Result of one judge invocation."""

    rubric: Optional[JudgeRubric] = None
    failure: Optional[EvaluationError] = None

    @property
    def is_evaluation_failure(self) -> bool:
        return self.failure is not None

    @property
    def score(self) -> Optional[float]:
        return self.rubric.overall_score if self.rubric is not None else None

    def passed(self, threshold: float) -> bool:
        """True only when the judge ran and scored at or above ``threshold``."""
        return self.rubric is not None and self.rubric.overall_score >= threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rubric": self.rubric.to_dict() if self.rubric else None,
            "failure": self.failure.to_dict() if self.failure else None,
        }


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------


def _dimension_score(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        return 0
    return max(0, min(MAX_SCORE, int(round(value))))


def _dimension(block: Any) -> DimensionScore:
    if not isinstance(block, dict):
        return DimensionScore(score=0)
    return DimensionScore(score=_dimension_score(block.get("score")), reasoning=str(block.get("reasoning", "")))


def _violation(value: Any) -> Violation:
    if isinstance(value, dict):
        return Violation(
            quote=str(value.get("quote", "")),
            reason=str(value.get("reason", "")),
            section=str(value.get("section", "")),
            suggested_rewrite=str(value.get("suggestedRewrite", "")),
        )
    return Violation(quote=str(value))


def _list(block: Any, key: str) -> List[Any]:
    if not isinstance(block, dict):
        return []
    value = block.get(key)
    return value if isinstance(value, list) else []


def parse_judge_rubric(raw: Any) -> JudgeRubric:
    """Validate and normalise a raw rubric payload.

    Raises ``EvaluationError`` if ``overallScore`` or ``recommendation`` is
    missing or malformed.
    """
    if not isinstance(raw, dict):
        raise EvaluationError(f"Invalid judge rubric: expected an object, got {type(raw).__name__}")

    overall = raw.get("overallScore")
    if isinstance(overall, bool) or not isinstance(overall, (int, float)) or math.isnan(overall):
        raise EvaluationError("Invalid judge rubric: overallScore must be a number")

    recommendation = raw.get("recommendation")
    if recommendation not in RECOMMENDATIONS:
        raise EvaluationError(
            f"Invalid judge rubric: recommendation must be one of {', '.join(RECOMMENDATIONS)}, got {recommendation!r}"
        )

    separation = raw.get("sectionSeparation")
    correctness = raw.get("correctnessVsSystemContext")
    testability = raw.get("testability") if isinstance(raw.get("testability"), dict) else {}
    completeness = raw.get("completeness")

    duplicates = [
        DuplicateSection(section=str(d.get("section", "")), count=int(d.get("count", 0) or 0))
        for d in raw.get("duplicateSections", []) or []
        if isinstance(d, dict)
    ]

    return JudgeRubric(
        overall_score=max(0.0, min(float(MAX_SCORE), float(overall))),
        recommendation=recommendation,
        dimensions={
            "sectionSeparation": _dimension(separation),
            "correctnessVsSystemContext": _dimension(correctness),
            "testabilityOutcome": _dimension(testability.get("outcomeAC")),
            "testabilitySystem": _dimension(testability.get("systemAC")),
            "completeness": _dimension(completeness),
        },
        violations=[_violation(v) for v in _list(separation, "violations")],
        duplicate_sections=duplicates,
        hallucinations=[str(h) for h in _list(correctness, "hallucinations")],
        missing_elements=[str(m) for m in _list(completeness, "missingElements")],
        new_relationships=[
            Relationship.from_dict(r) for r in raw.get("newRelationships", []) or [] if isinstance(r, dict)
        ],
        needs_system_context_update=bool(raw.get("needsSystemContextUpdate", False)),
    )


def parse_global_consistency_report(raw: Any) -> GlobalConsistencyReport:
    """Validate a corpus-level report. Missing ``issues``/``fixes`` default to empty."""
    if not isinstance(raw, dict):
        raise EvaluationError(f"Invalid consistency report: expected an object, got {type(raw).__name__}")
    issues = raw.get("issues") if isinstance(raw.get("issues"), list) else []
    fixes = raw.get("fixes") if isinstance(raw.get("fixes"), list) else []
    return GlobalConsistencyReport(
        issues=[ConsistencyIssue.from_dict(i) for i in issues if isinstance(i, dict)],
        fixes=[ConsistencyFix.from_dict(f) for f in fixes if isinstance(f, dict)],
    )


# ----------------------------------------------------------------------
# Judges
# ----------------------------------------------------------------------


class RubricJudge:
    """Runs an injected scorer and classifies the result."""

    def __init__(self, scorer):
        self.scorer = scorer
        self.calls = 0

    def evaluate(self, story_id: str, text: str, context: SystemContext) -> JudgeOutcome:
        self.calls += 1
        try:
            rubric = self.scorer.score(story_id, text, context)
        except EvaluationError as e:
            logger.warning(f"Judge evaluation failed for {story_id}: {e}")
            return JudgeOutcome(failure=e)
        except Exception as e:
            log_error_with_context(e, {"operation": "judge_story", "story_id": story_id})
            return JudgeOutcome(failure=EvaluationError(f"Judge call failed: {e}", cause=e))

        if not isinstance(rubric, JudgeRubric):
            return JudgeOutcome(
                failure=EvaluationError(f"Judge returned {type(rubric).__name__}, expected JudgeRubric")
            )

        logger.debug(f"Judged {story_id}: score={rubric.overall_score}, recommendation={rubric.recommendation}")
        return JudgeOutcome(rubric=rubric)


JUDGE_SYSTEM_PROMPT = (
    "You are a judge for user story quality. Score section separation, correctness against the "
    "system context, outcome and system testability, and completeness from 0 to 5. Report "
    "violations, duplicate sections, hallucinated identifiers and new relationships. "
    "Respond with a single JSON object."
)

CONSISTENCY_SYSTEM_PROMPT = (
    "You are a global consistency judge for user stories. Compare the stories against each other "
    "and against the system context. Report issues and fixes (add-bidirectional-link, "
    "normalize-contract-id, normalize-term-to-vocabulary) with a confidence between 0 and 1. "
    "Respond with a single JSON object with 'issues' and 'fixes'."
)


class PromptedScorer:
    """Scorer backed by a text completion function."""

    def __init__(self, complete: CompletionFn, system_prompt: str = JUDGE_SYSTEM_PROMPT):
        self.complete = complete
        self.system_prompt = system_prompt

    def score(self, story_id: str, text: str, context: SystemContext) -> JudgeRubric:
        message = (
            f"## System context\n{context.describe()}\n\n## Story to evaluate\n{text}\n\n"
            "Evaluate and respond with a single JSON object (no markdown code fence)."
        )
        payload = extract_json(self.complete(self.system_prompt, message))
        if not isinstance(payload, dict):
            raise EvaluationError(f"No valid JSON in judge response for {story_id}")
        return parse_judge_rubric(payload)


class PromptedConsistencyJudge:
    """Corpus-level judge backed by a text completion function."""

    def __init__(self, complete: CompletionFn, system_prompt: str = CONSISTENCY_SYSTEM_PROMPT):
        self.complete = complete
        self.system_prompt = system_prompt

    def judge(
        self,
        stories: Dict[str, str],
        interconnections: Dict[str, StoryInterconnections],
        context: SystemContext,
    ) -> GlobalConsistencyReport:
        blob = "\n\n".join(f"### {story_id}\n{text}" for story_id, text in stories.items())
        message = (
            f"## System context\n{context.describe()}\n\n## Stories\n{blob}\n\n"
            "Assess consistency across these stories. Respond with only the report JSON."
        )
        payload = extract_json(self.complete(self.system_prompt, message))
        if not isinstance(payload, dict):
            raise EvaluationError("No valid JSON in consistency response")
        return parse_global_consistency_report(payload)


# ----------------------------------------------------------------------
# Offline judges
# ----------------------------------------------------------------------


@dataclass(slots=True)
class RuleBasedScorer:
    """Deterministic scorer that needs no model call.

    Scores the structure it can check mechanically: technical content in
    user-facing sections, identifiers unknown to the system context, presence
    of acceptance criteria, missing narrative lines and duplicate sections.
    """

    threshold: float = 3.5
    parser: StoryParser = field(default_factory=StoryParser)

    def score(self, story_id: str, text: str, context: SystemContext) -> JudgeRubric:
        parsed = self.parser.parse(text, story_id=story_id)
        document = parsed.document

        violations: List[Violation] = []
        for path in USER_FACING_PATHS:
            label = resolve_path(path).label
            if resolve_path(path).is_narrative:
                lines = [document.narrative_line(path)]
            else:
                lines = [entry.text for entry in document.collection(path)]
            for line in lines:
                if line and is_technical(line):
                    violations.append(Violation(
                        quote=line,
                        reason=f"Technical detail in a user-facing section ({technical_reason(line)})",
                        section=label,
                    ))

        known = set(context.known_ids())
        hallucinations: List[str] = []
        for match in SYSTEM_ID_PATTERN.finditer(text):
            if match.group(0) not in known and match.group(0) not in hallucinations:
                hallucinations.append(match.group(0))

        missing: List[str] = []
        for path in (PatchPath.AS_A, PatchPath.I_WANT, PatchPath.SO_THAT):
            if not document.narrative_line(path):
                missing.append(resolve_path(path).label)
        for path in (PatchPath.USER_VISIBLE_BEHAVIOR, PatchPath.OUTCOME_ACCEPTANCE_CRITERIA):
            if not document.collection(path):
                missing.append(resolve_path(path).label)

        dimensions = {
            "sectionSeparation": DimensionScore(
                score=max(0, MAX_SCORE - len(violations)),
                reasoning=f"{len(violations)} technical line(s) in user-facing sections",
            ),
            "correctnessVsSystemContext": DimensionScore(
                score=max(0, MAX_SCORE - len(hallucinations)),
                reasoning=f"{len(hallucinations)} identifier(s) unknown to the system context",
            ),
            "testabilityOutcome": DimensionScore(
                score=_coverage_score(len(document.outcome_acceptance_criteria)),
                reasoning=f"{len(document.outcome_acceptance_criteria)} outcome criteria",
            ),
            "testabilitySystem": DimensionScore(
                score=_coverage_score(len(document.system_acceptance_criteria)),
                reasoning=f"{len(document.system_acceptance_criteria)} system criteria",
            ),
            "completeness": DimensionScore(
                score=max(0, MAX_SCORE - len(missing)),
                reasoning="missing: " + ", ".join(missing) if missing else "all core elements present",
            ),
        }

        mean = sum(d.score for d in dimensions.values()) / len(dimensions)
        overall = round(max(0.0, mean - 0.5 * len(parsed.duplicate_sections)), 1)
        if overall >= self.threshold:
            recommendation = "approve"
        elif violations or parsed.duplicate_sections:
            recommendation = "rewrite"
        else:
            recommendation = "manual-review"

        return JudgeRubric(
            overall_score=overall,
            recommendation=recommendation,
            dimensions=dimensions,
            violations=violations,
            duplicate_sections=parsed.duplicate_sections,
            hallucinations=hallucinations,
            missing_elements=missing,
        )


def _coverage_score(count: int) -> int:
    if count == 0:
        return 1
    if count == 1:
        return 3
    return MAX_SCORE


@dataclass(slots=True)
class RuleBasedConsistencyJudge:
    """Deterministic corpus judge.

    Proposes reverse links for one-way story relationships and canonical ids
    for contract references that differ from a known id only by case.
    """

    link_confidence: float = 0.9
    contract_confidence: float = 0.8

    def judge(
        self,
        stories: Dict[str, str],
        interconnections: Dict[str, StoryInterconnections],
        context: SystemContext,
    ) -> GlobalConsistencyReport:
        report = GlobalConsistencyReport()

        for story_id, record in interconnections.items():
            for rel in record.related_stories:
                other = interconnections.get(rel.story_id)
                if other is None or rel.story_id == story_id or other.links_to(story_id):
                    continue
                inverse = INVERSE_RELATIONSHIP.get(rel.relationship, "related")
                report.issues.append(ConsistencyIssue(
                    description=f"{story_id} lists {rel.story_id} as {rel.relationship}, but not the reverse",
                    suggested_fix_type="missing-bidirectional-link",
                    confidence=self.link_confidence,
                    affected_stories=[story_id, rel.story_id],
                ))
                report.fixes.append(ConsistencyFix(
                    type="add-bidirectional-link",
                    story_id=rel.story_id,
                    path=None,
                    operation="add",
                    confidence=self.link_confidence,
                    reasoning=f"Reverse of {story_id} {rel.relationship} link",
                    related_story=RelatedStory(story_id=story_id, relationship=inverse),
                ))

        known = {i.upper(): i for i in context.known_ids()}
        for story_id, record in interconnections.items():
            for dep in record.contract_dependencies:
                if dep in known.values():
                    continue
                canonical = known.get(dep.upper())
                report.issues.append(ConsistencyIssue(
                    description=f"{story_id} references {dep}, which is not in the system context",
                    suggested_fix_type="invalid-contract-id",
                    confidence=self.contract_confidence if canonical else 0.0,
                    affected_stories=[story_id],
                ))
                if canonical:
                    report.fixes.append(ConsistencyFix(
                        type="normalize-contract-id",
                        story_id=story_id,
                        path=None,
                        operation="replace",
                        confidence=self.contract_confidence,
                        reasoning=f"{dep} differs from {canonical} only by case",
                        item=PatchItem(text=canonical),
                        match=PatchMatch(text_equals=dep),
                    ))

        return report
