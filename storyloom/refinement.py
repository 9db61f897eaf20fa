"""Per-story refinement loop: judge, at most one rewrite, re-judge, flag.

::

    GENERATED -> JUDGED -> APPROVED
                        -> REWRITING -> REWRITTEN -> RE_JUDGED -> APPROVED
                                                               -> FLAGGED

The judge is called at most twice per story. ``FLAGGED`` is terminal but not
fatal: the caller records the manual-review item and moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import EvaluationError
from .judge import JudgeOutcome, RubricJudge
from .models import StoryDocument, SystemContext
from .renderer import StoryRenderer
from .rewriter import RewriteResult, StoryRewriter
from .storyloom_logging import (
    ObservabilityHooks,
    log_refinement_transition,
    log_story_flagged,
    observability_hooks,
)

logger = logging.getLogger("storyloom.refinement")

MAX_JUDGE_CALLS = 2

REASON_LOW_QUALITY = "low-quality-after-rewrite"
REASON_JUDGE_FAILED = "judge-evaluation-failed"
REASON_REWRITE_FAILED = "rewrite-failed"


class RefinementState(str, Enum):
    GENERATED = "GENERATED"
    JUDGED = "JUDGED"
    REWRITING = "REWRITING"
    REWRITTEN = "REWRITTEN"
    RE_JUDGED = "RE-JUDGED"
    APPROVED = "APPROVED"
    FLAGGED = "FLAGGED"


@dataclass(slots=True)
class ManualReview:
    """Why a story needs a human, and the score it ended with."""

    reason: str
    score: Optional[float]
    failure: Optional[EvaluationError] = None
    needs_review: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"needsReview": self.needs_review, "reason": self.reason, "score": self.score}
        if self.failure is not None:
            data["failure"] = self.failure.to_dict()
        return data


@dataclass(slots=True)
class RefinementResult:
    story_id: str
    state: RefinementState
    document: StoryDocument
    text: str
    judge_calls: int = 0
    outcomes: List[JudgeOutcome] = field(default_factory=list)
    rewrite: Optional[RewriteResult] = None
    review: Optional[ManualReview] = None
    history: List[RefinementState] = field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.state is RefinementState.APPROVED

    @property
    def final_score(self) -> Optional[float]:
        for outcome in reversed(self.outcomes):
            if outcome.rubric is not None:
                return outcome.score
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storyId": self.story_id,
            "state": self.state.value,
            "judgeCalls": self.judge_calls,
            "score": self.final_score,
            "history": [s.value for s in self.history],
            "review": self.review.to_dict() if self.review else None,
        }


class RefinementController:
    """Drives one story through the bounded judge/rewrite loop."""

    def __init__(
        self,
        judge: RubricJudge,
        rewriter: StoryRewriter,
        threshold: float = 3.5,
        renderer: Optional[StoryRenderer] = None,
        hooks: Optional[ObservabilityHooks] = None,
    ):
        self.judge = judge
        self.rewriter = rewriter
        self.threshold = threshold
        self.renderer = renderer or StoryRenderer()
        self.hooks = hooks or observability_hooks

    def refine(self, document: StoryDocument, context: SystemContext) -> RefinementResult:
        story_id = document.story_id
        result = RefinementResult(
            story_id=story_id,
            state=RefinementState.GENERATED,
            document=document,
            text=self.renderer.render(document),
            history=[RefinementState.GENERATED],
        )

        first = self._judge(result, context)
        self._transition(result, RefinementState.JUDGED)
        if first.is_evaluation_failure:
            return self._flag(result, REASON_JUDGE_FAILED, None, first.failure)
        if first.passed(self.threshold):
            return self._transition(result, RefinementState.APPROVED)

        self._transition(result, RefinementState.REWRITING, score=first.score)
        try:
            rewrite = self.rewriter.rewrite(result.document, result.text, first.rubric, context)
        except EvaluationError as e:
            logger.warning(f"Rewrite failed for {story_id}: {e}")
            return self._flag(result, REASON_REWRITE_FAILED, first.score, e)

        result.rewrite = rewrite
        result.document = rewrite.document
        result.text = rewrite.text
        self._transition(result, RefinementState.REWRITTEN)

        second = self._judge(result, context)
        self._transition(result, RefinementState.RE_JUDGED)
        if second.is_evaluation_failure:
            return self._flag(result, REASON_JUDGE_FAILED, None, second.failure)
        if second.passed(self.threshold):
            return self._transition(result, RefinementState.APPROVED)
        return self._flag(result, REASON_LOW_QUALITY, second.score)

    def _judge(self, result: RefinementResult, context: SystemContext) -> JudgeOutcome:
        if result.judge_calls >= MAX_JUDGE_CALLS:
            raise RuntimeError(f"Judge already called {MAX_JUDGE_CALLS} times for {result.story_id}")
        result.judge_calls += 1
        outcome = self.judge.evaluate(result.story_id, result.text, context)
        result.outcomes.append(outcome)
        return outcome

    def _transition(self, result: RefinementResult, state: RefinementState, **fields) -> RefinementResult:
        previous = result.state
        result.state = state
        result.history.append(state)
        logger.debug(f"{result.story_id}: {previous.value} -> {state.value}")
        log_refinement_transition(self.hooks, result.story_id, previous.value, state.value, **fields)
        return result

    def _flag(
        self,
        result: RefinementResult,
        reason: str,
        score: Optional[float],
        failure: Optional[EvaluationError] = None,
    ) -> RefinementResult:
        result.review = ManualReview(reason=reason, score=score, failure=failure)
        self._transition(result, RefinementState.FLAGGED, reason=reason)
        logger.info(f"Story {result.story_id} flagged for manual review: {reason} (score={score})")
        log_story_flagged(self.hooks, result.story_id, reason, score)
        return result
