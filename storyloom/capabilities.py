"""Capability interfaces for the external collaborators of the engine.

Advisors, the judge, the rewriter, discovery and Pass 2 extraction are all
injected. Implementations may call a language model, a remote service, or
nothing at all; the engine depends only on these shapes. An implementation
reports a failed call by raising ``EvaluationError`` (or a subclass), never
by returning an empty or zero-scored value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .models import (
    GlobalConsistencyReport,
    JudgeRubric,
    Patch,
    StoryInterconnections,
    SystemContext,
    Violation,
)
from .paths import PatchPath


@dataclass(slots=True)
class StoryInput:
    """A raw story as it enters the pipeline."""

    story_id: str
    title: str
    description: str = ""
    as_a: str = ""
    i_want: str = ""
    so_that: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "storyId": self.story_id,
            "title": self.title,
            "description": self.description,
            "asA": self.as_a,
            "iWant": self.i_want,
            "soThat": self.so_that,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoryInput":
        return cls(
            story_id=str(data.get("storyId", "")),
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            as_a=str(data.get("asA", "")),
            i_want=str(data.get("iWant", "")),
            so_that=str(data.get("soThat", "")),
        )


@dataclass(slots=True)
class EntityMention:
    """A system-level entity named somewhere in the corpus, before minting."""

    kind: str
    name: str
    description: str = ""


@dataclass(slots=True)
class EdgeMention:
    """A relationship between two mentioned entities, by name."""

    kind: str
    source: str
    target: str
    via: str = ""


@dataclass(slots=True)
class DiscoveryResult:
    entities: List[EntityMention] = field(default_factory=list)
    edges: List[EdgeMention] = field(default_factory=list)
    vocabulary: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AdvisorRequest:
    """Everything an advisor sees for one story."""

    story_id: str
    text: str
    context: SystemContext
    allowed_paths: Sequence[PatchPath]
    product_type: str = "web"


@runtime_checkable
class Advisor(Protocol):
    def propose(self, advisor_id: str, request: AdvisorRequest) -> List[Patch]:
        ...


@runtime_checkable
class Scorer(Protocol):
    def score(self, story_id: str, text: str, context: SystemContext) -> JudgeRubric:
        ...


@runtime_checkable
class Rewriter(Protocol):
    def rewrite(self, text: str, rubric: JudgeRubric, context: SystemContext) -> str:
        ...


@runtime_checkable
class Discoverer(Protocol):
    def discover(self, stories: Sequence[StoryInput]) -> DiscoveryResult:
        ...


@runtime_checkable
class Interconnector(Protocol):
    def extract(
        self,
        story_id: str,
        text: str,
        context: SystemContext,
        corpus_ids: Sequence[str],
    ) -> StoryInterconnections:
        ...


@runtime_checkable
class ConsistencyJudge(Protocol):
    def judge(
        self,
        stories: Dict[str, str],
        interconnections: Dict[str, StoryInterconnections],
        context: SystemContext,
    ) -> GlobalConsistencyReport:
        ...


def violation_quotes(violations: Sequence[Violation]) -> List[str]:
    return [v.quote for v in violations if v.quote]


def optional_capability(value: Optional[Any], protocol: type) -> Optional[Any]:
    """Return ``value`` if it satisfies ``protocol``; raise ``TypeError`` otherwise."""
    if value is None:
        return None
    if not isinstance(value, protocol):
        raise TypeError(f"{type(value).__name__} does not implement {protocol.__name__}")
    return value
