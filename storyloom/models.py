"""Data models for storyloom.

This module contains the core data structures used throughout the engine:
the per-story document and its items, the patch wire shape, judge rubrics,
cross-story interconnections, consistency reports, and the system context
produced by discovery. Wire dictionaries use camelCase keys.
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ErrorKind
from .paths import (
    IMPLEMENTATION_NOTE_PATHS,
    PatchPath,
    PathKind,
    coerce_path,
    resolve_path,
)

MAX_TEXT_LENGTH = 500

PATCH_OPERATIONS = ("add", "replace", "remove")
RELATIONSHIP_TYPES = ("prerequisite", "parallel", "dependent", "related")
INVERSE_RELATIONSHIP = {
    "prerequisite": "dependent",
    "dependent": "prerequisite",
    "parallel": "parallel",
    "related": "related",
}
RECOMMENDATIONS = ("approve", "rewrite", "manual-review")
FIX_TYPES = ("add-bidirectional-link", "normalize-contract-id", "normalize-term-to-vocabulary")


# ----------------------------------------------------------------------
# Document
# ----------------------------------------------------------------------


@dataclass(slots=True)
class Item:
    """A single identified entry in a document collection."""

    id: str
    text: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "text": self.text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        return cls(id=str(data.get("id", "")), text=str(data.get("text", "")))


@dataclass(slots=True)
class UIMappingItem:
    """Mapping of a product term to the component that implements it."""

    id: str
    product_term: str
    component_name: str

    @property
    def text(self) -> str:
        """Match text used by ``textEquals``: ``"<term> | <component>"``."""
        return f"{self.product_term} | {self.component_name}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "productTerm": self.product_term,
            "componentName": self.component_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UIMappingItem":
        return cls(
            id=str(data.get("id", "")),
            product_term=str(data.get("productTerm", "")),
            component_name=str(data.get("componentName", "")),
        )


Entry = Union[Item, UIMappingItem]


@dataclass(slots=True)
class ImplementationNotes:
    """Technical notes grouped by concern; each key is its own collection."""

    state_ownership: List[Item] = field(default_factory=list)
    data_flow: List[Item] = field(default_factory=list)
    api_contracts: List[Item] = field(default_factory=list)
    loading_states: List[Item] = field(default_factory=list)
    performance_notes: List[Item] = field(default_factory=list)
    security_notes: List[Item] = field(default_factory=list)
    telemetry_notes: List[Item] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not any(getattr(self, resolve_path(p).slot) for p in IMPLEMENTATION_NOTE_PATHS)

    def to_dict(self) -> Dict[str, List[Dict[str, str]]]:
        return {
            p.value.split(".", 1)[1]: [i.to_dict() for i in getattr(self, resolve_path(p).slot)]
            for p in IMPLEMENTATION_NOTE_PATHS
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImplementationNotes":
        notes = cls()
        for p in IMPLEMENTATION_NOTE_PATHS:
            key = p.value.split(".", 1)[1]
            setattr(notes, resolve_path(p).slot, [Item.from_dict(i) for i in data.get(key, [])])
        return notes


@dataclass(slots=True)
class Narrative:
    """The fixed three-line story narrative. Lines carry no identifier."""

    as_a: str = ""
    i_want: str = ""
    so_that: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"asA": self.as_a, "iWant": self.i_want, "soThat": self.so_that}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Narrative":
        return cls(
            as_a=str(data.get("asA", "")),
            i_want=str(data.get("iWant", "")),
            so_that=str(data.get("soThat", "")),
        )


@dataclass(slots=True)
class StoryDocument:
    """Structured per-story record; the single source of truth for rendering."""

    title: str
    story_id: str = ""
    narrative: Narrative = field(default_factory=Narrative)
    user_visible_behavior: List[Item] = field(default_factory=list)
    outcome_acceptance_criteria: List[Item] = field(default_factory=list)
    system_acceptance_criteria: List[Item] = field(default_factory=list)
    implementation_notes: ImplementationNotes = field(default_factory=ImplementationNotes)
    ui_mapping: List[UIMappingItem] = field(default_factory=list)
    open_questions: List[Item] = field(default_factory=list)
    edge_cases: List[Item] = field(default_factory=list)
    non_goals: List[Item] = field(default_factory=list)

    @classmethod
    def empty(cls, title: str, story_id: str = "") -> "StoryDocument":
        """Create the empty document a story starts from at intake."""
        return cls(title=title, story_id=story_id)

    def collection(self, path: PatchPath) -> List[Entry]:
        """Return the live collection list at ``path``.

        Raises ``KeyError`` for narrative paths, which are scalar.
        """
        spec = resolve_path(path)
        if spec.kind is PathKind.COLLECTION:
            return getattr(self, spec.slot)
        if spec.kind is PathKind.IMPLEMENTATION_NOTE:
            return getattr(self.implementation_notes, spec.slot)
        raise KeyError(f"{path.value} is a narrative line, not a collection")

    def narrative_line(self, path: PatchPath) -> str:
        spec = resolve_path(path)
        if spec.kind is not PathKind.NARRATIVE:
            raise KeyError(f"{path.value} is not a narrative line")
        return getattr(self.narrative, spec.slot)

    def set_narrative_line(self, path: PatchPath, text: str) -> None:
        spec = resolve_path(path)
        if spec.kind is not PathKind.NARRATIVE:
            raise KeyError(f"{path.value} is not a narrative line")
        setattr(self.narrative, spec.slot, text)

    def ids(self, path: PatchPath) -> List[str]:
        return [entry.id for entry in self.collection(path)]

    def copy(self) -> "StoryDocument":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storyId": self.story_id,
            "title": self.title,
            "story": self.narrative.to_dict(),
            "userVisibleBehavior": [i.to_dict() for i in self.user_visible_behavior],
            "outcomeAcceptanceCriteria": [i.to_dict() for i in self.outcome_acceptance_criteria],
            "systemAcceptanceCriteria": [i.to_dict() for i in self.system_acceptance_criteria],
            "implementationNotes": self.implementation_notes.to_dict(),
            "uiMapping": [i.to_dict() for i in self.ui_mapping],
            "openQuestions": [i.to_dict() for i in self.open_questions],
            "edgeCases": [i.to_dict() for i in self.edge_cases],
            "nonGoals": [i.to_dict() for i in self.non_goals],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoryDocument":
        return cls(
            title=str(data.get("title", "")),
            story_id=str(data.get("storyId", "")),
            narrative=Narrative.from_dict(data.get("story", {})),
            user_visible_behavior=[Item.from_dict(i) for i in data.get("userVisibleBehavior", [])],
            outcome_acceptance_criteria=[Item.from_dict(i) for i in data.get("outcomeAcceptanceCriteria", [])],
            system_acceptance_criteria=[Item.from_dict(i) for i in data.get("systemAcceptanceCriteria", [])],
            implementation_notes=ImplementationNotes.from_dict(data.get("implementationNotes", {})),
            ui_mapping=[UIMappingItem.from_dict(i) for i in data.get("uiMapping", [])],
            open_questions=[Item.from_dict(i) for i in data.get("openQuestions", [])],
            edge_cases=[Item.from_dict(i) for i in data.get("edgeCases", [])],
            non_goals=[Item.from_dict(i) for i in data.get("nonGoals", [])],
        )


def entry_text(entry: Entry) -> str:
    """Text used for ``textEquals`` matching on any collection entry."""
    return entry.text


# ----------------------------------------------------------------------
# Patches
# ----------------------------------------------------------------------


@dataclass(slots=True)
class PatchItem:
    """Payload of an add/replace patch.

    UI-mapping items may carry ``product_term``/``component_name`` directly or
    a ``text`` of the form ``"<term> | <component>"``.
    """

    id: Optional[str] = None
    text: Optional[str] = None
    product_term: Optional[str] = None
    component_name: Optional[str] = None

    @property
    def effective_text(self) -> Optional[str]:
        if self.text is not None:
            return self.text
        if self.product_term is not None:
            return f"{self.product_term} | {self.component_name or ''}"
        return None

    def to_dict(self) -> Dict[str, str]:
        data: Dict[str, str] = {}
        if self.id is not None:
            data["id"] = self.id
        if self.text is not None:
            data["text"] = self.text
        if self.product_term is not None:
            data["productTerm"] = self.product_term
        if self.component_name is not None:
            data["componentName"] = self.component_name
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["PatchItem"]:
        if not isinstance(data, dict):
            return None
        return cls(
            id=_optional_str(data.get("id")),
            text=_optional_str(data.get("text")),
            product_term=_optional_str(data.get("productTerm")),
            component_name=_optional_str(data.get("componentName")),
        )


@dataclass(slots=True)
class PatchMatch:
    """Selector for replace/remove: by id or by exact text."""

    id: Optional[str] = None
    text_equals: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.id and not self.text_equals

    def matches(self, entry: Entry) -> bool:
        if self.id and entry.id == self.id:
            return True
        if self.text_equals and entry_text(entry) == self.text_equals:
            return True
        return False

    def to_dict(self) -> Dict[str, str]:
        data: Dict[str, str] = {}
        if self.id is not None:
            data["id"] = self.id
        if self.text_equals is not None:
            data["textEquals"] = self.text_equals
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["PatchMatch"]:
        if not isinstance(data, dict):
            return None
        return cls(id=_optional_str(data.get("id")), text_equals=_optional_str(data.get("textEquals")))


@dataclass(slots=True)
class Patch:
    """A single proposed edit, as exchanged between advisors and the engine.

    ``path`` is kept as received so that an unknown path can be reported by
    the validator instead of failing at decode time.
    """

    path: Optional[str]
    op: Optional[str]
    item: Optional[PatchItem] = None
    match: Optional[PatchMatch] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def advisor_id(self) -> Optional[str]:
        value = self.metadata.get("advisorId")
        return value if isinstance(value, str) and value.strip() else None

    @property
    def patch_path(self) -> Optional[PatchPath]:
        return coerce_path(self.path)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "path": self.path.value if isinstance(self.path, PatchPath) else self.path,
            "op": self.op,
            "metadata": dict(self.metadata),
        }
        if self.item is not None:
            data["item"] = self.item.to_dict()
        if self.match is not None:
            data["match"] = self.match.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Patch":
        metadata = data.get("metadata")
        return cls(
            path=_optional_str(data.get("path")),
            op=_optional_str(data.get("op")),
            item=PatchItem.from_dict(data.get("item")),
            match=PatchMatch.from_dict(data.get("match")),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )


@dataclass(slots=True)
class ValidationResult:
    """Outcome of validating one patch. All applicable errors are listed."""

    valid: bool
    errors: List[str] = field(default_factory=list)
    kind: Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "kind": self.kind.value if self.kind else None,
        }


# ----------------------------------------------------------------------
# Judge rubric
# ----------------------------------------------------------------------


@dataclass(slots=True)
class Violation:
    """Offending text reported by the judge, with the reason it is wrong."""

    quote: str
    reason: str = ""
    section: str = ""
    suggested_rewrite: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "section": self.section,
            "quote": self.quote,
            "reason": self.reason,
            "suggestedRewrite": self.suggested_rewrite,
        }


@dataclass(slots=True)
class DuplicateSection:
    section: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"section": self.section, "count": self.count}


@dataclass(slots=True)
class DimensionScore:
    score: int
    reasoning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "reasoning": self.reasoning}


@dataclass(slots=True)
class Relationship:
    """Graph change discovered by the judge (node or edge, add or edit)."""

    id: str
    type: str
    operation: str
    name: str = ""
    evidence: str = ""
    canonical_name: Optional[str] = None
    confidence: Optional[float] = None
    source: Optional[str] = None
    target: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "operation": self.operation,
            "name": self.name,
            "evidence": self.evidence,
            "canonicalName": self.canonical_name,
            "confidence": self.confidence,
            "source": self.source,
            "target": self.target,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Relationship":
        confidence = data.get("confidence")
        return cls(
            id=str(data.get("id", "")),
            type=str(data.get("type", "")),
            operation=str(data.get("operation", "")),
            name=str(data.get("name", "")),
            evidence=str(data.get("evidence", "")),
            canonical_name=_optional_str(data.get("canonicalName")),
            confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
            source=_optional_str(data.get("source")),
            target=_optional_str(data.get("target")),
        )


@dataclass(slots=True)
class JudgeRubric:
    """Scored evaluation of one rendered story."""

    overall_score: float
    recommendation: str
    dimensions: Dict[str, DimensionScore] = field(default_factory=dict)
    violations: List[Violation] = field(default_factory=list)
    duplicate_sections: List[DuplicateSection] = field(default_factory=list)
    hallucinations: List[str] = field(default_factory=list)
    missing_elements: List[str] = field(default_factory=list)
    new_relationships: List[Relationship] = field(default_factory=list)
    needs_system_context_update: bool = False

    def to_dict(self) -> Dict[str, Any]:
        dims = self.dimensions

        def dim(name: str) -> Dict[str, Any]:
            return dims[name].to_dict() if name in dims else {"score": 0, "reasoning": ""}

        return {
            "sectionSeparation": {**dim("sectionSeparation"), "violations": [v.to_dict() for v in self.violations]},
            "correctnessVsSystemContext": {**dim("correctnessVsSystemContext"), "hallucinations": list(self.hallucinations)},
            "testability": {"outcomeAC": dim("testabilityOutcome"), "systemAC": dim("testabilitySystem")},
            "completeness": {**dim("completeness"), "missingElements": list(self.missing_elements)},
            "overallScore": self.overall_score,
            "recommendation": self.recommendation,
            "duplicateSections": [d.to_dict() for d in self.duplicate_sections],
            "newRelationships": [r.to_dict() for r in self.new_relationships],
            "needsSystemContextUpdate": self.needs_system_context_update,
        }


# ----------------------------------------------------------------------
# Interconnections
# ----------------------------------------------------------------------


@dataclass(slots=True)
class Ownership:
    owns_state: List[str] = field(default_factory=list)
    consumes_state: List[str] = field(default_factory=list)
    emits_events: List[str] = field(default_factory=list)
    listens_to_events: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.owns_state or self.consumes_state or self.emits_events or self.listens_to_events)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "ownsState": list(self.owns_state),
            "consumesState": list(self.consumes_state),
            "emitsEvents": list(self.emits_events),
            "listensToEvents": list(self.listens_to_events),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Ownership":
        data = data if isinstance(data, dict) else {}
        return cls(
            owns_state=_str_list(data.get("ownsState")),
            consumes_state=_str_list(data.get("consumesState")),
            emits_events=_str_list(data.get("emitsEvents")),
            listens_to_events=_str_list(data.get("listensToEvents")),
        )


@dataclass(slots=True)
class RelatedStory:
    story_id: str
    relationship: str
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"storyId": self.story_id, "relationship": self.relationship}
        if self.description:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelatedStory":
        return cls(
            story_id=str(data.get("storyId", "")),
            relationship=str(data.get("relationship", "related")),
            description=_optional_str(data.get("description")),
        )


@dataclass(slots=True)
class StoryInterconnections:
    """Pass 2 cross-references for one story."""

    story_id: str
    ui_mapping: Dict[str, str] = field(default_factory=dict)
    contract_dependencies: List[str] = field(default_factory=list)
    ownership: Ownership = field(default_factory=Ownership)
    related_stories: List[RelatedStory] = field(default_factory=list)

    def links_to(self, story_id: str) -> bool:
        return any(r.story_id == story_id for r in self.related_stories)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storyId": self.story_id,
            "uiMapping": dict(self.ui_mapping),
            "contractDependencies": list(self.contract_dependencies),
            "ownership": self.ownership.to_dict(),
            "relatedStories": [r.to_dict() for r in self.related_stories],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoryInterconnections":
        ui_mapping = data.get("uiMapping")
        related = data.get("relatedStories")
        return cls(
            story_id=str(data.get("storyId", "")),
            ui_mapping={str(k): str(v) for k, v in ui_mapping.items()} if isinstance(ui_mapping, dict) else {},
            contract_dependencies=_str_list(data.get("contractDependencies")),
            ownership=Ownership.from_dict(data.get("ownership")),
            related_stories=[
                RelatedStory.from_dict(r) for r in related if isinstance(r, dict)
            ] if isinstance(related, list) else [],
        )


# ----------------------------------------------------------------------
# Global consistency
# ----------------------------------------------------------------------


@dataclass(slots=True)
class ConsistencyIssue:
    description: str
    suggested_fix_type: str = "unknown"
    confidence: float = 0.0
    affected_stories: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "suggestedFixType": self.suggested_fix_type,
            "confidence": self.confidence,
            "affectedStories": list(self.affected_stories),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsistencyIssue":
        return cls(
            description=str(data.get("description", "")),
            suggested_fix_type=str(data.get("suggestedFixType", "unknown")),
            confidence=_clamp_unit(data.get("confidence")),
            affected_stories=_str_list(data.get("affectedStories")),
        )


@dataclass(slots=True)
class ConsistencyFix:
    """A corpus-level fix proposed by the global judge for one story."""

    type: str
    story_id: str
    path: Optional[str]
    operation: str
    confidence: float
    reasoning: str = ""
    item: Optional[PatchItem] = None
    match: Optional[PatchMatch] = None
    related_story: Optional[RelatedStory] = None

    def to_patch(self, advisor_id: str = "global-consistency") -> Patch:
        return Patch(
            path=self.path,
            op=self.operation,
            item=copy.deepcopy(self.item),
            match=copy.deepcopy(self.match),
            metadata={"advisorId": advisor_id, "fixType": self.type, "reasoning": self.reasoning},
        )

    def describe(self) -> str:
        return f"{self.type} to {self.story_id}"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type,
            "storyId": self.story_id,
            "path": self.path,
            "operation": self.operation,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }
        if self.item is not None:
            data["item"] = self.item.to_dict()
        if self.match is not None:
            data["match"] = self.match.to_dict()
        if self.related_story is not None:
            data["relatedStory"] = self.related_story.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsistencyFix":
        related = data.get("relatedStory")
        return cls(
            type=str(data.get("type", "")),
            story_id=str(data.get("storyId", "")),
            path=_optional_str(data.get("path")),
            operation=str(data.get("operation", "")),
            confidence=_clamp_unit(data.get("confidence")),
            reasoning=str(data.get("reasoning", "")),
            item=PatchItem.from_dict(data.get("item")),
            match=PatchMatch.from_dict(data.get("match")),
            related_story=RelatedStory.from_dict(related) if isinstance(related, dict) else None,
        )


@dataclass(slots=True)
class GlobalConsistencyReport:
    issues: List[ConsistencyIssue] = field(default_factory=list)
    fixes: List[ConsistencyFix] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issues": [i.to_dict() for i in self.issues],
            "fixes": [f.to_dict() for f in self.fixes],
        }


# ----------------------------------------------------------------------
# System context
# ----------------------------------------------------------------------


@dataclass(slots=True)
class Component:
    id: str
    product_name: str
    description: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "productName": self.product_name, "description": self.description}


@dataclass(slots=True)
class StateModel:
    id: str
    name: str
    owner: str = ""
    consumers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "owner": self.owner, "consumers": list(self.consumers)}


@dataclass(slots=True)
class EventDefinition:
    id: str
    name: str
    emitter: str = ""
    listeners: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "emitter": self.emitter, "listeners": list(self.listeners)}


@dataclass(slots=True)
class DataFlow:
    id: str
    source: str = ""
    target: str = ""
    description: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "source": self.source, "target": self.target, "description": self.description}


@dataclass(slots=True)
class SystemContext:
    """System-level model shared by every story in a corpus."""

    components: Dict[str, Component] = field(default_factory=dict)
    state_models: List[StateModel] = field(default_factory=list)
    events: List[EventDefinition] = field(default_factory=list)
    data_flows: List[DataFlow] = field(default_factory=list)
    composition_edges: List[Tuple[str, str]] = field(default_factory=list)
    coordination_edges: List[Tuple[str, str, str]] = field(default_factory=list)
    vocabulary: Dict[str, str] = field(default_factory=dict)

    def known_ids(self) -> List[str]:
        ids = list(self.components)
        ids.extend(s.id for s in self.state_models)
        ids.extend(e.id for e in self.events)
        ids.extend(d.id for d in self.data_flows)
        return ids

    def copy(self) -> "SystemContext":
        return copy.deepcopy(self)

    def describe(self) -> str:
        """Compact textual digest passed to external capabilities."""
        parts: List[str] = []
        if self.components:
            parts.append("Components: " + ", ".join(
                f"{c.id} ({c.product_name})" for c in self.components.values()
            ))
        if self.composition_edges:
            parts.append("Composition: " + ", ".join(f"{p}→{c}" for p, c in self.composition_edges))
        if self.coordination_edges:
            parts.append("Coordination: " + ", ".join(f"{a}→{b} ({via})" for a, b, via in self.coordination_edges))
        if self.state_models:
            parts.append("State models: " + ", ".join(s.id for s in self.state_models))
        if self.events:
            parts.append("Events: " + ", ".join(e.id for e in self.events))
        if self.data_flows:
            parts.append("Data flows: " + ", ".join(d.id for d in self.data_flows))
        if self.vocabulary:
            parts.append("Vocabulary: " + ", ".join(f"{k}→{v}" for k, v in self.vocabulary.items()))
        return "\n".join(parts) if parts else "(no system context)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "components": {k: c.to_dict() for k, c in self.components.items()},
            "stateModels": [s.to_dict() for s in self.state_models],
            "events": [e.to_dict() for e in self.events],
            "dataFlows": [d.to_dict() for d in self.data_flows],
            "compositionEdges": [{"parent": p, "child": c} for p, c in self.composition_edges],
            "coordinationEdges": [{"from": a, "to": b, "via": v} for a, b, v in self.coordination_edges],
            "vocabulary": dict(self.vocabulary),
        }


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


def _clamp_unit(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))
