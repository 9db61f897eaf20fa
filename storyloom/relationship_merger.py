"""Merging judge-discovered relationships into the system context.

Policy is add-only: new nodes and edges are merged, duplicates are skipped,
and anything that would edit existing structure or reference an unknown
entity is returned for manual review instead of being applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .models import Component, DataFlow, EventDefinition, Relationship, StateModel, SystemContext

logger = logging.getLogger("storyloom.interconnection")

COMPOSITION_EDGE_NAMES = ("composed-of", "contains")
COORDINATION_EDGE_NAMES = ("coordinates-with", "communicates-with")

_MERGED = "merged"
_SKIPPED = "skipped"


@dataclass(slots=True)
class ManualReviewItem:
    relationship: Relationship
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"relationship": self.relationship.to_dict(), "reason": self.reason}


@dataclass(slots=True)
class MergeResult:
    context: SystemContext
    merged_count: int = 0
    skipped: List[Relationship] = field(default_factory=list)
    manual_review: List[ManualReviewItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mergedCount": self.merged_count,
            "skipped": [r.to_dict() for r in self.skipped],
            "manualReview": [m.to_dict() for m in self.manual_review],
        }


def merge_new_relationships(context: SystemContext, relationships: List[Relationship]) -> MergeResult:
    """Merge ``relationships`` into a copy of ``context``; the input is not modified."""
    result = MergeResult(context=context.copy())

    for rel in relationships:
        outcome = _merge_one(result.context, rel)
        if outcome == _MERGED:
            result.merged_count += 1
        elif outcome == _SKIPPED:
            result.skipped.append(rel)
        else:
            result.manual_review.append(ManualReviewItem(relationship=rel, reason=outcome))

    logger.info(
        f"Merge summary: {result.merged_count} merged, {len(result.skipped)} skipped (duplicates), "
        f"{len(result.manual_review)} flagged for manual review"
    )
    return result


def _merge_one(context: SystemContext, rel: Relationship) -> str:
    if rel.operation in ("edit_node", "edit_edge"):
        return "Edit operations require manual review (add-only policy)"
    if rel.operation == "add_node":
        return _add_node(context, rel)
    if rel.operation == "add_edge":
        return _add_edge(context, rel)
    return f"Unknown operation: {rel.operation}"


def _add_node(context: SystemContext, rel: Relationship) -> str:
    name = rel.canonical_name or rel.name
    if not rel.id or not name:
        return "add_node missing required fields (id, canonicalName or name)"

    if rel.type == "component":
        if rel.id in context.components:
            return _SKIPPED
        context.components[rel.id] = Component(id=rel.id, product_name=name)
        return _MERGED

    if rel.type == "stateModel":
        if any(s.id == rel.id for s in context.state_models):
            return _SKIPPED
        context.state_models.append(StateModel(id=rel.id, name=name))
        return _MERGED

    if rel.type == "event":
        if any(e.id == rel.id for e in context.events):
            return _SKIPPED
        context.events.append(EventDefinition(id=rel.id, name=name))
        return _MERGED

    if rel.type == "dataFlow":
        if any(d.id == rel.id for d in context.data_flows):
            return _SKIPPED
        context.data_flows.append(DataFlow(id=rel.id, description=name))
        return _MERGED

    return f"Unknown node type: {rel.type}"


def _add_edge(context: SystemContext, rel: Relationship) -> str:
    if not rel.name or not rel.source or not rel.target:
        return "add_edge missing required fields (name, source, target)"

    if rel.source not in context.components or rel.target not in context.components:
        return f"Entity references do not exist (source: {rel.source}, target: {rel.target})"

    if rel.name in COMPOSITION_EDGE_NAMES:
        edge: Tuple[str, ...] = (rel.source, rel.target)
        if edge in context.composition_edges:
            return _SKIPPED
        context.composition_edges.append((rel.source, rel.target))
        return _MERGED

    if rel.name in COORDINATION_EDGE_NAMES:
        edge = (rel.source, rel.target, rel.name)
        if edge in context.coordination_edges:
            return _SKIPPED
        context.coordination_edges.append((rel.source, rel.target, rel.name))
        return _MERGED

    return f"Unknown edge type: {rel.name}"
