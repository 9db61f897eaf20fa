"""Patch path table for story documents.

Every editable location in a story document is named by a ``PatchPath``.
Paths fall into three kinds: narrative lines (scalar, no identifier),
top-level collections, and implementation-notes subsections. The prefix
table below is a compatibility contract for downstream tools and must not
change.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple


class PathKind(str, Enum):
    """Kind of slot a patch path resolves to."""

    NARRATIVE = "narrative"
    COLLECTION = "collection"
    IMPLEMENTATION_NOTE = "implementation_note"


class PatchPath(str, Enum):
    """Closed set of patchable locations in a story document."""

    AS_A = "story.asA"
    I_WANT = "story.iWant"
    SO_THAT = "story.soThat"
    USER_VISIBLE_BEHAVIOR = "userVisibleBehavior"
    OUTCOME_ACCEPTANCE_CRITERIA = "outcomeAcceptanceCriteria"
    SYSTEM_ACCEPTANCE_CRITERIA = "systemAcceptanceCriteria"
    STATE_OWNERSHIP = "implementationNotes.stateOwnership"
    DATA_FLOW = "implementationNotes.dataFlow"
    API_CONTRACTS = "implementationNotes.apiContracts"
    LOADING_STATES = "implementationNotes.loadingStates"
    PERFORMANCE_NOTES = "implementationNotes.performanceNotes"
    SECURITY_NOTES = "implementationNotes.securityNotes"
    TELEMETRY_NOTES = "implementationNotes.telemetryNotes"
    UI_MAPPING = "uiMapping"
    OPEN_QUESTIONS = "openQuestions"
    EDGE_CASES = "edgeCases"
    NON_GOALS = "nonGoals"


@dataclass(frozen=True, slots=True)
class PathSpec:
    """Resolved description of a patch path.

    ``slot`` is the narrative field name, the top-level collection attribute,
    or the implementation-notes key, depending on ``kind``.
    """

    path: PatchPath
    kind: PathKind
    slot: str
    prefix: Optional[str]
    label: str

    @property
    def is_narrative(self) -> bool:
        return self.kind is PathKind.NARRATIVE


_PATH_TABLE: Dict[PatchPath, PathSpec] = {
    PatchPath.AS_A: PathSpec(PatchPath.AS_A, PathKind.NARRATIVE, "as_a", None, "As a"),
    PatchPath.I_WANT: PathSpec(PatchPath.I_WANT, PathKind.NARRATIVE, "i_want", None, "I want"),
    PatchPath.SO_THAT: PathSpec(PatchPath.SO_THAT, PathKind.NARRATIVE, "so_that", None, "So that"),
    PatchPath.USER_VISIBLE_BEHAVIOR: PathSpec(
        PatchPath.USER_VISIBLE_BEHAVIOR, PathKind.COLLECTION,
        "user_visible_behavior", "UVB-", "User-Visible Behavior",
    ),
    PatchPath.OUTCOME_ACCEPTANCE_CRITERIA: PathSpec(
        PatchPath.OUTCOME_ACCEPTANCE_CRITERIA, PathKind.COLLECTION,
        "outcome_acceptance_criteria", "AC-OUT-", "Acceptance Criteria (Outcome)",
    ),
    PatchPath.SYSTEM_ACCEPTANCE_CRITERIA: PathSpec(
        PatchPath.SYSTEM_ACCEPTANCE_CRITERIA, PathKind.COLLECTION,
        "system_acceptance_criteria", "AC-SYS-", "Acceptance Criteria (System)",
    ),
    PatchPath.STATE_OWNERSHIP: PathSpec(
        PatchPath.STATE_OWNERSHIP, PathKind.IMPLEMENTATION_NOTE,
        "state_ownership", "IMPL-STATE-", "State ownership",
    ),
    PatchPath.DATA_FLOW: PathSpec(
        PatchPath.DATA_FLOW, PathKind.IMPLEMENTATION_NOTE,
        "data_flow", "IMPL-FLOW-", "Data flow",
    ),
    PatchPath.API_CONTRACTS: PathSpec(
        PatchPath.API_CONTRACTS, PathKind.IMPLEMENTATION_NOTE,
        "api_contracts", "IMPL-API-", "API contracts",
    ),
    PatchPath.LOADING_STATES: PathSpec(
        PatchPath.LOADING_STATES, PathKind.IMPLEMENTATION_NOTE,
        "loading_states", "IMPL-LOAD-", "Loading states",
    ),
    PatchPath.PERFORMANCE_NOTES: PathSpec(
        PatchPath.PERFORMANCE_NOTES, PathKind.IMPLEMENTATION_NOTE,
        "performance_notes", "IMPL-PERF-", "Performance",
    ),
    PatchPath.SECURITY_NOTES: PathSpec(
        PatchPath.SECURITY_NOTES, PathKind.IMPLEMENTATION_NOTE,
        "security_notes", "IMPL-SEC-", "Security",
    ),
    PatchPath.TELEMETRY_NOTES: PathSpec(
        PatchPath.TELEMETRY_NOTES, PathKind.IMPLEMENTATION_NOTE,
        "telemetry_notes", "IMPL-TEL-", "Telemetry",
    ),
    PatchPath.UI_MAPPING: PathSpec(
        PatchPath.UI_MAPPING, PathKind.COLLECTION, "ui_mapping", "UI-MAP-", "UI Mapping",
    ),
    PatchPath.OPEN_QUESTIONS: PathSpec(
        PatchPath.OPEN_QUESTIONS, PathKind.COLLECTION, "open_questions", "QUESTION-", "Open Questions",
    ),
    PatchPath.EDGE_CASES: PathSpec(
        PatchPath.EDGE_CASES, PathKind.COLLECTION, "edge_cases", "EDGE-", "Edge Cases",
    ),
    PatchPath.NON_GOALS: PathSpec(
        PatchPath.NON_GOALS, PathKind.COLLECTION, "non_goals", "NON-GOAL-", "Non-Goals",
    ),
}

if set(_PATH_TABLE) != set(PatchPath):  # pragma: no cover - import-time guard
    raise RuntimeError("Path table does not cover every PatchPath")


NARRATIVE_PATHS: Tuple[PatchPath, ...] = (PatchPath.AS_A, PatchPath.I_WANT, PatchPath.SO_THAT)

IMPLEMENTATION_NOTE_PATHS: Tuple[PatchPath, ...] = (
    PatchPath.STATE_OWNERSHIP,
    PatchPath.DATA_FLOW,
    PatchPath.API_CONTRACTS,
    PatchPath.LOADING_STATES,
    PatchPath.PERFORMANCE_NOTES,
    PatchPath.SECURITY_NOTES,
    PatchPath.TELEMETRY_NOTES,
)

# Sections whose content must stay readable by a non-technical user.
USER_FACING_PATHS: Tuple[PatchPath, ...] = NARRATIVE_PATHS + (
    PatchPath.USER_VISIBLE_BEHAVIOR,
    PatchPath.OUTCOME_ACCEPTANCE_CRITERIA,
)


def coerce_path(value: object) -> Optional[PatchPath]:
    """Return the ``PatchPath`` for a wire value, or ``None`` if it is unknown."""
    if isinstance(value, PatchPath):
        return value
    if not isinstance(value, str):
        return None
    try:
        return PatchPath(value)
    except ValueError:
        return None


def resolve_path(path: PatchPath) -> PathSpec:
    """Resolve a path to its slot description."""
    return _PATH_TABLE[path]


def expected_prefix(path: PatchPath) -> Optional[str]:
    """Identifier prefix required for items at ``path``; ``None`` for narrative lines."""
    return _PATH_TABLE[path].prefix


def all_paths() -> List[PatchPath]:
    return list(PatchPath)
