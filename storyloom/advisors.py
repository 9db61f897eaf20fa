"""Advisor sequence, scopes and output parsing.

Advisors run in a fixed order per story. Each may only touch the paths in its
scope; the orchestrator rejects anything else. Raw advisor output is parsed
here into patches, and output that does not parse is an error rather than an
empty proposal.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import AdvisorOutputError
from .json_utils import extract_json
from .models import Patch
from .paths import PatchPath

logger = logging.getLogger("storyloom.pipeline")

PRODUCT_TYPES = ("web", "mobile-native", "mobile-web", "desktop", "api")

ALL_PRODUCT_TYPES = "all"


@dataclass(frozen=True, slots=True)
class AdvisorDefinition:
    """Static description of one advisor in the sequence."""

    id: str
    name: str
    category: str
    order: int
    allowed_paths: Tuple[PatchPath, ...]
    applicable_to: Union[str, Tuple[str, ...]] = ALL_PRODUCT_TYPES
    description: str = ""

    def applies_to(self, product_type: str) -> bool:
        return self.applicable_to == ALL_PRODUCT_TYPES or product_type in self.applicable_to

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "order": self.order,
            "allowedPaths": [p.value for p in self.allowed_paths],
            "applicableTo": self.applicable_to if isinstance(self.applicable_to, str) else list(self.applicable_to),
            "description": self.description,
        }


ADVISORS: Tuple[AdvisorDefinition, ...] = (
    AdvisorDefinition(
        id="user-roles",
        name="User Roles",
        category="roles",
        order=1,
        allowed_paths=(PatchPath.AS_A, PatchPath.USER_VISIBLE_BEHAVIOR),
        description="Identifies who uses the feature and what each role can see and do",
    ),
    AdvisorDefinition(
        id="interactive-elements",
        name="Interactive Elements",
        category="elements",
        order=2,
        allowed_paths=(
            PatchPath.USER_VISIBLE_BEHAVIOR,
            PatchPath.OUTCOME_ACCEPTANCE_CRITERIA,
            PatchPath.UI_MAPPING,
        ),
        description="Documents buttons, inputs, links, icons and their interaction states",
    ),
    AdvisorDefinition(
        id="validation",
        name="Validation Rules",
        category="validation",
        order=3,
        allowed_paths=(PatchPath.OUTCOME_ACCEPTANCE_CRITERIA, PatchPath.SYSTEM_ACCEPTANCE_CRITERIA),
        description="Identifies form field validation rules and user feedback requirements",
    ),
    AdvisorDefinition(
        id="accessibility",
        name="Accessibility Requirements",
        category="quality",
        order=4,
        allowed_paths=(PatchPath.OUTCOME_ACCEPTANCE_CRITERIA, PatchPath.SYSTEM_ACCEPTANCE_CRITERIA),
        description="Identifies accessibility requirements for inclusive design",
    ),
    AdvisorDefinition(
        id="performance",
        name="Performance Requirements",
        category="quality",
        order=5,
        allowed_paths=(
            PatchPath.SYSTEM_ACCEPTANCE_CRITERIA,
            PatchPath.PERFORMANCE_NOTES,
            PatchPath.LOADING_STATES,
        ),
        description="Identifies user-perceived performance requirements and loading feedback",
    ),
    AdvisorDefinition(
        id="security",
        name="Security Requirements",
        category="quality",
        order=6,
        allowed_paths=(PatchPath.SYSTEM_ACCEPTANCE_CRITERIA, PatchPath.SECURITY_NOTES),
        description="Identifies security requirements from a user trust and data protection perspective",
    ),
    AdvisorDefinition(
        id="responsive-web",
        name="Responsive Web Requirements",
        category="responsive",
        order=7,
        allowed_paths=(PatchPath.USER_VISIBLE_BEHAVIOR, PatchPath.SYSTEM_ACCEPTANCE_CRITERIA),
        applicable_to=("web", "mobile-web", "desktop"),
        description="Identifies functional behaviors across screen sizes for web applications",
    ),
    AdvisorDefinition(
        id="responsive-native",
        name="Responsive Native Requirements",
        category="responsive",
        order=8,
        allowed_paths=(PatchPath.USER_VISIBLE_BEHAVIOR, PatchPath.SYSTEM_ACCEPTANCE_CRITERIA),
        applicable_to=("mobile-native",),
        description="Identifies device-specific functional behaviors for native mobile applications",
    ),
    AdvisorDefinition(
        id="language-support",
        name="Language Support",
        category="i18n",
        order=9,
        allowed_paths=(PatchPath.OUTCOME_ACCEPTANCE_CRITERIA,),
        description="Identifies the user experience of multi-language interfaces",
    ),
    AdvisorDefinition(
        id="locale-formatting",
        name="Locale Formatting",
        category="i18n",
        order=10,
        allowed_paths=(PatchPath.OUTCOME_ACCEPTANCE_CRITERIA,),
        description="Identifies locale-specific formatting of dates, numbers and currency",
    ),
    AdvisorDefinition(
        id="cultural-appropriateness",
        name="Cultural Appropriateness",
        category="i18n",
        order=11,
        allowed_paths=(PatchPath.OUTCOME_ACCEPTANCE_CRITERIA,),
        description="Identifies cultural sensitivity requirements",
    ),
    AdvisorDefinition(
        id="analytics",
        name="Analytics",
        category="analytics",
        order=12,
        allowed_paths=(PatchPath.SYSTEM_ACCEPTANCE_CRITERIA, PatchPath.TELEMETRY_NOTES),
        description="Identifies analytics requirements on user behavior patterns",
    ),
)

_ADVISORS_BY_ID: Dict[str, AdvisorDefinition] = {a.id: a for a in ADVISORS}


def get_advisor(advisor_id: str) -> Optional[AdvisorDefinition]:
    return _ADVISORS_BY_ID.get(advisor_id)


def applicable_advisors(product_type: str) -> List[AdvisorDefinition]:
    """Advisors that apply to ``product_type``, in workflow order.

    Raises ``ValueError`` for an unknown product type.
    """
    if product_type not in PRODUCT_TYPES:
        raise ValueError(
            f"Unknown product type '{product_type}'. Expected one of: {', '.join(PRODUCT_TYPES)}"
        )
    return sorted((a for a in ADVISORS if a.applies_to(product_type)), key=lambda a: a.order)


def parse_advisor_output(raw: Union[str, Dict[str, Any], List[Any], None], advisor_id: str) -> List[Patch]:
    """Turn raw advisor output into patches stamped with ``advisor_id``.

    Accepts ``{"patches": [...]}`` or a bare list, either as text or already
    decoded. ``[]`` is a legal answer; anything that does not decode to one
    of those shapes raises ``AdvisorOutputError``.
    """
    payload: Any = raw
    if isinstance(raw, str):
        payload = extract_json(raw)
        if payload is None:
            preview = raw.strip()[:120]
            raise AdvisorOutputError(f"Advisor '{advisor_id}' returned output that is not JSON: {preview!r}")

    if isinstance(payload, dict):
        if "patches" not in payload:
            raise AdvisorOutputError(
                f"Advisor '{advisor_id}' returned an object without 'patches' (keys: {sorted(payload)})"
            )
        payload = payload["patches"]

    if not isinstance(payload, list):
        raise AdvisorOutputError(
            f"Advisor '{advisor_id}' returned {type(payload).__name__}, expected a list of patches"
        )

    patches: List[Patch] = []
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict):
            raise AdvisorOutputError(
                f"Advisor '{advisor_id}' patch #{index} is {type(entry).__name__}, expected an object: "
                f"{json.dumps(entry, default=str)[:80]}"
            )
        patch = Patch.from_dict(entry)
        if not patch.advisor_id:
            patch.metadata["advisorId"] = advisor_id
        patches.append(patch)

    logger.debug(f"Parsed {len(patches)} patch(es) from advisor '{advisor_id}'")
    return patches
