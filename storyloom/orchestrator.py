"""Patch orchestration: scope enforcement and atomic batch application.

The orchestrator is the only component that mutates a story document. A batch
is applied to a copy of the input document; the caller's document is never
touched. Each patch is accepted or rejected individually and every rejection
carries its reasons.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .errors import ErrorKind
from .models import Entry, Item, Patch, PatchItem, StoryDocument, UIMappingItem
from .paths import PatchPath, coerce_path, resolve_path
from .storyloom_logging import ObservabilityHooks, log_patch_batch, observability_hooks
from .validator import PatchValidator

logger = logging.getLogger("storyloom.orchestrator")

REJECTED_SCOPE = "scope"
REJECTED_VALIDATION = "validation"
REJECTED_CONFLICT = "conflict"

_UI_SPLIT = re.compile(r"\s*\|\s*")


@dataclass(slots=True)
class AppliedPatch:
    index: int
    patch: Patch

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "patch": self.patch.to_dict()}


@dataclass(slots=True)
class RejectedPatch:
    index: int
    patch: Patch
    reasons: List[str]
    category: str
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "patch": self.patch.to_dict(),
            "reasons": list(self.reasons),
            "category": self.category,
            "errorKind": self.error_kind.value if self.error_kind else None,
        }


@dataclass(slots=True)
class BatchResult:
    """Updated document plus the per-patch applied/rejected ledger."""

    document: StoryDocument
    applied: List[AppliedPatch] = field(default_factory=list)
    rejected: List[RejectedPatch] = field(default_factory=list)

    @property
    def metrics(self) -> Dict[str, int]:
        return {
            "total": len(self.applied) + len(self.rejected),
            "applied": len(self.applied),
            "rejected_path": sum(1 for r in self.rejected if r.category == REJECTED_SCOPE),
            "rejected_validation": sum(1 for r in self.rejected if r.category == REJECTED_VALIDATION),
            "rejected_conflict": sum(1 for r in self.rejected if r.category == REJECTED_CONFLICT),
        }

    @property
    def rejected_reasons(self) -> List[str]:
        return [reason for r in self.rejected for reason in r.reasons]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document": self.document.to_dict(),
            "applied": [a.to_dict() for a in self.applied],
            "rejected": [r.to_dict() for r in self.rejected],
            "metrics": self.metrics,
        }


class PatchOrchestrator:
    """Applies validated patches to a copy of a story document."""

    def __init__(
        self,
        validator: Optional[PatchValidator] = None,
        hooks: Optional[ObservabilityHooks] = None,
    ):
        self.validator = validator or PatchValidator()
        self.hooks = hooks or observability_hooks

    def apply_batch(
        self,
        document: StoryDocument,
        patches: Iterable[Patch],
        allowed_paths: Optional[Iterable[PatchPath]] = None,
    ) -> BatchResult:
        """Apply ``patches`` in order.

        At most one patch may win per ``(path, target)`` in a batch; later
        patches touching an already-claimed target are rejected as conflicts.
        """
        allowed: Optional[Set[PatchPath]] = set(allowed_paths) if allowed_paths is not None else None
        result = BatchResult(document=document.copy())
        claimed: Set[Tuple[PatchPath, str]] = set()

        for index, patch in enumerate(patches):
            path = coerce_path(patch.path)
            if allowed is not None and path is not None and path not in allowed:
                self._reject(result, index, patch, [f"Path not allowed: {path.value}"], REJECTED_SCOPE)
                continue

            validation = self.validator.validate(patch, result.document)
            if not validation.valid:
                self._reject(result, index, patch, validation.errors, REJECTED_VALIDATION, validation.kind)
                continue

            keys = self._claim_keys(result.document, path, patch)
            taken = [key for key in keys if key in claimed]
            if taken:
                target = taken[0][1] or path.value
                self._reject(
                    result, index, patch,
                    [f"Conflicting patch for {path.value} ({target}): an earlier patch in this batch already changed it"],
                    REJECTED_CONFLICT, ErrorKind.SEMANTIC,
                )
                continue

            self._apply_one(result.document, path, patch)
            claimed.update(keys)
            result.applied.append(AppliedPatch(index=index, patch=patch))

        metrics = result.metrics
        if result.rejected:
            logger.debug(
                f"PatchOrchestrator: applied={metrics['applied']}, rejectedPath={metrics['rejected_path']}, "
                f"rejectedValidation={metrics['rejected_validation']}, rejectedConflict={metrics['rejected_conflict']}"
            )
        log_patch_batch(
            self.hooks,
            document.story_id,
            applied=metrics["applied"],
            rejected=len(result.rejected),
            rejected_reasons=result.rejected_reasons,
        )
        return result

    @staticmethod
    def _reject(
        result: BatchResult,
        index: int,
        patch: Patch,
        reasons: List[str],
        category: str,
        error_kind: Optional[ErrorKind] = None,
    ) -> None:
        logger.debug(f"Patch rejected ({category}): {patch.path} by {patch.advisor_id or 'unknown'} - {'; '.join(reasons)}")
        result.rejected.append(
            RejectedPatch(index=index, patch=patch, reasons=list(reasons), category=category, error_kind=error_kind)
        )

    @staticmethod
    def _claim_keys(document: StoryDocument, path: PatchPath, patch: Patch) -> List[Tuple[PatchPath, str]]:
        if resolve_path(path).is_narrative:
            return [(path, "")]
        keys: List[Tuple[PatchPath, str]] = []
        if patch.op in ("replace", "remove"):
            target = _find_entry(document.collection(path), patch)
            if target is not None:
                keys.append((path, target.id))
        if patch.op in ("add", "replace") and patch.item is not None and patch.item.id:
            keys.append((path, patch.item.id))
        return keys

    @staticmethod
    def _apply_one(document: StoryDocument, path: PatchPath, patch: Patch) -> None:
        spec = resolve_path(path)
        if spec.is_narrative:
            # add and replace both set the scalar line
            document.set_narrative_line(path, patch.item.effective_text)
            return

        entries = document.collection(path)
        if patch.op == "add":
            entries.append(_to_entry(path, patch.item))
            return

        index = next(i for i, entry in enumerate(entries) if patch.match.matches(entry))
        if patch.op == "replace":
            entries[index] = _to_entry(path, patch.item)
        else:
            del entries[index]


def _find_entry(entries: List[Entry], patch: Patch) -> Optional[Entry]:
    if patch.match is None:
        return None
    return next((entry for entry in entries if patch.match.matches(entry)), None)


def _to_entry(path: PatchPath, item: PatchItem) -> Entry:
    if path is PatchPath.UI_MAPPING:
        if item.product_term is not None:
            return UIMappingItem(id=item.id, product_term=item.product_term, component_name=item.component_name or "")
        parts = _UI_SPLIT.split(item.text or "", maxsplit=1)
        return UIMappingItem(
            id=item.id,
            product_term=parts[0].strip(),
            component_name=parts[1].strip() if len(parts) > 1 else "",
        )
    return Item(id=item.id, text=item.effective_text or "")
