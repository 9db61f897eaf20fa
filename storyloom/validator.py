"""Patch validation: id format, prefixes, duplicates, bounds and matches.

Validation short-circuits only when a patch is structurally malformed
(missing path or advisor id, or a path that names nothing). Every other
rule is checked and all failures are reported together.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

from .errors import ErrorKind
from .models import MAX_TEXT_LENGTH, PATCH_OPERATIONS, Patch, StoryDocument, ValidationResult
from .paths import PatchPath, coerce_path, resolve_path

logger = logging.getLogger("storyloom.validator")

ID_PATTERN = re.compile(r"[a-zA-Z0-9_-]+")


def is_duplicate_id(item_id: str, path: PatchPath, document: StoryDocument) -> bool:
    """True if ``item_id`` already exists in the collection at ``path``."""
    return item_id in document.ids(path)


class PatchValidator:
    """Gate applied to every proposed patch before it reaches a document."""

    def __init__(self, max_text_length: int = MAX_TEXT_LENGTH):
        self.max_text_length = max_text_length

    def validate(self, patch: Patch, document: StoryDocument) -> ValidationResult:
        if not patch.path or not patch.advisor_id:
            return self._structural("Patch must have path and metadata.advisorId")

        path = coerce_path(patch.path)
        if path is None:
            return self._structural(f'Path "{patch.path}" does not refer to a collection or story line')

        errors: List[str] = []
        if patch.op not in PATCH_OPERATIONS:
            errors.append(f'Unknown op "{patch.op}"; expected one of {", ".join(PATCH_OPERATIONS)}')
            return self._semantic(errors)

        spec = resolve_path(path)
        if patch.op in ("add", "replace"):
            if spec.is_narrative:
                self._check_narrative_text(patch, errors)
            else:
                self._check_collection_item(patch, path, document, errors)

        if patch.op in ("replace", "remove"):
            if spec.is_narrative:
                if patch.op == "remove":
                    errors.append("remove operation not supported on story line paths (use replace instead)")
            else:
                self._check_match(patch, path, document, errors)

        if errors:
            logger.debug(f"Patch rejected for {path.value} by {patch.advisor_id}: {'; '.join(errors)}")
            return self._semantic(errors)
        return ValidationResult(valid=True)

    def _check_narrative_text(self, patch: Patch, errors: List[str]) -> None:
        text = patch.item.effective_text if patch.item else None
        if not text or not text.strip():
            errors.append("Story line patch must provide item.text")
        elif len(text) > self.max_text_length:
            errors.append(f"item.text must be at most {self.max_text_length} characters")
        elif "\n" in text or "\r" in text:
            errors.append("item.text must be a single line")

    def _check_collection_item(
        self,
        patch: Patch,
        path: PatchPath,
        document: StoryDocument,
        errors: List[str],
    ) -> None:
        item = patch.item
        text = item.effective_text if item else None
        if not text or not text.strip():
            errors.append("add/replace patches must provide item.text")
        elif len(text) > self.max_text_length:
            errors.append(f"item.text must be at most {self.max_text_length} characters")
        elif "\n" in text or "\r" in text:
            errors.append("item.text must be a single line")

        item_id = item.id if item else None
        if not item_id or not item_id.strip():
            errors.append("add/replace patches for collection paths must provide item.id")
            return

        if not ID_PATTERN.fullmatch(item_id):
            errors.append("item.id must be alphanumeric, underscore, or hyphen")
        prefix = resolve_path(path).prefix
        if prefix is not None and not item_id.startswith(prefix):
            errors.append(f'item.id must start with "{prefix}" for path {path.value}')

        if patch.op == "add" and is_duplicate_id(item_id, path, document):
            errors.append(f'Duplicate id "{item_id}" in {path.value}')
        elif patch.op == "replace" and self._replace_collides(patch, item_id, path, document):
            errors.append(f'Duplicate id "{item_id}" in {path.value}')

    def _check_match(self, patch: Patch, path: PatchPath, document: StoryDocument, errors: List[str]) -> None:
        if patch.match is None or patch.match.is_empty():
            errors.append("replace/remove must specify match.id or match.textEquals")
            return
        if not any(patch.match.matches(entry) for entry in document.collection(path)):
            errors.append(f"No matching item to {patch.op} in {path.value}")

    @staticmethod
    def _replace_collides(patch: Patch, item_id: str, path: PatchPath, document: StoryDocument) -> bool:
        # Replacing may keep the matched entry's id, but must not take another entry's id.
        if patch.match is None or patch.match.is_empty():
            return False
        target: Optional[int] = next(
            (i for i, entry in enumerate(document.collection(path)) if patch.match.matches(entry)),
            None,
        )
        return any(
            entry.id == item_id and index != target
            for index, entry in enumerate(document.collection(path))
        )

    @staticmethod
    def _structural(message: str) -> ValidationResult:
        logger.debug(f"Patch rejected (structural): {message}")
        return ValidationResult(valid=False, errors=[message], kind=ErrorKind.STRUCTURAL)

    @staticmethod
    def _semantic(errors: List[str]) -> ValidationResult:
        return ValidationResult(valid=False, errors=errors, kind=ErrorKind.SEMANTIC)
