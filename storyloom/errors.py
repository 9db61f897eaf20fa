"""Error kinds and exceptions for the storyloom engine.

Three kinds of failure exist and callers branch on the kind rather than on
exception type:

- ``STRUCTURAL``: a malformed patch (missing path or advisor id, unknown path).
- ``SEMANTIC``: a well-formed patch that violates id, prefix, length,
  duplicate or match rules.
- ``EVALUATION``: an external advisor, judge or rewriter call failed or
  produced output that could not be interpreted. Never a low score.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    STRUCTURAL = "structural"
    SEMANTIC = "semantic"
    EVALUATION = "evaluation"


class StoryloomError(Exception):
    """Base class for errors raised at engine boundaries."""

    kind: ErrorKind = ErrorKind.SEMANTIC
    code: str = "STORYLOOM_ERROR"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self):
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
        }


class EvaluationError(StoryloomError):
    """An external capability call failed or its output was unusable."""

    kind = ErrorKind.EVALUATION
    code = "EVALUATION_FAILED"


class AdvisorOutputError(EvaluationError):
    """Advisor output could not be parsed into patches."""

    code = "ADVISOR_OUTPUT_INVALID"


class RewriteOutputError(EvaluationError):
    """Rewriter output was empty, fenced, or missing required sections."""

    code = "REWRITE_OUTPUT_INVALID"
