"""Storyloom library exports."""

from .capabilities import StoryInput
from .config import EngineConfig
from .id_registry import IdentifierRegistry
from .models import Patch, StoryDocument, SystemContext
from .orchestrator import PatchOrchestrator
from .parser import StoryParser
from .pipeline import CorpusResult, StoryPipeline
from .renderer import StoryRenderer
from .validator import PatchValidator

__all__ = [
    "StoryPipeline",
    "CorpusResult",
    "StoryInput",
    "EngineConfig",
    "IdentifierRegistry",
    "StoryDocument",
    "Patch",
    "SystemContext",
    "PatchOrchestrator",
    "PatchValidator",
    "StoryParser",
    "StoryRenderer",
]
