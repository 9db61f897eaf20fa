"""MCP server exposing the storyloom story refinement engine."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from storyloom import (
    EngineConfig,
    IdentifierRegistry,
    Patch,
    PatchOrchestrator,
    PatchValidator,
    StoryDocument,
    StoryInput,
    StoryParser,
    StoryPipeline,
    StoryRenderer,
)
from storyloom.advisors import applicable_advisors
from storyloom.interconnection import check_no_orphans
from storyloom.models import StoryInterconnections
from storyloom.paths import coerce_path
from storyloom.storyloom_logging import setup_logging

mcp = FastMCP("storyloom")

_registry = IdentifierRegistry()


def _config() -> EngineConfig:
    config = EngineConfig.from_env()
    issues = config.validate()
    if issues:
        raise ValueError("Invalid storyloom configuration: " + "; ".join(issues))
    return config


def _document(document: Dict[str, Any]) -> StoryDocument:
    if not isinstance(document, dict):
        raise ValueError("'document' must be a JSON object.")
    return StoryDocument.from_dict(document)


def _patches(patches: List[Dict[str, Any]]) -> List[Patch]:
    if not isinstance(patches, list) or not all(isinstance(p, dict) for p in patches):
        raise ValueError("'patches' must be a list of JSON objects.")
    return [Patch.from_dict(p) for p in patches]


@mcp.tool()
def mint_identifier(entity_kind: str, canonical_name: str) -> Dict[str, str]:
    """Return the stable identifier for a system entity, minting it on first sight.
    entity_kind is one of component, stateModel, event, dataFlow."""

    identifier = _registry.mint(entity_kind, canonical_name)
    return {"entityKind": entity_kind, "canonicalName": canonical_name, "id": identifier}


@mcp.resource("storyloom://identifiers")
def resource_identifiers():
    """Resource view listing every identifier minted by this server."""

    entries = _registry.entries()
    if not entries:
        return "No identifiers have been minted yet."

    lines = ["Storyloom Identifiers", ""]
    for entry in entries:
        lines.append(f"- {entry.identifier}: {entry.kind.value} '{entry.canonical_name}'")
    return "\n".join(lines)


@mcp.tool()
def validate_patch(document: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Validate one patch against a story document without applying it."""

    validator = PatchValidator(max_text_length=_config().max_text_length)
    result = validator.validate(Patch.from_dict(patch), _document(document))
    return result.to_dict()


@mcp.tool()
def apply_patches(
    document: Dict[str, Any],
    patches: List[Dict[str, Any]],
    allowed_paths: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Apply a batch of patches in order and return the updated document,
    its rendered markdown and the applied/rejected ledger."""

    scope = None
    if allowed_paths is not None:
        scope = []
        for value in allowed_paths:
            path = coerce_path(value)
            if path is None:
                raise ValueError(f"Unknown path in allowed_paths: '{value}'")
            scope.append(path)

    orchestrator = PatchOrchestrator(validator=PatchValidator(max_text_length=_config().max_text_length))
    batch = orchestrator.apply_batch(_document(document), _patches(patches), allowed_paths=scope)
    return {
        **batch.to_dict(),
        "markdown": StoryRenderer().render(batch.document),
        "rejected_reasons": batch.rejected_reasons,
    }


@mcp.tool()
def render_story(document: Dict[str, Any]) -> Dict[str, str]:
    """Render a story document to canonical markdown."""

    doc = _document(document)
    return {"storyId": doc.story_id, "markdown": StoryRenderer().render(doc)}


@mcp.tool()
def parse_story(text: str, story_id: str = "") -> Dict[str, Any]:
    """Read story markdown back into a document and report repeated sections."""

    parsed = StoryParser().parse(text, story_id=story_id)
    return {
        "document": parsed.document.to_dict(),
        "duplicateSections": [d.to_dict() for d in parsed.duplicate_sections],
        "unknownSections": list(parsed.unknown_sections),
    }


@mcp.tool()
def check_orphans(interconnections: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Check that every story in a corpus relates to at least one other story."""

    records = {
        story_id: StoryInterconnections.from_dict({"storyId": story_id, **record})
        for story_id, record in interconnections.items()
    }
    return check_no_orphans(records).to_dict()


@mcp.tool()
def list_advisors(product_type: str = "web") -> Dict[str, Any]:
    """List the advisors that run for a product type, in execution order."""

    return {
        "productType": product_type,
        "advisors": [a.to_dict() for a in applicable_advisors(product_type)],
    }


@mcp.tool()
def process_corpus(stories: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Refine a corpus of stories offline with the rule-based judge, rewriter and linker.
    Each story is an object with storyId, title, asA, iWant, soThat and description."""

    inputs = [StoryInput.from_dict(s) for s in stories]
    if not inputs:
        raise ValueError("Provide at least one story.")
    result = StoryPipeline(config=_config()).run(inputs)
    return {
        **result.to_dict(),
        "approved": [sid for sid, s in result.stories.items() if s.refinement and s.refinement.approved],
        "flagged": result.flagged,
    }


if __name__ == "__main__":
    config = _config()
    setup_logging(config.log_level, config.log_file)
    mcp.run(transport="stdio")
