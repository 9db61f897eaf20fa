"""Unit tests for StoryRenderer."""

import pytest

from storyloom.models import (
    Item,
    Ownership,
    RelatedStory,
    StoryDocument,
    StoryInterconnections,
    UIMappingItem,
)
from storyloom.renderer import StoryRenderer, escape_heading, escape_inline, render_story


@pytest.fixture
def renderer():
    return StoryRenderer()


@pytest.fixture
def document():
    doc = StoryDocument.empty(title="Checkout", story_id="STORY-1")
    doc.narrative.as_a = "shopper"
    doc.narrative.i_want = "to pay for my cart"
    doc.narrative.so_that = "I receive my order"
    doc.user_visible_behavior.append(Item(id="UVB-1", text="Pay button is visible"))
    return doc


class TestRender:

    def test_minimal_document(self, renderer, document):
        assert renderer.render(document) == (
            "# Checkout\n"
            "\n"
            "- As a shopper\n"
            "- I want to pay for my cart\n"
            "- So that I receive my order\n"
            "\n"
            "## User-Visible Behavior\n"
            "\n"
            "- [UVB-1] Pay button is visible\n"
            "\n"
            "## Acceptance Criteria (Outcome)\n"
            "\n"
            "## Acceptance Criteria (System)"
        )

    def test_render_is_idempotent(self, renderer, document):
        document.implementation_notes.security_notes.append(Item(id="IMPL-SEC-1", text="Card data masked"))

        assert renderer.render(document) == renderer.render(document)
        assert render_story(document) == renderer.render(document)

    def test_empty_narrative_lines(self, renderer):
        text = renderer.render(StoryDocument.empty(title="Blank"))

        assert "- As a\n- I want\n- So that\n" in text

    def test_implementation_notes_in_fixed_order(self, renderer, document):
        document.implementation_notes.telemetry_notes.append(Item(id="IMPL-TEL-1", text="Track payment"))
        document.implementation_notes.state_ownership.append(Item(id="IMPL-STATE-1", text="Cart owns total"))

        text = renderer.render(document)

        assert "## Implementation Notes\n\n### State ownership\n\n- [IMPL-STATE-1] Cart owns total" in text
        assert text.index("### State ownership") < text.index("### Telemetry")
        assert "### Data flow" not in text

    def test_optional_sections_only_when_present(self, renderer, document):
        assert "## Edge Cases" not in renderer.render(document)

        document.edge_cases.append(Item(id="EDGE-1", text="Card declined"))
        document.non_goals.append(Item(id="NON-GOAL-1", text="Gift cards"))
        document.ui_mapping.append(UIMappingItem(id="UI-MAP-1", product_term="Pay", component_name="Pay Button"))
        text = renderer.render(document)

        assert text.index("## UI Mapping") < text.index("## Edge Cases") < text.index("## Non-Goals")
        assert "- [UI-MAP-1] **Pay**: Pay Button" in text
        assert text.endswith("- [NON-GOAL-1] Gift cards")

    def test_item_without_id(self, renderer, document):
        document.open_questions.append(Item(id="", text="Which cards?"))

        assert "## Open Questions\n\n- Which cards?" in renderer.render(document)

    def test_no_double_blank_lines(self, renderer, document):
        assert "\n\n\n" not in renderer.render(document)

    def test_escaping(self, renderer, document):
        document.title = "# Checkout #2"
        document.user_visible_behavior[0] = Item(id="UVB-1", text="Shows *total* in [cart]")

        text = renderer.render(document)

        assert text.startswith("# Checkout 2\n")
        assert "- [UVB-1] Shows \\*total\\* in \\[cart]" in text


class TestEscaping:

    def test_escape_inline(self):
        assert escape_inline("a_b*c[d\\e") == "a\\_b\\*c\\[d\\\\e"

    def test_escape_heading(self):
        assert escape_heading("  ## Title ") == "Title"


class TestInterconnections:

    @pytest.fixture
    def interconnections(self):
        return StoryInterconnections(
            story_id="STORY-1",
            ui_mapping={"Pay": "COMP-PAY-BUTTON"},
            contract_dependencies=["E-ORDER-PLACED"],
            ownership=Ownership(owns_state=["C-STATE-CART"], emits_events=["E-ORDER-PLACED"]),
            related_stories=[
                RelatedStory(story_id="STORY-3", relationship="related"),
                RelatedStory(story_id="STORY-2", relationship="prerequisite", description="Cart exists"),
            ],
        )

    def test_render_interconnections(self, renderer, interconnections):
        block = renderer.render_interconnections(interconnections)

        assert block == (
            "## UI Mapping\n\n- \"Pay\" → COMP-PAY-BUTTON\n\n"
            "## Contract Dependencies\n\n- E-ORDER-PLACED\n\n"
            "## Ownership\n\n**Owns State**: C-STATE-CART\n**Emits Events**: E-ORDER-PLACED\n\n"
            "## Related Stories\n\n**Prerequisites**:\n- STORY-2: Cart exists\n\n**Related**:\n- STORY-3"
        )

    def test_append_is_idempotent(self, renderer, document, interconnections):
        text = renderer.render(document)

        once = renderer.append_interconnections(text, interconnections)
        twice = renderer.append_interconnections(once, interconnections)

        assert once == twice
        assert once.startswith(text)

    def test_empty_interconnections_append_nothing(self, renderer, document):
        text = renderer.render(document)

        assert renderer.append_interconnections(text, StoryInterconnections(story_id="STORY-1")) == text
