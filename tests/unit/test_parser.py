"""Unit tests for StoryParser."""

import pytest

from storyloom.models import (
    DuplicateSection,
    Item,
    RelatedStory,
    StoryDocument,
    StoryInterconnections,
    UIMappingItem,
)
from storyloom.parser import StoryParser, parse_story, unescape_inline
from storyloom.renderer import StoryRenderer


@pytest.fixture
def parser():
    return StoryParser()


@pytest.fixture
def document():
    doc = StoryDocument.empty(title="Checkout", story_id="STORY-1")
    doc.narrative.as_a = "shopper"
    doc.narrative.i_want = "to pay with *saved* cards"
    doc.narrative.so_that = "I check out faster"
    doc.user_visible_behavior.append(Item(id="UVB-1", text="Saved cards are listed"))
    doc.outcome_acceptance_criteria.append(Item(id="AC-OUT-1", text="Shopper sees a confirmation"))
    doc.system_acceptance_criteria.append(Item(id="AC-SYS-1", text="Card token is stored_once"))
    doc.implementation_notes.api_contracts.append(Item(id="IMPL-API-1", text="POST /payments"))
    doc.ui_mapping.append(UIMappingItem(id="UI-MAP-1", product_term="Pay", component_name="Pay Button"))
    doc.edge_cases.append(Item(id="EDGE-1", text="Card [expired]"))
    return doc


class TestParse:

    def test_round_trip(self, parser, document):
        text = StoryRenderer().render(document)

        parsed = parser.parse(text, story_id="STORY-1")

        assert parsed.document == document
        assert parsed.duplicate_sections == []
        assert parsed.unknown_sections == []

    def test_duplicate_sections_are_merged_and_reported(self, parser):
        text = (
            "# Checkout\n\n- As a shopper\n\n"
            "## User-Visible Behavior\n\n- [UVB-1] Cart is shown\n\n"
            "## Acceptance Criteria (Outcome)\n\n- [AC-OUT-1] Confirmation shown\n\n"
            "## User-Visible Behavior\n\n- [UVB-2] Total is shown\n"
        )

        parsed = parser.parse(text)

        assert [i.id for i in parsed.document.user_visible_behavior] == ["UVB-1", "UVB-2"]
        assert parsed.duplicate_sections == [DuplicateSection(section="User-Visible Behavior", count=2)]

    def test_empty_repeated_heading_is_not_a_duplicate(self, parser):
        text = (
            "# Checkout\n\n## Edge Cases\n\n- [EDGE-1] Declined\n\n## Edge Cases\n\n"
        )

        assert parser.parse(text).duplicate_sections == []

    def test_appended_interconnections_are_ignored(self, parser, document):
        renderer = StoryRenderer()
        text = renderer.append_interconnections(
            renderer.render(document),
            StoryInterconnections(
                story_id="STORY-1",
                ui_mapping={"Pay": "COMP-PAY-BUTTON"},
                related_stories=[RelatedStory(story_id="STORY-2", relationship="related")],
            ),
        )

        parsed = parser.parse(text, story_id="STORY-1")

        assert parsed.document == document
        assert parsed.duplicate_sections == []
        assert "Related Stories" in parsed.unknown_sections

    def test_bare_items_and_continuations(self, parser):
        text = (
            "# Checkout\n\nAs a shopper\nI want to pay\nSo that I get my order\n\n"
            "## Open Questions\n\n- Which cards do we accept\n  and in which countries?\n"
        )

        doc = parser.parse(text).document

        assert doc.narrative.as_a == "shopper"
        assert doc.narrative.so_that == "I get my order"
        assert doc.open_questions == [Item(id="", text="Which cards do we accept and in which countries?")]

    def test_first_title_wins(self, parser):
        assert parser.parse("# One\n\n# Two\n").document.title == "One"

    def test_module_shortcut(self):
        assert parse_story("# Title", story_id="S-1").document.story_id == "S-1"


def test_unescape_inline():
    assert unescape_inline("\\*a\\_b\\[c\\\\") == "*a_b[c\\"
