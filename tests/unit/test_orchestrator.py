"""Unit tests for PatchOrchestrator."""

import pytest
from unittest.mock import MagicMock

from storyloom.errors import ErrorKind
from storyloom.models import Item, Patch, PatchItem, PatchMatch, StoryDocument, UIMappingItem
from storyloom.orchestrator import (
    REJECTED_CONFLICT,
    REJECTED_SCOPE,
    REJECTED_VALIDATION,
    PatchOrchestrator,
)
from storyloom.paths import PatchPath


def add(path, item_id, text, advisor_id="validation"):
    return Patch(path=path, op="add", item=PatchItem(id=item_id, text=text), metadata={"advisorId": advisor_id})


def replace(path, match_id, item_id, text, advisor_id="validation"):
    return Patch(
        path=path, op="replace", item=PatchItem(id=item_id, text=text),
        match=PatchMatch(id=match_id), metadata={"advisorId": advisor_id},
    )


def remove(path, match_id, advisor_id="validation"):
    return Patch(path=path, op="remove", match=PatchMatch(id=match_id), metadata={"advisorId": advisor_id})


class TestApplyBatch:

    @pytest.fixture
    def hooks(self):
        return MagicMock()

    @pytest.fixture
    def orchestrator(self, hooks):
        return PatchOrchestrator(hooks=hooks)

    @pytest.fixture
    def document(self):
        doc = StoryDocument.empty(title="Checkout", story_id="STORY-1")
        doc.user_visible_behavior.extend([
            Item(id="UVB-1", text="Cart total is shown"),
            Item(id="UVB-2", text="Pay button is shown"),
        ])
        return doc

    def test_add_replace_remove(self, orchestrator, document):
        result = orchestrator.apply_batch(document, [
            add("userVisibleBehavior", "UVB-3", "Receipt is shown"),
            replace("userVisibleBehavior", "UVB-1", "UVB-1", "Cart total is shown with tax"),
            remove("userVisibleBehavior", "UVB-2"),
        ])

        assert result.document.user_visible_behavior == [
            Item(id="UVB-1", text="Cart total is shown with tax"),
            Item(id="UVB-3", text="Receipt is shown"),
        ]
        assert [a.index for a in result.applied] == [0, 1, 2]
        assert result.rejected == []

    def test_input_document_is_not_mutated(self, orchestrator, document):
        before = document.copy()

        orchestrator.apply_batch(document, [remove("userVisibleBehavior", "UVB-1")])

        assert document == before

    def test_replace_keeps_position(self, orchestrator, document):
        result = orchestrator.apply_batch(document, [
            replace("userVisibleBehavior", "UVB-1", "UVB-9", "Subtotal is shown"),
        ])

        assert [i.id for i in result.document.user_visible_behavior] == ["UVB-9", "UVB-2"]

    def test_narrative_add_and_replace_set_line(self, orchestrator, document):
        result = orchestrator.apply_batch(document, [
            Patch(path="story.asA", op="add", item=PatchItem(text="shopper"), metadata={"advisorId": "user-roles"}),
            Patch(path="story.iWant", op="replace", item=PatchItem(text="to pay"), metadata={"advisorId": "user-roles"}),
        ])

        assert result.document.narrative.as_a == "shopper"
        assert result.document.narrative.i_want == "to pay"

    def test_ui_mapping_from_text(self, orchestrator, document):
        result = orchestrator.apply_batch(document, [
            add("uiMapping", "UI-MAP-1", "Pay | Pay Button", advisor_id="interactive-elements"),
        ])

        assert result.document.ui_mapping == [
            UIMappingItem(id="UI-MAP-1", product_term="Pay", component_name="Pay Button")
        ]

    def test_ui_mapping_from_fields(self, orchestrator, document):
        patch = Patch(
            path="uiMapping", op="add",
            item=PatchItem(id="UI-MAP-1", product_term="Pay", component_name="Pay Button"),
            metadata={"advisorId": "interactive-elements"},
        )

        result = orchestrator.apply_batch(document, [patch])

        assert result.document.ui_mapping[0].component_name == "Pay Button"

    def test_scope_rejection(self, orchestrator, document):
        result = orchestrator.apply_batch(
            document,
            [add("outcomeAcceptanceCriteria", "AC-OUT-1", "Confirmation shown", advisor_id="user-roles")],
            allowed_paths=[PatchPath.AS_A, PatchPath.USER_VISIBLE_BEHAVIOR],
        )

        assert result.applied == []
        assert result.rejected[0].category == REJECTED_SCOPE
        assert result.rejected[0].reasons == ["Path not allowed: outcomeAcceptanceCriteria"]
        assert result.metrics["rejected_path"] == 1

    def test_validation_rejection_keeps_going(self, orchestrator, document):
        result = orchestrator.apply_batch(document, [
            add("userVisibleBehavior", "UVB-1", "Duplicate"),
            add("userVisibleBehavior", "UVB-4", "Fine"),
        ])

        assert [a.index for a in result.applied] == [1]
        assert result.rejected[0].category == REJECTED_VALIDATION
        assert result.rejected[0].error_kind is ErrorKind.SEMANTIC
        assert result.rejected_reasons == ['Duplicate id "UVB-1" in userVisibleBehavior']

    def test_later_patch_sees_earlier_edits(self, orchestrator, document):
        result = orchestrator.apply_batch(document, [
            add("edgeCases", "EDGE-1", "Card declined"),
            add("edgeCases", "EDGE-1", "Card expired"),
        ])

        assert len(result.document.edge_cases) == 1
        assert result.rejected[0].category == REJECTED_VALIDATION

    def test_conflicting_target(self, orchestrator, document):
        result = orchestrator.apply_batch(document, [
            replace("userVisibleBehavior", "UVB-1", "UVB-1", "First rewrite"),
            replace("userVisibleBehavior", "UVB-1", "UVB-1", "Second rewrite"),
        ])

        assert result.document.user_visible_behavior[0].text == "First rewrite"
        assert result.rejected[0].category == REJECTED_CONFLICT
        assert result.rejected[0].reasons == [
            "Conflicting patch for userVisibleBehavior (UVB-1): an earlier patch in this batch already changed it"
        ]

    def test_conflicting_narrative_line(self, orchestrator, document):
        result = orchestrator.apply_batch(document, [
            Patch(path="story.asA", op="replace", item=PatchItem(text="shopper"), metadata={"advisorId": "a"}),
            Patch(path="story.asA", op="replace", item=PatchItem(text="admin"), metadata={"advisorId": "b"}),
        ])

        assert result.document.narrative.as_a == "shopper"
        assert result.metrics["rejected_conflict"] == 1
        assert "story.asA (story.asA)" in result.rejected[0].reasons[0]

    def test_metrics_and_hook(self, orchestrator, hooks, document):
        result = orchestrator.apply_batch(document, [
            add("nonGoals", "NON-GOAL-1", "Gift cards"),
            Patch(path=None, op="add", metadata={}),
        ])

        assert result.metrics == {
            "total": 2,
            "applied": 1,
            "rejected_path": 0,
            "rejected_validation": 1,
            "rejected_conflict": 0,
        }
        assert result.rejected[0].error_kind is ErrorKind.STRUCTURAL
        hooks.log_event.assert_called_once()
        args, kwargs = hooks.log_event.call_args
        assert args == ("patch_batch_applied", "STORY-1")
        assert kwargs["applied"] == 1
        assert kwargs["rejected"] == 1

    def test_to_dict(self, orchestrator, document):
        result = orchestrator.apply_batch(document, [add("nonGoals", "NON-GOAL-1", "Gift cards")])

        data = result.to_dict()

        assert data["document"]["nonGoals"] == [{"id": "NON-GOAL-1", "text": "Gift cards"}]
        assert data["applied"][0]["patch"]["path"] == "nonGoals"
        assert data["metrics"]["applied"] == 1
