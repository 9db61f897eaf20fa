"""Unit tests for Pass 2 extraction and Pass 2b consolidation."""

import threading

import pytest
from unittest.mock import MagicMock

from storyloom.errors import EvaluationError
from storyloom.interconnection import (
    InterconnectionEngine,
    RuleBasedInterconnector,
    check_no_orphans,
    find_orphans,
    normalize_interconnections,
)
from storyloom.judge import PromptedConsistencyJudge, RuleBasedConsistencyJudge
from storyloom.models import (
    Component,
    ConsistencyFix,
    EventDefinition,
    GlobalConsistencyReport,
    Item,
    Ownership,
    PatchItem,
    PatchMatch,
    RelatedStory,
    Relationship,
    StateModel,
    StoryDocument,
    StoryInterconnections,
    SystemContext,
    UIMappingItem,
)
from storyloom.renderer import StoryRenderer
from storyloom.storyloom_logging import ObservabilityHooks


def record(story_id, *links, relationship="related"):
    return StoryInterconnections(
        story_id=story_id,
        related_stories=[RelatedStory(story_id=other, relationship=relationship) for other in links],
    )


def document(story_id, title="Story"):
    doc = StoryDocument.empty(title=title, story_id=story_id)
    doc.narrative.as_a = "shopper"
    return doc


class TestOrphans:

    def test_single_story_is_never_an_orphan(self):
        assert find_orphans({"S1": record("S1")}) == []
        assert find_orphans({}) == []

    def test_only_own_links_count(self):
        interconnections = {
            "S1": record("S1", "S2"),
            "S2": record("S2"),
            "S3": record("S3", "S3", "S9"),
        }

        assert find_orphans(interconnections) == ["S2", "S3"]

    def test_check_no_orphans_errors(self):
        hooks = ObservabilityHooks()
        detected = []
        hooks.register_hook("orphan_story_detected", lambda **data: detected.append(data["story_id"]))

        result = check_no_orphans({"S1": record("S1", "S2"), "S2": record("S2", "S1"), "S3": record("S3")}, hooks)

        assert not result.valid
        assert result.errors == ['Story "S3" has no relationship to any other story in the corpus']
        assert detected == ["S3"]

    def test_connected_corpus_is_valid(self):
        result = check_no_orphans({"S1": record("S1", "S2"), "S2": record("S2", "S1")})

        assert result.valid
        assert result.errors == []


class TestNormalizeInterconnections:

    def test_drops_self_unknown_and_repeated_links(self):
        raw = StoryInterconnections(
            story_id="wrong",
            contract_dependencies=["COMP-CART", "COMP-CART", ""],
            ownership=Ownership(owns_state=["C-STATE-CART", "C-STATE-CART"]),
            related_stories=[
                RelatedStory("S1", "related"),
                RelatedStory("S2", "prerequisite"),
                RelatedStory("S2", "prerequisite"),
                RelatedStory("S3", "blocks"),
                RelatedStory("S9", "related"),
            ],
        )

        normalized = normalize_interconnections(raw, "S1", ["S1", "S2", "S3"])

        assert normalized.story_id == "S1"
        assert normalized.contract_dependencies == ["COMP-CART"]
        assert normalized.ownership.owns_state == ["C-STATE-CART"]
        assert [(r.story_id, r.relationship) for r in normalized.related_stories] == [
            ("S2", "prerequisite"),
            ("S3", "related"),
        ]


class TestRuleBasedInterconnector:

    @pytest.fixture
    def context(self):
        return SystemContext(
            components={"COMP-PAY-BUTTON": Component(id="COMP-PAY-BUTTON", product_name="Pay Button")},
            state_models=[StateModel(id="C-STATE-ORDER", name="Order", owner="COMP-PAY-BUTTON")],
            events=[EventDefinition(id="E-CART-UPDATED", name="Cart updated")],
        )

    def test_extract(self, context):
        doc = document("STORY-2", "Pay")
        doc.user_visible_behavior.append(Item(id="UVB-1", text="Pay becomes available after STORY-1"))
        doc.system_acceptance_criteria.append(Item(id="AC-SYS-1", text="Refreshes when E-CART-UPDATED fires"))
        doc.ui_mapping.append(UIMappingItem(id="UI-MAP-1", product_term="Pay", component_name="pay button"))
        text = StoryRenderer().render(doc)

        result = RuleBasedInterconnector().extract("STORY-2", text, context, ["STORY-1", "STORY-2", "STORY-10"])

        assert result.ui_mapping == {"Pay": "COMP-PAY-BUTTON"}
        assert result.ownership.owns_state == ["C-STATE-ORDER"]
        assert result.ownership.listens_to_events == ["E-CART-UPDATED"]
        assert result.contract_dependencies == ["E-CART-UPDATED"]
        assert [r.story_id for r in result.related_stories] == ["STORY-1"]

    def test_unknown_component_is_not_mapped(self, context):
        doc = document("STORY-1")
        doc.ui_mapping.append(UIMappingItem(id="UI-MAP-1", product_term="Basket", component_name="Basket Drawer"))

        result = RuleBasedInterconnector().extract("STORY-1", StoryRenderer().render(doc), context, ["STORY-1"])

        assert result.ui_mapping == {}
        assert result.ownership.owns_state == []


class TestExtractAll:

    def test_failures_become_empty_records(self):
        interconnector = MagicMock()

        def extract(story_id, text, context, corpus_ids):
            if story_id == "S2":
                raise EvaluationError("model refused")
            if story_id == "S3":
                return {"storyId": "S3"}
            return StoryInterconnections(story_id=story_id, related_stories=[RelatedStory("S2", "related")])

        interconnector.extract.side_effect = extract
        engine = InterconnectionEngine(interconnector, workers=3)

        result = engine.extract_all({"S1": "# One", "S2": "# Two", "S3": "# Three"}, SystemContext())

        assert list(result.interconnections) == ["S1", "S2", "S3"]
        assert result.interconnections["S1"].links_to("S2")
        assert result.interconnections["S2"].related_stories == []
        assert set(result.failures) == {"S2", "S3"}

    def test_extraction_runs_concurrently(self):
        barrier = threading.Barrier(2, timeout=5)
        interconnector = MagicMock()

        def extract(story_id, text, context, corpus_ids):
            barrier.wait()
            return StoryInterconnections(story_id=story_id)

        interconnector.extract.side_effect = extract
        engine = InterconnectionEngine(interconnector, workers=2)

        result = engine.extract_all({"S1": "# One", "S2": "# Two"}, SystemContext())

        assert result.failures == {}


class TestConsolidate:

    @pytest.fixture
    def hooks(self):
        return ObservabilityHooks()

    def test_reverse_link_is_auto_applied(self, hooks):
        engine = InterconnectionEngine(MagicMock(), consistency_judge=RuleBasedConsistencyJudge(), hooks=hooks)
        documents = {"S1": document("S1"), "S2": document("S2")}
        interconnections = {"S1": record("S1", "S2", relationship="prerequisite"), "S2": record("S2")}

        result = engine.consolidate(documents, interconnections, SystemContext())

        assert len(result.applied) == 1
        assert result.interconnections["S2"].related_stories == [RelatedStory("S1", "dependent")]
        assert result.orphan_check.valid
        assert "**Dependent**:\n- S1" in result.texts["S2"]
        # input is untouched
        assert interconnections["S2"].related_stories == []

    def test_low_confidence_fix_is_deferred(self, hooks):
        judge = MagicMock()
        judge.judge.return_value = GlobalConsistencyReport(fixes=[
            ConsistencyFix(type="add-bidirectional-link", story_id="S2", path=None, operation="add",
                           confidence=0.5, related_story=RelatedStory("S1", "related")),
        ])
        engine = InterconnectionEngine(MagicMock(), consistency_judge=judge, hooks=hooks)

        result = engine.consolidate(
            {"S1": document("S1"), "S2": document("S2")},
            {"S1": record("S1", "S2"), "S2": record("S2")},
            SystemContext(),
        )

        assert result.applied == []
        assert result.deferred[0].reason == "Confidence 0.50 below auto-apply threshold 0.75"
        assert not result.orphan_check.valid

    def test_nan_confidence_fix_is_deferred(self, hooks):
        raw = (
            '{"issues": [], "fixes": [{"type": "add-bidirectional-link", "storyId": "S2", '
            '"operation": "add", "confidence": NaN, "relatedStory": {"storyId": "S1", "relationship": "related"}}]}'
        )
        engine = InterconnectionEngine(
            MagicMock(), consistency_judge=PromptedConsistencyJudge(MagicMock(return_value=raw)), hooks=hooks
        )

        result = engine.consolidate(
            {"S1": document("S1"), "S2": document("S2")},
            {"S1": record("S1", "S2"), "S2": record("S2")},
            SystemContext(),
        )

        assert result.applied == []
        assert len(result.deferred) == 1
        assert result.deferred[0].fix.confidence == 0.0
        assert result.interconnections["S2"].related_stories == []

    def test_fix_with_path_goes_through_orchestrator(self, hooks):
        judge = MagicMock()
        judge.judge.return_value = GlobalConsistencyReport(fixes=[
            ConsistencyFix(type="normalize-term-to-vocabulary", story_id="S1", path="openQuestions",
                           operation="add", confidence=0.9,
                           item=PatchItem(id="QUESTION-1", text="Is it Basket or Cart?")),
            ConsistencyFix(type="normalize-term-to-vocabulary", story_id="S1", path="openQuestions",
                           operation="add", confidence=0.9,
                           item=PatchItem(id="Q-2", text="Bad prefix")),
        ])
        engine = InterconnectionEngine(MagicMock(), consistency_judge=judge, hooks=hooks)
        original = document("S1")

        result = engine.consolidate({"S1": original}, {"S1": record("S1")}, SystemContext())

        assert result.documents["S1"].open_questions == [Item(id="QUESTION-1", text="Is it Basket or Cart?")]
        assert original.open_questions == []
        assert len(result.applied) == 1
        assert 'item.id must start with "QUESTION-"' in result.deferred[0].reason
        assert "## Open Questions" in result.texts["S1"]

    def test_contract_and_vocabulary_fixes(self, hooks):
        judge = MagicMock()
        judge.judge.return_value = GlobalConsistencyReport(fixes=[
            ConsistencyFix(type="normalize-contract-id", story_id="S1", path=None, operation="replace",
                           confidence=0.8, item=PatchItem(text="COMP-CART"), match=PatchMatch(text_equals="comp-cart")),
            ConsistencyFix(type="normalize-term-to-vocabulary", story_id="S1", path=None, operation="replace",
                           confidence=0.8, item=PatchItem(text="Cart"), match=PatchMatch(text_equals="Basket")),
            ConsistencyFix(type="rename-everything", story_id="S1", path=None, operation="replace", confidence=1.0),
            ConsistencyFix(type="normalize-contract-id", story_id="S7", path=None, operation="replace",
                           confidence=1.0, item=PatchItem(text="X"), match=PatchMatch(text_equals="x")),
        ])
        engine = InterconnectionEngine(MagicMock(), consistency_judge=judge, hooks=hooks)
        interconnections = {"S1": StoryInterconnections(
            story_id="S1", ui_mapping={"Basket": "COMP-CART"}, contract_dependencies=["comp-cart"],
        )}

        result = engine.consolidate({"S1": document("S1")}, interconnections, SystemContext())

        assert result.interconnections["S1"].contract_dependencies == ["COMP-CART"]
        assert result.interconnections["S1"].ui_mapping == {"Cart": "COMP-CART"}
        assert [d.reason for d in result.deferred] == ["Unknown fix type: rename-everything", "Unknown story: S7"]

    def test_judge_failure_is_recorded(self, hooks):
        judge = MagicMock()
        judge.judge.side_effect = EvaluationError("judge offline")
        engine = InterconnectionEngine(MagicMock(), consistency_judge=judge, hooks=hooks)

        result = engine.consolidate({"S1": document("S1")}, {"S1": record("S1")}, SystemContext())

        assert result.evaluation_failure is not None
        assert result.report is None
        assert result.to_dict()["evaluationFailure"]["kind"] == "evaluation"

    def test_new_relationships_are_merged(self, hooks):
        engine = InterconnectionEngine(MagicMock(), hooks=hooks)
        rels = [
            Relationship(id="COMP-CART", type="component", operation="add_node", name="Cart"),
            Relationship(id="", type="edge", operation="edit_edge", name="contains"),
        ]

        result = engine.consolidate({"S1": document("S1")}, {"S1": record("S1")}, SystemContext(), rels)

        assert "COMP-CART" in result.context.components
        assert len(result.relationship_review) == 1
        assert result.report is None
