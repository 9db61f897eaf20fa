"""Unit tests for merging judge-discovered relationships."""

from storyloom.models import Component, Relationship, SystemContext
from storyloom.relationship_merger import merge_new_relationships


def make_context():
    return SystemContext(components={
        "COMP-CART": Component(id="COMP-CART", product_name="Cart"),
        "COMP-CHECKOUT": Component(id="COMP-CHECKOUT", product_name="Checkout"),
    })


class TestMergeNewRelationships:

    def test_add_nodes_of_every_kind(self):
        rels = [
            Relationship(id="COMP-WISHLIST", type="component", operation="add_node", name="Wishlist"),
            Relationship(id="C-STATE-CART", type="stateModel", operation="add_node", canonical_name="Cart state"),
            Relationship(id="E-ORDER-PLACED", type="event", operation="add_node", name="Order placed"),
            Relationship(id="DF-CART-TO-CHECKOUT", type="dataFlow", operation="add_node", name="cart to checkout"),
        ]

        result = merge_new_relationships(make_context(), rels)

        assert result.merged_count == 4
        assert result.context.components["COMP-WISHLIST"].product_name == "Wishlist"
        assert result.context.state_models[0].name == "Cart state"
        assert result.context.events[0].id == "E-ORDER-PLACED"
        assert result.context.data_flows[0].description == "cart to checkout"

    def test_input_context_is_not_modified(self):
        context = make_context()

        merge_new_relationships(context, [
            Relationship(id="COMP-WISHLIST", type="component", operation="add_node", name="Wishlist"),
        ])

        assert "COMP-WISHLIST" not in context.components

    def test_existing_node_is_skipped(self):
        result = merge_new_relationships(make_context(), [
            Relationship(id="COMP-CART", type="component", operation="add_node", name="Cart"),
        ])

        assert result.merged_count == 0
        assert [r.id for r in result.skipped] == ["COMP-CART"]

    def test_edges(self):
        rels = [
            Relationship(id="", type="edge", operation="add_edge", name="contains",
                         source="COMP-CHECKOUT", target="COMP-CART"),
            Relationship(id="", type="edge", operation="add_edge", name="coordinates-with",
                         source="COMP-CART", target="COMP-CHECKOUT"),
            Relationship(id="", type="edge", operation="add_edge", name="contains",
                         source="COMP-CHECKOUT", target="COMP-CART"),
        ]

        result = merge_new_relationships(make_context(), rels)

        assert result.merged_count == 2
        assert len(result.skipped) == 1
        assert result.context.composition_edges == [("COMP-CHECKOUT", "COMP-CART")]
        assert result.context.coordination_edges == [("COMP-CART", "COMP-CHECKOUT", "coordinates-with")]

    def test_edge_to_unknown_entity_needs_review(self):
        rel = Relationship(id="", type="edge", operation="add_edge", name="contains",
                           source="COMP-CART", target="COMP-GHOST")

        result = merge_new_relationships(make_context(), [rel])

        assert result.merged_count == 0
        assert result.manual_review[0].reason == (
            "Entity references do not exist (source: COMP-CART, target: COMP-GHOST)"
        )

    def test_edits_need_review(self):
        rels = [
            Relationship(id="COMP-CART", type="component", operation="edit_node", name="Basket"),
            Relationship(id="", type="edge", operation="edit_edge", name="contains",
                         source="COMP-CHECKOUT", target="COMP-CART"),
        ]

        result = merge_new_relationships(make_context(), rels)

        assert [m.reason for m in result.manual_review] == [
            "Edit operations require manual review (add-only policy)",
        ] * 2
        assert result.context.components["COMP-CART"].product_name == "Cart"

    def test_malformed_relationships_need_review(self):
        rels = [
            Relationship(id="", type="component", operation="add_node", name="Nameless"),
            Relationship(id="X-1", type="widget", operation="add_node", name="Widget"),
            Relationship(id="", type="edge", operation="add_edge", name="likes",
                         source="COMP-CART", target="COMP-CHECKOUT"),
            Relationship(id="", type="edge", operation="merge", name="contains"),
        ]

        result = merge_new_relationships(make_context(), rels)

        assert [m.reason for m in result.manual_review] == [
            "add_node missing required fields (id, canonicalName or name)",
            "Unknown node type: widget",
            "Unknown edge type: likes",
            "Unknown operation: merge",
        ]
        assert result.to_dict()["manualReview"][1]["relationship"]["id"] == "X-1"
