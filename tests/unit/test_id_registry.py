"""Unit tests for stable identifier minting."""

import threading

import pytest

from storyloom.id_registry import (
    EntityKind,
    IdentifierRegistry,
    base_identifier,
    normalize_name,
)


class TestNormalizeName:

    @pytest.mark.parametrize("name, expected", [
        ("Login Button", "LOGIN-BUTTON"),
        ("  login--button  ", "LOGIN-BUTTON"),
        ("Cart / Checkout (v2)", "CART-CHECKOUT-V2"),
        ("", ""),
    ])
    def test_normalize(self, name, expected):
        assert normalize_name(name) == expected

    def test_non_string_normalizes_to_empty(self):
        assert normalize_name(None) == ""

    def test_base_identifier_prefixes(self):
        assert base_identifier(EntityKind.COMPONENT, "Login Button") == "COMP-LOGIN-BUTTON"
        assert base_identifier(EntityKind.STATE_MODEL, "Cart") == "C-STATE-CART"
        assert base_identifier(EntityKind.EVENT, "Order Placed") == "E-ORDER-PLACED"
        assert base_identifier(EntityKind.DATA_FLOW, "Cart to Payment") == "DF-CART-TO-PAYMENT"


class TestIdentifierRegistry:

    @pytest.fixture
    def registry(self):
        return IdentifierRegistry()

    def test_mint_is_stable(self, registry):
        assert registry.mint("component", "Login Button") == "COMP-LOGIN-BUTTON"
        assert registry.mint("component", "Login Button") == "COMP-LOGIN-BUTTON"
        assert len(registry) == 1

    def test_collision_suffixes_in_first_seen_order(self, registry):
        first = registry.mint("component", "Login Button")
        second = registry.mint("component", "login-button")
        third = registry.mint("component", "LOGIN BUTTON")

        assert (first, second, third) == ("COMP-LOGIN-BUTTON", "COMP-LOGIN-BUTTON_2", "COMP-LOGIN-BUTTON_3")
        assert registry.mint("component", "Login Button") == "COMP-LOGIN-BUTTON"

    def test_kinds_do_not_collide(self, registry):
        assert registry.mint(EntityKind.COMPONENT, "Cart") == "COMP-CART"
        assert registry.mint(EntityKind.STATE_MODEL, "Cart") == "C-STATE-CART"

    def test_unknown_kind(self, registry):
        with pytest.raises(ValueError, match="Unknown entity kind"):
            registry.mint("widget", "Cart")

    def test_lookup_does_not_mint(self, registry):
        assert registry.lookup("component", "Cart") is None
        assert len(registry) == 0

        registry.mint("component", "Cart")
        assert registry.lookup("component", "Cart") == "COMP-CART"

    def test_entries_and_contains(self, registry):
        registry.mint("event", "Order Placed")
        registry.mint("component", "Cart")

        assert [e.identifier for e in registry.entries()] == ["E-ORDER-PLACED", "COMP-CART"]
        assert registry.entries()[0].to_dict() == {
            "entityKind": "event",
            "canonicalName": "Order Placed",
            "id": "E-ORDER-PLACED",
        }
        assert "COMP-CART" in registry
        assert "COMP-NOPE" not in registry

    def test_freeze_is_a_snapshot(self, registry):
        registry.mint("component", "Cart")
        frozen = registry.freeze()

        registry.mint("component", "Wishlist")

        assert len(frozen) == 1
        assert frozen.lookup("component", "Cart") == "COMP-CART"
        assert frozen.lookup("component", "Wishlist") is None
        assert frozen.identifiers("component") == ["COMP-CART"]
        assert not hasattr(frozen, "mint")

    def test_reset(self, registry):
        registry.mint("component", "Cart")
        registry.reset()

        assert len(registry) == 0
        assert registry.mint("component", "cart") == "COMP-CART"

    def test_concurrent_mint_of_same_name(self, registry):
        results = []
        lock = threading.Lock()

        def mint():
            identifier = registry.mint("component", "Login Button")
            with lock:
                results.append(identifier)

        threads = [threading.Thread(target=mint) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert set(results) == {"COMP-LOGIN-BUTTON"}
        assert len(registry) == 1

    def test_lookup_waits_for_writer(self, registry):
        registry.mint("component", "Cart")
        results = []

        with registry._lock:
            reader = threading.Thread(target=lambda: results.append(registry.lookup("component", "Cart")))
            reader.start()
            reader.join(timeout=0.1)
            assert reader.is_alive()
            assert results == []

        reader.join(timeout=5)
        assert results == ["COMP-CART"]
