"""Tests for key construction and matching."""

import pytest

from converge import define_keys, make_key, prefix_of
from converge.keys import as_key, exact, is_key_prefix, serialize_key, to_predicate


class TestMakeKey:
    """Tests for make_key function."""

    def test_positional_parts_in_order(self) -> None:
        """Test that positional parts keep their order."""
        assert make_key("product", "42") == ("product", "42")

    def test_params_are_sorted(self) -> None:
        """Test that keyword order does not affect equality."""
        a = make_key("customers", page=1, size=20)
        b = make_key("customers", size=20, page=1)
        assert a == b
        assert a == ("customers", "page", 1, "size", 20)

    def test_lists_become_tuples(self) -> None:
        """Test that list parts are hashable in the key."""
        key = make_key("orders", status=["open", "paid"])
        assert key == ("orders", "status", ("open", "paid"))
        assert hash(key) == hash(("orders", "status", ("open", "paid")))

    def test_non_primitive_rejected(self) -> None:
        """Test that objects cannot be key parts."""
        with pytest.raises(TypeError, match="primitives"):
            make_key("product", {"id": 1})

    def test_none_and_bool_allowed(self) -> None:
        """Test the remaining primitive types."""
        assert make_key("flags", None, True, 1.5) == ("flags", None, True, 1.5)


class TestAsKey:
    """Tests for as_key coercion."""

    def test_scalar(self) -> None:
        """Test that a scalar becomes a one-part key."""
        assert as_key("products") == ("products",)

    def test_list(self) -> None:
        """Test that a list becomes a tuple key."""
        assert as_key(["product", "42"]) == ("product", "42")

    def test_tuple_unchanged(self) -> None:
        """Test that tuples pass through."""
        assert as_key(("product", 42)) == ("product", 42)


class TestDefineKeys:
    """Tests for define_keys function."""

    def test_builds_keys(self) -> None:
        """Test that definitions produce structural keys."""
        keys = define_keys(
            {
                "product": lambda id: ("product", id),
                "products": lambda page=1: ("products", page),
            }
        )
        assert keys["product"]("42") == ("product", "42")
        assert keys["products"]() == ("products", 1)
        assert keys["products"](page=3) == ("products", 3)

    def test_each_definition_keeps_its_function(self) -> None:
        """Test that closures do not share the last definition."""
        keys = define_keys({"a": lambda: ("a",), "b": lambda: ("b",)})
        assert keys["a"]() == ("a",)
        assert keys["b"]() == ("b",)


class TestSerializeKey:
    """Tests for serialize_key function."""

    def test_joins_with_colon(self) -> None:
        """Test that parts are joined with colons."""
        assert serialize_key(("product", 42)) == "product:42"

    def test_escapes_separator(self) -> None:
        """Test that colons inside parts cannot collide with separators."""
        assert serialize_key(("a:b", "c")) == "a\\:b:c"
        assert serialize_key(("a", "b:c")) != serialize_key(("a:b", "c"))


class TestMatching:
    """Tests for prefix and exact matching."""

    def test_is_key_prefix(self) -> None:
        """Test prefix checks on key parts."""
        assert is_key_prefix(("customers",), ("customers", "list", 1))
        assert is_key_prefix(("customers",), ("customers",))
        assert not is_key_prefix(("customers", "list"), ("customers",))
        assert not is_key_prefix(("orders",), ("customers", "list"))

    def test_prefix_of(self) -> None:
        """Test that prefix_of matches descendant keys."""
        matches = prefix_of(("customers",))
        assert matches(("customers", "detail", "1"))
        assert not matches(("customer",))

    def test_exact(self) -> None:
        """Test that exact only matches the same key."""
        matches = exact(("customers", "detail", "1"))
        assert matches(("customers", "detail", "1"))
        assert not matches(("customers", "detail", "1", "extra"))

    def test_to_predicate(self) -> None:
        """Test that callables pass through and tuples become prefixes."""

        def predicate(key: tuple) -> bool:
            return len(key) == 1

        assert to_predicate(predicate) is predicate
        assert to_predicate(("a",))(("a", "b"))
