"""Key construction and matching."""

from collections.abc import Callable, Iterable
from typing import Any

from converge.types import Key, KeyMatcher, KeyPredicate

_PRIMITIVES = (str, int, float, bool, type(None))
_ESCAPE_MAP = {"\\": "\\\\", ":": "\\:"}


def _check_part(part: Any) -> Any:
    if isinstance(part, list):
        part = tuple(part)
    if isinstance(part, tuple):
        return tuple(_check_part(p) for p in part)
    if not isinstance(part, _PRIMITIVES):
        raise TypeError(
            f"Key parts must be primitives, got {type(part).__name__}: {part!r}"
        )
    return part


def make_key(*parts: Any, **params: Any) -> Key:
    """
    Build a structural cache key.

    Positional parts are kept in order; keyword params are appended as
    sorted ``name, value`` pairs so their order does not matter.

    Example:
        make_key("products", page=2, page_size=20)
        # ("products", "page", 2, "page_size", 20)
    """
    key: list[Any] = [_check_part(p) for p in parts]
    for name in sorted(params):
        key.append(name)
        key.append(_check_part(params[name]))
    return tuple(key)


def as_key(value: Any) -> Key:
    """Coerce a key-like value (tuple, list or scalar) into a Key."""
    if isinstance(value, (tuple, list)):
        return make_key(*value)
    return make_key(value)


def define_keys(
    definitions: dict[str, Callable[..., Iterable[Any]]],
) -> dict[str, Callable[..., Key]]:
    """
    Define all resource keys in a centralized location.

    Example:
        keys = define_keys({
            "product": lambda id: ("product", id),
            "products": lambda page=1: ("products", page),
        })

        keys["product"]("42")   # ("product", "42")
        keys["products"](2)     # ("products", 2)
    """
    result: dict[str, Callable[..., Key]] = {}
    for name, fn in definitions.items():

        def make(*args: Any, _fn: Callable[..., Iterable[Any]] = fn, **kw: Any) -> Key:
            return make_key(*_fn(*args, **kw))

        result[name] = make
    return result


def serialize_key(key: Key) -> str:
    """Serialize a key to a readable string (for logs and lock ordering)."""

    def escape(part: Any) -> str:
        result = repr(part) if not isinstance(part, str) else part
        for char, escaped in _ESCAPE_MAP.items():
            result = result.replace(char, escaped)
        return result

    return ":".join(escape(p) for p in key)


def is_key_prefix(parent: Key, child: Key) -> bool:
    """Check if parent is a prefix of child (for invalidation)."""
    if len(parent) > len(child):
        return False
    return child[: len(parent)] == parent


def prefix_of(prefix: Key) -> KeyPredicate:
    """Predicate matching every key that starts with ``prefix``."""
    prefix = as_key(prefix)
    return lambda key: is_key_prefix(prefix, key)


def exact(key: Key) -> KeyPredicate:
    """Predicate matching exactly one key."""
    key = as_key(key)
    return lambda other: other == key


def to_predicate(matcher: KeyMatcher) -> KeyPredicate:
    """Accept either a predicate or a key prefix."""
    if callable(matcher):
        return matcher
    return prefix_of(matcher)
