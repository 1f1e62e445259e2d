from __future__ import annotations

from string import Template
from typing import Any, Mapping, Optional

from .types import ResourceState

UNKNOWN = "(known after apply)"


class ReferenceTemplate(Template):
    """``${name.attribute}`` placeholders pointing at another resource's state."""

    braceidpattern = r"[_a-zA-Z][_a-zA-Z0-9\-]*\.[_a-zA-Z0-9\-]+"


def find_references(value: Any) -> set[tuple[str, str]]:
    """Collect every ``(resource name, attribute)`` pair referenced inside ``value``."""
    found: set[tuple[str, str]] = set()
    if isinstance(value, str):
        for match in ReferenceTemplate.pattern.finditer(value):
            braced = match.group("braced")
            if braced:
                name, _, attribute = braced.partition(".")
                found.add((name, attribute))
    elif isinstance(value, Mapping):
        for item in value.values():
            found |= find_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            found |= find_references(item)
    return found


def resolve_references(
    value: Any,
    states: Mapping[str, ResourceState],
    *,
    placeholder: Optional[str] = None,
) -> Any:
    """Substitute references in ``value`` using ``states`` keyed by resource name.

    A missing state or attribute raises ``KeyError`` unless ``placeholder`` is given,
    in which case the placeholder text is used instead.
    """
    if isinstance(value, Mapping):
        return {k: resolve_references(v, states, placeholder=placeholder) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, states, placeholder=placeholder) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve_references(v, states, placeholder=placeholder) for v in value)
    if not isinstance(value, str):
        return value
    refs = find_references(value)
    if not refs:
        return value

    lookup: dict[str, Any] = {}
    for name, attribute in refs:
        key = f"{name}.{attribute}"
        lookup[key] = _lookup(states, name, attribute, placeholder)

    match = ReferenceTemplate.pattern.fullmatch(value)
    if match and match.group("braced"):
        # A value that is exactly one reference keeps the referenced type.
        return lookup[match.group("braced")]
    return ReferenceTemplate(value).safe_substitute({k: str(v) for k, v in lookup.items()})


def _lookup(
    states: Mapping[str, ResourceState], name: str, attribute: str, placeholder: Optional[str]
) -> Any:
    state = states.get(name)
    if state is None:
        if placeholder is not None:
            return placeholder
        raise KeyError(f"{name}.{attribute}: resource has no state")
    if attribute == "id" and "id" not in state.attributes and state.resource_id is not None:
        return state.resource_id
    if attribute not in state.attributes:
        if placeholder is not None:
            return placeholder
        raise KeyError(f"{name}.{attribute}: attribute not reported by provider")
    return state.attributes[attribute]
