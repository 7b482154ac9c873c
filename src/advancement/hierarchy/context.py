"""Context resolution: recover main-number / letter scope for flat rows.

The only structural signal in the source rows is the display label and the
checkbox flag. A single forward fold carries ``(main_number, letter,
letter_is_header)`` and emits one ``RequirementContext`` per row, equal to the
state after that row's transition. Transition rules, first match wins:

  1. unwrapped number <= max_main_number   opens a main requirement
  2. letter (any wrap state)               opens a lettered sub-section
  3. wrapped number <= max_wrapped_number  keeps the current scope
  4. anything else                          keeps the current scope
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from advancement.hierarchy.labels import classify_label
from advancement.hierarchy.types import (
    DEFAULT_BOUNDS,
    EMPTY_CONTEXT,
    ClassifiedLabel,
    HierarchyBounds,
    LabelItem,
    RequirementContext,
    ScopeOpened,
)


def scope_opened(
    classified: ClassifiedLabel,
    bounds: HierarchyBounds = DEFAULT_BOUNDS,
) -> ScopeOpened | None:
    """Return which scope a classified label opens, or None if it keeps context."""
    if classified.kind == "number" and not classified.wrapped:
        assert isinstance(classified.value, int)
        if classified.value <= bounds.max_main_number:
            return "main"
        return None
    if classified.kind == "letter":
        return "letter"
    return None


def advance_context(
    state: RequirementContext,
    classified: ClassifiedLabel,
    is_leaf: bool,
    bounds: HierarchyBounds = DEFAULT_BOUNDS,
) -> tuple[RequirementContext, ScopeOpened | None]:
    """Apply one row's transition to the accumulator."""
    opened = scope_opened(classified, bounds)
    if opened == "main":
        return RequirementContext(str(classified.value), None, False), opened
    if opened == "letter":
        assert isinstance(classified.value, str)
        return RequirementContext(state.main_number, classified.value, not is_leaf), opened
    # Rules 3 and 4: wrapped sub-steps, oversized numbers and ``other`` labels
    # all nest under whatever scope is already open.
    return state, None


def _item_fields(item: Any) -> tuple[str, bool]:
    if isinstance(item, Mapping):
        label = item.get("displayLabel", item.get("display_label", item.get("label")))
        leaf = item.get("hasCheckbox", item.get("has_checkbox", item.get("is_leaf", True)))
        return str(label or ""), bool(leaf)
    if isinstance(item, tuple) and len(item) == 2:
        return str(item[0] or ""), bool(item[1])
    return str(getattr(item, "label", "") or ""), bool(getattr(item, "is_leaf", True))


def resolve_steps(
    items: Iterable[Any],
    bounds: HierarchyBounds = DEFAULT_BOUNDS,
) -> tuple[tuple[RequirementContext, ScopeOpened | None], ...]:
    """Fold over rows, returning ``(context, scope_opened)`` per row."""
    steps: list[tuple[RequirementContext, ScopeOpened | None]] = []
    state = EMPTY_CONTEXT
    for item in items:
        label, is_leaf = _item_fields(item)
        state, opened = advance_context(state, classify_label(label), is_leaf, bounds)
        steps.append((state, opened))
    return tuple(steps)


def resolve_contexts(
    items: Iterable[Any],
    bounds: HierarchyBounds = DEFAULT_BOUNDS,
) -> tuple[RequirementContext, ...]:
    """Resolve the enclosing context for every row, one output per input.

    ``items`` may be ``LabelItem``/``RequirementSource`` objects, ``(label,
    is_leaf)`` tuples, or mappings with ``displayLabel``/``hasCheckbox``
    (or ``label``/``is_leaf``) keys.
    """
    return tuple(context for context, _ in resolve_steps(items, bounds))


def find_bound_violations(
    items: Sequence[Any],
    bounds: HierarchyBounds = DEFAULT_BOUNDS,
) -> list[dict[str, Any]]:
    """Report numbered rows the bounds heuristic would misclassify.

    An unwrapped number above ``max_main_number`` stops opening main
    requirements; a wrapped number above ``max_wrapped_number`` falls into the
    catch-all rule. Either signals a catalog the defaults were not tuned for.
    """
    violations: list[dict[str, Any]] = []
    for index, item in enumerate(items):
        label, _ = _item_fields(item)
        classified = classify_label(label)
        if classified.kind != "number":
            continue
        assert isinstance(classified.value, int)
        if not classified.wrapped and classified.value > bounds.max_main_number:
            violations.append({
                "index": index,
                "label": label,
                "reason": "main_number_above_bound",
                "bound": bounds.max_main_number,
            })
        elif classified.wrapped and classified.value > bounds.max_wrapped_number:
            violations.append({
                "index": index,
                "label": label,
                "reason": "wrapped_number_above_bound",
                "bound": bounds.max_wrapped_number,
            })
    return violations


__all__ = [
    "LabelItem",
    "advance_context",
    "find_bound_violations",
    "resolve_contexts",
    "resolve_steps",
    "scope_opened",
]
