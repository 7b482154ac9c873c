"""Requirement hierarchy reconstruction: labels, contexts and trees."""

from advancement.hierarchy.context import (
    advance_context,
    find_bound_violations,
    resolve_contexts,
    resolve_steps,
    scope_opened,
)
from advancement.hierarchy.labels import classify_label, normalize_label
from advancement.hierarchy.tree_builder import (
    build_tree,
    root_node_id,
    source_fingerprint,
    tree_to_dict,
)
from advancement.hierarchy.types import (
    DEFAULT_BOUNDS,
    ClassifiedLabel,
    HierarchyBounds,
    LabelItem,
    RequirementContext,
    RequirementNode,
    RequirementSource,
    RequirementTree,
)

__all__ = [
    "ClassifiedLabel",
    "DEFAULT_BOUNDS",
    "HierarchyBounds",
    "LabelItem",
    "RequirementContext",
    "RequirementNode",
    "RequirementSource",
    "RequirementTree",
    "advance_context",
    "build_tree",
    "classify_label",
    "find_bound_violations",
    "normalize_label",
    "resolve_contexts",
    "resolve_steps",
    "root_node_id",
    "scope_opened",
    "source_fingerprint",
    "tree_to_dict",
]
