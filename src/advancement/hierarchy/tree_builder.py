"""Requirement tree builder.

Groups the flat, display-ordered requirement rows of one catalog entry +
version into a tree:

  root (catalog entry)
    main-number node      rule-1 rows
      letter node         rule-2 rows
        item node         rule-3/4 rows while a letter is open
      item node           rule-3/4 rows with no open letter

Rows that arrive before any main number opened a scope are attached to the
root and reported as structural warnings; the tree stays usable.
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass

import orjson

from advancement.hierarchy.context import resolve_steps
from advancement.hierarchy.labels import classify_label
from advancement.hierarchy.types import (
    DEFAULT_BOUNDS,
    HierarchyBounds,
    NodeKind,
    RequirementContext,
    RequirementNode,
    RequirementSource,
    RequirementTree,
    ScopeOpened,
)
from advancement.requirement_number import requirement_number_for


# ---------------------------------------------------------------------------
# Internal mutable builder (converted to frozen RequirementNode at the end)
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class _MutableNode:
    node_id: str
    kind: NodeKind
    label: str
    number: str
    body: str
    is_leaf: bool
    alternatives_group: str | None
    main_number: str | None
    letter: str | None
    parent_id: str
    children: list[_MutableNode]

    def freeze(self) -> RequirementNode:
        return RequirementNode(
            node_id=self.node_id,
            kind=self.kind,
            label=self.label,
            number=self.number,
            body=self.body,
            is_leaf=self.is_leaf,
            alternatives_group=self.alternatives_group,
            main_number=self.main_number,
            letter=self.letter,
            parent_id=self.parent_id,
            children=tuple(child.freeze() for child in self.children),
        )


def root_node_id(catalog_entry_id: str, version_id: str) -> str:
    return f"{catalog_entry_id}@{version_id}"


def source_fingerprint(rows: Sequence[RequirementSource]) -> str:
    """Stable digest of the rows a tree was built from, independent of row order."""
    payload = [
        [
            row.requirement_id,
            row.display_label,
            row.has_checkbox,
            row.display_order,
            row.body,
            row.alternatives_group,
        ]
        for row in sorted(rows, key=lambda r: (r.display_order, r.requirement_id))
    ]
    return hashlib.sha256(orjson.dumps(payload)).hexdigest()


def _ordered(rows: Sequence[RequirementSource]) -> bool:
    return all(a.display_order <= b.display_order for a, b in zip(rows, rows[1:]))


def _scope_from_context(label: str, context: RequirementContext) -> ScopeOpened | None:
    """Which scope a row opened, read back from its resolved context."""
    classified = classify_label(label)
    if (
        classified.kind == "number"
        and not classified.wrapped
        and context.letter is None
        and context.main_number == str(classified.value)
    ):
        return "main"
    if classified.kind == "letter" and context.letter == classified.value:
        return "letter"
    return None


def build_tree(
    rows: Sequence[RequirementSource],
    contexts: Sequence[RequirementContext] | None = None,
    *,
    catalog_entry_id: str | None = None,
    version_id: str | None = None,
    bounds: HierarchyBounds = DEFAULT_BOUNDS,
) -> RequirementTree:
    """Build the requirement tree for one catalog entry + version.

    ``contexts`` must be parallel to ``rows`` when given; otherwise they are
    resolved here with ``bounds``. Supplied contexts are authoritative: a row
    opens a main or letter scope exactly when its context says it does, so
    ``bounds`` only applies when contexts are resolved here. Rows must already
    be ordered by ``display_order`` when contexts are supplied; without
    contexts they are sorted first.
    """
    if contexts is None:
        rows = sorted(rows, key=lambda r: r.display_order)
        steps = resolve_steps(rows, bounds)
    else:
        if len(contexts) != len(rows):
            raise ValueError(
                f"contexts length {len(contexts)} does not match rows length {len(rows)}",
            )
        if not _ordered(rows):
            raise ValueError("rows must be ordered by display_order when contexts are supplied")
        steps = tuple(
            (context, _scope_from_context(row.display_label, context))
            for row, context in zip(rows, contexts, strict=True)
        )

    entry_ids = {row.catalog_entry_id for row in rows}
    version_ids = {row.version_id for row in rows}
    if catalog_entry_id is not None:
        entry_ids.add(catalog_entry_id)
    if version_id is not None:
        version_ids.add(version_id)
    if len(entry_ids) != 1 or len(version_ids) != 1:
        raise ValueError(
            "a tree covers exactly one catalog entry and version, got "
            f"entries={sorted(entry_ids)} versions={sorted(version_ids)}",
        )
    entry_id = entry_ids.pop()
    version = version_ids.pop()

    root_id = root_node_id(entry_id, version)
    root = _MutableNode(
        node_id=root_id,
        kind="root",
        label="",
        number="",
        body="",
        is_leaf=False,
        alternatives_group=None,
        main_number=None,
        letter=None,
        parent_id="",
        children=[],
    )
    warnings: list[str] = []
    seen: set[str] = set()
    current_main: _MutableNode | None = None
    current_letter: _MutableNode | None = None

    for row, (context, opened) in zip(rows, steps, strict=True):
        if row.requirement_id in seen or row.requirement_id == root_id:
            raise ValueError(f"duplicate requirement_id {row.requirement_id!r}")
        seen.add(row.requirement_id)

        kind: NodeKind
        if opened == "main":
            parent = root
            kind = "main"
        elif opened == "letter":
            if current_main is None:
                warnings.append(f"orphan_letter:{row.requirement_id}")
                parent = root
            else:
                parent = current_main
            kind = "letter"
        else:
            parent = current_letter or current_main or root
            if parent is root:
                warnings.append(f"orphan_row:{row.requirement_id}")
            kind = "item"

        node = _MutableNode(
            node_id=row.requirement_id,
            kind=kind,
            label=row.display_label,
            number=requirement_number_for(context, row.display_label),
            body=row.body,
            is_leaf=row.has_checkbox,
            alternatives_group=row.alternatives_group or None,
            main_number=context.main_number,
            letter=context.letter,
            parent_id=parent.node_id,
            children=[],
        )
        parent.children.append(node)

        if opened == "main":
            current_main = node
            current_letter = None
        elif opened == "letter":
            current_letter = node

    return RequirementTree(
        catalog_entry_id=entry_id,
        version_id=version,
        root=root.freeze(),
        source_fingerprint=source_fingerprint(rows),
        warnings=tuple(warnings),
    )


def node_to_dict(node: RequirementNode) -> dict[str, object]:
    return {
        "id": node.node_id,
        "kind": node.kind,
        "label": node.label,
        "number": node.number,
        "body": node.body,
        "is_leaf": node.is_leaf,
        "alternatives_group": node.alternatives_group,
        "main_number": node.main_number,
        "letter": node.letter,
        "parent_id": node.parent_id,
        "children": [node_to_dict(child) for child in node.children],
    }


def tree_to_dict(tree: RequirementTree) -> dict[str, object]:
    """Serialize a tree to a deterministic JSON-safe dict."""
    return {
        "catalog_entry_id": tree.catalog_entry_id,
        "version_id": tree.version_id,
        "source_fingerprint": tree.source_fingerprint,
        "warnings": list(tree.warnings),
        "root": node_to_dict(tree.root),
    }
