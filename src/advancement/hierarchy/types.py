"""Core types for requirement hierarchy reconstruction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, TypeAlias


LabelKind: TypeAlias = Literal["number", "letter", "other"]
NodeKind: TypeAlias = Literal["root", "main", "letter", "item"]
ScopeOpened: TypeAlias = Literal["main", "letter"]


@dataclass(frozen=True, slots=True)
class HierarchyBounds:
    """Heuristic bounds separating top-level numbers from numbered sub-steps.

    ``max_main_number`` caps what an unwrapped number may be before it stops
    opening a new main requirement; ``max_wrapped_number`` caps parenthetical
    sub-steps that nest under the open letter/number scope.
    """

    max_main_number: int = 20
    max_wrapped_number: int = 10

    def __post_init__(self) -> None:
        if self.max_main_number < 1:
            raise ValueError(f"max_main_number must be >= 1, got {self.max_main_number}")
        if self.max_wrapped_number < 1:
            raise ValueError(
                f"max_wrapped_number must be >= 1, got {self.max_wrapped_number}",
            )


DEFAULT_BOUNDS = HierarchyBounds()


@dataclass(frozen=True, slots=True)
class ClassifiedLabel:
    """Normalized token for one display label.

    ``value`` is an ``int`` for numbers, a lower-case single character for
    letters and ``None`` for ``other``.
    """

    kind: LabelKind
    value: int | str | None
    wrapped: bool

    def __post_init__(self) -> None:
        if self.kind == "number" and not isinstance(self.value, int):
            raise ValueError("number labels must carry an int value")
        if self.kind == "letter" and not (isinstance(self.value, str) and len(self.value) == 1):
            raise ValueError("letter labels must carry a single character")
        if self.kind == "other" and self.value is not None:
            raise ValueError("other labels carry no value")


@dataclass(frozen=True, slots=True)
class RequirementContext:
    """Enclosing main requirement / letter scope for one row."""

    main_number: str | None
    letter: str | None
    letter_is_header: bool = False


EMPTY_CONTEXT = RequirementContext(main_number=None, letter=None, letter_is_header=False)


@dataclass(frozen=True, slots=True)
class LabelItem:
    """Minimal resolver input: a display label and its checkbox flag."""

    label: str
    is_leaf: bool


@dataclass(frozen=True, slots=True)
class RequirementSource:
    """One flat requirement row as delivered by the import collaborator."""

    requirement_id: str
    catalog_entry_id: str
    version_id: str
    display_label: str
    has_checkbox: bool
    display_order: int
    body: str = ""
    alternatives_group: str | None = None

    def __post_init__(self) -> None:
        if not self.requirement_id:
            raise ValueError("requirement_id cannot be empty")
        if not self.catalog_entry_id:
            raise ValueError("catalog_entry_id cannot be empty")
        if not self.version_id:
            raise ValueError("version_id cannot be empty")
        if self.display_order < 0:
            raise ValueError(f"display_order must be >= 0, got {self.display_order}")

    @property
    def label(self) -> str:
        return self.display_label

    @property
    def is_leaf(self) -> bool:
        return self.has_checkbox


@dataclass(frozen=True, slots=True)
class RequirementNode:
    """A node in the per-version requirement tree.

    Children are owned by value. ``parent_id`` is the stable identifier of the
    owning node (empty for the root); nodes never hold references upward.
    """

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
    children: tuple[RequirementNode, ...]

    def iter_nodes(self):
        """Yield this node and every descendant in pre-order."""
        stack: list[RequirementNode] = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


@dataclass(frozen=True, slots=True)
class RequirementTree:
    """Immutable tree for one catalog entry + version."""

    catalog_entry_id: str
    version_id: str
    root: RequirementNode
    source_fingerprint: str
    warnings: tuple[str, ...]

    def iter_nodes(self):
        return self.root.iter_nodes()

    def leaf_ids(self) -> tuple[str, ...]:
        return tuple(node.node_id for node in self.iter_nodes() if node.is_leaf)

    def find(self, node_id: str) -> RequirementNode | None:
        for node in self.iter_nodes():
            if node.node_id == node_id:
                return node
        return None
