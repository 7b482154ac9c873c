"""Progress rollup over a requirement tree.

Pure function of ``(tree, leaf_statuses)``: evaluated bottom-up, no hidden
state, so recomputing on every read is safe.

  checkable node    completed iff its own status is "completed"
  header node       AND over untagged children, AND over alternatives
                    groups where each group is the OR of its members
  root              same combination; overall is "completed" when the
                    root completes, "not_started" when no checkable node
                    anywhere is completed, else "in_progress"

A header with no children is vacuously completed and reported in
``RollupResult.warnings``. Status entries for unknown requirement ids are
ignored.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal, TypeAlias

from advancement.hierarchy.types import RequirementNode, RequirementTree

OverallStatus: TypeAlias = Literal["not_started", "in_progress", "completed"]

COMPLETED = "completed"
INCOMPLETE = "incomplete"


@dataclass(frozen=True, slots=True)
class RollupResult:
    """Per-node completion plus the catalog entry's overall status."""

    per_node: Mapping[str, bool]
    overall: OverallStatus
    completed_leaves: int
    total_leaves: int
    warnings: tuple[str, ...]

    @property
    def percent_complete(self) -> float:
        if self.total_leaves == 0:
            return 0.0
        return round(100.0 * self.completed_leaves / self.total_leaves, 1)


def _combine(children: tuple[RequirementNode, ...], per_node: Mapping[str, bool]) -> bool:
    untagged = True
    groups: dict[str, bool] = {}
    for child in children:
        done = per_node[child.node_id]
        tag = child.alternatives_group
        if tag is None:
            untagged = untagged and done
        else:
            groups[tag] = groups.get(tag, False) or done
    return untagged and all(groups.values())


def aggregate(tree: RequirementTree, leaf_statuses: Mapping[str, str]) -> RollupResult:
    """Compute the rollup for one scout against one requirement tree."""
    per_node: dict[str, bool] = {}
    warnings: list[str] = []
    completed_leaves = 0
    total_leaves = 0

    # Post-order without recursion: parents are evaluated after all children.
    order: list[RequirementNode] = []
    stack: list[RequirementNode] = [tree.root]
    while stack:
        node = stack.pop()
        order.append(node)
        stack.extend(node.children)

    for node in reversed(order):
        if node.is_leaf:
            done = leaf_statuses.get(node.node_id) == COMPLETED
            total_leaves += 1
            completed_leaves += int(done)
        elif node.children:
            done = _combine(node.children, per_node)
        elif node.kind == "root":
            done = False
        else:
            warnings.append(f"vacuous_header:{node.node_id}")
            done = True
        per_node[node.node_id] = done

    overall: OverallStatus
    if tree.root.children and per_node[tree.root.node_id]:
        overall = "completed"
    elif completed_leaves == 0:
        overall = "not_started"
    else:
        overall = "in_progress"

    return RollupResult(
        per_node=per_node,
        overall=overall,
        completed_leaves=completed_leaves,
        total_leaves=total_leaves,
        warnings=tuple(sorted(warnings)),
    )
