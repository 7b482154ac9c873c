"""Process-wide cache of built requirement trees.

Trees are keyed by ``(catalog_entry_id, version_id)`` and built at most once
per key and source state. Every hit re-reads the rows and compares their
fingerprint with the cached tree, so a replaced row set is picked up on the
next request without explicit invalidation. Concurrent first requests for
an unbuilt key coalesce onto a single build (single-flight) and every caller
receives the same tree instance. A failed build is not cached; waiting
callers see the same exception and the next request retries.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from typing import TypeAlias

from advancement.hierarchy.tree_builder import build_tree, source_fingerprint
from advancement.hierarchy.types import (
    DEFAULT_BOUNDS,
    HierarchyBounds,
    RequirementSource,
    RequirementTree,
)

log = logging.getLogger(__name__)

TreeKey: TypeAlias = tuple[str, str]
RowLoader: TypeAlias = Callable[[str, str], Sequence[RequirementSource]]


class RequirementTreeCache:
    """Single-flight tree cache with explicit per-key invalidation."""

    def __init__(self, loader: RowLoader, *, bounds: HierarchyBounds = DEFAULT_BOUNDS) -> None:
        self._loader = loader
        self._bounds = bounds
        self._lock = threading.Lock()
        self._trees: dict[TreeKey, RequirementTree] = {}
        self._pending: dict[TreeKey, Future[RequirementTree]] = {}
        self._builds = 0
        self._hits = 0
        self._stale = 0

    def get(self, catalog_entry_id: str, version_id: str) -> RequirementTree:
        """Return the tree for a key, rebuilding it if its source rows changed."""
        key = (catalog_entry_id, version_id)
        with self._lock:
            cached = self._trees.get(key)
        if cached is not None:
            rows = self._loader(catalog_entry_id, version_id)
            if source_fingerprint(rows) == cached.source_fingerprint:
                with self._lock:
                    self._hits += 1
                return cached
            log.info(
                "Requirement rows for %s@%s changed; rebuilding tree",
                catalog_entry_id, version_id,
            )
            with self._lock:
                self._stale += 1
                if self._trees.get(key) is cached:
                    del self._trees[key]
        return self._get_or_build(key)

    def _get_or_build(self, key: TreeKey) -> RequirementTree:
        with self._lock:
            tree = self._trees.get(key)
            if tree is not None:
                self._hits += 1
                return tree
            pending = self._pending.get(key)
            owner = pending is None
            if pending is None:
                pending = Future()
                self._pending[key] = pending

        if not owner:
            return pending.result()

        try:
            tree = self._build(*key)
        except BaseException as exc:
            with self._lock:
                self._pending.pop(key, None)
            pending.set_exception(exc)
            raise
        with self._lock:
            self._trees[key] = tree
            self._pending.pop(key, None)
        pending.set_result(tree)
        return tree

    def _build(self, catalog_entry_id: str, version_id: str) -> RequirementTree:
        rows = self._loader(catalog_entry_id, version_id)
        tree = build_tree(
            rows,
            catalog_entry_id=catalog_entry_id,
            version_id=version_id,
            bounds=self._bounds,
        )
        with self._lock:
            self._builds += 1
        log.debug(
            "Built requirement tree %s@%s (%d rows, fingerprint %s)",
            catalog_entry_id, version_id, len(rows), tree.source_fingerprint[:12],
        )
        for warning in tree.warnings:
            log.warning("Requirement tree %s@%s: %s", catalog_entry_id, version_id, warning)
        return tree

    def peek(self, catalog_entry_id: str, version_id: str) -> RequirementTree | None:
        with self._lock:
            return self._trees.get((catalog_entry_id, version_id))

    def invalidate(self, catalog_entry_id: str, version_id: str) -> bool:
        """Drop one cached tree; the next ``get`` rebuilds it."""
        with self._lock:
            return self._trees.pop((catalog_entry_id, version_id), None) is not None

    def invalidate_entry(self, catalog_entry_id: str) -> int:
        with self._lock:
            keys = [key for key in self._trees if key[0] == catalog_entry_id]
            for key in keys:
                del self._trees[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._trees.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "builds": self._builds,
                "hits": self._hits,
                "stale": self._stale,
                "cached": len(self._trees),
                "in_flight": len(self._pending),
            }
