#!/usr/bin/env python3
"""Reconstruct and inspect the requirement hierarchy of one catalog version.

Reads a JSON list of flat requirement rows (or an object with a
``requirements`` list plus optional ``catalogEntryId`` / ``versionId``),
resolves each row's context, builds the tree and reports structural warnings
and labels that exceed the configured numbering bounds.

Usage:
    python3 scripts/requirement_tree_report.py --rows data/first_aid_v2024.json
    python3 scripts/requirement_tree_report.py --rows rows.json --config advancement.json -v

Structured JSON output goes to stdout; logs go to stderr.
"""
from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from advancement.config import DEFAULT_CONFIG, AdvancementConfig, load_config
from advancement.hierarchy import (
    build_tree,
    find_bound_violations,
    resolve_contexts,
    tree_to_dict,
)
from advancement.hierarchy.types import RequirementSource
from advancement.io_utils import dump_json, load_requirement_rows

log = logging.getLogger("requirement_tree_report")


def build_report(
    rows: Sequence[RequirementSource],
    config: AdvancementConfig = DEFAULT_CONFIG,
) -> dict[str, Any]:
    """Contexts, tree and diagnostics for one set of rows."""
    bounds = config.bounds()
    ordered = sorted(rows, key=lambda r: (r.display_order, r.requirement_id))
    contexts = resolve_contexts(ordered, bounds)
    tree = build_tree(ordered, contexts, bounds=bounds)
    violations = find_bound_violations(ordered, bounds)
    leaves = tree.leaf_ids()
    return {
        "catalog_entry_id": tree.catalog_entry_id,
        "version_id": tree.version_id,
        "row_count": len(ordered),
        "leaf_count": len(leaves),
        "contexts": [
            {
                "requirement_id": row.requirement_id,
                "label": row.display_label,
                "main_number": ctx.main_number,
                "letter": ctx.letter,
                "letter_is_header": ctx.letter_is_header,
            }
            for row, ctx in zip(ordered, contexts, strict=True)
        ],
        "tree": tree_to_dict(tree),
        "warnings": list(tree.warnings),
        "bound_violations": violations,
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build a requirement tree from flat rows and report diagnostics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--rows", type=Path, required=True, help="Path to requirement rows JSON")
    parser.add_argument("--config", type=Path, default=None, help="Path to config JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    if not args.rows.exists():
        log.error("Rows file not found: %s", args.rows)
        return 1
    try:
        config = load_config(args.config)
        rows = load_requirement_rows(args.rows)
        report = build_report(rows, config)
    except (ValueError, OSError) as exc:
        log.error("%s", exc)
        return 1

    log.info(
        "%s@%s: %d rows, %d leaves, %d warnings, %d bound violations",
        report["catalog_entry_id"], report["version_id"], report["row_count"],
        report["leaf_count"], len(report["warnings"]), len(report["bound_violations"]),
    )
    dump_json(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
