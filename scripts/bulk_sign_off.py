#!/usr/bin/env python3
"""Sign off (or undo) requirements for several scouts at once.

Every ``--requirement`` is applied to every ``--scout``; each pair reports
``applied``, ``no_op`` or ``failed`` independently.

Usage:
    python3 scripts/bulk_sign_off.py --db data/advancement.duckdb --action complete \\
        --scout s1 --scout s2 --requirement fa-1a --requirement fa-1b \\
        --actor-id leader-7 --actor-name "Pat Leader"
    python3 scripts/bulk_sign_off.py --db data/advancement.duckdb --action undo \\
        --scout s1 --requirement fa-1a --actor-id leader-7 --actor-name "Pat Leader" \\
        --reason "Signed by mistake"

Exit status is 0 when no pair failed, 2 when at least one pair failed and 1
on a usage or store error.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from advancement.bulk_assign import BulkAssignmentCoordinator, expand_targets, summarize
from advancement.config import load_config
from advancement.errors import AdvancementError
from advancement.io_utils import dump_json
from advancement.progress_service import Actor, AdvancementService
from advancement.progress_store import ProgressStore

log = logging.getLogger("bulk_sign_off")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Apply a completion or undo to many scout/requirement pairs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--db", type=Path, default=None, help="Path to advancement DuckDB")
    parser.add_argument("--config", type=Path, default=None, help="Path to config JSON")
    parser.add_argument("--action", choices=("complete", "undo"), required=True)
    parser.add_argument("--scout", action="append", required=True, dest="scouts")
    parser.add_argument("--requirement", action="append", required=True, dest="requirements")
    parser.add_argument("--actor-id", required=True)
    parser.add_argument("--actor-name", required=True)
    parser.add_argument("--reason", default=None, help="Required for --action undo")
    parser.add_argument("--note", default=None, help="Completion note text override")
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

    try:
        config = load_config(args.config)
    except (ValueError, OSError) as exc:
        log.error("Cannot load config: %s", exc)
        return 1
    db_path = args.db or (Path(config.db_path) if config.db_path else None)
    if db_path is None:
        log.error("No database given (use --db or db_path in the config)")
        return 1

    try:
        actor = Actor(actor_id=args.actor_id, display_name=args.actor_name)
        store = ProgressStore(db_path)
    except (AdvancementError, FileNotFoundError) as exc:
        log.error("%s", exc)
        return 1

    try:
        coordinator = BulkAssignmentCoordinator(AdvancementService(store, config=config))
        outcomes = coordinator.apply_bulk(
            args.action,
            expand_targets(args.scouts, args.requirements),
            actor,
            reason=args.reason,
            note_text=args.note,
        )
    except AdvancementError as exc:
        log.error("%s", exc)
        return 1
    finally:
        store.close()

    counts = summarize(outcomes)
    dump_json({"action": args.action, "summary": counts, "outcomes": [o.to_dict() for o in outcomes]})
    return 2 if counts["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
