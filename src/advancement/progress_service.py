"""Scout progress lifecycle on top of the record store.

Every mutation of a ``(scout, requirement)`` progress record is a
read-modify-write of its note ledger and runs under a per-pair lock, so a
concurrent complete and undo on the same pair serialize while different
pairs proceed independently. Catalog-level changes (start, status refresh,
award, version switch) take a per-``(scout, catalog entry)`` lock; pair locks
are always acquired before catalog locks. A requirement write takes the
catalog lock too, and a version switch holds the lock of every pair it
rewrites.

Catalog status follows the rollup after every applied change:

  in_progress -> completed    when the rollup completes (completed_at stamped)
  completed   -> in_progress  when an undo breaks the rollup
  completed   -> awarded      explicit ``award`` only; awarded is terminal

Parents may instead submit a leaf for review. The submission waits as
``pending_approval`` until a leader approves it (which completes the leaf)
or denies it with a reason.
"""
from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Hashable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal, TypeAlias

from advancement.aggregator import COMPLETED, INCOMPLETE, RollupResult, aggregate
from advancement.config import DEFAULT_CONFIG, AdvancementConfig
from advancement.errors import (
    InvalidActorError,
    InvalidTransitionError,
    RecordNotFoundError,
)
from advancement.hierarchy.types import RequirementSource, RequirementTree
from advancement.notes import append_note
from advancement.progress_store import ProgressRepository
from advancement.tree_cache import RequirementTreeCache

log = logging.getLogger(__name__)

PairAction: TypeAlias = Literal["complete", "undo"]
PairOutcome: TypeAlias = Literal["applied", "no_op"]

CATALOG_IN_PROGRESS = "in_progress"
CATALOG_COMPLETED = "completed"
CATALOG_AWARDED = "awarded"
CATALOG_NOT_STARTED = "not_started"

PENDING_APPROVAL = "pending_approval"
APPROVED = "approved"
DENIED = "denied"


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True, slots=True)
class Actor:
    """The leader, counselor or parent performing an action."""

    actor_id: str
    display_name: str

    def __post_init__(self) -> None:
        if not isinstance(self.actor_id, str) or not self.actor_id.strip():
            raise InvalidActorError("actor_id cannot be empty")
        if not isinstance(self.display_name, str) or not self.display_name.strip():
            raise InvalidActorError("actor display_name cannot be empty")


def require_actor(actor: Any) -> Actor:
    if not isinstance(actor, Actor):
        raise InvalidActorError(f"expected an Actor, got {type(actor).__name__}")
    return actor


@dataclass(slots=True)
class _LockEntry:
    lock: threading.RLock
    holders: int = 0


class KeyedLocks:
    """Re-entrant lock per key, dropped once no thread holds or awaits it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, _LockEntry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextlib.contextmanager
    def hold(self, *key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry(threading.RLock())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]


class AdvancementService:
    """Progress operations for scouts against versioned catalog entries."""

    def __init__(
        self,
        store: ProgressRepository,
        cache: RequirementTreeCache | None = None,
        *,
        config: AdvancementConfig = DEFAULT_CONFIG,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._cache = cache or RequirementTreeCache(
            store.get_requirement_sources, bounds=config.bounds(),
        )
        self._locks = locks or KeyedLocks()

    @property
    def store(self) -> ProgressRepository:
        return self._store

    @property
    def cache(self) -> RequirementTreeCache:
        return self._cache

    @property
    def config(self) -> AdvancementConfig:
        return self._config

    # ─── Lookups ──────────────────────────────────────────────────

    def _require_source(self, requirement_id: str) -> RequirementSource:
        source = self._store.get_requirement_source(requirement_id)
        if source is None:
            raise RecordNotFoundError(f"Unknown requirement {requirement_id!r}")
        return source

    def _require_leaf(self, requirement_id: str, carries: str) -> RequirementSource:
        source = self._require_source(requirement_id)
        if not source.has_checkbox:
            raise InvalidTransitionError(
                f"Requirement {requirement_id!r} is a header and cannot carry {carries}",
            )
        return source

    def _resolve_version(self, catalog_entry_id: str, version_id: str | None) -> str:
        if version_id:
            return version_id
        active = self._store.get_active_version(catalog_entry_id)
        if active is None:
            raise RecordNotFoundError(
                f"Catalog entry {catalog_entry_id!r} has no active requirement version",
            )
        return str(active["version_id"])

    def tree_for(self, catalog_entry_id: str, version_id: str | None = None) -> RequirementTree:
        return self._cache.get(catalog_entry_id, self._resolve_version(catalog_entry_id, version_id))

    def status(self, scout_id: str, catalog_entry_id: str) -> str:
        record = self._store.get_catalog_progress(scout_id, catalog_entry_id)
        return str(record["status"]) if record else CATALOG_NOT_STARTED

    def rollup(self, scout_id: str, catalog_entry_id: str) -> RollupResult:
        """Rollup for a scout against the version they are tracking."""
        record = self._store.get_catalog_progress(scout_id, catalog_entry_id)
        version_id = record["version_id"] if record else None
        tree = self.tree_for(catalog_entry_id, version_id)
        return aggregate(tree, self._store.get_leaf_statuses(scout_id, catalog_entry_id))

    # ─── Catalog progress ─────────────────────────────────────────

    def start(
        self,
        scout_id: str,
        catalog_entry_id: str,
        version_id: str | None = None,
    ) -> dict[str, Any]:
        """Explicitly start tracking a catalog entry. Idempotent."""
        with self._locks.hold("catalog", scout_id, catalog_entry_id):
            existing = self._store.get_catalog_progress(scout_id, catalog_entry_id)
            if existing is not None:
                return existing
            record = {
                "scout_id": scout_id,
                "catalog_entry_id": catalog_entry_id,
                "version_id": self._resolve_version(catalog_entry_id, version_id),
                "status": CATALOG_IN_PROGRESS,
                "started_at": _now(),
            }
            self._store.save_catalog_progress(record)
            log.info("Started %s for scout %s", catalog_entry_id, scout_id)
            return record

    def _tracked_catalog(self, scout_id: str, source: RequirementSource) -> dict[str, Any] | None:
        """Catalog record for ``source``'s entry; the caller holds its catalog lock."""
        record = self._store.get_catalog_progress(scout_id, source.catalog_entry_id)
        if record is not None and record["version_id"] != source.version_id:
            raise InvalidTransitionError(
                f"Requirement {source.requirement_id!r} belongs to version "
                f"{source.version_id!r} but scout {scout_id!r} tracks "
                f"{record['version_id']!r}",
            )
        return record

    def _catalog_start(self, scout_id: str, source: RequirementSource) -> dict[str, Any] | None:
        """Catalog record a first completion creates, or None if one exists."""
        if self._tracked_catalog(scout_id, source) is not None:
            return None
        return {
            "scout_id": scout_id,
            "catalog_entry_id": source.catalog_entry_id,
            "version_id": source.version_id,
            "status": CATALOG_IN_PROGRESS,
            "started_at": _now(),
        }

    def refresh_status(self, scout_id: str, catalog_entry_id: str) -> dict[str, Any] | None:
        """Re-derive catalog status from the rollup; awarded is never downgraded."""
        with self._locks.hold("catalog", scout_id, catalog_entry_id):
            record = self._store.get_catalog_progress(scout_id, catalog_entry_id)
            if record is None or record["status"] == CATALOG_AWARDED:
                return record
            result = self.rollup(scout_id, catalog_entry_id)
            for warning in result.warnings:
                log.warning("Rollup %s/%s: %s", scout_id, catalog_entry_id, warning)
            if result.overall == "completed":
                status = CATALOG_COMPLETED
                completed_at = record.get("completed_at") or _now()
            else:
                status = CATALOG_IN_PROGRESS
                completed_at = None
            if status != record["status"] or completed_at != record.get("completed_at"):
                record = {**record, "status": status, "completed_at": completed_at}
                self._store.save_catalog_progress(record)
                log.info(
                    "Scout %s %s is now %s (%d/%d leaves)",
                    scout_id, catalog_entry_id, status,
                    result.completed_leaves, result.total_leaves,
                )
            return record

    def _refresh_after_write(self, scout_id: str, catalog_entry_id: str) -> None:
        # The pair write has committed; a stale status is repaired by the next refresh.
        try:
            self.refresh_status(scout_id, catalog_entry_id)
        except Exception as exc:
            log.warning(
                "Status refresh failed for scout %s %s: %s",
                scout_id, catalog_entry_id, exc,
            )

    def award(
        self,
        scout_id: str,
        catalog_entry_id: str,
        actor: Actor,
        awarded_at: str | None = None,
    ) -> dict[str, Any]:
        """Award a completed rank or badge."""
        actor = require_actor(actor)
        with self._locks.hold("catalog", scout_id, catalog_entry_id):
            record = self._store.get_catalog_progress(scout_id, catalog_entry_id)
            if record is None:
                raise RecordNotFoundError(
                    f"Scout {scout_id!r} has no progress on {catalog_entry_id!r}",
                )
            if record["status"] != CATALOG_COMPLETED:
                raise InvalidTransitionError(
                    f"Only completed progress can be awarded; "
                    f"{scout_id}/{catalog_entry_id} is {record['status']}",
                )
            record = {
                **record,
                "status": CATALOG_AWARDED,
                "awarded_at": awarded_at or _now(),
                "awarded_by": actor.actor_id,
            }
            self._store.save_catalog_progress(record)
            return record

    def bulk_award(
        self,
        pairs: Sequence[tuple[str, str]],
        actor: Actor,
    ) -> list[dict[str, Any]]:
        """Award every completed ``(scout_id, catalog_entry_id)``; others are no-ops."""
        actor = require_actor(actor)
        outcomes: list[dict[str, Any]] = []
        for scout_id, catalog_entry_id in pairs:
            entry: dict[str, Any] = {"scout_id": scout_id, "catalog_entry_id": catalog_entry_id}
            if self.status(scout_id, catalog_entry_id) != CATALOG_COMPLETED:
                outcomes.append({**entry, "outcome": "no_op"})
                continue
            try:
                self.award(scout_id, catalog_entry_id, actor)
            except (InvalidTransitionError, RecordNotFoundError) as exc:
                outcomes.append({**entry, "outcome": "failed", "error": str(exc)})
                continue
            outcomes.append({**entry, "outcome": "applied"})
        return outcomes

    def remove(self, scout_id: str, catalog_entry_id: str) -> bool:
        """Explicitly remove a scout's progress on a catalog entry."""
        with self._hold_scout_entry(scout_id, catalog_entry_id):
            removed = self._store.remove_catalog_progress(scout_id, catalog_entry_id)
        if removed:
            log.info("Removed %s progress for scout %s", catalog_entry_id, scout_id)
        return removed

    # ─── Requirement progress ─────────────────────────────────────

    def apply_action(
        self,
        action: PairAction,
        scout_id: str,
        requirement_id: str,
        actor: Actor,
        *,
        text: str | None = None,
        completed_at: str | None = None,
    ) -> PairOutcome:
        """Complete or undo one leaf requirement for one scout.

        ``text`` is the completion note (defaults to the configured text) or
        the undo reason (required). Returns ``"no_op"`` when the pair is
        already in the requested state; no note is appended in that case.
        Once the pair write commits the result is ``"applied"`` even if the
        catalog status refresh that follows fails.
        """
        actor = require_actor(actor)
        if action not in ("complete", "undo"):
            raise ValueError(f"unknown action {action!r}")
        if action == "undo" and not (text and text.strip()):
            raise InvalidTransitionError("A reason is required to undo a completed requirement")

        source = self._require_leaf(requirement_id, "completion state")
        entry_id = source.catalog_entry_id

        with self._locks.hold(scout_id, requirement_id):
            record = self._store.get_requirement_progress(scout_id, requirement_id)
            current = record["status"] if record else INCOMPLETE
            base = record or {
                "scout_id": scout_id,
                "requirement_id": requirement_id,
                "catalog_entry_id": entry_id,
            }
            now = _now()

            if action == "complete":
                if current == COMPLETED:
                    return "no_op"
                updated = {
                    **base,
                    "status": COMPLETED,
                    "completed_at": completed_at or now,
                    "completed_by": actor.actor_id,
                    "notes": append_note(
                        base.get("notes"),
                        text=text or self._config.completion_note_text,
                        author=actor.display_name,
                        author_id=actor.actor_id,
                        note_type="completion",
                    ),
                    "updated_at": now,
                }
                if base.get("approval_status") == PENDING_APPROVAL:
                    updated.update(
                        approval_status=APPROVED,
                        reviewed_by=actor.actor_id,
                        reviewed_at=now,
                    )
                with self._locks.hold("catalog", scout_id, entry_id):
                    self._store.record_progress(updated, self._catalog_start(scout_id, source))
            else:
                if current != COMPLETED:
                    return "no_op"
                assert text is not None
                updated = {
                    **base,
                    "status": INCOMPLETE,
                    "completed_at": None,
                    "completed_by": None,
                    "notes": append_note(
                        base.get("notes"),
                        text=f"{self._config.undo_note_prefix}{text.strip()}",
                        author=actor.display_name,
                        author_id=actor.actor_id,
                        note_type="undo",
                    ),
                    "updated_at": now,
                }
                with self._locks.hold("catalog", scout_id, entry_id):
                    self._store.record_progress(updated)

        self._refresh_after_write(scout_id, entry_id)
        return "applied"

    def mark_complete(
        self,
        scout_id: str,
        requirement_id: str,
        actor: Actor,
        note_text: str | None = None,
        completed_at: str | None = None,
    ) -> PairOutcome:
        return self.apply_action(
            "complete", scout_id, requirement_id, actor,
            text=note_text, completed_at=completed_at,
        )

    def undo_completion(
        self,
        scout_id: str,
        requirement_id: str,
        actor: Actor,
        reason: str,
    ) -> PairOutcome:
        return self.apply_action("undo", scout_id, requirement_id, actor, text=reason)

    def add_note(self, scout_id: str, requirement_id: str, actor: Actor, text: str) -> str:
        """Append a general note, creating an incomplete record if needed."""
        actor = require_actor(actor)
        if not text or not text.strip():
            raise ValueError("note text cannot be empty")
        source = self._require_leaf(requirement_id, "notes")
        with self._locks.hold(scout_id, requirement_id):
            record = self._store.get_requirement_progress(scout_id, requirement_id) or {
                "scout_id": scout_id,
                "requirement_id": requirement_id,
                "catalog_entry_id": source.catalog_entry_id,
                "status": INCOMPLETE,
            }
            notes = append_note(
                record.get("notes"),
                text=text.strip(),
                author=actor.display_name,
                author_id=actor.actor_id,
                note_type="general",
            )
            with self._locks.hold("catalog", scout_id, source.catalog_entry_id):
                self._tracked_catalog(scout_id, source)
                self._store.save_requirement_progress({**record, "notes": notes, "updated_at": _now()})
        return notes

    # ─── Parent submissions ───────────────────────────────────────

    def submit_for_approval(
        self,
        scout_id: str,
        requirement_id: str,
        actor: Actor,
        note_text: str | None = None,
    ) -> PairOutcome:
        """Submit a leaf as done on a scout's behalf, pending leader review.

        Returns ``"no_op"`` when the leaf is already completed or already
        awaiting review. A denied submission may be submitted again.
        """
        actor = require_actor(actor)
        source = self._require_leaf(requirement_id, "submissions")
        with self._locks.hold(scout_id, requirement_id):
            record = self._store.get_requirement_progress(scout_id, requirement_id) or {
                "scout_id": scout_id,
                "requirement_id": requirement_id,
                "catalog_entry_id": source.catalog_entry_id,
                "status": INCOMPLETE,
            }
            if record["status"] == COMPLETED or record.get("approval_status") == PENDING_APPROVAL:
                return "no_op"
            note = (note_text or "").strip()
            now = _now()
            updated = {
                **record,
                "submitted_by": actor.actor_id,
                "submitted_at": now,
                "submission_notes": note or None,
                "approval_status": PENDING_APPROVAL,
                "denial_reason": None,
                "reviewed_by": None,
                "reviewed_at": None,
                "notes": append_note(
                    record.get("notes"),
                    text=f"Submitted for approval: {note}" if note else "Submitted for approval",
                    author=actor.display_name,
                    author_id=actor.actor_id,
                    note_type="general",
                ),
                "updated_at": now,
            }
            with self._locks.hold("catalog", scout_id, source.catalog_entry_id):
                self._tracked_catalog(scout_id, source)
                self._store.save_requirement_progress(updated)
        log.info("Scout %s %s submitted for approval by %s", scout_id, requirement_id, actor.actor_id)
        return "applied"

    def _require_pending(self, scout_id: str, requirement_id: str) -> dict[str, Any]:
        record = self._store.get_requirement_progress(scout_id, requirement_id)
        if record is None or record.get("approval_status") != PENDING_APPROVAL:
            raise InvalidTransitionError(
                f"Scout {scout_id!r} has no pending submission for {requirement_id!r}",
            )
        return record

    def approve_submission(self, scout_id: str, requirement_id: str, actor: Actor) -> PairOutcome:
        """Approve a pending submission, completing the leaf as of its submission time."""
        actor = require_actor(actor)
        source = self._require_leaf(requirement_id, "submissions")
        with self._locks.hold(scout_id, requirement_id):
            record = self._require_pending(scout_id, requirement_id)
            now = _now()
            updated = {
                **record,
                "status": COMPLETED,
                "completed_at": record.get("submitted_at") or now,
                "completed_by": actor.actor_id,
                "approval_status": APPROVED,
                "reviewed_by": actor.actor_id,
                "reviewed_at": now,
                "notes": append_note(
                    record.get("notes"),
                    text=self._config.completion_note_text,
                    author=actor.display_name,
                    author_id=actor.actor_id,
                    note_type="completion",
                ),
                "updated_at": now,
            }
            with self._locks.hold("catalog", scout_id, source.catalog_entry_id):
                self._store.record_progress(updated, self._catalog_start(scout_id, source))
        log.info("Approved %s for scout %s", requirement_id, scout_id)
        self._refresh_after_write(scout_id, source.catalog_entry_id)
        return "applied"

    def deny_submission(
        self,
        scout_id: str,
        requirement_id: str,
        actor: Actor,
        reason: str,
    ) -> PairOutcome:
        """Deny a pending submission; the leaf stays incomplete."""
        actor = require_actor(actor)
        if not reason or not reason.strip():
            raise InvalidTransitionError("A reason is required to deny a submission")
        source = self._require_leaf(requirement_id, "submissions")
        with self._locks.hold(scout_id, requirement_id):
            record = self._require_pending(scout_id, requirement_id)
            now = _now()
            updated = {
                **record,
                "approval_status": DENIED,
                "denial_reason": reason.strip(),
                "reviewed_by": actor.actor_id,
                "reviewed_at": now,
                "notes": append_note(
                    record.get("notes"),
                    text=f"Submission denied: {reason.strip()}",
                    author=actor.display_name,
                    author_id=actor.actor_id,
                    note_type="general",
                ),
                "updated_at": now,
            }
            with self._locks.hold("catalog", scout_id, source.catalog_entry_id):
                self._store.save_requirement_progress(updated)
        log.info("Denied %s for scout %s", requirement_id, scout_id)
        return "applied"

    def bulk_approve_submissions(
        self,
        pairs: Sequence[tuple[str, str]],
        actor: Actor,
    ) -> list[dict[str, Any]]:
        """Approve every pending ``(scout_id, requirement_id)``; others fail."""
        actor = require_actor(actor)
        outcomes: list[dict[str, Any]] = []
        for scout_id, requirement_id in pairs:
            entry: dict[str, Any] = {"scout_id": scout_id, "requirement_id": requirement_id}
            try:
                self.approve_submission(scout_id, requirement_id, actor)
            except (InvalidTransitionError, RecordNotFoundError) as exc:
                outcomes.append({**entry, "outcome": "failed", "error": str(exc)})
                continue
            outcomes.append({**entry, "outcome": "applied"})
        approved = sum(1 for o in outcomes if o["outcome"] == "applied")
        log.info("Bulk approval: %d approved, %d failed", approved, len(outcomes) - approved)
        return outcomes

    def pending_submissions(self, catalog_entry_id: str | None = None) -> list[dict[str, Any]]:
        return self._store.list_pending_submissions(catalog_entry_id)

    # ─── Version switching ────────────────────────────────────────

    @contextlib.contextmanager
    def _hold_scout_entry(
        self, scout_id: str, catalog_entry_id: str,
    ) -> Iterator[list[dict[str, Any]]]:
        """Hold the lock of every pair the scout has on an entry, then its catalog lock.

        Yields the scout's requirement records for the entry, read under the
        locks. A pair created between listing and locking forces a retry.
        """
        while True:
            ids = sorted(
                row["requirement_id"]
                for row in self._store.list_requirement_progress(scout_id, catalog_entry_id)
            )
            with contextlib.ExitStack() as stack:
                for requirement_id in ids:
                    stack.enter_context(self._locks.hold(scout_id, requirement_id))
                stack.enter_context(self._locks.hold("catalog", scout_id, catalog_entry_id))
                existing = self._store.list_requirement_progress(scout_id, catalog_entry_id)
                if {row["requirement_id"] for row in existing} <= set(ids):
                    yield existing
                    return
            log.debug(
                "New requirement progress for %s/%s while locking; retrying",
                scout_id, catalog_entry_id,
            )

    def switch_version(
        self,
        scout_id: str,
        catalog_entry_id: str,
        target_version_id: str,
        mappings: Mapping[str, str],
        actor: Actor,
    ) -> tuple[int, int]:
        """Move a scout's progress to another version of the same catalog entry.

        ``mappings`` maps old requirement ids to requirement ids of the target
        version. Completed leaves with a valid mapping are carried over with a
        ``general`` note recording the mapping; the rest are counted as
        unmapped. The rewrite is a single store transaction. Returns
        ``(mapped_count, unmapped_count)``.
        """
        actor = require_actor(actor)
        with self._hold_scout_entry(scout_id, catalog_entry_id) as existing:
            record = self._store.get_catalog_progress(scout_id, catalog_entry_id)
            if record is None:
                raise RecordNotFoundError(
                    f"Scout {scout_id!r} has no progress on {catalog_entry_id!r}",
                )
            if record["status"] == CATALOG_AWARDED:
                raise InvalidTransitionError("Awarded progress cannot switch versions")
            source_version = record["version_id"]
            if source_version == target_version_id:
                return 0, 0
            known = {v["version_id"] for v in self._store.get_versions(catalog_entry_id)}
            if target_version_id not in known:
                raise RecordNotFoundError(
                    f"Unknown version {target_version_id!r} for {catalog_entry_id!r}",
                )

            target_leaves = {
                row.requirement_id
                for row in self._store.get_requirement_sources(catalog_entry_id, target_version_id)
                if row.has_checkbox
            }
            old_tree = self.tree_for(catalog_entry_id, source_version)
            carried: list[dict[str, Any]] = []
            unmapped = 0
            for row in existing:
                if row["status"] != COMPLETED:
                    continue
                target_id = mappings.get(row["requirement_id"])
                if not target_id or target_id not in target_leaves:
                    unmapped += 1
                    continue
                old_node = old_tree.find(row["requirement_id"])
                old_number = (old_node.number if old_node else "") or row["requirement_id"]
                carried.append({
                    **row,
                    "requirement_id": target_id,
                    "notes": append_note(
                        row["notes"],
                        text=f"Mapped from {source_version} requirement {old_number}",
                        author=actor.display_name,
                        author_id=actor.actor_id,
                        note_type="general",
                    ),
                    "updated_at": _now(),
                })

            self._store.switch_progress_version(
                scout_id,
                [row["requirement_id"] for row in existing],
                carried,
                {**record, "version_id": target_version_id},
            )
            log.info(
                "Scout %s %s switched %s -> %s (%d mapped, %d unmapped)",
                scout_id, catalog_entry_id, source_version, target_version_id,
                len(carried), unmapped,
            )

        self._refresh_after_write(scout_id, catalog_entry_id)
        return len(carried), unmapped
