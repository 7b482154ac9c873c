"""Tests for advancement.progress_service — scout progress lifecycle."""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import pytest

from advancement.config import AdvancementConfig
from advancement.errors import (
    InvalidActorError,
    InvalidTransitionError,
    RecordNotFoundError,
)
from advancement.hierarchy.types import RequirementSource
from advancement.notes import parse_notes
from advancement.progress_service import Actor, AdvancementService, KeyedLocks
from advancement.progress_store import ProgressStore

LEADER = Actor(actor_id="leader-1", display_name="Pat Leader")
PARENT = Actor(actor_id="parent-1", display_name="Sam Parent")


class FailingSaveStore(ProgressStore):
    """Store whose requirement writes fail for selected requirement ids."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.fail_ids: set[str] = set()

    def save_requirement_progress(self, record: dict[str, Any]) -> None:
        if record["requirement_id"] in self.fail_ids:
            raise OSError("disk full")
        super().save_requirement_progress(record)


def _rows(version: str, prefix: str = "") -> list[RequirementSource]:
    layout = [
        ("1", "1", True),
        ("2", "2", False),
        ("2a", "a", True),
        ("2b", "b", True),
    ]
    return [
        RequirementSource(
            requirement_id=f"{prefix}r{rid}",
            catalog_entry_id="first_aid",
            version_id=version,
            display_label=label,
            has_checkbox=leaf,
            display_order=order,
        )
        for order, (rid, label, leaf) in enumerate(layout)
    ]


def _seed(s: ProgressStore) -> None:
    s.upsert_catalog_entry("first_aid", "badge", "First Aid")
    s.add_version("first_aid", "v1", "2023-01-01", active=True)
    s.replace_requirement_sources("first_aid", "v1", _rows("v1"))
    s.add_version("first_aid", "v2", "2025-01-01")
    s.replace_requirement_sources("first_aid", "v2", _rows("v2", prefix="n"))


@pytest.fixture()
def store(tmp_path: Path) -> ProgressStore:
    s = ProgressStore(tmp_path / "advancement.duckdb", create_if_missing=True)
    _seed(s)
    yield s  # type: ignore[misc]
    s.close()


@pytest.fixture()
def service(store: ProgressStore) -> AdvancementService:
    return AdvancementService(store)


def _notes(store: ProgressStore, scout: str, rid: str) -> list:
    record = store.get_requirement_progress(scout, rid)
    return parse_notes(record["notes"]) if record else []


def _complete_all(service: AdvancementService, scout: str = "s1") -> None:
    for rid in ("r1", "r2a", "r2b"):
        service.mark_complete(scout, rid, LEADER)


class TestActor:
    def test_rejects_blank_fields(self) -> None:
        with pytest.raises(InvalidActorError):
            Actor(actor_id="", display_name="Pat")
        with pytest.raises(InvalidActorError):
            Actor(actor_id="u1", display_name="  ")

    def test_non_actor_rejected(self, service: AdvancementService) -> None:
        with pytest.raises(InvalidActorError):
            service.mark_complete("s1", "r1", "leader-1")  # type: ignore[arg-type]


class TestMarkComplete:
    def test_first_completion_starts_catalog(self, service: AdvancementService, store: ProgressStore) -> None:
        assert service.mark_complete("s1", "r1", LEADER) == "applied"
        record = store.get_requirement_progress("s1", "r1")
        assert record is not None
        assert record["status"] == "completed"
        assert record["completed_by"] == "leader-1"
        catalog = store.get_catalog_progress("s1", "first_aid")
        assert catalog is not None
        assert catalog["version_id"] == "v1"
        assert catalog["status"] == "in_progress"

        notes = _notes(store, "s1", "r1")
        assert [(n.type, n.text, n.author, n.author_id) for n in notes] == [
            ("completion", "Requirement completed", "Pat Leader", "leader-1"),
        ]

    def test_repeat_is_noop(self, service: AdvancementService, store: ProgressStore) -> None:
        service.mark_complete("s1", "r1", LEADER)
        before = store.get_requirement_progress("s1", "r1")
        assert service.mark_complete("s1", "r1", LEADER) == "no_op"
        assert store.get_requirement_progress("s1", "r1") == before

    def test_custom_note_and_timestamp(self, service: AdvancementService, store: ProgressStore) -> None:
        service.mark_complete("s1", "r1", LEADER, note_text="Demonstrated at camp",
                              completed_at="2024-07-04T10:00:00+00:00")
        record = store.get_requirement_progress("s1", "r1")
        assert record["completed_at"] == "2024-07-04T10:00:00+00:00"  # type: ignore[index]
        assert _notes(store, "s1", "r1")[0].text == "Demonstrated at camp"

    def test_header_rejected(self, service: AdvancementService, store: ProgressStore) -> None:
        with pytest.raises(InvalidTransitionError, match="header"):
            service.mark_complete("s1", "r2", LEADER)
        assert store.get_requirement_progress("s1", "r2") is None

    def test_unknown_requirement(self, service: AdvancementService) -> None:
        with pytest.raises(RecordNotFoundError):
            service.mark_complete("s1", "missing", LEADER)

    def test_other_version_rejected(self, service: AdvancementService) -> None:
        service.mark_complete("s1", "r1", LEADER)
        with pytest.raises(InvalidTransitionError, match="v2"):
            service.mark_complete("s1", "nr1", LEADER)

    def test_rollup_completes_catalog(self, service: AdvancementService, store: ProgressStore) -> None:
        _complete_all(service)
        catalog = store.get_catalog_progress("s1", "first_aid")
        assert catalog["status"] == "completed"  # type: ignore[index]
        assert catalog["completed_at"]  # type: ignore[index]
        result = service.rollup("s1", "first_aid")
        assert result.overall == "completed"
        assert result.per_node["r2"] is True

    def test_concurrent_completion_applies_once(self, service: AdvancementService, store: ProgressStore) -> None:
        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(lambda _: service.mark_complete("s1", "r1", LEADER), range(6)))
        assert outcomes.count("applied") == 1
        assert outcomes.count("no_op") == 5
        assert len(_notes(store, "s1", "r1")) == 1


class TestUndo:
    def test_undo_incomplete_is_noop(self, service: AdvancementService, store: ProgressStore) -> None:
        assert service.undo_completion("s1", "r1", LEADER, "wrong scout") == "no_op"
        assert store.get_requirement_progress("s1", "r1") is None

        service.add_note("s1", "r2a", LEADER, "Practiced bandaging")
        before = _notes(store, "s1", "r2a")
        assert service.undo_completion("s1", "r2a", LEADER, "wrong scout") == "no_op"
        assert _notes(store, "s1", "r2a") == before

    def test_reason_required(self, service: AdvancementService) -> None:
        service.mark_complete("s1", "r1", LEADER)
        with pytest.raises(InvalidTransitionError, match="reason"):
            service.undo_completion("s1", "r1", LEADER, "  ")

    def test_undo_reverts_and_logs(self, service: AdvancementService, store: ProgressStore) -> None:
        service.mark_complete("s1", "r1", LEADER)
        assert service.undo_completion("s1", "r1", LEADER, "Signed by mistake") == "applied"
        record = store.get_requirement_progress("s1", "r1")
        assert record["status"] == "incomplete"  # type: ignore[index]
        assert record["completed_at"] is None  # type: ignore[index]
        notes = _notes(store, "s1", "r1")
        assert [n.type for n in notes] == ["completion", "undo"]
        assert notes[-1].text == "Undo: Signed by mistake"

    def test_undo_reopens_catalog(self, service: AdvancementService, store: ProgressStore) -> None:
        _complete_all(service)
        service.undo_completion("s1", "r2b", LEADER, "Redo skills check")
        catalog = store.get_catalog_progress("s1", "first_aid")
        assert catalog["status"] == "in_progress"  # type: ignore[index]
        assert catalog["completed_at"] is None  # type: ignore[index]

    def test_configured_prefix(self, store: ProgressStore) -> None:
        service = AdvancementService(store, config=AdvancementConfig(undo_note_prefix="Reverted - "))
        service.mark_complete("s1", "r1", LEADER)
        service.undo_completion("s1", "r1", LEADER, "duplicate")
        assert _notes(store, "s1", "r1")[-1].text == "Reverted - duplicate"


class TestNotes:
    def test_add_note_creates_incomplete_record(self, service: AdvancementService, store: ProgressStore) -> None:
        service.add_note("s1", "r1", LEADER, "  Needs to practice  ")
        record = store.get_requirement_progress("s1", "r1")
        assert record is not None
        assert record["status"] == "incomplete"
        assert [(n.type, n.text) for n in _notes(store, "s1", "r1")] == [("general", "Needs to practice")]

    def test_add_note_keeps_completion(self, service: AdvancementService, store: ProgressStore) -> None:
        service.mark_complete("s1", "r1", LEADER)
        service.add_note("s1", "r1", LEADER, "Great job")
        assert store.get_requirement_progress("s1", "r1")["status"] == "completed"  # type: ignore[index]
        assert [n.type for n in _notes(store, "s1", "r1")] == ["completion", "general"]

    def test_legacy_notes_preserved(self, service: AdvancementService, store: ProgressStore) -> None:
        store.save_requirement_progress({
            "scout_id": "s1", "requirement_id": "r1", "catalog_entry_id": "first_aid",
            "status": "incomplete", "notes": "Signed in paper book",
        })
        service.mark_complete("s1", "r1", LEADER)
        notes = _notes(store, "s1", "r1")
        assert [(n.author, n.text) for n in notes][0] == ("Unknown", "Signed in paper book")
        assert notes[-1].type == "completion"

    def test_empty_note_rejected(self, service: AdvancementService) -> None:
        with pytest.raises(ValueError):
            service.add_note("s1", "r1", LEADER, "   ")


class TestCatalogLifecycle:
    def test_start_is_idempotent(self, service: AdvancementService) -> None:
        first = service.start("s1", "first_aid")
        assert first["status"] == "in_progress"
        assert first["version_id"] == "v1"
        assert service.start("s1", "first_aid")["started_at"] == first["started_at"]
        assert service.status("s2", "first_aid") == "not_started"

    def test_start_without_active_version(self, service: AdvancementService) -> None:
        with pytest.raises(RecordNotFoundError):
            service.start("s1", "cooking")

    def test_award_requires_completion(self, service: AdvancementService) -> None:
        with pytest.raises(RecordNotFoundError):
            service.award("s1", "first_aid", LEADER)
        service.mark_complete("s1", "r1", LEADER)
        with pytest.raises(InvalidTransitionError):
            service.award("s1", "first_aid", LEADER)

    def test_awarded_is_terminal(self, service: AdvancementService, store: ProgressStore) -> None:
        _complete_all(service)
        record = service.award("s1", "first_aid", LEADER, awarded_at="2024-08-01")
        assert record["status"] == "awarded"
        assert record["awarded_by"] == "leader-1"
        service.undo_completion("s1", "r1", LEADER, "Paperwork fix")
        assert service.status("s1", "first_aid") == "awarded"
        with pytest.raises(InvalidTransitionError):
            service.award("s1", "first_aid", LEADER)

    def test_bulk_award(self, service: AdvancementService) -> None:
        _complete_all(service, "s1")
        service.mark_complete("s2", "r1", LEADER)
        outcomes = service.bulk_award(
            [("s1", "first_aid"), ("s2", "first_aid"), ("s3", "first_aid")], LEADER,
        )
        assert [o["outcome"] for o in outcomes] == ["applied", "no_op", "no_op"]
        assert service.status("s1", "first_aid") == "awarded"

    def test_remove(self, service: AdvancementService, store: ProgressStore) -> None:
        service.mark_complete("s1", "r1", LEADER)
        assert service.remove("s1", "first_aid") is True
        assert store.get_requirement_progress("s1", "r1") is None
        assert service.remove("s1", "first_aid") is False


class TestSwitchVersion:
    def test_maps_completed_leaves(self, service: AdvancementService, store: ProgressStore) -> None:
        service.mark_complete("s1", "r1", LEADER)
        service.mark_complete("s1", "r2a", LEADER)
        service.add_note("s1", "r2b", LEADER, "Almost there")

        mapped, unmapped = service.switch_version(
            "s1", "first_aid", "v2", {"r1": "nr1", "r2a": "missing"}, LEADER,
        )
        assert (mapped, unmapped) == (1, 1)
        assert store.get_catalog_progress("s1", "first_aid")["version_id"] == "v2"  # type: ignore[index]
        assert store.get_leaf_statuses("s1", "first_aid") == {"nr1": "completed"}
        notes = _notes(store, "s1", "nr1")
        assert [n.type for n in notes] == ["completion", "general"]
        assert notes[-1].text == "Mapped from v1 requirement 1"
        assert service.rollup("s1", "first_aid").completed_leaves == 1

    def test_same_version_is_noop(self, service: AdvancementService) -> None:
        service.mark_complete("s1", "r1", LEADER)
        assert service.switch_version("s1", "first_aid", "v1", {}, LEADER) == (0, 0)

    def test_unknown_target(self, service: AdvancementService) -> None:
        service.mark_complete("s1", "r1", LEADER)
        with pytest.raises(RecordNotFoundError):
            service.switch_version("s1", "first_aid", "v9", {}, LEADER)

    def test_requires_progress(self, service: AdvancementService) -> None:
        with pytest.raises(RecordNotFoundError):
            service.switch_version("s1", "first_aid", "v2", {}, LEADER)

    def test_failed_write_keeps_old_progress(self, tmp_path: Path) -> None:
        store = FailingSaveStore(tmp_path / "advancement.duckdb", create_if_missing=True)
        _seed(store)
        service = AdvancementService(store)
        service.mark_complete("s1", "r1", LEADER)
        service.mark_complete("s1", "r2a", LEADER)
        store.fail_ids.add("nr2a")

        with pytest.raises(OSError):
            service.switch_version("s1", "first_aid", "v2", {"r1": "nr1", "r2a": "nr2a"}, LEADER)
        assert store.get_leaf_statuses("s1", "first_aid") == {"r1": "completed", "r2a": "completed"}
        assert store.get_catalog_progress("s1", "first_aid")["version_id"] == "v1"  # type: ignore[index]
        assert [n.type for n in _notes(store, "s1", "r1")] == ["completion"]
        store.close()

    def test_waits_for_pair_lock(self, store: ProgressStore) -> None:
        locks = KeyedLocks()
        service = AdvancementService(store, locks=locks)
        service.mark_complete("s1", "r1", LEADER)
        result: dict[str, tuple[int, int]] = {}

        def switch() -> None:
            result["moved"] = service.switch_version("s1", "first_aid", "v2", {"r1": "nr1"}, LEADER)

        with locks.hold("s1", "r1"):
            worker = threading.Thread(target=switch)
            worker.start()
            worker.join(timeout=0.2)
            assert worker.is_alive()
            assert store.get_catalog_progress("s1", "first_aid")["version_id"] == "v1"  # type: ignore[index]
        worker.join(timeout=5)
        assert result["moved"] == (1, 0)

    def test_completion_after_switch_targets_new_version(self, service: AdvancementService) -> None:
        service.mark_complete("s1", "r1", LEADER)
        service.switch_version("s1", "first_aid", "v2", {"r1": "nr1"}, LEADER)
        with pytest.raises(InvalidTransitionError):
            service.mark_complete("s1", "r2a", LEADER)
        with pytest.raises(InvalidTransitionError):
            service.add_note("s1", "r2a", LEADER, "old version")
        assert service.mark_complete("s1", "nr2a", LEADER) == "applied"


class TestSourceChanges:
    def test_rollup_follows_replaced_rows(self, service: AdvancementService, store: ProgressStore) -> None:
        _complete_all(service)
        assert service.rollup("s1", "first_aid").overall == "completed"

        extra = RequirementSource("r3", "first_aid", "v1", "3", True, 4)
        store.replace_requirement_sources("first_aid", "v1", [*_rows("v1"), extra])
        result = service.rollup("s1", "first_aid")
        assert result.overall == "in_progress"
        assert result.total_leaves == 4
        assert service.refresh_status("s1", "first_aid")["status"] == "in_progress"  # type: ignore[index]


class TestParentSubmissions:
    def test_submit_then_approve(self, service: AdvancementService, store: ProgressStore) -> None:
        assert service.submit_for_approval("s1", "r1", PARENT, "Did it at home") == "applied"
        record = store.get_requirement_progress("s1", "r1")
        assert record is not None
        assert (record["status"], record["approval_status"]) == ("incomplete", "pending_approval")
        assert record["submitted_by"] == "parent-1"
        assert record["submission_notes"] == "Did it at home"
        assert store.get_catalog_progress("s1", "first_aid") is None
        assert [p["requirement_id"] for p in service.pending_submissions("first_aid")] == ["r1"]
        assert service.submit_for_approval("s1", "r1", PARENT) == "no_op"

        assert service.approve_submission("s1", "r1", LEADER) == "applied"
        record = store.get_requirement_progress("s1", "r1")
        assert record is not None
        assert record["status"] == "completed"
        assert record["approval_status"] == "approved"
        assert record["completed_at"] == record["submitted_at"]
        assert (record["completed_by"], record["reviewed_by"]) == ("leader-1", "leader-1")
        notes = _notes(store, "s1", "r1")
        assert [(n.type, n.author_id) for n in notes] == [("general", "parent-1"), ("completion", "leader-1")]
        assert notes[0].text == "Submitted for approval: Did it at home"
        assert service.status("s1", "first_aid") == "in_progress"
        assert service.pending_submissions() == []

    def test_deny_then_resubmit(self, service: AdvancementService, store: ProgressStore) -> None:
        service.submit_for_approval("s1", "r2a", PARENT)
        with pytest.raises(InvalidTransitionError, match="reason"):
            service.deny_submission("s1", "r2a", LEADER, "  ")
        assert service.deny_submission("s1", "r2a", LEADER, "Needs a demonstration") == "applied"
        record = store.get_requirement_progress("s1", "r2a")
        assert record is not None
        assert (record["status"], record["approval_status"]) == ("incomplete", "denied")
        assert record["denial_reason"] == "Needs a demonstration"
        assert _notes(store, "s1", "r2a")[-1].text == "Submission denied: Needs a demonstration"
        with pytest.raises(InvalidTransitionError, match="pending"):
            service.approve_submission("s1", "r2a", LEADER)

        assert service.submit_for_approval("s1", "r2a", PARENT) == "applied"
        record = store.get_requirement_progress("s1", "r2a")
        assert record["approval_status"] == "pending_approval"  # type: ignore[index]
        assert record["denial_reason"] is None  # type: ignore[index]

    def test_direct_completion_settles_submission(self, service: AdvancementService, store: ProgressStore) -> None:
        service.submit_for_approval("s1", "r1", PARENT)
        service.mark_complete("s1", "r1", LEADER)
        assert store.get_requirement_progress("s1", "r1")["approval_status"] == "approved"  # type: ignore[index]
        assert service.pending_submissions() == []

    def test_headers_and_completed_leaves(self, service: AdvancementService) -> None:
        with pytest.raises(InvalidTransitionError, match="header"):
            service.submit_for_approval("s1", "r2", PARENT)
        service.mark_complete("s1", "r1", LEADER)
        assert service.submit_for_approval("s1", "r1", PARENT) == "no_op"

    def test_bulk_approve(self, service: AdvancementService, store: ProgressStore) -> None:
        service.submit_for_approval("s1", "r1", PARENT)
        service.submit_for_approval("s2", "r1", PARENT)
        outcomes = service.bulk_approve_submissions(
            [("s1", "r1"), ("s2", "r1"), ("s3", "r1")], LEADER,
        )
        assert [o["outcome"] for o in outcomes] == ["applied", "applied", "failed"]
        assert "pending" in outcomes[2]["error"]
        assert store.get_leaf_statuses("s2", "first_aid") == {"r1": "completed"}
        assert service.pending_submissions("first_aid") == []


class TestKeyedLocks:
    def test_released_keys_are_dropped(self) -> None:
        locks = KeyedLocks()
        with locks.hold("s1", "r1"):
            with locks.hold("s1", "r1"):
                assert len(locks) == 1
            assert len(locks) == 1
        assert len(locks) == 0

    def test_service_leaves_no_locks(self, store: ProgressStore) -> None:
        locks = KeyedLocks()
        service = AdvancementService(store, locks=locks)
        _complete_all(service)
        service.undo_completion("s1", "r1", LEADER, "Retest")
        service.switch_version("s1", "first_aid", "v2", {"r2a": "nr2a"}, LEADER)
        assert len(locks) == 0


def test_shared_locks_across_services(store: ProgressStore) -> None:
    locks = KeyedLocks()
    one = AdvancementService(store, locks=locks)
    two = AdvancementService(store, cache=one.cache, locks=locks)
    assert one.mark_complete("s1", "r1", LEADER) == "applied"
    assert two.mark_complete("s1", "r1", LEADER) == "no_op"
