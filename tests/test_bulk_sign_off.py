"""Tests for scripts/bulk_sign_off.py."""
from __future__ import annotations

from pathlib import Path

import orjson
import pytest

from advancement.hierarchy.types import RequirementSource
from advancement.progress_store import ProgressStore
from scripts.bulk_sign_off import main as bulk_main


def _db_rows() -> list[RequirementSource]:
    return [
        RequirementSource("r1", "first_aid", "v2024", "1", True, 0),
        RequirementSource("r2", "first_aid", "v2024", "2", False, 1),
        RequirementSource("r2a", "first_aid", "v2024", "a", True, 2),
    ]


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "advancement.duckdb"
    store = ProgressStore(path, create_if_missing=True)
    store.add_version("first_aid", "v2024", active=True)
    store.replace_requirement_sources("first_aid", "v2024", _db_rows())
    store.close()
    return path


def _args(db_path: Path, *extra: str) -> list[str]:
    return ["--db", str(db_path), "--actor-id", "leader-1", "--actor-name", "Pat Leader", *extra]


class TestMain:
    def test_complete_pairs(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code = bulk_main(_args(
            db_path, "--action", "complete",
            "--scout", "s1", "--scout", "s2",
            "--requirement", "r1", "--requirement", "r2",
        ))
        payload = orjson.loads(capsys.readouterr().out)
        assert code == 2
        assert payload["summary"] == {"applied": 2, "no_op": 0, "failed": 2}
        assert [o["outcome"] for o in payload["outcomes"]] == ["applied", "applied", "failed", "failed"]

    def test_all_applied_exits_zero(self, db_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code = bulk_main(_args(db_path, "--action", "complete", "--scout", "s1", "--requirement", "r2a"))
        assert code == 0
        assert orjson.loads(capsys.readouterr().out)["summary"]["applied"] == 1

    def test_undo_without_reason(self, db_path: Path) -> None:
        assert bulk_main(_args(db_path, "--action", "undo", "--scout", "s1", "--requirement", "r1")) == 1

    def test_blank_actor(self, db_path: Path) -> None:
        code = bulk_main([
            "--db", str(db_path), "--action", "complete", "--scout", "s1",
            "--requirement", "r1", "--actor-id", " ", "--actor-name", "Pat",
        ])
        assert code == 1


class TestSetupErrors:
    def test_missing_config(self, db_path: Path, tmp_path: Path) -> None:
        code = bulk_main(_args(
            db_path, "--config", str(tmp_path / "nope.json"),
            "--action", "complete", "--scout", "s1", "--requirement", "r1",
        ))
        assert code == 1

    def test_missing_database(self, tmp_path: Path) -> None:
        code = bulk_main(_args(
            tmp_path / "missing.duckdb", "--action", "complete", "--scout", "s1", "--requirement", "r1",
        ))
        assert code == 1
        assert not (tmp_path / "missing.duckdb").exists()

    def test_no_database_configured(self) -> None:
        code = bulk_main([
            "--action", "complete", "--scout", "s1", "--requirement", "r1",
            "--actor-id", "leader-1", "--actor-name", "Pat",
        ])
        assert code == 1
