"""DuckDB read/write store for catalog requirements and scout progress.

Manages a single DuckDB file holding:

* Catalog entries (ranks and merit badges)
* Requirement versions (exactly one active per catalog entry) and the flat
  requirement rows of each version
* Scout catalog progress (one row per scout + catalog entry)
* Scout requirement progress (one row per scout + leaf requirement). The
  ``notes`` column holds the serialized note ledger; ``approval_status``
  tracks parent submissions awaiting leader review

The store is a keyed record repository: it knows nothing about hierarchy or
rollup rules. One connection is shared behind a re-entrant lock.
"""
from __future__ import annotations

import contextlib
import threading
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import duckdb

from advancement.errors import (
    RecordNotFoundError,
    SchemaVersionError,
    StoreUnavailableError,
)
from advancement.hierarchy.types import RequirementSource

SCHEMA_VERSION = "1.1.0"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _to_dict(cols: list[str], row: tuple[Any, ...]) -> dict[str, Any]:
    """Zip column names with a row tuple into a dict (strict length check)."""
    return dict(zip(cols, row, strict=True))


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS _schema_version (
    table_name VARCHAR PRIMARY KEY,
    version VARCHAR NOT NULL
);

-- ─── CATALOG ──────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS catalog_entries (
    catalog_entry_id VARCHAR PRIMARY KEY,
    kind VARCHAR NOT NULL DEFAULT 'badge',
    name VARCHAR NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS requirement_versions (
    version_id VARCHAR NOT NULL,
    catalog_entry_id VARCHAR NOT NULL,
    effective_date VARCHAR NOT NULL DEFAULT '',
    is_active BOOLEAN NOT NULL DEFAULT false,
    PRIMARY KEY (catalog_entry_id, version_id)
);

CREATE TABLE IF NOT EXISTS requirement_sources (
    requirement_id VARCHAR PRIMARY KEY,
    catalog_entry_id VARCHAR NOT NULL,
    version_id VARCHAR NOT NULL,
    display_label VARCHAR NOT NULL DEFAULT '',
    has_checkbox BOOLEAN NOT NULL DEFAULT true,
    display_order INTEGER NOT NULL,
    body VARCHAR NOT NULL DEFAULT '',
    alternatives_group VARCHAR
);
CREATE INDEX IF NOT EXISTS idx_sources_entry_version
    ON requirement_sources(catalog_entry_id, version_id);

-- ─── SCOUT PROGRESS ───────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS scout_catalog_progress (
    scout_id VARCHAR NOT NULL,
    catalog_entry_id VARCHAR NOT NULL,
    version_id VARCHAR NOT NULL,
    status VARCHAR NOT NULL DEFAULT 'not_started',
    started_at VARCHAR,
    completed_at VARCHAR,
    awarded_at VARCHAR,
    awarded_by VARCHAR,
    updated_at VARCHAR,
    PRIMARY KEY (scout_id, catalog_entry_id)
);

CREATE TABLE IF NOT EXISTS scout_requirement_progress (
    scout_id VARCHAR NOT NULL,
    requirement_id VARCHAR NOT NULL,
    catalog_entry_id VARCHAR NOT NULL,
    status VARCHAR NOT NULL DEFAULT 'incomplete',
    completed_at VARCHAR,
    completed_by VARCHAR,
    notes VARCHAR,
    updated_at VARCHAR,
    submitted_by VARCHAR,
    submitted_at VARCHAR,
    submission_notes VARCHAR,
    approval_status VARCHAR,
    denial_reason VARCHAR,
    reviewed_by VARCHAR,
    reviewed_at VARCHAR,
    PRIMARY KEY (scout_id, requirement_id)
);
"""

_SOURCE_COLS = [
    "requirement_id", "catalog_entry_id", "version_id", "display_label",
    "has_checkbox", "display_order", "body", "alternatives_group",
]
_REQ_PROGRESS_COLS = [
    "scout_id", "requirement_id", "catalog_entry_id", "status",
    "completed_at", "completed_by", "notes", "updated_at",
    "submitted_by", "submitted_at", "submission_notes", "approval_status",
    "denial_reason", "reviewed_by", "reviewed_at",
]
_CATALOG_PROGRESS_COLS = [
    "scout_id", "catalog_entry_id", "version_id", "status", "started_at",
    "completed_at", "awarded_at", "awarded_by", "updated_at",
]


class ProgressRepository(Protocol):
    """Get/set surface the progress service relies on."""

    def get_requirement_source(self, requirement_id: str) -> RequirementSource | None: ...

    def get_requirement_sources(
        self, catalog_entry_id: str, version_id: str,
    ) -> list[RequirementSource]: ...

    def get_requirement_progress(
        self, scout_id: str, requirement_id: str,
    ) -> dict[str, Any] | None: ...

    def save_requirement_progress(self, record: dict[str, Any]) -> None: ...

    def record_progress(
        self, record: dict[str, Any], catalog_record: dict[str, Any] | None = None,
    ) -> None: ...

    def get_catalog_progress(
        self, scout_id: str, catalog_entry_id: str,
    ) -> dict[str, Any] | None: ...

    def save_catalog_progress(self, record: dict[str, Any]) -> None: ...

    def remove_catalog_progress(self, scout_id: str, catalog_entry_id: str) -> bool: ...

    def list_requirement_progress(
        self, scout_id: str, catalog_entry_id: str,
    ) -> list[dict[str, Any]]: ...

    def get_leaf_statuses(self, scout_id: str, catalog_entry_id: str) -> dict[str, str]: ...

    def switch_progress_version(
        self,
        scout_id: str,
        remove_ids: Sequence[str],
        carried: Sequence[dict[str, Any]],
        catalog_record: dict[str, Any],
    ) -> None: ...

    def list_pending_submissions(
        self, catalog_entry_id: str | None = None,
    ) -> list[dict[str, Any]]: ...

    def get_versions(self, catalog_entry_id: str) -> list[dict[str, Any]]: ...

    def get_active_version(self, catalog_entry_id: str) -> dict[str, Any] | None: ...


def _source_from_row(row: dict[str, Any]) -> RequirementSource:
    return RequirementSource(
        requirement_id=row["requirement_id"],
        catalog_entry_id=row["catalog_entry_id"],
        version_id=row["version_id"],
        display_label=row["display_label"] or "",
        has_checkbox=bool(row["has_checkbox"]),
        display_order=int(row["display_order"]),
        body=row["body"] or "",
        alternatives_group=row["alternatives_group"],
    )


# ---------------------------------------------------------------------------
# ProgressStore class
# ---------------------------------------------------------------------------

class ProgressStore:
    """Read/write interface to the advancement DuckDB file."""

    def __init__(
        self,
        db_path: Path | str,
        *,
        create_if_missing: bool = False,
    ) -> None:
        self._db_path = Path(db_path)
        if not self._db_path.exists() and not create_if_missing:
            raise FileNotFoundError(f"Advancement database not found: {self._db_path}")

        self._lock = threading.RLock()
        try:
            self._conn: Any = duckdb.connect(str(self._db_path))
        except duckdb.Error as exc:
            raise StoreUnavailableError(
                f"Cannot open advancement database {self._db_path}: {exc}",
            ) from exc
        self._closed = False
        self._create_schema()

    def _create_schema(self) -> None:
        for stmt in _SCHEMA_DDL.split(";"):
            stmt = stmt.strip()
            if stmt:
                self._conn.execute(stmt)

        row = self._conn.execute(
            "SELECT version FROM _schema_version WHERE table_name = 'advancement'"
        ).fetchone()
        if row is not None and row[0] != SCHEMA_VERSION:
            raise SchemaVersionError(
                f"Schema version mismatch in {self._db_path}: "
                f"expected {SCHEMA_VERSION}, got {row[0]}"
            )
        self._conn.execute(
            "INSERT OR REPLACE INTO _schema_version (table_name, version) VALUES (?, ?)",
            ["advancement", SCHEMA_VERSION],
        )

    # ─── Low-level helpers ────────────────────────────────────────

    def _execute(self, sql: str, params: Sequence[Any] | None = None) -> Any:
        if self._closed:
            raise StoreUnavailableError(f"Advancement store is closed: {self._db_path}")
        return self._conn.execute(sql, list(params or []))

    def _fetch_dicts(
        self, sql: str, params: Sequence[Any] | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            cursor = self._execute(sql, params)
            cols = [d[0] for d in cursor.description]
            return [_to_dict(cols, row) for row in cursor.fetchall()]

    def _fetch_dict(
        self, sql: str, params: Sequence[Any] | None = None,
    ) -> dict[str, Any] | None:
        rows = self._fetch_dicts(sql, params)
        return rows[0] if rows else None

    @contextlib.contextmanager
    def _transaction(self):
        with self._lock:
            self._execute("BEGIN TRANSACTION")
            try:
                yield
                self._execute("COMMIT")
            except Exception:
                with contextlib.suppress(Exception):
                    self._conn.execute("ROLLBACK")
                raise

    # ─── Catalog entries ──────────────────────────────────────────

    def upsert_catalog_entry(self, catalog_entry_id: str, kind: str, name: str = "") -> None:
        if kind not in ("rank", "badge"):
            raise ValueError(f"catalog entry kind must be 'rank' or 'badge', got {kind!r}")
        with self._lock:
            self._execute(
                "INSERT OR REPLACE INTO catalog_entries (catalog_entry_id, kind, name) "
                "VALUES (?, ?, ?)",
                [catalog_entry_id, kind, name],
            )

    def get_catalog_entry(self, catalog_entry_id: str) -> dict[str, Any] | None:
        return self._fetch_dict(
            "SELECT catalog_entry_id, kind, name FROM catalog_entries "
            "WHERE catalog_entry_id = ?",
            [catalog_entry_id],
        )

    # ─── Versions ─────────────────────────────────────────────────

    def add_version(
        self,
        catalog_entry_id: str,
        version_id: str,
        effective_date: str = "",
        *,
        active: bool = False,
    ) -> None:
        with self._transaction():
            self._execute(
                "INSERT INTO requirement_versions "
                "(version_id, catalog_entry_id, effective_date, is_active) "
                "VALUES (?, ?, ?, false)",
                [version_id, catalog_entry_id, effective_date],
            )
            if active:
                self._activate(catalog_entry_id, version_id)

    def _activate(self, catalog_entry_id: str, version_id: str) -> None:
        self._execute(
            "UPDATE requirement_versions SET is_active = (version_id = ?) "
            "WHERE catalog_entry_id = ?",
            [version_id, catalog_entry_id],
        )

    def activate_version(self, catalog_entry_id: str, version_id: str) -> None:
        """Make ``version_id`` the single active version of its catalog entry."""
        with self._transaction():
            row = self._execute(
                "SELECT 1 FROM requirement_versions "
                "WHERE catalog_entry_id = ? AND version_id = ?",
                [catalog_entry_id, version_id],
            ).fetchone()
            if row is None:
                raise RecordNotFoundError(
                    f"Unknown version {version_id!r} for catalog entry {catalog_entry_id!r}",
                )
            self._activate(catalog_entry_id, version_id)

    def get_versions(self, catalog_entry_id: str) -> list[dict[str, Any]]:
        return self._fetch_dicts(
            "SELECT version_id, catalog_entry_id, effective_date, is_active "
            "FROM requirement_versions WHERE catalog_entry_id = ? "
            "ORDER BY effective_date, version_id",
            [catalog_entry_id],
        )

    def get_active_version(self, catalog_entry_id: str) -> dict[str, Any] | None:
        return self._fetch_dict(
            "SELECT version_id, catalog_entry_id, effective_date, is_active "
            "FROM requirement_versions WHERE catalog_entry_id = ? AND is_active",
            [catalog_entry_id],
        )

    def clone_version(
        self,
        catalog_entry_id: str,
        source_version_id: str,
        new_version_id: str,
        effective_date: str = "",
    ) -> dict[str, str]:
        """Copy a version's rows under new ids; returns ``{old_id: new_id}``.

        The source version is left untouched so progress recorded against it
        stays valid.
        """
        rows = self.get_requirement_sources(catalog_entry_id, source_version_id)
        id_map = {row.requirement_id: f"{row.requirement_id}@{new_version_id}" for row in rows}
        cloned = [
            RequirementSource(
                requirement_id=id_map[row.requirement_id],
                catalog_entry_id=catalog_entry_id,
                version_id=new_version_id,
                display_label=row.display_label,
                has_checkbox=row.has_checkbox,
                display_order=row.display_order,
                body=row.body,
                alternatives_group=row.alternatives_group,
            )
            for row in rows
        ]
        with self._transaction():
            self._execute(
                "INSERT INTO requirement_versions "
                "(version_id, catalog_entry_id, effective_date, is_active) "
                "VALUES (?, ?, ?, false)",
                [new_version_id, catalog_entry_id, effective_date],
            )
            self._insert_sources(cloned)
        return id_map

    # ─── Requirement sources ──────────────────────────────────────

    def _insert_sources(self, rows: Iterable[RequirementSource]) -> int:
        count = 0
        for row in rows:
            self._execute(
                "INSERT INTO requirement_sources "
                "(requirement_id, catalog_entry_id, version_id, display_label, "
                " has_checkbox, display_order, body, alternatives_group) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    row.requirement_id, row.catalog_entry_id, row.version_id,
                    row.display_label, row.has_checkbox, row.display_order,
                    row.body, row.alternatives_group,
                ],
            )
            count += 1
        return count

    def replace_requirement_sources(
        self,
        catalog_entry_id: str,
        version_id: str,
        rows: Sequence[RequirementSource],
    ) -> int:
        """Replace every row of one catalog entry + version atomically.

        Rows whose id survives are updated in place; the rest are deleted or
        inserted.
        """
        for row in rows:
            if row.catalog_entry_id != catalog_entry_id or row.version_id != version_id:
                raise ValueError(
                    f"row {row.requirement_id!r} does not belong to "
                    f"{catalog_entry_id}@{version_id}",
                )
        keep = [row.requirement_id for row in rows]
        with self._transaction():
            sql = (
                "DELETE FROM requirement_sources "
                "WHERE catalog_entry_id = ? AND version_id = ?"
            )
            if keep:
                sql += f" AND requirement_id NOT IN ({', '.join('?' for _ in keep)})"
            self._execute(sql, [catalog_entry_id, version_id, *keep])
            existing = {
                r[0] for r in self._execute(
                    "SELECT requirement_id FROM requirement_sources "
                    "WHERE catalog_entry_id = ? AND version_id = ?",
                    [catalog_entry_id, version_id],
                ).fetchall()
            }
            for row in rows:
                if row.requirement_id not in existing:
                    continue
                self._execute(
                    "UPDATE requirement_sources SET display_label = ?, has_checkbox = ?, "
                    "display_order = ?, body = ?, alternatives_group = ? "
                    "WHERE requirement_id = ?",
                    [
                        row.display_label, row.has_checkbox, row.display_order,
                        row.body, row.alternatives_group, row.requirement_id,
                    ],
                )
            self._insert_sources(row for row in rows if row.requirement_id not in existing)
        return len(rows)

    def get_requirement_sources(
        self, catalog_entry_id: str, version_id: str,
    ) -> list[RequirementSource]:
        rows = self._fetch_dicts(
            f"SELECT {', '.join(_SOURCE_COLS)} FROM requirement_sources "
            "WHERE catalog_entry_id = ? AND version_id = ? "
            "ORDER BY display_order, requirement_id",
            [catalog_entry_id, version_id],
        )
        return [_source_from_row(row) for row in rows]

    def get_requirement_source(self, requirement_id: str) -> RequirementSource | None:
        row = self._fetch_dict(
            f"SELECT {', '.join(_SOURCE_COLS)} FROM requirement_sources "
            "WHERE requirement_id = ?",
            [requirement_id],
        )
        return _source_from_row(row) if row else None

    # ─── Scout requirement progress ───────────────────────────────

    def get_requirement_progress(
        self, scout_id: str, requirement_id: str,
    ) -> dict[str, Any] | None:
        return self._fetch_dict(
            f"SELECT {', '.join(_REQ_PROGRESS_COLS)} FROM scout_requirement_progress "
            "WHERE scout_id = ? AND requirement_id = ?",
            [scout_id, requirement_id],
        )

    def save_requirement_progress(self, record: dict[str, Any]) -> None:
        values = {col: record.get(col) for col in _REQ_PROGRESS_COLS}
        values["status"] = values["status"] or "incomplete"
        values["updated_at"] = values["updated_at"] or _now()
        with self._lock:
            self._execute(
                f"INSERT OR REPLACE INTO scout_requirement_progress "
                f"({', '.join(_REQ_PROGRESS_COLS)}) "
                f"VALUES ({', '.join('?' for _ in _REQ_PROGRESS_COLS)})",
                [values[col] for col in _REQ_PROGRESS_COLS],
            )

    def list_requirement_progress(
        self, scout_id: str, catalog_entry_id: str,
    ) -> list[dict[str, Any]]:
        return self._fetch_dicts(
            f"SELECT {', '.join(_REQ_PROGRESS_COLS)} FROM scout_requirement_progress "
            "WHERE scout_id = ? AND catalog_entry_id = ? ORDER BY requirement_id",
            [scout_id, catalog_entry_id],
        )

    def get_leaf_statuses(self, scout_id: str, catalog_entry_id: str) -> dict[str, str]:
        return {
            row["requirement_id"]: row["status"]
            for row in self.list_requirement_progress(scout_id, catalog_entry_id)
        }

    def delete_requirement_progress(self, scout_id: str, requirement_ids: Sequence[str]) -> int:
        if not requirement_ids:
            return 0
        placeholders = ", ".join("?" for _ in requirement_ids)
        with self._lock:
            row = self._execute(
                "SELECT COUNT(*) FROM scout_requirement_progress "
                f"WHERE scout_id = ? AND requirement_id IN ({placeholders})",
                [scout_id, *requirement_ids],
            ).fetchone()
            self._execute(
                "DELETE FROM scout_requirement_progress "
                f"WHERE scout_id = ? AND requirement_id IN ({placeholders})",
                [scout_id, *requirement_ids],
            )
        return int(row[0]) if row else 0

    def record_progress(
        self,
        record: dict[str, Any],
        catalog_record: dict[str, Any] | None = None,
    ) -> None:
        """Save a requirement record and, optionally, the catalog record it starts.

        Both writes commit together or not at all.
        """
        with self._transaction():
            self.save_requirement_progress(record)
            if catalog_record is not None:
                self.save_catalog_progress(catalog_record)

    def switch_progress_version(
        self,
        scout_id: str,
        remove_ids: Sequence[str],
        carried: Sequence[dict[str, Any]],
        catalog_record: dict[str, Any],
    ) -> None:
        """Replace a scout's requirement rows and repoint the catalog record.

        Runs in one transaction: on any failure the old rows and the old
        ``version_id`` are left exactly as they were.
        """
        kept = {record["requirement_id"] for record in carried}
        with self._transaction():
            self.delete_requirement_progress(
                scout_id, [rid for rid in remove_ids if rid not in kept],
            )
            for record in carried:
                self.save_requirement_progress(record)
            self.save_catalog_progress(catalog_record)

    def list_pending_submissions(
        self, catalog_entry_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Requirement records awaiting approval, newest submission first."""
        sql = (
            f"SELECT {', '.join(_REQ_PROGRESS_COLS)} FROM scout_requirement_progress "
            "WHERE approval_status = 'pending_approval'"
        )
        params: list[Any] = []
        if catalog_entry_id is not None:
            sql += " AND catalog_entry_id = ?"
            params.append(catalog_entry_id)
        return self._fetch_dicts(sql + " ORDER BY submitted_at DESC, scout_id, requirement_id", params)

    # ─── Scout catalog progress ───────────────────────────────────

    def get_catalog_progress(
        self, scout_id: str, catalog_entry_id: str,
    ) -> dict[str, Any] | None:
        return self._fetch_dict(
            f"SELECT {', '.join(_CATALOG_PROGRESS_COLS)} FROM scout_catalog_progress "
            "WHERE scout_id = ? AND catalog_entry_id = ?",
            [scout_id, catalog_entry_id],
        )

    def save_catalog_progress(self, record: dict[str, Any]) -> None:
        values = {col: record.get(col) for col in _CATALOG_PROGRESS_COLS}
        values["status"] = values["status"] or "not_started"
        values["updated_at"] = _now()
        with self._lock:
            self._execute(
                f"INSERT OR REPLACE INTO scout_catalog_progress "
                f"({', '.join(_CATALOG_PROGRESS_COLS)}) "
                f"VALUES ({', '.join('?' for _ in _CATALOG_PROGRESS_COLS)})",
                [values[col] for col in _CATALOG_PROGRESS_COLS],
            )

    def list_catalog_progress(self, scout_id: str) -> list[dict[str, Any]]:
        return self._fetch_dicts(
            f"SELECT {', '.join(_CATALOG_PROGRESS_COLS)} FROM scout_catalog_progress "
            "WHERE scout_id = ? ORDER BY catalog_entry_id",
            [scout_id],
        )

    def remove_catalog_progress(self, scout_id: str, catalog_entry_id: str) -> bool:
        """Delete a catalog progress record and the requirement progress it owns."""
        with self._transaction():
            row = self._execute(
                "SELECT 1 FROM scout_catalog_progress "
                "WHERE scout_id = ? AND catalog_entry_id = ?",
                [scout_id, catalog_entry_id],
            ).fetchone()
            if row is None:
                return False
            self._execute(
                "DELETE FROM scout_requirement_progress "
                "WHERE scout_id = ? AND catalog_entry_id = ?",
                [scout_id, catalog_entry_id],
            )
            self._execute(
                "DELETE FROM scout_catalog_progress "
                "WHERE scout_id = ? AND catalog_entry_id = ?",
                [scout_id, catalog_entry_id],
            )
        return True

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._closed = True
                self._conn.close()
