"""JSON I/O helpers for requirement rows and reports (orjson-backed)."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import orjson

from advancement.hierarchy.types import RequirementSource


def load_json(path: Path) -> Any:
    return orjson.loads(path.read_bytes())


def dump_json(obj: Any) -> None:
    """Write structured output to stdout."""
    sys.stdout.buffer.write(orjson.dumps(obj, option=orjson.OPT_INDENT_2))
    sys.stdout.buffer.write(b"\n")


def row_from_dict(
    payload: dict[str, Any],
    *,
    index: int = 0,
    catalog_entry_id: str = "",
    version_id: str = "",
) -> RequirementSource:
    """Coerce one import row (camelCase or snake_case keys) to a RequirementSource.

    Missing identifiers fall back to the given defaults; a missing display
    order falls back to the row's position.
    """
    def pick(*keys: str, default: Any = None) -> Any:
        for key in keys:
            if key in payload and payload[key] is not None:
                return payload[key]
        return default

    order = pick("displayOrder", "display_order", default=index)
    return RequirementSource(
        requirement_id=str(pick("id", "requirementId", "requirement_id", default=f"row_{index}")),
        catalog_entry_id=str(pick("catalogEntryId", "catalog_entry_id", default=catalog_entry_id)),
        version_id=str(pick("versionId", "version_id", default=version_id)),
        display_label=str(pick("displayLabel", "display_label", "label", default="")),
        has_checkbox=bool(pick("hasCheckbox", "has_checkbox", default=True)),
        display_order=int(order),
        body=str(pick("body", "description", default="")),
        alternatives_group=pick("alternativesGroup", "alternatives_group"),
    )


def load_requirement_rows(
    path: Path,
    *,
    catalog_entry_id: str = "catalog",
    version_id: str = "current",
) -> list[RequirementSource]:
    """Load rows from a JSON list or a ``{"requirements": [...]}`` object."""
    payload = load_json(path)
    if isinstance(payload, dict):
        catalog_entry_id = str(payload.get("catalogEntryId", catalog_entry_id))
        version_id = str(payload.get("versionId", version_id))
        payload = payload.get("requirements")
    if not isinstance(payload, list):
        raise ValueError(f"Requirement rows must be a JSON list: {path}")
    return [
        row_from_dict(
            item,
            index=index,
            catalog_entry_id=catalog_entry_id,
            version_id=version_id,
        )
        for index, item in enumerate(payload)
        if isinstance(item, dict)
    ]
