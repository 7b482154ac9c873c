"""Runtime configuration.

Loaded from a JSON object; every key is optional and unknown keys are
rejected so typos do not silently fall back to defaults:

    {
      "max_main_number": 20,
      "max_wrapped_number": 10,
      "completion_note_text": "Requirement completed",
      "undo_note_prefix": "Undo: ",
      "db_path": "data/advancement.duckdb"
    }
"""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import orjson

from advancement.hierarchy.types import HierarchyBounds


@dataclass(frozen=True, slots=True)
class AdvancementConfig:
    max_main_number: int = 20
    max_wrapped_number: int = 10
    completion_note_text: str = "Requirement completed"
    undo_note_prefix: str = "Undo: "
    db_path: str | None = None

    def __post_init__(self) -> None:
        # Validates the numeric bounds eagerly.
        self.bounds()

    def bounds(self) -> HierarchyBounds:
        return HierarchyBounds(
            max_main_number=self.max_main_number,
            max_wrapped_number=self.max_wrapped_number,
        )


DEFAULT_CONFIG = AdvancementConfig()

_INT_KEYS = {"max_main_number", "max_wrapped_number"}


def config_from_dict(payload: dict[str, Any]) -> AdvancementConfig:
    """Build a config from a parsed JSON object."""
    known = {f.name for f in fields(AdvancementConfig)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
    for key in _INT_KEYS & set(payload):
        value = payload[key]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{key} must be an integer, got {value!r}")
    return replace(DEFAULT_CONFIG, **payload)


def load_config(path: Path | str | None) -> AdvancementConfig:
    """Load config from ``path``; ``None`` yields the defaults."""
    if path is None:
        return DEFAULT_CONFIG
    config_path = Path(path)
    payload = orjson.loads(config_path.read_bytes())
    if not isinstance(payload, dict):
        raise ValueError(f"Config payload must be a JSON object: {config_path}")
    return config_from_dict(payload)
