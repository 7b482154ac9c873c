"""Append-only note ledger for requirement progress records.

Notes live in the progress record's ``notes`` field as a JSON array of
``{id, text, author, authorId, timestamp, type}`` objects. Older records
hold free text instead; parsing wraps such payloads into one synthesized
``general`` note authored by "Unknown" rather than failing.

``parse_notes(serialize_notes(notes)) == notes`` holds for every sequence
this module produces.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal, TypeAlias

import orjson

NoteType: TypeAlias = Literal["completion", "undo", "general"]

NOTE_TYPES: frozenset[str] = frozenset({"completion", "undo", "general"})
LEGACY_AUTHOR = "Unknown"

_TYPE_LABELS: dict[str, str] = {
    "completion": "Completed",
    "undo": "Undone",
    "general": "Note",
}


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True, slots=True)
class Note:
    """One immutable ledger entry."""

    id: str
    text: str
    author: str
    author_id: str
    timestamp: str
    type: NoteType

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("note id cannot be empty")
        if self.type not in NOTE_TYPES:
            raise ValueError(f"unknown note type {self.type!r}")

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "text": self.text,
            "author": self.author,
            "authorId": self.author_id,
            "timestamp": self.timestamp,
            "type": self.type,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Note:
        def _text(key: str, default: str) -> str:
            value = payload.get(key)
            return default if value is None else str(value)

        note_type = payload.get("type")
        return cls(
            id=_text("id", "") or _uuid(),
            text=_text("text", ""),
            author=_text("author", LEGACY_AUTHOR),
            author_id=_text("authorId", ""),
            timestamp=_text("timestamp", ""),
            type=note_type if note_type in NOTE_TYPES else "general",
        )


def make_note(text: str, author: str, author_id: str, note_type: NoteType) -> Note:
    """Stamp a new note with a fresh id and the current UTC time."""
    return Note(
        id=_uuid(),
        text=text,
        author=author,
        author_id=author_id,
        timestamp=_now(),
        type=note_type,
    )


def create_completion_note(text: str, author: str, author_id: str) -> Note:
    return make_note(text, author, author_id, "completion")


def create_undo_note(reason: str, author: str, author_id: str) -> Note:
    return make_note(reason, author, author_id, "undo")


def _legacy_note(text: str) -> Note:
    return make_note(text, LEGACY_AUTHOR, "", "general")


def parse_notes(serialized: str | bytes | None) -> list[Note]:
    """Parse a stored notes payload, tolerating legacy plain-text values."""
    if serialized is None:
        return []
    raw = serialized.decode("utf-8") if isinstance(serialized, bytes) else serialized
    if not raw.strip():
        return []
    try:
        parsed = orjson.loads(raw)
    except orjson.JSONDecodeError:
        return [_legacy_note(raw)]

    if isinstance(parsed, list):
        notes: list[Note] = []
        for item in parsed:
            if isinstance(item, dict):
                notes.append(Note.from_dict(item))
            elif item is not None:
                notes.append(_legacy_note(str(item)))
        return notes
    if parsed is None:
        return []
    # Valid JSON but not an array: a scalar or object from an older writer.
    text = parsed if isinstance(parsed, str) else orjson.dumps(parsed).decode("utf-8")
    return [_legacy_note(text)]


def serialize_notes(notes: Sequence[Note]) -> str:
    return orjson.dumps([note.to_dict() for note in notes]).decode("utf-8")


def append_note(
    existing: str | None,
    *,
    text: str,
    author: str,
    author_id: str,
    note_type: NoteType,
) -> str:
    """Return ``existing`` with one new note appended. Prior entries are kept verbatim."""
    notes = parse_notes(existing)
    notes.append(make_note(text, author, author_id, note_type))
    return serialize_notes(notes)


def append_notes(existing: str | None, new_notes: Sequence[Note]) -> str:
    notes = parse_notes(existing)
    notes.extend(new_notes)
    return serialize_notes(notes)


def note_type_label(note_type: str) -> str:
    return _TYPE_LABELS.get(note_type, "Note")
