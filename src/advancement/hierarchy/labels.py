"""Display-label classification for requirement rows.

Source labels arrive in many shapes for the same structural meaning:
``"2"``, ``"2."``, ``"(2)"``, ``"[2]"``, ``"a"``, ``"(a)"``, ``"a."``. This
module reduces each one to a ``ClassifiedLabel``:

  number: ``\\d+`` after stripping, with ``wrapped`` set when the trimmed
          label opened with ``(`` or ``[``
  letter: a single ASCII letter, lower-cased
  other:  everything else (empty labels, words, malformed input)

Classification is total: it never raises.
"""

from __future__ import annotations

import re

from advancement.hierarchy.types import ClassifiedLabel

_STRIP_RE = re.compile(r"[()\[\]. ]")
_NUMBER_RE = re.compile(r"\d+", re.ASCII)
_LETTER_RE = re.compile(r"[A-Za-z]")

OTHER_LABEL = ClassifiedLabel(kind="other", value=None, wrapped=False)


def normalize_label(raw_label: str | None) -> str:
    """Strip wrapping punctuation, periods and spaces from a raw label."""
    return _STRIP_RE.sub("", (raw_label or "").strip()).strip()


def is_wrapped(raw_label: str | None) -> bool:
    """True if the trimmed label opens with ``(`` or ``[``."""
    return (raw_label or "").strip().startswith(("(", "["))


def classify_label(raw_label: str | None) -> ClassifiedLabel:
    """Classify one free-text display label."""
    label = normalize_label(raw_label)
    wrapped = is_wrapped(raw_label)
    if _NUMBER_RE.fullmatch(label):
        return ClassifiedLabel(kind="number", value=int(label), wrapped=wrapped)
    if _LETTER_RE.fullmatch(label):
        return ClassifiedLabel(kind="letter", value=label.lower(), wrapped=wrapped)
    return OTHER_LABEL
