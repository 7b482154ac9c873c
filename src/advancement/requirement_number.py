"""Requirement number formats.

Canonical requirement numbers use the parenthetical form found in the
advancement records:

  simple          "1", "2", "3"
  with letter     "1a", "4f"
  numbered sub    "9b(2)", "5a(1)"
  option nesting  "6A(a)(1)", "6B(b)(3)"

The compact display form concatenates the parenthetical parts ("9b2",
"6Aa1"). Display -> canonical is best-effort: "6A1a" could have come from
either "6A(1)(a)" or "6A(a)(1)"; the option-badge convention puts the letter
first.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from advancement.hierarchy.labels import classify_label
from advancement.hierarchy.types import RequirementContext

_CANONICAL_RE = re.compile(r"^(\d+[A-Za-z]?)(.*)$")
_PAREN_GROUP_RE = re.compile(r"\(([^)]+)\)")
_OPTION_DISPLAY_RE = re.compile(r"^(\d+)([A-Z])(\d+)([a-z])?$")
_SIMPLE_SUB_DISPLAY_RE = re.compile(r"^(\d+)([a-z])(\d+)$")
_BASE_RE = re.compile(r"^(\d+)")
_OPTION_RE = re.compile(r"^\d+([A-Z])")
_LAST_PAREN_RE = re.compile(r"^(.+)\([^)]+\)$")
_LOWER_SUFFIX_RE = re.compile(r"^(\d+)[a-z]$")
_OPTION_WITH_LETTER_RE = re.compile(r"^(.+[0-9A-Z])([a-z])$")
_OPTION_ONLY_RE = re.compile(r"^(\d+)[A-Z]$")


@dataclass(frozen=True, slots=True)
class RequirementNumber:
    """Components of a canonical requirement number."""

    base: str
    option: str | None
    sub_parts: tuple[str, ...]
    depth: int
    original: str


def to_display_format(number: str) -> str:
    """Convert canonical form to compact display form ("9b(2)" -> "9b2")."""
    if not number:
        return ""
    match = _CANONICAL_RE.match(number)
    if not match:
        return number
    base, rest = match.groups()
    if not rest:
        return base
    groups = _PAREN_GROUP_RE.findall(rest)
    if not groups:
        return base
    return base + "".join(groups)


def to_canonical_format(display: str) -> str:
    """Best-effort conversion from display form ("9b2" -> "9b(2)")."""
    if not display:
        return ""
    option_match = _OPTION_DISPLAY_RE.match(display)
    if option_match:
        num, option, sub_num, detail = option_match.groups()
        if detail:
            return f"{num}{option}({detail})({sub_num})"
        return f"{num}{option}({sub_num})"
    sub_match = _SIMPLE_SUB_DISPLAY_RE.match(display)
    if sub_match:
        num, letter, sub_num = sub_match.groups()
        return f"{num}{letter}({sub_num})"
    return display


def normalize_requirement_number(raw: str) -> str:
    """Normalize arbitrary input to canonical form for matching."""
    if not raw:
        return ""
    text = raw.strip()
    if "(" in text:
        return text
    return to_canonical_format(text)


def base_number(number: str) -> str:
    """Top-level number only ("6A(a)(1)" -> "6")."""
    match = _BASE_RE.match(number)
    return match.group(1) if match else number


def option_letter(number: str) -> str | None:
    """Option letter right after the base ("6B" -> "B"), else None."""
    match = _OPTION_RE.match(number)
    return match.group(1) if match else None


def is_option_requirement(number: str) -> bool:
    return option_letter(number) is not None


def parent_requirement_number(number: str) -> str | None:
    """Parent of a sub-requirement ("9b(2)" -> "9b" -> "9" -> None)."""
    if not number:
        return None
    match = _LAST_PAREN_RE.match(number)
    if match:
        return match.group(1)
    match = _LOWER_SUFFIX_RE.match(number)
    if match:
        return match.group(1)
    match = _OPTION_WITH_LETTER_RE.match(number)
    if match:
        return match.group(1)
    match = _OPTION_ONLY_RE.match(number)
    if match:
        return match.group(1)
    return None


def nesting_depth(number: str) -> int:
    """Depth below the top-level number ("1" -> 0, "9b(2)" -> 2)."""
    if not number:
        return 0
    depth = 0
    if re.match(r"^\d+[A-Za-z]", number):
        depth += 1
    depth += len(_PAREN_GROUP_RE.findall(number))
    return depth


def _sort_key(number: str) -> tuple[int, str, str]:
    try:
        base = int(base_number(number))
    except ValueError:
        base = 0
    return base, option_letter(number) or "", _BASE_RE.sub("", number)


def compare_requirement_numbers(a: str, b: str) -> int:
    """Three-way compare: base numerically, then option, then the remainder."""
    key_a, key_b = _sort_key(a), _sort_key(b)
    if key_a[0] != key_b[0]:
        return key_a[0] - key_b[0]
    if key_a[1:] == key_b[1:]:
        return 0
    return -1 if key_a[1:] < key_b[1:] else 1


def parse_requirement_number(number: str) -> RequirementNumber:
    sub_parts = tuple(_PAREN_GROUP_RE.findall(number))
    if not sub_parts:
        simple = re.match(r"^\d+([a-z])$", number)
        if simple:
            sub_parts = (simple.group(1),)
    return RequirementNumber(
        base=base_number(number),
        option=option_letter(number),
        sub_parts=sub_parts,
        depth=nesting_depth(number),
        original=number,
    )


def requirement_number_for(context: RequirementContext, raw_label: str) -> str:
    """Compose a canonical number for a row from its resolved context.

    Main-number rows yield ``"2"``, letter rows ``"2b"``, numbered sub-steps
    ``"2b(1)"``. Rows whose label carries no token (body text, headings)
    yield an empty string.
    """
    classified = classify_label(raw_label)
    if classified.kind == "other":
        return ""
    scope = f"{context.main_number or ''}{context.letter or ''}"
    if classified.kind == "letter":
        return scope
    if not classified.wrapped and context.letter is None and str(classified.value) == context.main_number:
        return scope
    return f"{scope}({classified.value})"
