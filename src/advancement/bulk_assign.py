"""Bulk sign-off: one action applied to many ``(scout, requirement)`` pairs.

Each pair is processed independently and reports exactly one outcome:

* ``applied``  the pair changed state and one note was appended
* ``no_op``    the pair was already in the requested state
* ``failed``   the pair raised; ``error`` carries the reason

A failure on one pair never prevents the others from being attempted.
Problems that make every pair meaningless (an invalid actor, a missing undo
reason, an unreachable store) are raised instead of reported per pair.
"""
from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

from advancement.errors import (
    InvalidActorError,
    InvalidTransitionError,
    StoreUnavailableError,
)
from advancement.progress_service import Actor, AdvancementService, PairAction, require_actor

log = logging.getLogger(__name__)

BulkOutcomeKind: TypeAlias = Literal["applied", "no_op", "failed"]


@dataclass(frozen=True, slots=True)
class BulkTarget:
    scout_id: str
    requirement_id: str


@dataclass(frozen=True, slots=True)
class BulkOutcome:
    scout_id: str
    requirement_id: str
    outcome: BulkOutcomeKind
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "scoutId": self.scout_id,
            "requirementId": self.requirement_id,
            "outcome": self.outcome,
        }
        if self.error is not None:
            d["error"] = self.error
        return d


def expand_targets(
    scout_ids: Sequence[str],
    requirement_ids: Sequence[str],
) -> list[BulkTarget]:
    """Cross product of requirements and scouts, requirement-major."""
    return [
        BulkTarget(scout_id=scout_id, requirement_id=requirement_id)
        for requirement_id in requirement_ids
        for scout_id in scout_ids
    ]


def _coerce_target(target: Any) -> BulkTarget:
    if isinstance(target, BulkTarget):
        return target
    if isinstance(target, Mapping):
        scout_id = target.get("scoutId", target.get("scout_id"))
        requirement_id = target.get("requirementId", target.get("requirement_id"))
        return BulkTarget(scout_id=str(scout_id or ""), requirement_id=str(requirement_id or ""))
    scout_id, requirement_id = target
    return BulkTarget(scout_id=str(scout_id), requirement_id=str(requirement_id))


def summarize(outcomes: Iterable[BulkOutcome]) -> dict[str, int]:
    counts = Counter(o.outcome for o in outcomes)
    return {kind: counts.get(kind, 0) for kind in ("applied", "no_op", "failed")}


class BulkAssignmentCoordinator:
    """Applies complete/undo across many pairs through an AdvancementService."""

    def __init__(self, service: AdvancementService) -> None:
        self._service = service

    @property
    def service(self) -> AdvancementService:
        return self._service

    def apply_bulk(
        self,
        action: PairAction,
        targets: Iterable[BulkTarget | tuple[str, str] | Mapping[str, str]],
        actor: Actor,
        *,
        reason: str | None = None,
        note_text: str | None = None,
        completed_at: str | None = None,
    ) -> list[BulkOutcome]:
        """Apply ``action`` to every target; one outcome per target, in order.

        ``reason`` is required for ``undo``. ``note_text`` overrides the
        default completion note for ``complete``.
        """
        if action not in ("complete", "undo"):
            raise ValueError(f"unknown bulk action {action!r}")
        actor = require_actor(actor)
        if action == "undo" and not (reason and reason.strip()):
            raise InvalidTransitionError("A reason is required to undo completed requirements")
        text = reason if action == "undo" else note_text

        outcomes: list[BulkOutcome] = []
        for raw in targets:
            target = _coerce_target(raw)
            try:
                if not target.scout_id or not target.requirement_id:
                    raise ValueError("target needs both a scout id and a requirement id")
                result = self._service.apply_action(
                    action,
                    target.scout_id,
                    target.requirement_id,
                    actor,
                    text=text,
                    completed_at=completed_at,
                )
            except (StoreUnavailableError, InvalidActorError):
                raise
            except Exception as exc:
                log.warning(
                    "Bulk %s failed for %s/%s: %s",
                    action, target.scout_id, target.requirement_id, exc,
                )
                outcomes.append(BulkOutcome(
                    scout_id=target.scout_id,
                    requirement_id=target.requirement_id,
                    outcome="failed",
                    error=str(exc) or type(exc).__name__,
                ))
                continue
            outcomes.append(BulkOutcome(
                scout_id=target.scout_id,
                requirement_id=target.requirement_id,
                outcome=result,
            ))

        counts = summarize(outcomes)
        log.info(
            "Bulk %s by %s: %d applied, %d no-op, %d failed",
            action, actor.actor_id, counts["applied"], counts["no_op"], counts["failed"],
        )
        return outcomes
