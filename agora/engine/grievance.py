"""
agora.engine.grievance — Grievance Lifecycle State Machine
===========================================================

::

    open ──▶ under_review ──▶ mediation ──▶ resolved
      │            │              │
      └────────────┴──────────────┴───────▶ dismissed

Status only moves forward.  ``resolved`` and ``dismissed`` are terminal:
no further mutation is accepted except append-only resolution notes.
Who may trigger a transition (moderator, mediator) is decided outside
this module.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any, assert_never

__all__ = [
    "GrievanceCategory",
    "GrievancePriority",
    "GrievanceStatus",
    "InvalidGrievanceTransition",
    "TerminalGrievance",
    "assign_mediator_status",
    "can_transition",
    "ensure_mutable",
    "next_statuses",
    "status_update",
    "transition",
]


class InvalidGrievanceTransition(ValueError):
    """Backward, self, or skipped-over transition."""


class TerminalGrievance(InvalidGrievanceTransition):
    """The grievance is resolved or dismissed and no longer mutable."""


class GrievanceStatus(enum.StrEnum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    MEDIATION = "mediation"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"

    @property
    def terminal(self) -> bool:
        return self in (GrievanceStatus.RESOLVED, GrievanceStatus.DISMISSED)


class GrievancePriority(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class GrievanceCategory(enum.StrEnum):
    LAND_DISPUTE = "land_dispute"
    CROP_DAMAGE = "crop_damage"
    CONTRACT_BREACH = "contract_breach"
    PRICE_DISPUTE = "price_dispute"
    THEFT = "theft"
    LABOR = "labor"
    ENVIRONMENTAL = "environmental"
    GENERAL = "general"


def next_statuses(current: GrievanceStatus) -> tuple[GrievanceStatus, ...]:
    """Statuses reachable in one step from *current*, in lifecycle order."""
    if current is GrievanceStatus.OPEN:
        return (GrievanceStatus.UNDER_REVIEW, GrievanceStatus.DISMISSED)
    if current is GrievanceStatus.UNDER_REVIEW:
        return (GrievanceStatus.MEDIATION, GrievanceStatus.RESOLVED, GrievanceStatus.DISMISSED)
    if current is GrievanceStatus.MEDIATION:
        return (GrievanceStatus.RESOLVED, GrievanceStatus.DISMISSED)
    if current is GrievanceStatus.RESOLVED or current is GrievanceStatus.DISMISSED:
        return ()
    assert_never(current)


def can_transition(current: GrievanceStatus, new: GrievanceStatus) -> bool:
    return new in next_statuses(current)


def ensure_mutable(current: GrievanceStatus) -> None:
    """Guard for any non-annotation mutation of a grievance."""
    if current.terminal:
        raise TerminalGrievance(f"Grievance is {current}; only notes may be added")


def transition(current: GrievanceStatus, new: GrievanceStatus) -> GrievanceStatus:
    ensure_mutable(current)
    if not can_transition(current, new):
        raise InvalidGrievanceTransition(f"Cannot move grievance from {current} to {new}")
    return new


def assign_mediator_status(current: GrievanceStatus) -> GrievanceStatus:
    """Assigning a mediator moves an open case to review; later stages stay put."""
    ensure_mutable(current)
    if current is GrievanceStatus.OPEN:
        return GrievanceStatus.UNDER_REVIEW
    return current


def status_update(
    current: GrievanceStatus,
    new: GrievanceStatus,
    *,
    resolution_text: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Validate the move and return the column values to write."""
    transition(current, new)
    now = now or datetime.now(UTC)
    fields: dict[str, Any] = {"status": new.value, "updated_at": now}
    if new is GrievanceStatus.RESOLVED:
        fields["resolved_at"] = now
        if resolution_text:
            fields["resolution_text"] = resolution_text
    return fields
