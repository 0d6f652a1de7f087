"""
agora.engine.membership — Group Membership State Machine
=========================================================

States (absence of a ``group_members`` row is ``none``)::

    none ──join (public)──────────────▶ member
    none ──join (private)─────────────▶ pending
    pending ──accept (by an admin)────▶ member
    pending ──reject (by an admin)────▶ none     (row deleted)
    pending ──cancel (by requester)───▶ none     (row deleted)
    member ──leave────────────────────▶ none     (row deleted)

``admin`` is a role flag orthogonal to the state.  The group's creator is
always implicitly a member, has nothing to toggle, and can moderate.
Rejected or cancelled requests leave no record behind.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import assert_never

from agora.database.models import MemberRole, MemberStatus
from agora.engine.optimistic import PreconditionFailed

logger = logging.getLogger(__name__)

__all__ = [
    "InvalidMembershipTransition",
    "Membership",
    "MembershipAction",
    "MembershipState",
    "check_moderator",
    "membership_from_record",
    "moderate",
    "record_status",
    "stored_statuses",
    "toggle_action",
    "transition",
]


class InvalidMembershipTransition(ValueError):
    """The requested action is not allowed from the current state."""


class MembershipState(enum.StrEnum):
    NONE = "none"
    PENDING = "pending"
    MEMBER = "member"


class MembershipAction(enum.StrEnum):
    JOIN = "join"
    CANCEL = "cancel"
    LEAVE = "leave"
    ACCEPT = "accept"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class Membership:
    """The viewer's (or another user's) standing in one group."""

    state: MembershipState = MembershipState.NONE
    is_admin: bool = False
    is_owner: bool = False

    @property
    def is_member(self) -> bool:
        return self.is_owner or self.state is MembershipState.MEMBER

    @property
    def is_pending(self) -> bool:
        return not self.is_owner and self.state is MembershipState.PENDING

    @property
    def can_moderate(self) -> bool:
        """Admin role *and* an active membership (pending admins cannot)."""
        return self.is_owner or (self.is_admin and self.state is MembershipState.MEMBER)


def membership_from_record(
    status: str | None, role: str | None = None, *, is_owner: bool = False
) -> Membership:
    """Build a :class:`Membership` from a ``group_members`` row (or its absence)."""
    if status is None:
        state = MembershipState.NONE
    else:
        try:
            parsed = MemberStatus(status)
        except ValueError:
            raise ValueError(f"Unknown membership status {status!r}") from None
        if parsed is MemberStatus.PENDING:
            state = MembershipState.PENDING
        elif parsed in (MemberStatus.MEMBER, MemberStatus.ADMIN):
            state = MembershipState.MEMBER
        else:
            assert_never(parsed)
    return Membership(state=state, is_admin=role == MemberRole.ADMIN, is_owner=is_owner)


def record_status(state: MembershipState) -> str | None:
    """Status column value to persist for *state*; ``None`` means delete the row."""
    if state is MembershipState.NONE:
        return None
    if state is MembershipState.PENDING:
        return MemberStatus.PENDING.value
    if state is MembershipState.MEMBER:
        return MemberStatus.MEMBER.value
    assert_never(state)


def stored_statuses(state: MembershipState) -> tuple[str, ...]:
    """Status column values a row in *state* may carry (legacy ``admin`` reads as member)."""
    if state is MembershipState.NONE:
        return ()
    if state is MembershipState.PENDING:
        return (MemberStatus.PENDING.value,)
    if state is MembershipState.MEMBER:
        return (MemberStatus.MEMBER.value, MemberStatus.ADMIN.value)
    assert_never(state)


def _require(current: MembershipState, expected: MembershipState, action: MembershipAction) -> None:
    if current is not expected:
        raise InvalidMembershipTransition(
            f"Cannot {action} from state {current!s} (requires {expected!s})"
        )


def transition(
    current: MembershipState,
    action: MembershipAction,
    *,
    group_is_public: bool = False,
) -> MembershipState:
    """Return the state reached by applying *action* to *current*."""
    if action is MembershipAction.JOIN:
        _require(current, MembershipState.NONE, action)
        return MembershipState.MEMBER if group_is_public else MembershipState.PENDING
    if action is MembershipAction.CANCEL:
        _require(current, MembershipState.PENDING, action)
        return MembershipState.NONE
    if action is MembershipAction.LEAVE:
        _require(current, MembershipState.MEMBER, action)
        return MembershipState.NONE
    if action is MembershipAction.ACCEPT:
        _require(current, MembershipState.PENDING, action)
        return MembershipState.MEMBER
    if action is MembershipAction.REJECT:
        _require(current, MembershipState.PENDING, action)
        return MembershipState.NONE
    assert_never(action)


def toggle_action(current: Membership) -> MembershipAction:
    """The single join/leave button: join, cancel the request, or leave."""
    if current.is_owner:
        raise InvalidMembershipTransition("The group owner cannot leave their own group")
    state = current.state
    if state is MembershipState.NONE:
        return MembershipAction.JOIN
    if state is MembershipState.PENDING:
        return MembershipAction.CANCEL
    if state is MembershipState.MEMBER:
        return MembershipAction.LEAVE
    assert_never(state)


def check_moderator(actor: Membership) -> None:
    if not actor.can_moderate:
        raise PreconditionFailed("Only group admins can manage join requests")


def moderate(
    actor: Membership, target: MembershipState, action: MembershipAction
) -> MembershipState:
    """Accept or reject another user's pending request on behalf of *actor*."""
    check_moderator(actor)
    if action not in (MembershipAction.ACCEPT, MembershipAction.REJECT):
        raise InvalidMembershipTransition(f"{action} is not a moderation action")
    return transition(target, action)
