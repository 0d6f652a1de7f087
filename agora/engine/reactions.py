"""
agora.engine.reactions — Reaction Aggregator
=============================================

Derives per-item summaries from raw reaction records:

- vote-style (group posts):  up / down counts + the viewer's current vote
- like-style (feed posts):   like count + whether the viewer liked it
- stance-style (grievances): support-reporter / support-respondent /
  neutral tallies + the viewer's stance

Also holds the toggle rules used by optimistic updates: repeating the
reaction you already hold clears it, a different one replaces it.  Counts
and the viewer's own reaction live in one immutable summary, so they are
always replaced together.

All functions are pure.  The viewer id is passed explicitly; anonymous
viewers (``None``) get aggregate-only output.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace

from agora.database.models import Stance

logger = logging.getLogger(__name__)

__all__ = [
    "LikeSummary",
    "ReactionRecord",
    "StanceSummary",
    "VoteSummary",
    "aggregate_likes",
    "aggregate_stances",
    "aggregate_votes",
    "apply_like",
    "apply_vote",
    "resolve_like",
    "resolve_vote",
]

UPVOTE = 1
DOWNVOTE = -1
NO_VOTE = 0


@dataclass(frozen=True, slots=True)
class ReactionRecord:
    """One like / vote row.  Likes carry ``value=1``."""

    post_id: str
    user_id: str
    value: int = 1


@dataclass(frozen=True, slots=True)
class VoteSummary:
    upvote_count: int = 0
    downvote_count: int = 0
    current_user_value: int = NO_VOTE

    @property
    def score(self) -> int:
        return self.upvote_count - self.downvote_count


@dataclass(frozen=True, slots=True)
class LikeSummary:
    count: int = 0
    current_user_has_reacted: bool = False


@dataclass(frozen=True, slots=True)
class StanceSummary:
    support_reporter: int = 0
    support_respondent: int = 0
    neutral: int = 0
    current_user_stance: Stance | None = None

    @property
    def total(self) -> int:
        return self.support_reporter + self.support_respondent + self.neutral


def _dedupe(records: Iterable[ReactionRecord]) -> dict[tuple[str, str], ReactionRecord]:
    """Collapse to one record per (post, user); a later record replaces."""
    latest: dict[tuple[str, str], ReactionRecord] = {}
    for rec in records:
        latest[(rec.post_id, rec.user_id)] = rec
    return latest


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------
def aggregate_votes(
    records: Iterable[ReactionRecord], viewer_id: str | None = None
) -> VoteSummary:
    """Partition vote records by value and look up the viewer's vote."""
    up = down = 0
    mine = NO_VOTE
    for rec in _dedupe(records).values():
        if rec.value == UPVOTE:
            up += 1
        elif rec.value == DOWNVOTE:
            down += 1
        else:
            logger.debug(
                "Ignoring vote with invalid value %r (post=%s user=%s)",
                rec.value, rec.post_id, rec.user_id,
            )
            continue
        if viewer_id is not None and rec.user_id == viewer_id:
            mine = rec.value
    return VoteSummary(upvote_count=up, downvote_count=down, current_user_value=mine)


def aggregate_likes(
    records: Iterable[ReactionRecord], viewer_id: str | None = None
) -> LikeSummary:
    unique = _dedupe(records)
    mine = viewer_id is not None and any(uid == viewer_id for _, uid in unique)
    return LikeSummary(count=len(unique), current_user_has_reacted=mine)


def aggregate_stances(
    records: Iterable[tuple[str, str]], viewer_id: str | None = None
) -> StanceSummary:
    """Tally ``(user_id, stance)`` pairs for one grievance."""
    latest: dict[str, str] = {}
    for user_id, stance in records:
        latest[user_id] = stance

    counts = dict.fromkeys(Stance, 0)
    mine: Stance | None = None
    for user_id, raw in latest.items():
        try:
            stance = Stance(raw)
        except ValueError:
            logger.debug("Ignoring unknown grievance stance %r from %s", raw, user_id)
            continue
        counts[stance] += 1
        if viewer_id is not None and user_id == viewer_id:
            mine = stance

    return StanceSummary(
        support_reporter=counts[Stance.SUPPORT_REPORTER],
        support_respondent=counts[Stance.SUPPORT_RESPONDENT],
        neutral=counts[Stance.NEUTRAL],
        current_user_stance=mine,
    )


# ---------------------------------------------------------------------------
# Toggle rules
# ---------------------------------------------------------------------------
def resolve_vote(current: int, requested: int) -> int:
    """Target vote after the viewer clicks *requested*.

    Same value → cleared (0); different value → replaced.
    """
    if requested not in (UPVOTE, DOWNVOTE):
        raise ValueError(f"vote must be +1 or -1, got {requested!r}")
    return NO_VOTE if current == requested else requested


def apply_vote(summary: VoteSummary, target: int) -> VoteSummary:
    """Move the viewer's vote to *target*, adjusting both counts in one step.

    Applying the vote the summary already holds is a no-op, which makes
    re-applying a pending mutation after a refetch safe.
    """
    up, down = summary.upvote_count, summary.downvote_count
    previous = summary.current_user_value
    if previous == target:
        return summary
    if previous == UPVOTE:
        up -= 1
    elif previous == DOWNVOTE:
        down -= 1
    if target == UPVOTE:
        up += 1
    elif target == DOWNVOTE:
        down += 1
    return VoteSummary(
        upvote_count=max(0, up),
        downvote_count=max(0, down),
        current_user_value=target,
    )


def resolve_like(current: bool) -> bool:
    return not current


def apply_like(summary: LikeSummary, target: bool) -> LikeSummary:
    if summary.current_user_has_reacted == target:
        return summary
    delta = 1 if target else -1
    return replace(
        summary,
        count=max(0, summary.count + delta),
        current_user_has_reacted=target,
    )
