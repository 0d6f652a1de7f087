"""
tests/test_reactions.py — Tests for the Reaction Aggregator
============================================================
"""

from __future__ import annotations

import random

import pytest

from agora.database.models import Stance
from agora.engine.reactions import (
    LikeSummary,
    ReactionRecord,
    VoteSummary,
    aggregate_likes,
    aggregate_stances,
    aggregate_votes,
    apply_like,
    apply_vote,
    resolve_like,
    resolve_vote,
)


def _votes(*pairs: tuple[str, int], post: str = "p1") -> list[ReactionRecord]:
    return [ReactionRecord(post_id=post, user_id=u, value=v) for u, v in pairs]


class TestAggregateVotes:
    def test_partition_and_viewer_lookup(self):
        records = _votes(("a", 1), ("b", 1), ("c", -1), ("me", -1))
        summary = aggregate_votes(records, viewer_id="me")
        assert summary == VoteSummary(upvote_count=2, downvote_count=2, current_user_value=-1)
        assert summary.score == 0

    def test_viewer_without_vote_defaults_to_zero(self):
        summary = aggregate_votes(_votes(("a", 1)), viewer_id="me")
        assert summary.current_user_value == 0

    def test_anonymous_viewer_gets_aggregate_only(self):
        summary = aggregate_votes(_votes(("a", 1), ("b", -1)), viewer_id=None)
        assert summary == VoteSummary(1, 1, 0)

    def test_second_record_for_same_user_replaces(self):
        summary = aggregate_votes(_votes(("a", 1), ("a", -1)), viewer_id="a")
        assert summary == VoteSummary(upvote_count=0, downvote_count=1, current_user_value=-1)

    def test_invalid_values_ignored(self):
        summary = aggregate_votes(_votes(("a", 7), ("b", 0), ("c", 1)))
        assert summary == VoteSummary(upvote_count=1, downvote_count=0)

    def test_empty(self):
        assert aggregate_votes([], viewer_id="me") == VoteSummary()


class TestAggregateLikes:
    def test_count_and_flag(self):
        records = _votes(("a", 1), ("me", 1), ("b", 1))
        assert aggregate_likes(records, "me") == LikeSummary(count=3, current_user_has_reacted=True)

    def test_duplicate_like_counts_once(self):
        assert aggregate_likes(_votes(("a", 1), ("a", 1)), "me") == LikeSummary(count=1)


class TestAggregateStances:
    def test_tally_and_viewer_stance(self):
        rows = [
            ("a", "support_reporter"),
            ("b", "support_reporter"),
            ("c", "neutral"),
            ("me", "support_respondent"),
            ("d", "not-a-stance"),
        ]
        summary = aggregate_stances(rows, "me")
        assert summary.support_reporter == 2
        assert summary.support_respondent == 1
        assert summary.neutral == 1
        assert summary.total == 4
        assert summary.current_user_stance is Stance.SUPPORT_RESPONDENT


class TestToggleRules:
    def test_same_vote_clears(self):
        assert resolve_vote(1, 1) == 0
        assert resolve_vote(-1, -1) == 0

    def test_different_vote_replaces(self):
        assert resolve_vote(1, -1) == -1
        assert resolve_vote(0, 1) == 1

    def test_invalid_request_rejected(self):
        with pytest.raises(ValueError):
            resolve_vote(0, 2)

    def test_apply_vote_moves_counts_and_flag_together(self):
        before = VoteSummary(upvote_count=5, downvote_count=1, current_user_value=1)
        after = apply_vote(before, -1)
        assert after == VoteSummary(upvote_count=4, downvote_count=2, current_user_value=-1)

    def test_apply_vote_is_idempotent_for_held_target(self):
        s = VoteSummary(upvote_count=5, downvote_count=1, current_user_value=1)
        assert apply_vote(s, 1) is s

    def test_counts_never_negative(self):
        s = VoteSummary(upvote_count=0, downvote_count=0, current_user_value=1)
        assert apply_vote(s, 0) == VoteSummary(0, 0, 0)

    def test_like_toggle(self):
        s = LikeSummary(count=3, current_user_has_reacted=False)
        liked = apply_like(s, resolve_like(s.current_user_has_reacted))
        assert liked == LikeSummary(count=4, current_user_has_reacted=True)
        assert apply_like(liked, resolve_like(liked.current_user_has_reacted)) == s

    def test_toggle_twice_restores_counts(self):
        rng = random.Random(7)
        for _ in range(200):
            users = [f"u{i}" for i in range(rng.randint(0, 12))] + ["me"]
            records = _votes(*[(u, rng.choice([1, -1])) for u in users if rng.random() < 0.7])
            original = aggregate_votes(records, "me")
            for requested in (1, -1):
                once = apply_vote(original, resolve_vote(original.current_user_value, requested))
                twice = apply_vote(once, resolve_vote(once.current_user_value, requested))
                if original.current_user_value in (0, requested):
                    assert (twice.upvote_count, twice.downvote_count) == (
                        original.upvote_count, original.downvote_count,
                    )
                    assert twice.current_user_value == original.current_user_value
