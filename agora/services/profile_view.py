"""
agora.services.profile_view — Follow Toggle
============================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agora.database.engine import run_db
from agora.engine.optimistic import Mutation, MutationOutcome, PreconditionFailed
from agora.services import store
from agora.services.context import EntityView

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FollowSummary:
    followers: int = 0
    following: int = 0
    viewer_follows: bool = False


def apply_follow(summary: FollowSummary, target: bool) -> FollowSummary:
    if summary.viewer_follows == target:
        return summary
    delta = 1 if target else -1
    return FollowSummary(
        followers=max(0, summary.followers + delta),
        following=summary.following,
        viewer_follows=target,
    )


class ProfileView(EntityView):
    kind = "profile"

    @property
    def profile_id(self) -> str:
        return self.entity_id

    @property
    def follow(self) -> FollowSummary | None:
        return self.coordinator.get(("follow", self.profile_id))

    async def load(self) -> None:
        await self.refresh()

    def _open_subscriptions(self) -> None:
        self._subscribe("follows", "following_id", self.refresh)
        self._subscribe("follows", "follower_id", self.refresh)

    async def refresh(self) -> None:
        followers, following, mine = await run_db(
            store.fetch_follow_state, self.ctx.engine, self.profile_id, self.ctx.viewer_id
        )
        if self.closed:
            return
        self.coordinator.rebase(
            ("follow", self.profile_id),
            FollowSummary(followers=followers, following=following, viewer_follows=mine),
        )
        self._refreshed()

    async def toggle_follow(self) -> MutationOutcome:
        viewer = self.ctx.require_viewer("follow people")
        if viewer == self.profile_id:
            raise PreconditionFailed("You cannot follow yourself")
        engine, profile_id = self.ctx.engine, self.profile_id
        return await self.coordinator.submit(Mutation(
            key=("follow", profile_id),
            resolve=lambda s: not s.viewer_follows,
            apply=apply_follow,
            commit=lambda target: run_db(store.set_follow, engine, viewer, profile_id, target),
            label="follow",
            failure_message="Failed to update follow",
        ))
