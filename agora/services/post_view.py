"""
agora.services.post_view — Post Detail View State
==================================================

Feed posts take like-style reactions; group posts take vote-style
reactions and only group members may vote.  Both share the comment
thread, which is rebuilt from a full refetch whenever the change feed
reports a comment change on this post.
"""

from __future__ import annotations

import logging

from agora.database.engine import run_db
from agora.engine.membership import Membership, membership_from_record
from agora.engine.optimistic import Mutation, MutationOutcome, PreconditionFailed
from agora.engine.reactions import (
    LikeSummary,
    VoteSummary,
    aggregate_likes,
    aggregate_votes,
    apply_like,
    apply_vote,
    resolve_like,
    resolve_vote,
)
from agora.engine.threads import CommentNode, CommentRecord, build_thread, count_comments
from agora.services import store
from agora.services.context import EntityView
from agora.services.store import PostRecord, StoreError

logger = logging.getLogger(__name__)


class PostView(EntityView):
    """Comments + reactions of one post, kept live by the change feed."""

    kind = "post"

    def __init__(self, ctx, post_id: str) -> None:
        super().__init__(ctx, post_id)
        self.post: PostRecord | None = None
        self.comments: list[CommentRecord] = []
        self.thread: list[CommentNode] = []
        self.membership = Membership()

    @property
    def post_id(self) -> str:
        return self.entity_id

    @property
    def is_group_post(self) -> bool:
        return self.post is not None and self.post.group_id is not None

    @property
    def reaction_key(self) -> tuple[str, str]:
        return ("votes" if self.is_group_post else "likes", self.post_id)

    @property
    def likes(self) -> LikeSummary | None:
        return self.coordinator.get(("likes", self.post_id))

    @property
    def votes(self) -> VoteSummary | None:
        return self.coordinator.get(("votes", self.post_id))

    @property
    def comment_count(self) -> int:
        return count_comments(self.thread)

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    async def load(self) -> None:
        engine = self.ctx.engine
        post = await run_db(store.fetch_post, engine, self.post_id)
        if post is None:
            raise LookupError(f"Post {self.post_id} not found")
        self.post = post

        if post.group_id is not None and self.ctx.viewer_id is not None:
            group = await run_db(store.fetch_group, engine, post.group_id)
            record = await run_db(
                store.fetch_membership, engine, post.group_id, self.ctx.viewer_id
            )
            self.membership = membership_from_record(
                record.status if record else None,
                record.role if record else None,
                is_owner=group is not None and group.creator_id == self.ctx.viewer_id,
            )

        await self.refresh_comments()
        await self.refresh_reactions()

    def _open_subscriptions(self) -> None:
        self._subscribe("comments", "post_id", self.refresh_comments)
        self._subscribe(self.reaction_key[0], "post_id", self.refresh_reactions)

    async def refresh_comments(self) -> None:
        records = await run_db(store.fetch_comments, self.ctx.engine, self.post_id)
        if self.closed:
            return
        self.comments = records
        self.thread = build_thread(records)
        logger.debug("post:%s thread rebuilt (%d comments)", self.post_id, len(records))
        self._refreshed()

    async def refresh_reactions(self) -> None:
        engine, viewer = self.ctx.engine, self.ctx.viewer_id
        if self.is_group_post:
            records = await run_db(store.fetch_votes, engine, [self.post_id])
            fresh = aggregate_votes(records, viewer)
        else:
            records = await run_db(store.fetch_likes, engine, [self.post_id])
            fresh = aggregate_likes(records, viewer)
        if self.closed:
            return
        self.coordinator.rebase(self.reaction_key, fresh)
        self._refreshed()

    # -------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------
    async def toggle_like(self) -> MutationOutcome:
        viewer = self.ctx.require_viewer("like posts")
        if self.is_group_post:
            raise PreconditionFailed("Group posts are voted on, not liked")
        engine, post_id = self.ctx.engine, self.post_id
        return await self.coordinator.submit(Mutation(
            key=("likes", post_id),
            resolve=lambda s: resolve_like(s.current_user_has_reacted),
            apply=apply_like,
            commit=lambda liked: run_db(store.set_like, engine, post_id, viewer, liked),
            label="like",
            failure_message="Failed to like post",
        ))

    async def vote(self, value: int) -> MutationOutcome:
        viewer = self.ctx.require_viewer("vote")
        if not self.is_group_post:
            raise PreconditionFailed("Only group posts can be voted on")
        if not self.membership.is_member:
            raise PreconditionFailed("You must be a member to vote")
        engine, post_id, group_id = self.ctx.engine, self.post_id, self.post.group_id
        return await self.coordinator.submit(Mutation(
            key=("votes", post_id),
            resolve=lambda s: resolve_vote(s.current_user_value, value),
            apply=apply_vote,
            commit=lambda target: run_db(
                store.set_vote, engine, post_id, viewer, target, group_id
            ),
            label="vote",
            failure_message="Failed to vote",
        ))

    async def add_comment(self, body: str, parent_id: str | None = None) -> CommentRecord | None:
        """Post a comment (or a reply).  Returns ``None`` and raises a toast on failure."""
        viewer = self.ctx.require_viewer("comment")
        if self.is_group_post and not self.membership.is_member:
            raise PreconditionFailed("You must be a member to comment")
        try:
            record = await run_db(
                store.add_comment, self.ctx.engine, self.post_id, viewer, body, parent_id
            )
        except StoreError as exc:
            logger.warning("post:%s comment failed: %s", self.post_id, exc)
            if not self.closed:
                self.ctx.notifier.error("Failed to post comment")
            return None
        if not self.closed:
            await self.refresh_comments()
        return record
