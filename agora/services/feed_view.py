"""
agora.services.feed_view — Public Feed View State
==================================================

The public feed: posts outside any group, newest first, loaded one page
at a time.  Each listed post carries a like summary (keyed per post in
the mutation coordinator) and a comment count.

A like toggle on one post never touches another post's summary.  When
the change feed reports a like anywhere, every listed post is refetched
and rebased, and toggles still in flight are replayed on top.
"""

from __future__ import annotations

import logging

from agora.database.engine import run_db
from agora.engine.optimistic import Mutation, MutationOutcome
from agora.engine.reactions import (
    LikeSummary,
    ReactionRecord,
    aggregate_likes,
    apply_like,
    resolve_like,
)
from agora.services import store
from agora.services.context import EntityView
from agora.services.store import PostRecord

logger = logging.getLogger(__name__)

FEED_ID = "public"


class FeedView(EntityView):
    kind = "feed"

    def __init__(self, ctx, *, page_size: int = 10) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        super().__init__(ctx, FEED_ID)
        self.page_size = page_size
        self.posts: list[PostRecord] = []
        self.comment_counts: dict[str, int] = {}
        self.exhausted = False
        self._pages = 1

    @staticmethod
    def _key(post_id: str) -> tuple[str, str]:
        return ("likes", post_id)

    def likes_of(self, post_id: str) -> LikeSummary | None:
        return self.coordinator.get(self._key(post_id))

    def comment_count(self, post_id: str) -> int:
        return self.comment_counts.get(post_id, 0)

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    async def load(self) -> None:
        await self.refresh_posts()

    def _open_subscriptions(self) -> None:
        self._subscribe("posts", None, self.refresh_posts)
        self._subscribe("likes", None, self.refresh_reactions)
        self._subscribe("comments", None, self.refresh_comment_counts)

    async def refresh_posts(self) -> None:
        """Refetch every page loaded so far in one query."""
        limit = self._pages * self.page_size
        posts = await run_db(store.fetch_feed, self.ctx.engine, page=0, page_size=limit)
        if self.closed:
            return
        posts = [p for p in posts if p.group_id is None]
        gone = {p.id for p in self.posts} - {p.id for p in posts}
        for post_id in gone:
            self.coordinator.discard(self._key(post_id))
        self.posts = posts
        self.exhausted = len(posts) < limit
        await self.refresh_reactions()
        await self.refresh_comment_counts()

    async def load_more(self) -> int:
        """Append the next page.  Returns how many posts were added."""
        if self.exhausted:
            return 0
        page = await run_db(
            store.fetch_feed, self.ctx.engine, page=self._pages, page_size=self.page_size
        )
        if self.closed:
            return 0
        self._pages += 1
        self.exhausted = len(page) < self.page_size
        known = {p.id for p in self.posts}
        added = [p for p in page if p.id not in known and p.group_id is None]
        if not added:
            self._refreshed()
            return 0
        self.posts.extend(added)
        logger.debug("feed: page %d added %d post(s)", self._pages, len(added))
        await self.refresh_reactions()
        await self.refresh_comment_counts()
        return len(added)

    async def refresh_reactions(self) -> None:
        post_ids = [p.id for p in self.posts]
        records = await run_db(store.fetch_likes, self.ctx.engine, post_ids)
        if self.closed:
            return
        by_post: dict[str, list[ReactionRecord]] = {pid: [] for pid in post_ids}
        for rec in records:
            by_post.setdefault(rec.post_id, []).append(rec)
        listed = {p.id for p in self.posts}
        for post_id in post_ids:
            # Dropped by a concurrent refresh_posts.
            if post_id not in listed:
                continue
            self.coordinator.rebase(
                self._key(post_id), aggregate_likes(by_post[post_id], self.ctx.viewer_id)
            )
        self._refreshed()

    async def refresh_comment_counts(self) -> None:
        post_ids = [p.id for p in self.posts]
        counts = await run_db(store.count_comments, self.ctx.engine, post_ids)
        if self.closed:
            return
        self.comment_counts = counts
        self._refreshed()

    # -------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------
    async def toggle_like(self, post_id: str) -> MutationOutcome:
        viewer = self.ctx.require_viewer("like posts")
        if self._key(post_id) not in self.coordinator:
            raise LookupError(f"Post {post_id} is not in the feed")
        engine = self.ctx.engine
        return await self.coordinator.submit(Mutation(
            key=self._key(post_id),
            resolve=lambda s: resolve_like(s.current_user_has_reacted),
            apply=apply_like,
            commit=lambda liked: run_db(store.set_like, engine, post_id, viewer, liked),
            label="like",
            failure_message="Failed to like post",
        ))
