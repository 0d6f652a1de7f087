"""
agora.services.group_view — Group Detail View State
====================================================

Holds every membership record of one group (keyed per user), the group's
posts with their vote summaries, and the viewer's own standing.

- ``toggle_membership()`` is the single join / cancel / leave button.
- ``accept()`` / ``reject()`` act on another user's pending request and
  require the viewer to be able to moderate.
- ``vote()`` requires an active membership.

All three go through the mutation coordinator, so the local state flips
immediately and rolls back with a toast if the write fails.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from agora.database.engine import run_db
from agora.engine.membership import (
    Membership,
    MembershipAction,
    MembershipState,
    check_moderator,
    membership_from_record,
    moderate,
    record_status,
    stored_statuses,
    toggle_action,
    transition,
)
from agora.engine.optimistic import Mutation, MutationOutcome, PreconditionFailed
from agora.engine.reactions import VoteSummary, aggregate_votes, apply_vote, resolve_vote
from agora.services import store
from agora.services.context import EntityView
from agora.services.store import GroupRecord, MemberRecord, PostRecord

logger = logging.getLogger(__name__)


class GroupView(EntityView):
    kind = "group"

    def __init__(self, ctx, group_id: str) -> None:
        super().__init__(ctx, group_id)
        self.group: GroupRecord | None = None
        self.posts: list[PostRecord] = []
        self._records: dict[str, MemberRecord] = {}
        self._member_ids: set[str] = set()

    @property
    def group_id(self) -> str:
        return self.entity_id

    def _is_owner(self, user_id: str | None) -> bool:
        return self.group is not None and user_id is not None and user_id == self.group.creator_id

    @staticmethod
    def _key(user_id: str) -> tuple[str, str]:
        return ("member", user_id)

    def membership_of(self, user_id: str) -> Membership:
        return self.coordinator.get(
            self._key(user_id), Membership(is_owner=self._is_owner(user_id))
        )

    @property
    def membership(self) -> Membership:
        """The viewer's own standing (``none`` for anonymous viewers)."""
        if self.ctx.viewer_id is None:
            return Membership()
        return self.membership_of(self.ctx.viewer_id)

    @property
    def members(self) -> list[str]:
        """User ids with an active membership, owner first."""
        ids = [
            uid for uid in sorted(self._member_ids)
            if self.membership_of(uid).state is MembershipState.MEMBER
        ]
        if self.group is not None:
            owner = self.group.creator_id
            ids = [owner] + [uid for uid in ids if uid != owner]
        return ids

    @property
    def pending_requests(self) -> list[str]:
        return [uid for uid in sorted(self._member_ids) if self.membership_of(uid).is_pending]

    def post_votes(self, post_id: str) -> VoteSummary | None:
        return self.coordinator.get(("votes", post_id))

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    async def load(self) -> None:
        group = await run_db(store.fetch_group, self.ctx.engine, self.group_id)
        if group is None:
            raise LookupError(f"Group {self.group_id} not found")
        self.group = group
        await self.refresh_members()
        await self.refresh_posts()

    def _open_subscriptions(self) -> None:
        self._subscribe("group_members", "group_id", self.refresh_members)
        self._subscribe("posts", "group_id", self.refresh_posts)
        self._subscribe("votes", "group_id", self.refresh_votes)

    async def refresh_members(self) -> None:
        records = await run_db(store.fetch_members, self.ctx.engine, self.group_id)
        if self.closed:
            return
        fresh = {r.user_id: r for r in records}
        tracked = set(self._member_ids) | set(fresh)
        if self.ctx.viewer_id is not None:
            tracked.add(self.ctx.viewer_id)
        for user_id in tracked:
            rec = fresh.get(user_id)
            self.coordinator.rebase(
                self._key(user_id),
                membership_from_record(
                    rec.status if rec else None,
                    rec.role if rec else None,
                    is_owner=self._is_owner(user_id),
                ),
            )
        self._records = fresh
        self._member_ids = tracked
        self._refreshed()

    async def refresh_posts(self) -> None:
        posts = await run_db(store.fetch_group_posts, self.ctx.engine, self.group_id)
        if self.closed:
            return
        gone = {p.id for p in self.posts} - {p.id for p in posts}
        for post_id in gone:
            self.coordinator.discard(("votes", post_id))
        self.posts = posts
        await self.refresh_votes()

    async def refresh_votes(self) -> None:
        post_ids = [p.id for p in self.posts]
        records = await run_db(store.fetch_votes, self.ctx.engine, post_ids)
        if self.closed:
            return
        by_post: dict[str, list] = {pid: [] for pid in post_ids}
        for rec in records:
            by_post.setdefault(rec.post_id, []).append(rec)
        for post_id in post_ids:
            self.coordinator.rebase(
                ("votes", post_id), aggregate_votes(by_post[post_id], self.ctx.viewer_id)
            )
        self._refreshed()

    # -------------------------------------------------------------------
    # Membership actions
    # -------------------------------------------------------------------
    def _membership_mutation(self, user_id: str, resolve, label: str, failure: str) -> Mutation:
        engine, group_id = self.ctx.engine, self.group_id
        before: dict[str, MembershipState] = {}

        def _resolve(current: Membership) -> MembershipState:
            before["state"] = current.state
            return resolve(current)

        async def _commit(target: MembershipState) -> None:
            status = record_status(target)
            if status is None:
                await run_db(
                    store.delete_membership, engine, group_id, user_id,
                    expected=stored_statuses(before["state"]),
                )
            elif before["state"] is MembershipState.NONE:
                await run_db(store.insert_membership, engine, group_id, user_id, status)
            else:
                await run_db(
                    store.update_membership_status, engine, group_id, user_id,
                    expected=record_status(before["state"]), status=status,
                )

        return Mutation(
            key=self._key(user_id),
            resolve=_resolve,
            apply=lambda current, target: replace(current, state=target),
            commit=_commit,
            label=label,
            failure_message=failure,
        )

    async def toggle_membership(self) -> MutationOutcome:
        """Join (public → member, private → pending), cancel a request, or leave."""
        viewer = self.ctx.require_viewer("join groups")
        current = self.membership
        action = toggle_action(current)
        is_public = self.group.is_public
        self._member_ids.add(viewer)
        if self._key(viewer) not in self.coordinator:
            self.coordinator.set(self._key(viewer), current)

        def _resolve(m: Membership) -> MembershipState:
            return transition(m.state, toggle_action(m), group_is_public=is_public)

        outcome = await self.coordinator.submit(self._membership_mutation(
            viewer, _resolve, label=str(action), failure=failure_message_for(action),
        ))
        if outcome is MutationOutcome.CONFIRMED:
            if action is MembershipAction.JOIN and not is_public:
                self.ctx.notifier.success("Join request sent")
            elif action is MembershipAction.JOIN:
                self.ctx.notifier.success("Joined group")
        return outcome

    async def _moderate(self, user_id: str, action: MembershipAction) -> MutationOutcome:
        self.ctx.require_viewer("manage join requests")
        actor = self.membership
        check_moderator(actor)
        target = self.membership_of(user_id)
        if not target.is_pending:
            raise PreconditionFailed(f"User {user_id} has no pending request")

        outcome = await self.coordinator.submit(self._membership_mutation(
            user_id,
            lambda m: moderate(actor, m.state, action),
            label=str(action),
            failure=failure_message_for(action),
        ))
        if outcome is MutationOutcome.CONFIRMED:
            self.ctx.notifier.success(
                "Request accepted" if action is MembershipAction.ACCEPT else "Request rejected"
            )
        return outcome

    async def accept(self, user_id: str) -> MutationOutcome:
        return await self._moderate(user_id, MembershipAction.ACCEPT)

    async def reject(self, user_id: str) -> MutationOutcome:
        return await self._moderate(user_id, MembershipAction.REJECT)

    # -------------------------------------------------------------------
    # Votes
    # -------------------------------------------------------------------
    async def vote(self, post_id: str, value: int) -> MutationOutcome:
        viewer = self.ctx.require_viewer("vote")
        if not self.membership.is_member:
            raise PreconditionFailed("You must be a member to vote")
        engine, group_id = self.ctx.engine, self.group_id
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


def failure_message_for(action: MembershipAction) -> str:
    if action is MembershipAction.ACCEPT:
        return "Failed to accept request"
    if action is MembershipAction.REJECT:
        return "Failed to reject request"
    if action is MembershipAction.CANCEL:
        return "Failed to cancel request"
    return f"Failed to {action} group"
