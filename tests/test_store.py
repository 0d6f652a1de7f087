"""
tests/test_store.py — Tests for Remote Store Operations (SQLite)
=================================================================

Runs the store functions against the in-memory SQLite engine: reaction
upserts, membership compare-and-set, grievance updates, and the mapping
of database errors onto ``StoreError`` codes.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from agora.database.models import GroupMember, ResolutionNote, Vote
from agora.services import store
from agora.services.store import StoreError


class TestComments:
    def test_add_and_fetch_with_author(self, db_engine, world):
        alice = world.user("Alice")
        post = world.post(alice)
        top = store.add_comment(db_engine, post, alice, "  first  ")
        reply = store.add_comment(db_engine, post, alice, "reply", parent_id=top.id)

        rows = store.fetch_comments(db_engine, post)
        assert [r.id for r in rows] == [top.id, reply.id]
        assert rows[0].body == "first"
        assert rows[1].parent_id == top.id
        assert rows[0].author_name == "Alice"
        assert store.count_comments(db_engine, [post]) == {post: 2}

    def test_parent_on_other_post_rejected(self, db_engine, world):
        alice = world.user("Alice")
        p1, p2 = world.post(alice), world.post(alice)
        c = store.add_comment(db_engine, p1, alice, "on p1")
        with pytest.raises(StoreError) as exc:
            store.add_comment(db_engine, p2, alice, "wrong thread", parent_id=c.id)
        assert exc.value.code == "invalid"

    def test_missing_parent(self, db_engine, world):
        alice = world.user("Alice")
        post = world.post(alice)
        with pytest.raises(StoreError) as exc:
            store.add_comment(db_engine, post, alice, "hi", parent_id="nope")
        assert exc.value.code == "not_found"

    def test_empty_body_rejected(self, db_engine, world):
        alice = world.user("Alice")
        with pytest.raises(StoreError):
            store.add_comment(db_engine, world.post(alice), alice, "   ")


class TestReactions:
    def test_like_insert_and_delete(self, db_engine, world):
        alice = world.user("Alice")
        post = world.post(alice)
        store.set_like(db_engine, post, alice, True)
        assert [r.user_id for r in store.fetch_likes(db_engine, [post])] == [alice]
        assert store.set_like(db_engine, post, alice, False) == 1
        assert store.fetch_likes(db_engine, [post]) == []

    def test_duplicate_like_is_conflict(self, db_engine, world):
        alice = world.user("Alice")
        post = world.post(alice)
        store.set_like(db_engine, post, alice, True)
        with pytest.raises(StoreError) as exc:
            store.set_like(db_engine, post, alice, True)
        assert exc.value.code == "conflict"

    def test_vote_upsert_keeps_one_row_per_user(self, db_engine, db_session, world):
        alice = world.user("Alice")
        group = world.group(alice)
        post = world.post(alice, group_id=group)
        store.set_vote(db_engine, post, alice, 1, group)
        store.set_vote(db_engine, post, alice, -1, group)
        rows = db_session.scalars(select(Vote).where(Vote.post_id == post)).all()
        assert [(v.user_id, v.vote_value) for v in rows] == [(alice, -1)]

    def test_vote_zero_deletes(self, db_engine, world):
        alice = world.user("Alice")
        post = world.post(alice)
        store.set_vote(db_engine, post, alice, 1)
        store.set_vote(db_engine, post, alice, 0)
        assert store.fetch_votes(db_engine, [post]) == []

    def test_invalid_vote_value(self, db_engine):
        with pytest.raises(StoreError):
            store.set_vote(db_engine, "p", "u", 3)

    def test_remote_failure_is_wrapped(self, db_engine):
        with patch(
            "agora.services.store.get_session",
            side_effect=OperationalError("SELECT", {}, Exception("connection lost")),
        ):
            with pytest.raises(StoreError) as exc:
                store.fetch_likes(db_engine, ["p"])
        assert exc.value.code == "remote"


class TestFollows:
    def test_follow_state(self, db_engine, world):
        alice, bob, carol = world.user("Alice"), world.user("Bob"), world.user("Carol")
        store.set_follow(db_engine, bob, alice, True)
        store.set_follow(db_engine, carol, alice, True)
        store.set_follow(db_engine, alice, bob, True)
        assert store.fetch_follow_state(db_engine, alice, bob) == (2, 1, True)
        store.set_follow(db_engine, bob, alice, False)
        assert store.fetch_follow_state(db_engine, alice, bob) == (1, 1, False)

    def test_cannot_follow_self(self, db_engine, world):
        alice = world.user("Alice")
        with pytest.raises(StoreError):
            store.set_follow(db_engine, alice, alice, True)


class TestMembership:
    def test_request_accept(self, db_engine, world):
        owner, bob = world.user("Owner"), world.user("Bob")
        group = world.group(owner, public=False)
        store.insert_membership(db_engine, group, bob, "pending")
        store.update_membership_status(db_engine, group, bob, expected="pending", status="member")
        assert store.fetch_membership(db_engine, group, bob).status == "member"

    def test_reject_leaves_no_record(self, db_engine, db_session, world):
        owner, bob = world.user("Owner"), world.user("Bob")
        group = world.group(owner, public=False)
        store.insert_membership(db_engine, group, bob, "pending")
        assert store.delete_membership(db_engine, group, bob, expected="pending") == 1
        assert db_session.get(GroupMember, (group, bob)) is None

    def test_delete_guarded_by_expected_status(self, db_engine, world):
        owner, bob = world.user("Owner"), world.user("Bob")
        group = world.group(owner, public=False)
        world.member(group, bob, status="member")
        with pytest.raises(StoreError) as exc:
            store.delete_membership(db_engine, group, bob, expected="pending")
        assert exc.value.code == "not_found"
        assert store.fetch_membership(db_engine, group, bob).status == "member"

    def test_leave_accepts_legacy_admin_status(self, db_engine, world):
        owner, bob = world.user("Owner"), world.user("Bob")
        group = world.group(owner)
        world.member(group, bob, status="admin", role="admin")
        store.delete_membership(db_engine, group, bob, expected=("member", "admin"))
        assert store.fetch_membership(db_engine, group, bob) is None

    def test_second_record_is_conflict(self, db_engine, world):
        owner, bob = world.user("Owner"), world.user("Bob")
        group = world.group(owner)
        store.insert_membership(db_engine, group, bob, "member")
        with pytest.raises(StoreError) as exc:
            store.insert_membership(db_engine, group, bob, "pending")
        assert exc.value.code == "conflict"

    def test_accept_after_cancel_is_not_found(self, db_engine, world):
        owner, bob = world.user("Owner"), world.user("Bob")
        group = world.group(owner, public=False)
        with pytest.raises(StoreError) as exc:
            store.update_membership_status(
                db_engine, group, bob, expected="pending", status="member",
            )
        assert exc.value.code == "not_found"

    def test_members_listed_with_names(self, db_engine, world):
        owner, bob = world.user("Owner"), world.user("Bob")
        group = world.group(owner)
        world.member(group, bob, role="admin")
        [rec] = store.fetch_members(db_engine, group)
        assert (rec.user_id, rec.role, rec.user_name) == (bob, "admin", "Bob")


class TestGrievances:
    def _file(self, db_engine, world):
        reporter = world.user("Reporter")
        g = store.create_grievance(
            db_engine, reporter, title="Fence moved", description="Neighbour moved the fence",
            category="land_dispute",
        )
        return reporter, g

    def test_create_defaults(self, db_engine, world):
        _, g = self._file(db_engine, world)
        assert g.status == "open"
        assert g.priority == "medium"
        assert store.fetch_grievance(db_engine, g.id).title == "Fence moved"

    def test_compare_and_set_update(self, db_engine, world):
        _, g = self._file(db_engine, world)
        updated = store.update_grievance(
            db_engine, g.id, expected_status="open", status="under_review",
        )
        assert updated.status == "under_review"
        with pytest.raises(StoreError) as exc:
            store.update_grievance(db_engine, g.id, expected_status="open", status="dismissed")
        assert exc.value.code == "conflict"

    def test_assign_mediator_writes_note(self, db_engine, db_session, world):
        reporter, g = self._file(db_engine, world)
        mediator = world.user("Mina")
        updated = store.assign_mediator(
            db_engine, g.id, mediator_id=mediator, assigned_by=reporter,
            expected_status="open", status="under_review",
        )
        assert (updated.mediator_id, updated.status) == (mediator, "under_review")
        [note] = db_session.scalars(select(ResolutionNote)).all()
        assert note.note_type == "mediation"
        assert "Mina" in note.content

    def test_notes_and_stances(self, db_engine, world):
        reporter, g = self._file(db_engine, world)
        voter = world.user("Voter")
        store.add_note(db_engine, g.id, reporter, "Photos attached", "note")
        assert [n.content for n in store.fetch_notes(db_engine, g.id)] == ["Photos attached"]
        store.add_stance(db_engine, g.id, voter, "support_reporter")
        assert store.fetch_stances(db_engine, g.id) == [(voter, "support_reporter")]
        with pytest.raises(StoreError) as exc:
            store.add_stance(db_engine, g.id, voter, "neutral")
        assert exc.value.code == "conflict"
