"""
agora.services.store — Remote Data Store Operations
====================================================

Synchronous query and mutation functions over the social tables.  Views
call them through :func:`agora.database.engine.run_db` so the event loop
never blocks.

Every function opens its own session and returns detached, immutable
records (never live ORM objects).  Database errors are translated into a
:class:`StoreError` carrying a short ``code``:

- ``conflict``  — unique / primary-key clash, or a compare-and-set miss
- ``not_found`` — the row to update or delete is gone
- ``invalid``   — the request violates a data-model invariant
- ``remote``    — anything else the database reports

Reactions are written with upsert-by-composite-key, so a repeated vote
never hits the ``conflict`` path.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, delete, func, insert, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from agora.database.engine import get_session
from agora.database.models import (
    Comment,
    Follow,
    Grievance,
    GrievanceVote,
    Group,
    GroupMember,
    Like,
    Post,
    ResolutionNote,
    User,
    Vote,
)
from agora.engine.reactions import ReactionRecord
from agora.engine.threads import CommentRecord

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Structured failure from the remote store."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code

    def __repr__(self) -> str:
        return f"StoreError(code={self.code!r}, message={str(self)!r})"


@contextmanager
def _remote(operation: str) -> Iterator[None]:
    try:
        yield
    except StoreError:
        raise
    except IntegrityError as exc:
        logger.info("Store conflict during %s: %s", operation, exc.orig)
        raise StoreError("conflict", f"{operation}: conflicting row") from exc
    except SQLAlchemyError as exc:
        logger.error("Store failure during %s: %s", operation, exc)
        raise StoreError("remote", f"{operation}: {exc.__class__.__name__}") from exc


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PostRecord:
    id: str
    author_id: str
    content: str
    created_at: datetime
    media_urls: tuple[str, ...] = ()
    group_id: str | None = None
    author_name: str | None = None


@dataclass(frozen=True, slots=True)
class GroupRecord:
    id: str
    name: str
    is_public: bool
    creator_id: str
    description: str | None = None
    invitation_code: str | None = None


@dataclass(frozen=True, slots=True)
class MemberRecord:
    group_id: str
    user_id: str
    status: str
    role: str
    joined_at: datetime | None = None
    user_name: str | None = None


@dataclass(frozen=True, slots=True)
class GrievanceRecord:
    id: str
    reporter_id: str
    title: str
    description: str
    category: str
    priority: str
    status: str
    created_at: datetime
    against_user_id: str | None = None
    group_id: str | None = None
    mediator_id: str | None = None
    location: str | None = None
    evidence_urls: tuple[str, ...] = ()
    resolution_text: str | None = None
    updated_at: datetime | None = None
    resolved_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class NoteRecord:
    id: str
    grievance_id: str
    author_id: str
    content: str
    note_type: str
    created_at: datetime


def _post_record(post: Post, author_name: str | None) -> PostRecord:
    return PostRecord(
        id=post.id,
        author_id=post.user_id,
        content=post.content,
        created_at=post.created_at,
        media_urls=tuple(post.media_urls or ()),
        group_id=post.group_id,
        author_name=author_name,
    )


def _grievance_record(g: Grievance) -> GrievanceRecord:
    return GrievanceRecord(
        id=g.id,
        reporter_id=g.reporter_id,
        title=g.title,
        description=g.description,
        category=g.category,
        priority=g.priority,
        status=g.status,
        created_at=g.created_at,
        against_user_id=g.against_user_id,
        group_id=g.group_id,
        mediator_id=g.mediator_id,
        location=g.location,
        evidence_urls=tuple(g.evidence_urls or ()),
        resolution_text=g.resolution_text,
        updated_at=g.updated_at,
        resolved_at=g.resolved_at,
    )


# ---------------------------------------------------------------------------
# Posts & comments
# ---------------------------------------------------------------------------
def fetch_post(engine: Engine, post_id: str) -> PostRecord | None:
    with _remote("fetch_post"), get_session(engine) as session:
        row = session.execute(
            select(Post, User.name)
            .join(User, User.id == Post.user_id)
            .where(Post.id == post_id)
        ).first()
        if row is None:
            return None
        return _post_record(row[0], row[1])


def fetch_feed(engine: Engine, *, page: int = 0, page_size: int = 10) -> list[PostRecord]:
    """Newest public-feed posts (no group), one page at a time."""
    with _remote("fetch_feed"), get_session(engine) as session:
        rows = session.execute(
            select(Post, User.name)
            .join(User, User.id == Post.user_id)
            .where(Post.group_id.is_(None))
            .order_by(Post.created_at.desc(), Post.id.desc())
            .offset(page * page_size)
            .limit(page_size)
        ).all()
        return [_post_record(p, name) for p, name in rows]


def fetch_group_posts(engine: Engine, group_id: str) -> list[PostRecord]:
    with _remote("fetch_group_posts"), get_session(engine) as session:
        rows = session.execute(
            select(Post, User.name)
            .join(User, User.id == Post.user_id)
            .where(Post.group_id == group_id)
            .order_by(Post.created_at.desc(), Post.id.desc())
        ).all()
        return [_post_record(p, name) for p, name in rows]


def fetch_comments(engine: Engine, post_id: str) -> list[CommentRecord]:
    """All comments of one post, oldest first, with author names."""
    with _remote("fetch_comments"), get_session(engine) as session:
        rows = session.execute(
            select(Comment, User.name)
            .join(User, User.id == Comment.user_id)
            .where(Comment.post_id == post_id)
            .order_by(Comment.created_at, Comment.id)
        ).all()
        return [
            CommentRecord(
                id=c.id,
                post_id=c.post_id,
                author_id=c.user_id,
                body=c.content,
                created_at=c.created_at,
                parent_id=c.parent_id,
                author_name=name,
            )
            for c, name in rows
        ]


def count_comments(engine: Engine, post_ids: Sequence[str]) -> dict[str, int]:
    if not post_ids:
        return {}
    with _remote("count_comments"), get_session(engine) as session:
        rows = session.execute(
            select(Comment.post_id, func.count())
            .where(Comment.post_id.in_(post_ids))
            .group_by(Comment.post_id)
        ).all()
        counts = dict.fromkeys(post_ids, 0)
        counts.update({pid: n for pid, n in rows})
        return counts


def add_comment(
    engine: Engine,
    post_id: str,
    user_id: str,
    content: str,
    parent_id: str | None = None,
) -> CommentRecord:
    """Insert a comment; a parent must be a comment on the same post."""
    content = content.strip()
    if not content:
        raise StoreError("invalid", "Comment body is empty")
    with _remote("add_comment"), get_session(engine) as session:
        if parent_id is not None:
            parent_post = session.scalar(select(Comment.post_id).where(Comment.id == parent_id))
            if parent_post is None:
                raise StoreError("not_found", f"Parent comment {parent_id} does not exist")
            if parent_post != post_id:
                raise StoreError("invalid", "Parent comment belongs to another post")
        comment = Comment(post_id=post_id, user_id=user_id, content=content, parent_id=parent_id)
        session.add(comment)
        session.flush()
        return CommentRecord(
            id=comment.id,
            post_id=comment.post_id,
            author_id=comment.user_id,
            body=comment.content,
            created_at=comment.created_at,
            parent_id=comment.parent_id,
        )


# ---------------------------------------------------------------------------
# Reactions
# ---------------------------------------------------------------------------
def fetch_likes(engine: Engine, post_ids: Iterable[str]) -> list[ReactionRecord]:
    ids = list(post_ids)
    if not ids:
        return []
    with _remote("fetch_likes"), get_session(engine) as session:
        rows = session.execute(
            select(Like.post_id, Like.user_id).where(Like.post_id.in_(ids))
        ).all()
        return [ReactionRecord(post_id=p, user_id=u, value=1) for p, u in rows]


def fetch_votes(engine: Engine, post_ids: Iterable[str]) -> list[ReactionRecord]:
    ids = list(post_ids)
    if not ids:
        return []
    with _remote("fetch_votes"), get_session(engine) as session:
        rows = session.execute(
            select(Vote.post_id, Vote.user_id, Vote.vote_value).where(Vote.post_id.in_(ids))
        ).all()
        return [ReactionRecord(post_id=p, user_id=u, value=v) for p, u, v in rows]


def set_like(engine: Engine, post_id: str, user_id: str, liked: bool) -> int:
    """Insert or delete the viewer's like.  Returns affected rows."""
    with _remote("set_like"), get_session(engine) as session:
        if liked:
            session.execute(insert(Like).values(post_id=post_id, user_id=user_id))
            return 1
        result = session.execute(
            delete(Like).where(Like.post_id == post_id, Like.user_id == user_id)
        )
        return result.rowcount


_UPSERT_VOTE = text("""
    INSERT INTO votes (post_id, user_id, group_id, vote_value)
    VALUES (:post_id, :user_id, :group_id, :value)
    ON CONFLICT (post_id, user_id)
    DO UPDATE SET vote_value = excluded.vote_value
""")


def set_vote(
    engine: Engine,
    post_id: str,
    user_id: str,
    value: int,
    group_id: str | None = None,
) -> int:
    """Upsert the viewer's vote by (post, user); ``value=0`` deletes it."""
    if value not in (-1, 0, 1):
        raise StoreError("invalid", f"Vote value must be -1, 0 or 1, got {value}")
    with _remote("set_vote"), get_session(engine) as session:
        if value == 0:
            result = session.execute(
                delete(Vote).where(Vote.post_id == post_id, Vote.user_id == user_id)
            )
            return result.rowcount
        session.execute(
            _UPSERT_VOTE,
            {"post_id": post_id, "user_id": user_id, "group_id": group_id, "value": value},
        )
        return 1


# ---------------------------------------------------------------------------
# Follows
# ---------------------------------------------------------------------------
def fetch_follow_state(
    engine: Engine, profile_id: str, viewer_id: str | None
) -> tuple[int, int, bool]:
    """Return ``(followers, following, viewer_follows_profile)``."""
    with _remote("fetch_follow_state"), get_session(engine) as session:
        followers = session.scalar(
            select(func.count()).select_from(Follow).where(Follow.following_id == profile_id)
        ) or 0
        following = session.scalar(
            select(func.count()).select_from(Follow).where(Follow.follower_id == profile_id)
        ) or 0
        mine = False
        if viewer_id is not None and viewer_id != profile_id:
            mine = session.get(Follow, (viewer_id, profile_id)) is not None
        return followers, following, mine


def set_follow(engine: Engine, follower_id: str, following_id: str, follow: bool) -> int:
    if follower_id == following_id:
        raise StoreError("invalid", "Users cannot follow themselves")
    with _remote("set_follow"), get_session(engine) as session:
        if follow:
            session.execute(
                insert(Follow).values(follower_id=follower_id, following_id=following_id)
            )
            return 1
        result = session.execute(
            delete(Follow).where(
                Follow.follower_id == follower_id, Follow.following_id == following_id
            )
        )
        return result.rowcount


# ---------------------------------------------------------------------------
# Groups & membership
# ---------------------------------------------------------------------------
def fetch_group(engine: Engine, group_id: str) -> GroupRecord | None:
    with _remote("fetch_group"), get_session(engine) as session:
        g = session.get(Group, group_id)
        if g is None:
            return None
        return GroupRecord(
            id=g.id,
            name=g.name,
            is_public=g.is_public,
            creator_id=g.creator_id,
            description=g.description,
            invitation_code=g.invitation_code,
        )


def fetch_members(engine: Engine, group_id: str) -> list[MemberRecord]:
    with _remote("fetch_members"), get_session(engine) as session:
        rows = session.execute(
            select(GroupMember, User.name)
            .join(User, User.id == GroupMember.user_id)
            .where(GroupMember.group_id == group_id)
            .order_by(GroupMember.joined_at, GroupMember.user_id)
        ).all()
        return [
            MemberRecord(
                group_id=m.group_id,
                user_id=m.user_id,
                status=m.status,
                role=m.role,
                joined_at=m.joined_at,
                user_name=name,
            )
            for m, name in rows
        ]


def fetch_membership(engine: Engine, group_id: str, user_id: str) -> MemberRecord | None:
    with _remote("fetch_membership"), get_session(engine) as session:
        m = session.get(GroupMember, (group_id, user_id))
        if m is None:
            return None
        return MemberRecord(
            group_id=m.group_id, user_id=m.user_id, status=m.status, role=m.role,
            joined_at=m.joined_at,
        )


def insert_membership(engine: Engine, group_id: str, user_id: str, status: str) -> int:
    """Create the (group, user) record.  A second record is a conflict."""
    with _remote("insert_membership"), get_session(engine) as session:
        session.execute(
            insert(GroupMember).values(group_id=group_id, user_id=user_id, status=status)
        )
        return 1


def update_membership_status(
    engine: Engine, group_id: str, user_id: str, *, expected: str, status: str
) -> int:
    """Compare-and-set the status (e.g. ``pending`` → ``member``)."""
    with _remote("update_membership_status"), get_session(engine) as session:
        result = session.execute(
            update(GroupMember)
            .where(
                GroupMember.group_id == group_id,
                GroupMember.user_id == user_id,
                GroupMember.status == expected,
            )
            .values(status=status)
        )
        if result.rowcount == 0:
            raise StoreError("not_found", f"No {expected} membership for user {user_id}")
        return result.rowcount


def delete_membership(
    engine: Engine, group_id: str, user_id: str, *, expected: str | Sequence[str]
) -> int:
    """Hard-delete the record if it is still in the *expected* status.

    Reject, cancel and leave all leave no record.  A row that moved on
    (e.g. accepted by another admin) is left alone and raises ``not_found``.
    """
    statuses = [expected] if isinstance(expected, str) else list(expected)
    with _remote("delete_membership"), get_session(engine) as session:
        result = session.execute(
            delete(GroupMember).where(
                GroupMember.group_id == group_id,
                GroupMember.user_id == user_id,
                GroupMember.status.in_(statuses),
            )
        )
        if result.rowcount == 0:
            raise StoreError(
                "not_found", f"No {'/'.join(statuses)} membership for user {user_id}"
            )
        return result.rowcount


# ---------------------------------------------------------------------------
# Grievances
# ---------------------------------------------------------------------------
def create_grievance(engine: Engine, reporter_id: str, **fields: Any) -> GrievanceRecord:
    with _remote("create_grievance"), get_session(engine) as session:
        g = Grievance(reporter_id=reporter_id, status="open", **fields)
        session.add(g)
        session.flush()
        session.refresh(g)
        return _grievance_record(g)


def fetch_grievance(engine: Engine, grievance_id: str) -> GrievanceRecord | None:
    with _remote("fetch_grievance"), get_session(engine) as session:
        g = session.get(Grievance, grievance_id)
        return _grievance_record(g) if g is not None else None


def update_grievance(
    engine: Engine, grievance_id: str, *, expected_status: str, **fields: Any
) -> GrievanceRecord:
    """Compare-and-set update guarded by the status the caller last saw."""
    with _remote("update_grievance"), get_session(engine) as session:
        result = session.execute(
            update(Grievance)
            .where(Grievance.id == grievance_id, Grievance.status == expected_status)
            .values({"updated_at": datetime.now(UTC), **fields})
        )
        if result.rowcount == 0:
            raise StoreError(
                "conflict", f"Grievance {grievance_id} is no longer {expected_status}"
            )
        g = session.get(Grievance, grievance_id, populate_existing=True)
        return _grievance_record(g)


def assign_mediator(
    engine: Engine,
    grievance_id: str,
    *,
    mediator_id: str,
    assigned_by: str,
    expected_status: str,
    status: str,
) -> GrievanceRecord:
    """Set the mediator and log a ``mediation`` note in one transaction."""
    with _remote("assign_mediator"), get_session(engine) as session:
        mediator = session.get(User, mediator_id)
        if mediator is None:
            raise StoreError("not_found", f"User {mediator_id} does not exist")
        result = session.execute(
            update(Grievance)
            .where(Grievance.id == grievance_id, Grievance.status == expected_status)
            .values(mediator_id=mediator_id, status=status, updated_at=datetime.now(UTC))
        )
        if result.rowcount == 0:
            raise StoreError(
                "conflict", f"Grievance {grievance_id} is no longer {expected_status}"
            )
        session.add(ResolutionNote(
            grievance_id=grievance_id,
            author_id=assigned_by,
            content=f"Mediator assigned: {mediator.name}",
            note_type="mediation",
        ))
        session.flush()
        g = session.get(Grievance, grievance_id, populate_existing=True)
        return _grievance_record(g)


def fetch_notes(engine: Engine, grievance_id: str) -> list[NoteRecord]:
    with _remote("fetch_notes"), get_session(engine) as session:
        notes = session.scalars(
            select(ResolutionNote)
            .where(ResolutionNote.grievance_id == grievance_id)
            .order_by(ResolutionNote.created_at, ResolutionNote.id)
        ).all()
        return [
            NoteRecord(
                id=n.id,
                grievance_id=n.grievance_id,
                author_id=n.author_id,
                content=n.content,
                note_type=n.note_type,
                created_at=n.created_at,
            )
            for n in notes
        ]


def add_note(
    engine: Engine, grievance_id: str, author_id: str, content: str, note_type: str
) -> str:
    content = content.strip()
    if not content:
        raise StoreError("invalid", "Note is empty")
    with _remote("add_note"), get_session(engine) as session:
        note = ResolutionNote(
            grievance_id=grievance_id, author_id=author_id, content=content, note_type=note_type,
        )
        session.add(note)
        session.flush()
        return note.id


def fetch_stances(engine: Engine, grievance_id: str) -> list[tuple[str, str]]:
    with _remote("fetch_stances"), get_session(engine) as session:
        rows = session.execute(
            select(GrievanceVote.user_id, GrievanceVote.vote)
            .where(GrievanceVote.grievance_id == grievance_id)
        ).all()
        return [(u, v) for u, v in rows]


def add_stance(engine: Engine, grievance_id: str, user_id: str, stance: str) -> int:
    """Record a community vote; a second vote by the same user is a conflict."""
    with _remote("add_stance"), get_session(engine) as session:
        session.execute(
            insert(GrievanceVote).values(grievance_id=grievance_id, user_id=user_id, vote=stance)
        )
        return 1
