"""
agora.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- users            — Community member profiles
- posts            — Feed and group posts
- comments         — Threaded comments (nullable parent_id ⇒ top-level)
- likes            — Like-style reactions, one per (post, user)
- votes            — Vote-style reactions (+1 / -1), one per (post, user)
- follows          — Profile follow edges
- groups           — Public or private community groups
- group_members    — Membership / join requests, one per (group, user)
- grievances       — Dispute cases with a forward-only lifecycle
- resolution_notes — Append-only grievance annotations
- grievance_votes  — Community stance on a grievance, one per (grievance, user)
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONList = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Agora ORM models."""


# ---------------------------------------------------------------------------
# Enums (stored as plain strings)
# ---------------------------------------------------------------------------
class MemberStatus(enum.StrEnum):
    """Values of ``group_members.status``.

    ``ADMIN`` is a legacy status written by older clients; it is read as an
    active membership.  Admin privileges come from ``role``.
    """
    PENDING = "pending"
    MEMBER = "member"
    ADMIN = "admin"


class MemberRole(enum.StrEnum):
    MEMBER = "member"
    ADMIN = "admin"


class NoteType(enum.StrEnum):
    """Kinds of grievance annotation."""
    NOTE = "note"
    MEDIATION = "mediation"
    DECISION = "decision"
    ESCALATION = "escalation"


class Stance(enum.StrEnum):
    """Community vote on a grievance."""
    SUPPORT_REPORTER = "support_reporter"
    SUPPORT_RESPONDENT = "support_respondent"
    NEUTRAL = "neutral"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------
class Group(Base):
    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True)
    creator_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    invitation_code: Mapped[str | None] = mapped_column(String(32), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    members: Mapped[list[GroupMember]] = relationship(
        back_populates="group", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Group id={self.id} name={self.name!r} public={self.is_public}>"


class GroupMember(Base):
    """One membership record per (group, user).

    Rejected or cancelled requests are deleted, never kept with a status.
    """
    __tablename__ = "group_members"

    group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MemberStatus.PENDING.value
    )
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MemberRole.MEMBER.value
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    group: Mapped[Group] = relationship(back_populates="members")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'member', 'admin')", name="ck_group_members_status"
        ),
        Index("ix_group_members_user", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<GroupMember group={self.group_id} user={self.user_id} "
            f"status={self.status!r} role={self.role!r}>"
        )


# ---------------------------------------------------------------------------
# Posts & comments
# ---------------------------------------------------------------------------
class Post(Base):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    media_urls: Mapped[list | None] = mapped_column(JSONList, default=None)
    group_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    author: Mapped[User] = relationship()

    __table_args__ = (
        Index("ix_posts_group_time", "group_id", "created_at"),
        Index("ix_posts_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Post id={self.id} author={self.user_id} group={self.group_id}>"


class Comment(Base):
    __tablename__ = "comments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    parent_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("comments.id", ondelete="CASCADE"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    author: Mapped[User] = relationship()

    __table_args__ = (
        Index("ix_comments_post_time", "post_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Comment id={self.id} post={self.post_id} parent={self.parent_id}>"


# ---------------------------------------------------------------------------
# Reactions (composite keys: one reaction per post and user)
# ---------------------------------------------------------------------------
class Like(Base):
    __tablename__ = "likes"

    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Like post={self.post_id} user={self.user_id}>"


class Vote(Base):
    __tablename__ = "votes"

    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    group_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=True
    )
    vote_value: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("vote_value IN (1, -1)", name="ck_votes_value"),
    )

    def __repr__(self) -> str:
        return f"<Vote post={self.post_id} user={self.user_id} value={self.vote_value}>"


class Follow(Base):
    __tablename__ = "follows"

    follower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    following_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_follows_following", "following_id"),
    )

    def __repr__(self) -> str:
        return f"<Follow {self.follower_id} → {self.following_id}>"


# ---------------------------------------------------------------------------
# Grievances
# ---------------------------------------------------------------------------
class Grievance(Base):
    """A dispute case.

    ``status`` only moves forward (see :mod:`agora.engine.grievance`);
    resolved and dismissed cases are retained, never deleted.
    """
    __tablename__ = "grievances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    reporter_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    against_user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    group_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("groups.id", ondelete="SET NULL"), nullable=True
    )
    mediator_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(30), nullable=False, default="general")
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    location: Mapped[str | None] = mapped_column(Text, default=None)
    evidence_urls: Mapped[list | None] = mapped_column(JSONList, default=None)
    resolution_text: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
        onupdate=_utcnow,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    notes: Mapped[list[ResolutionNote]] = relationship(
        back_populates="grievance",
        cascade="all, delete-orphan",
        order_by="ResolutionNote.created_at",
    )

    __table_args__ = (
        Index("ix_grievances_status", "status"),
        Index("ix_grievances_reporter", "reporter_id"),
    )

    def __repr__(self) -> str:
        return f"<Grievance id={self.id} status={self.status!r} priority={self.priority!r}>"


class ResolutionNote(Base):
    """Append-only annotation.  Allowed on terminal grievances too."""
    __tablename__ = "resolution_notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    grievance_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("grievances.id", ondelete="CASCADE"), nullable=False
    )
    author_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    note_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=NoteType.NOTE.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    grievance: Mapped[Grievance] = relationship(back_populates="notes")

    def __repr__(self) -> str:
        return f"<ResolutionNote id={self.id} grievance={self.grievance_id} type={self.note_type!r}>"


class GrievanceVote(Base):
    __tablename__ = "grievance_votes"

    grievance_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("grievances.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    vote: Mapped[str] = mapped_column(String(30), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<GrievanceVote grievance={self.grievance_id} user={self.user_id} vote={self.vote!r}>"
