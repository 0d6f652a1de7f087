"""Initial social schema and change-notification triggers

Revision ID: 4c1e7a2b9d30
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from agora.engine.changefeed import WATCHED_TABLES, trigger_statements

# revision identifiers, used by Alembic.
revision = "4c1e7a2b9d30"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _id(name: str = "id", **kw) -> sa.Column:
    return sa.Column(name, sa.String(36), **kw)


def _fk(name: str, target: str, *, ondelete: str = "CASCADE", **kw) -> sa.Column:
    return sa.Column(name, sa.String(36), sa.ForeignKey(target, ondelete=ondelete), **kw)


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "users",
        _id(primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_table(
        "groups",
        _id(primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_public", sa.Boolean(), server_default="true"),
        _fk("creator_id", "users.id", nullable=False),
        sa.Column("invitation_code", sa.String(32), nullable=True),
        _created_at(),
    )
    op.create_table(
        "group_members",
        _fk("group_id", "groups.id", primary_key=True),
        _fk("user_id", "users.id", primary_key=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("role", sa.String(20), nullable=False, server_default="member"),
        _created_at("joined_at"),
        sa.CheckConstraint(
            "status IN ('pending', 'member', 'admin')", name="ck_group_members_status"
        ),
    )
    op.create_index("ix_group_members_user", "group_members", ["user_id"])

    op.create_table(
        "posts",
        _id(primary_key=True),
        _fk("user_id", "users.id", nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("media_urls", _JSON, nullable=True),
        _fk("group_id", "groups.id", nullable=True),
        _created_at(),
    )
    op.create_index("ix_posts_group_time", "posts", ["group_id", "created_at"])
    op.create_index("ix_posts_created_at", "posts", ["created_at"])

    op.create_table(
        "comments",
        _id(primary_key=True),
        _fk("post_id", "posts.id", nullable=False),
        _fk("user_id", "users.id", nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        _fk("parent_id", "comments.id", nullable=True),
        _created_at(),
    )
    op.create_index("ix_comments_post_time", "comments", ["post_id", "created_at"])

    op.create_table(
        "likes",
        _fk("post_id", "posts.id", primary_key=True),
        _fk("user_id", "users.id", primary_key=True),
        _created_at(),
    )
    op.create_table(
        "votes",
        _fk("post_id", "posts.id", primary_key=True),
        _fk("user_id", "users.id", primary_key=True),
        _fk("group_id", "groups.id", nullable=True),
        sa.Column("vote_value", sa.Integer(), nullable=False),
        sa.CheckConstraint("vote_value IN (1, -1)", name="ck_votes_value"),
    )
    op.create_table(
        "follows",
        _fk("follower_id", "users.id", primary_key=True),
        _fk("following_id", "users.id", primary_key=True),
        _created_at(),
    )
    op.create_index("ix_follows_following", "follows", ["following_id"])

    op.create_table(
        "grievances",
        _id(primary_key=True),
        _fk("reporter_id", "users.id", nullable=False),
        _fk("against_user_id", "users.id", ondelete="SET NULL", nullable=True),
        _fk("group_id", "groups.id", ondelete="SET NULL", nullable=True),
        _fk("mediator_id", "users.id", ondelete="SET NULL", nullable=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", sa.String(30), nullable=False, server_default="general"),
        sa.Column("priority", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("evidence_urls", _JSON, nullable=True),
        sa.Column("resolution_text", sa.Text(), nullable=True),
        _created_at(),
        _created_at("updated_at"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_grievances_status", "grievances", ["status"])
    op.create_index("ix_grievances_reporter", "grievances", ["reporter_id"])

    op.create_table(
        "resolution_notes",
        _id(primary_key=True),
        _fk("grievance_id", "grievances.id", nullable=False),
        _fk("author_id", "users.id", nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("note_type", sa.String(20), nullable=False, server_default="note"),
        _created_at(),
    )
    op.create_table(
        "grievance_votes",
        _fk("grievance_id", "grievances.id", primary_key=True),
        _fk("user_id", "users.id", primary_key=True),
        sa.Column("vote", sa.String(30), nullable=False),
        _created_at(),
    )

    # Row-change NOTIFY trigger on every watched table
    if op.get_bind().dialect.name == "postgresql":
        for stmt in trigger_statements():
            op.execute(stmt)


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        for table in sorted(WATCHED_TABLES):
            op.execute(f"DROP TRIGGER IF EXISTS agora_changes_{table} ON {table}")
        op.execute("DROP FUNCTION IF EXISTS agora_notify_change()")

    for table in (
        "grievance_votes",
        "resolution_notes",
        "grievances",
        "follows",
        "votes",
        "likes",
        "comments",
        "posts",
        "group_members",
        "groups",
        "users",
    ):
        op.drop_table(table)
