"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import itertools
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from agora.database.models import Base, Group, GroupMember, Post, User
from agora.engine.changefeed import ChangeFeed
from agora.services.context import ClientContext
from agora.services.notifier import Notifier


_BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def ts(minutes: int) -> datetime:
    """A fixed timestamp *minutes* after the test epoch."""
    return _BASE_TIME + timedelta(minutes=minutes)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Agora tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


class World:
    """Small factory for seeding users, groups and posts."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._clock = itertools.count()

    def _add(self, obj):
        with Session(self.engine, expire_on_commit=False) as session:
            session.add(obj)
            session.commit()
        return obj

    def user(self, name: str) -> str:
        return self._add(User(name=name)).id

    def group(self, creator_id: str, *, public: bool = True, name: str = "Growers") -> str:
        return self._add(Group(name=name, creator_id=creator_id, is_public=public)).id

    def member(self, group_id: str, user_id: str, status: str = "member", role: str = "member"):
        self._add(GroupMember(group_id=group_id, user_id=user_id, status=status, role=role))

    def post(self, author_id: str, content: str = "Hello", group_id: str | None = None) -> str:
        return self._add(Post(
            user_id=author_id, content=content, group_id=group_id,
            created_at=ts(next(self._clock)),
        )).id


@pytest.fixture
def world(db_engine: Engine) -> World:
    return World(db_engine)


@pytest.fixture
def notifier() -> Notifier:
    return Notifier(capacity=20, default_duration=5.0)


@pytest.fixture
def make_ctx(db_engine: Engine, notifier: Notifier):
    """Factory: ``make_ctx(viewer_id)`` → ClientContext on the test engine."""
    feed = ChangeFeed(db_engine, debounce=0.01)

    def _make(viewer_id: str | None = None) -> ClientContext:
        return ClientContext(engine=db_engine, feed=feed, notifier=notifier, viewer_id=viewer_id)

    return _make
