"""
tests/test_changefeed.py — Tests for the Change Feed Listener
==============================================================

Exercises payload parsing, entity-scoped routing, burst coalescing,
release semantics and the trigger DDL allowlist.  The PG LISTEN thread
itself is not started; payloads are fed straight into ``dispatch``.
"""

from __future__ import annotations

import asyncio
import json
import threading
from unittest.mock import MagicMock, patch

import pytest

from agora.engine.changefeed import (
    ChangeEvent,
    ChangeFeed,
    ChangeType,
    WATCHED_TABLES,
    trigger_statements,
)


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.get_event_loop_policy().new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _payload(table: str = "comments", type_: str = "INSERT", **row) -> str:
    return json.dumps({"table": table, "type": type_, "new": row or None, "old": None})


class Counter:
    def __init__(self) -> None:
        self.calls = 0

    async def refresh(self) -> None:
        self.calls += 1


class TestChangeEvent:
    def test_parse(self):
        event = ChangeEvent.model_validate_json(_payload(post_id="p1", id="c1"))
        assert event.type is ChangeType.INSERT
        assert event.row == {"post_id": "p1", "id": "c1"}

    def test_delete_row_comes_from_old(self):
        raw = json.dumps({"table": "likes", "type": "DELETE", "new": None, "old": {"post_id": "p"}})
        assert ChangeEvent.model_validate_json(raw).row == {"post_id": "p"}


class TestRouting:
    def test_dispatch_signals_only_matching_entity(self):
        async def _run():
            feed = ChangeFeed(debounce=0)
            mine, other = Counter(), Counter()
            sub = feed.subscribe("comments", column="post_id", value="p1", refresh=mine.refresh)
            feed.subscribe("comments", column="post_id", value="p2", refresh=other.refresh)
            hits = feed.dispatch(_payload(post_id="p1"))
            await asyncio.sleep(0.01)
            await sub.settle()
            return hits, mine.calls, other.calls

        assert run_async(_run()) == (1, 1, 0)

    def test_event_type_filter(self):
        async def _run():
            feed = ChangeFeed(debounce=0)
            c = Counter()
            feed.subscribe("comments", column="post_id", value="p1", refresh=c.refresh)
            return feed.dispatch(_payload(type_="DELETE", post_id="p1"))

        assert run_async(_run()) == 0

    def test_value_compared_as_string(self):
        async def _run():
            feed = ChangeFeed(debounce=0)
            feed.subscribe("votes", column="group_id", value=42, refresh=Counter().refresh)
            return feed.dispatch(_payload(table="votes", group_id="42"))

        assert run_async(_run()) == 1

    @pytest.mark.parametrize(
        "raw",
        ["not json", json.dumps({"table": "comments"}), json.dumps({"type": "BOGUS", "table": "x"})],
    )
    def test_invalid_payload_dropped(self, raw):
        feed = ChangeFeed()
        assert feed.dispatch(raw) == 0

    def test_unknown_table_rejected(self):
        async def _run():
            ChangeFeed().subscribe("users; DROP TABLE users", refresh=Counter().refresh)

        with pytest.raises(ValueError, match="Invalid table name"):
            run_async(_run())

    def test_column_filter_needs_value(self):
        async def _run():
            ChangeFeed().subscribe("comments", column="post_id", refresh=Counter().refresh)

        with pytest.raises(ValueError):
            run_async(_run())


class TestCoalescing:
    def test_burst_coalesces_into_one_refresh(self):
        async def _run():
            feed = ChangeFeed(debounce=0.05)
            c = Counter()
            sub = feed.subscribe("comments", column="post_id", value="p1", refresh=c.refresh)
            for _ in range(10):
                feed.dispatch(_payload(post_id="p1"))
            await asyncio.sleep(0.01)
            await sub.settle()
            return c.calls, sub.events_seen

        assert run_async(_run()) == (1, 10)

    def test_event_during_refresh_queues_exactly_one_followup(self):
        async def _run():
            feed = ChangeFeed(debounce=0)
            gate = asyncio.Event()
            calls = []

            async def slow_refresh():
                calls.append(len(calls))
                if len(calls) == 1:
                    await gate.wait()

            sub = feed.subscribe("comments", column="post_id", value="p1", refresh=slow_refresh)
            feed.dispatch(_payload(post_id="p1"))
            await asyncio.sleep(0.01)
            assert len(calls) == 1  # first refresh in progress
            for _ in range(5):
                feed.dispatch(_payload(post_id="p1"))
            await asyncio.sleep(0.01)
            gate.set()
            await sub.settle()
            return len(calls)

        assert run_async(_run()) == 2

    def test_refresh_exception_is_contained(self):
        async def _run():
            feed = ChangeFeed(debounce=0)
            boom = MagicMock(side_effect=RuntimeError("fetch failed"))

            async def refresh():
                boom()

            sub = feed.subscribe("comments", column="post_id", value="p1", refresh=refresh)
            feed.dispatch(_payload(post_id="p1"))
            await asyncio.sleep(0.01)
            await sub.settle()
            feed.dispatch(_payload(post_id="p1"))
            await asyncio.sleep(0.01)
            await sub.settle()
            return boom.call_count

        assert run_async(_run()) == 2

    def test_dispatch_from_listener_thread(self):
        async def _run():
            feed = ChangeFeed(debounce=0)
            c = Counter()
            sub = feed.subscribe("comments", column="post_id", value="p1", refresh=c.refresh)
            t = threading.Thread(target=feed.dispatch, args=(_payload(post_id="p1"),))
            t.start()
            t.join()
            await asyncio.sleep(0.02)
            await sub.settle()
            return c.calls

        assert run_async(_run()) == 1


class TestRelease:
    def test_released_subscription_gets_nothing(self):
        async def _run():
            feed = ChangeFeed(debounce=0)
            c = Counter()
            sub = feed.subscribe("comments", column="post_id", value="p1", refresh=c.refresh)
            sub.release()
            sub.release()  # idempotent
            hits = feed.dispatch(_payload(post_id="p1"))
            await asyncio.sleep(0.01)
            return hits, c.calls, sub.released, feed.subscription_count

        assert run_async(_run()) == (0, 0, True, 0)

    def test_release_cancels_scheduled_refresh(self):
        async def _run():
            feed = ChangeFeed(debounce=0.05)
            c = Counter()
            sub = feed.subscribe("comments", column="post_id", value="p1", refresh=c.refresh)
            feed.dispatch(_payload(post_id="p1"))
            await asyncio.sleep(0.01)
            sub.release()
            await asyncio.sleep(0.08)
            return c.calls

        assert run_async(_run()) == 0

    def test_scoped_subscription(self):
        async def _run():
            feed = ChangeFeed(debounce=0)
            async with feed.subscribe(
                "comments", column="post_id", value="p1", refresh=Counter().refresh,
            ) as sub:
                inside = feed.subscription_count
            return inside, feed.subscription_count, sub.released

        assert run_async(_run()) == (1, 0, True)

    def test_close_releases_everything(self):
        async def _run():
            feed = ChangeFeed(debounce=0)
            subs = [
                feed.subscribe("comments", column="post_id", value=f"p{i}", refresh=Counter().refresh)
                for i in range(3)
            ]
            feed.close()
            return [s.released for s in subs], feed.subscription_count

        assert run_async(_run()) == ([True, True, True], 0)


class TestTriggers:
    def test_statements_cover_every_watched_table(self):
        stmts = list(trigger_statements())
        assert "agora_notify_change" in stmts[0]
        for table in WATCHED_TABLES:
            assert any(f"ON {table} " in s and "CREATE TRIGGER" in s for s in stmts)

    def test_rejects_unknown_table(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            list(trigger_statements(["comments", "pg_authid"]))


class TestListener:
    def test_start_without_engine_raises(self):
        with patch.dict("sys.modules", {"psycopg2": MagicMock()}):
            with pytest.raises(RuntimeError):
                ChangeFeed().start_listener()

    def test_listener_gives_up_after_retries(self):
        engine = MagicMock()
        engine.url.render_as_string.return_value = "postgresql+psycopg2://u:p@h/db"
        fake_pg = MagicMock()
        fake_pg.connect.side_effect = ConnectionError("refused")
        feed = ChangeFeed(engine)
        with patch.dict("sys.modules", {"psycopg2": fake_pg}), \
                patch("agora.engine.changefeed.random.uniform", return_value=0), \
                patch.object(feed._shutdown_event, "wait", return_value=False):
            feed.start_listener()
            feed._listener_thread.join(timeout=5)
        assert feed.listener_failed
        assert not feed.listener_healthy
        assert fake_pg.connect.call_count == 10
