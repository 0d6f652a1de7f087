"""
agora.engine.changefeed — Change Feed Listener (PG LISTEN/NOTIFY)
==================================================================

A trigger on every social table publishes row changes on the
``agora_changes`` channel as JSON::

    {"table": "comments", "type": "INSERT", "new": {...}, "old": null}

A background thread LISTENs on that channel and hands each payload to
:meth:`ChangeFeed.dispatch`, which routes it to the subscriptions whose
filter matches ("INSERT on comments where post_id = X").

Subscriptions never patch view state from the payload.  A matching event
only schedules the subscriber's async ``refresh`` callback, which refetches
ground truth.  Bursts inside the debounce window coalesce into one refetch;
an event arriving while a refetch runs queues exactly one follow-up.
Delivery is at-least-once, and a duplicate only costs one extra refetch.

Subscriptions are handles that must be released (``release()``, or scoped
with ``with`` / ``async with``).  After release, late events and late
refresh results are dropped silently.

Usage::

    feed = ChangeFeed(engine)
    feed.start_listener()

    async with feed.subscribe(
        "comments", column="post_id", value=post_id, refresh=view.refresh_comments,
    ):
        ...
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import select as _select
import threading
from collections.abc import Awaitable, Callable, Iterable, Iterator
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import text

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# The PG channel carrying row-change notifications
NOTIFY_CHANNEL = "agora_changes"

# Tables that carry the change trigger; also the subscription allowlist.
WATCHED_TABLES: frozenset[str] = frozenset({
    "comments",
    "likes",
    "votes",
    "follows",
    "group_members",
    "posts",
    "grievances",
    "resolution_notes",
    "grievance_votes",
})

DEFAULT_DEBOUNCE = 0.25

# NOTIFY payloads are capped at 8000 bytes; oversized rows drop free-text columns.
CHANGE_FUNCTION_SQL = f"""
CREATE OR REPLACE FUNCTION agora_notify_change() RETURNS trigger AS $$
DECLARE
    new_row jsonb := CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE to_jsonb(NEW) END;
    old_row jsonb := CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE to_jsonb(OLD) END;
    payload text;
BEGIN
    payload := jsonb_build_object(
        'table', TG_TABLE_NAME, 'type', TG_OP, 'new', new_row, 'old', old_row
    )::text;
    IF octet_length(payload) > 7900 THEN
        payload := jsonb_build_object(
            'table', TG_TABLE_NAME, 'type', TG_OP,
            'new', new_row - 'content' - 'description',
            'old', old_row - 'content' - 'description'
        )::text;
    END IF;
    PERFORM pg_notify('{NOTIFY_CHANNEL}', payload);
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;
"""


def trigger_statements(tables: Iterable[str] = WATCHED_TABLES) -> Iterator[str]:
    """Yield the DDL that (re)creates the change trigger on *tables*."""
    yield CHANGE_FUNCTION_SQL
    for table in sorted(tables):
        if table not in WATCHED_TABLES:
            raise ValueError(f"Invalid table name for change trigger: '{table}'")
        yield f"DROP TRIGGER IF EXISTS agora_changes_{table} ON {table};"
        yield (
            f"CREATE TRIGGER agora_changes_{table} "
            f"AFTER INSERT OR UPDATE OR DELETE ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION agora_notify_change();"
        )


def install_change_triggers(engine: Engine) -> None:
    """Install the NOTIFY trigger on every watched table (PostgreSQL only)."""
    with engine.begin() as conn:
        for stmt in trigger_statements():
            conn.execute(text(stmt))
    logger.info("Change triggers installed on %d tables", len(WATCHED_TABLES))


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------
class ChangeType(enum.StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """One row-change notification."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    table: str
    type: ChangeType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None

    @property
    def row(self) -> dict[str, Any]:
        """The row the event is about (``old`` for deletes)."""
        return self.new if self.new is not None else (self.old or {})


RefreshCallback = Callable[[], Awaitable[object]]


# ---------------------------------------------------------------------------
# Subscription handle
# ---------------------------------------------------------------------------
class Subscription:
    """A scoped interest in changes to one entity.

    Created by :meth:`ChangeFeed.subscribe`; call :meth:`release` (or use it
    as a context manager) when the consuming view goes away.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        table: str,
        *,
        column: str | None,
        value: Any,
        events: frozenset[ChangeType],
        refresh: RefreshCallback,
        debounce: float,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._feed = feed
        self.table = table
        self.column = column
        self.value = value
        self.events = events
        self.debounce = debounce
        self._refresh = refresh
        self._loop = loop
        self._released = False
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._dirty = False

        self.events_seen = 0
        self.refresh_count = 0

    def __repr__(self) -> str:
        scope = f"{self.column}={self.value}" if self.column else "*"
        return f"<Subscription {self.table}[{scope}] released={self._released}>"

    # -------------------------------------------------------------------
    # Matching + scheduling
    # -------------------------------------------------------------------
    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.type not in self.events:
            return False
        if self.column is None:
            return True
        found = event.row.get(self.column)
        return found is not None and str(found) == str(self.value)

    def notify(self) -> None:
        """Signal a matching event.  Safe to call from any thread."""
        if self._released or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(self._on_event)
        except RuntimeError:
            # Loop shut down between the check and the call.
            logger.debug("%r: event loop gone, dropping event", self)

    def _on_event(self) -> None:
        if self._released:
            return
        self.events_seen += 1
        if self._task is not None and not self._task.done():
            self._dirty = True
            return
        if self._timer is not None:
            return
        self._timer = self._loop.call_later(self.debounce, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._released:
            return
        self._task = self._loop.create_task(self._run())

    async def _run(self) -> None:
        while True:
            self._dirty = False
            try:
                await self._refresh()
                self.refresh_count += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%r: refresh callback failed", self)
            if not self._dirty or self._released:
                break

    async def settle(self) -> None:
        """Wait until no refetch is scheduled or running."""
        while not self._released:
            if self._task is not None and not self._task.done():
                await asyncio.wait({self._task})
            elif self._timer is not None:
                await asyncio.sleep(self.debounce or 0.001)
            else:
                return

    # -------------------------------------------------------------------
    # Release
    # -------------------------------------------------------------------
    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Stop receiving events.  Idempotent."""
        if self._released:
            return
        self._released = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._feed._remove(self)
        logger.debug("%r released", self)

    dispose = release

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.release()


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------
class ChangeFeed:
    """Routes change notifications to entity-scoped subscriptions."""

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        channel: str = NOTIFY_CHANNEL,
        debounce: float = DEFAULT_DEBOUNCE,
    ) -> None:
        self._engine = engine
        self.channel = channel
        self.default_debounce = debounce
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

        self._listener_healthy: bool = False
        self._listener_failed: bool = False
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    # -------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------
    def subscribe(
        self,
        table: str,
        *,
        refresh: RefreshCallback,
        column: str | None = None,
        value: Any = None,
        events: Iterable[ChangeType | str] = (ChangeType.INSERT,),
        debounce: float | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> Subscription:
        """Subscribe *refresh* to changes on *table* (optionally ``column = value``).

        Must be called from the event loop that will run *refresh*, unless
        *loop* is given.
        """
        if table not in WATCHED_TABLES:
            raise ValueError(
                f"Invalid table name for subscription: '{table}'. "
                f"Allowed: {sorted(WATCHED_TABLES)}"
            )
        if column is not None and value is None:
            raise ValueError("A column filter needs a value")
        sub = Subscription(
            self,
            table,
            column=column,
            value=value,
            events=frozenset(ChangeType(e) for e in events),
            refresh=refresh,
            debounce=self.default_debounce if debounce is None else debounce,
            loop=loop or asyncio.get_running_loop(),
        )
        with self._lock:
            self._subscriptions.append(sub)
        logger.debug("Subscribed %r", sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    # -------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------
    def dispatch(self, raw_payload: str) -> int:
        """Parse a NOTIFY payload and signal every matching subscription.

        Returns the number of subscriptions signalled.  Invalid payloads are
        logged and dropped.
        """
        try:
            event = ChangeEvent.model_validate_json(raw_payload)
        except ValidationError:
            logger.warning("Invalid change payload — dropping: %.200s", raw_payload)
            return 0
        return self.publish(event)

    def publish(self, event: ChangeEvent) -> int:
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(event)]
        for sub in targets:
            sub.notify()
        logger.debug(
            "Change %s on %s → %d subscription(s)", event.type, event.table, len(targets),
        )
        return len(targets)

    # -------------------------------------------------------------------
    # LISTEN thread
    # -------------------------------------------------------------------
    @property
    def listener_healthy(self) -> bool:
        """Return True if the LISTEN thread is alive and connected."""
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        """Return True if the listener exhausted reconnect attempts."""
        return self._listener_failed

    def stop_listener(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("PG NOTIFY listener thread stopped")

    def start_listener(self) -> None:
        """Start a background thread that LISTENs on the change channel.

        Uses a raw psycopg2 connection + select() so the asyncio loop is
        never blocked, and reconnects with exponential backoff + jitter.
        """
        import psycopg2

        if self._engine is None:
            raise RuntimeError("ChangeFeed needs an engine to start the listener")

        max_backoff = 60.0
        base_backoff = 1.0
        max_reconnect_attempts = 10

        def _listen_thread() -> None:
            # str(engine.url) masks the password; psycopg2 needs the real one.
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {self.channel};")
                    logger.info("PG LISTEN started on channel '%s'", self.channel)

                    attempt = 0
                    self._listener_healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            try:
                                self.dispatch(notify.payload or "")
                            except Exception:
                                logger.exception(
                                    "Error dispatching NOTIFY on '%s'", notify.channel,
                                )

                except Exception:
                    self._listener_healthy = False
                    attempt += 1

                    if attempt >= max_reconnect_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. Live refresh disabled.",
                            max_reconnect_attempts,
                        )
                        self._listener_failed = True
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). "
                        "Reconnecting in %.1fs…",
                        attempt, max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    self._listener_healthy = False
                    if conn is not None:
                        try:
                            conn.close()
                        except Exception:
                            logger.debug("Error closing LISTEN connection", exc_info=True)

        self._shutdown_event.clear()
        thread = threading.Thread(target=_listen_thread, daemon=True, name="pg-change-listener")
        self._listener_thread = thread
        thread.start()
        logger.info("PG NOTIFY listener thread started")

    def close(self) -> None:
        """Stop the listener and release every subscription."""
        self.stop_listener()
        with self._lock:
            subs = list(self._subscriptions)
        for sub in subs:
            sub.release()
