"""
agora.engine.optimistic — Optimistic Mutation Coordinator
==========================================================

Applies a user action to local view state *before* the remote store
confirms it, then reconciles.  Every mutation follows the same protocol:

  1. Snapshot the current value for the mutation's key (the literal value
     object, not a recomputation).
  2. Resolve the target (toggle rules) and install the new value in one
     synchronous assignment.  Values are immutable summaries, so counts and
     the viewer's own reaction flag always move together.
  3. Await the remote commit.
  4. Success → nothing to do; the optimistic value is authoritative.
  5. Failure → restore the snapshot and raise a user-visible error toast.

Snapshots are taken per call.  A second mutation issued while the first is
in flight snapshots the first one's optimistic value.  If the earlier one
then fails, its snapshot is handed to the next pending mutation on the same
key instead of overwriting the newer state (``SUPERSEDED``).

After a refetch, :meth:`MutationCoordinator.rebase` installs the fresh
ground truth and replays every still-pending mutation on top of it.  Replay
applies resolved *targets* ("vote = -1"), never raw toggles, so replaying a
write the server already reflects is a no-op.

Once :meth:`MutationCoordinator.close` is called (view torn down), results
that arrive later are discarded without touching state or raising toasts.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

__all__ = [
    "Mutation",
    "MutationCoordinator",
    "MutationOutcome",
    "PreconditionFailed",
]


class PreconditionFailed(PermissionError):
    """The viewer may not perform this action (not a member, not an admin …).

    Raised before any optimistic change is made; nothing needs rolling back.
    """


class MutationOutcome(enum.StrEnum):
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    SUPERSEDED = "superseded"   # failed, but a newer mutation owns the state
    DISCARDED = "discarded"     # resolved after teardown


@dataclass(frozen=True, slots=True)
class Mutation:
    """Description of one user action against one keyed value.

    Attributes
    ----------
    key:
        Which local value is touched (e.g. ``("votes", post_id)``).
    resolve:
        ``current value → target`` (toggle semantics live here).
    apply:
        ``(current value, target) → new value``.  Must be idempotent for a
        value that already reflects *target*.
    commit:
        ``target → awaitable`` issuing the remote write.  Raising means the
        write failed.
    """

    key: Hashable
    resolve: Callable[[Any], Any]
    apply: Callable[[Any, Any], Any]
    commit: Callable[[Any], Awaitable[object]]
    label: str = "mutation"
    failure_message: str = "Action failed. Please try again."


@dataclass(slots=True)
class _Pending:
    seq: int
    mutation: Mutation
    target: Any
    snapshot: Any
    # seq of the mutation whose optimistic value ``snapshot`` holds
    based_on: int | None = None


class MutationCoordinator:
    """Keyed local state for one view plus the apply/confirm/rollback protocol.

    Usage::

        coord = MutationCoordinator(notify_error=notifier.error, name="post:42")
        coord.set(("likes", post_id), LikeSummary(count=3))
        outcome = await coord.submit(Mutation(
            key=("likes", post_id),
            resolve=lambda s: resolve_like(s.current_user_has_reacted),
            apply=apply_like,
            commit=lambda target: run_db(store.set_like, engine, post_id, uid, target),
        ))
    """

    def __init__(
        self,
        notify_error: Callable[[str], object] | None = None,
        *,
        name: str = "view",
    ) -> None:
        self.name = name
        self._notify_error = notify_error
        self._state: dict[Hashable, Any] = {}
        self._pending: dict[Hashable, list[_Pending]] = defaultdict(list)
        self._latest_seq: dict[Hashable, int] = {}
        self._seq = 0
        self._closed = False
        self._listeners: list[Callable[[Hashable, Any], None]] = []

    # -------------------------------------------------------------------
    # State access
    # -------------------------------------------------------------------
    def get(self, key: Hashable, default: Any = None) -> Any:
        return self._state.get(key, default)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._state

    def set(self, key: Hashable, value: Any) -> None:
        """Install a value directly (initial load).  Pending mutations are untouched."""
        if self._closed:
            return
        self._install(key, value)

    def discard(self, key: Hashable) -> None:
        """Forget *key* (its entity left the view)."""
        self._state.pop(key, None)

    def pending_count(self, key: Hashable | None = None) -> int:
        if key is None:
            return sum(len(v) for v in self._pending.values())
        return len(self._pending.get(key, ()))

    def pending_keys(self) -> list[Hashable]:
        return [k for k, v in self._pending.items() if v]

    def on_change(self, callback: Callable[[Hashable, Any], None]) -> None:
        """Register ``callback(key, value)`` fired after every state change."""
        self._listeners.append(callback)

    @property
    def closed(self) -> bool:
        return self._closed

    # -------------------------------------------------------------------
    # Mutation protocol
    # -------------------------------------------------------------------
    async def submit(self, mutation: Mutation) -> MutationOutcome:
        """Apply *mutation* optimistically, commit it, reconcile the result."""
        if self._closed:
            raise RuntimeError(f"Coordinator {self.name} is closed")
        key = mutation.key
        if key not in self._state:
            raise KeyError(f"No local state for {key!r} in {self.name}")

        snapshot = self._state[key]
        target = mutation.resolve(snapshot)
        self._seq += 1
        entry = _Pending(
            seq=self._seq,
            mutation=mutation,
            target=target,
            snapshot=snapshot,
            based_on=self._latest_seq.get(key),
        )
        self._pending[key].append(entry)
        self._latest_seq[key] = entry.seq
        self._install(key, mutation.apply(snapshot, target))
        logger.debug(
            "%s: %s #%d applied optimistically (target=%r)",
            self.name, mutation.label, entry.seq, target,
        )

        try:
            await mutation.commit(target)
        except asyncio.CancelledError:
            self._fail(entry, notify=False)
            raise
        except Exception as exc:
            logger.warning(
                "%s: %s #%d failed remotely: %s", self.name, mutation.label, entry.seq, exc,
            )
            return self._fail(entry, notify=True)
        return self._confirm(entry)

    def rebase(self, key: Hashable, fresh: Any) -> Any:
        """Install refetched ground truth and replay pending mutations on top.

        Returns the value now held for *key*.
        """
        if self._closed:
            return fresh
        value = fresh
        based_on: int | None = None
        for entry in self._pending.get(key, ()):
            entry.snapshot = value
            entry.based_on = based_on
            value = entry.mutation.apply(value, entry.target)
            based_on = entry.seq
        if self._pending.get(key):
            logger.debug(
                "%s: replayed %d pending mutation(s) on refreshed %r",
                self.name, len(self._pending[key]), key,
            )
        self._install(key, value)
        return value

    def close(self) -> None:
        """Tear down: later results become no-ops."""
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        logger.debug("%s: coordinator closed with %d pending", self.name, self.pending_count())

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _remove(self, entry: _Pending) -> list[_Pending]:
        entries = self._pending[entry.mutation.key]
        entries.remove(entry)
        return entries

    def _confirm(self, entry: _Pending) -> MutationOutcome:
        self._remove(entry)
        if self._closed:
            return MutationOutcome.DISCARDED
        logger.debug("%s: %s #%d confirmed", self.name, entry.mutation.label, entry.seq)
        return MutationOutcome.CONFIRMED

    def _fail(self, entry: _Pending, *, notify: bool) -> MutationOutcome:
        key = entry.mutation.key
        remaining = self._remove(entry)
        if self._closed:
            logger.debug(
                "%s: dropping failure of %s #%d after teardown",
                self.name, entry.mutation.label, entry.seq,
            )
            return MutationOutcome.DISCARDED

        if notify and self._notify_error is not None:
            self._notify_error(entry.mutation.failure_message)

        if self._latest_seq.get(key) == entry.seq:
            # The value now shown is the predecessor's, so it becomes the latest.
            self._install(key, entry.snapshot)
            if entry.based_on is None:
                self._latest_seq.pop(key, None)
            else:
                self._latest_seq[key] = entry.based_on
            return MutationOutcome.ROLLED_BACK

        # A newer mutation was layered on top of this one's optimistic value.
        # If that successor is still pending, it inherits this snapshot; if it
        # already confirmed, its value stands.
        for later in remaining:
            if later.based_on == entry.seq:
                later.snapshot = entry.snapshot
                later.based_on = entry.based_on
                break
        return MutationOutcome.SUPERSEDED

    def _install(self, key: Hashable, value: Any) -> None:
        self._state[key] = value
        for callback in list(self._listeners):
            try:
                callback(key, value)
            except Exception:
                logger.exception("%s: state listener failed for %r", self.name, key)
