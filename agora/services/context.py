"""
agora.services.context — Client Context & View Base
====================================================

The "current user" is never ambient state: a :class:`ClientContext` is
built once per client session and handed to every view.  It carries the
viewer id plus the shared collaborators (engine, change feed, notifier).

:class:`EntityView` is the lifecycle shared by all views of one entity
(post, group, profile, grievance):

- ``async with View(ctx, entity_id) as view`` loads ground truth and opens
  the change-feed subscriptions.
- Leaving the block releases every subscription and closes the mutation
  coordinator, so results that land afterwards are no-ops.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from agora.engine.changefeed import ChangeFeed, ChangeType, RefreshCallback, Subscription
from agora.engine.optimistic import MutationCoordinator, PreconditionFailed
from agora.services.notifier import Notifier

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

ALL_CHANGES = (ChangeType.INSERT, ChangeType.UPDATE, ChangeType.DELETE)


@dataclass(frozen=True, slots=True)
class ClientContext:
    """Explicit session handle threaded through every view."""

    engine: Engine
    feed: ChangeFeed
    notifier: Notifier
    viewer_id: str | None = None

    def require_viewer(self, action: str) -> str:
        if self.viewer_id is None:
            raise PreconditionFailed(f"You must be signed in to {action}")
        return self.viewer_id


class EntityView:
    """Base class: one coordinator + a set of scoped subscriptions."""

    kind = "entity"

    def __init__(self, ctx: ClientContext, entity_id: str) -> None:
        self.ctx = ctx
        self.entity_id = entity_id
        self.coordinator = MutationCoordinator(
            ctx.notifier.error, name=f"{self.kind}:{entity_id}"
        )
        self._subscriptions: list[Subscription] = []
        self._refresh_listeners: list[Callable[[EntityView], None]] = []

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    async def load(self) -> None:
        raise NotImplementedError

    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    def _subscribe(
        self,
        table: str,
        column: str | None,
        refresh: RefreshCallback,
        events: Iterable[ChangeType] = ALL_CHANGES,
    ) -> Subscription:
        sub = self.ctx.feed.subscribe(
            table,
            column=column,
            value=None if column is None else self.entity_id,
            events=events,
            refresh=refresh,
        )
        self._subscriptions.append(sub)
        return sub

    async def open(self) -> None:
        """Load ground truth, then start listening for changes."""
        await self.load()
        self._open_subscriptions()

    def _open_subscriptions(self) -> None:
        pass

    def on_refresh(self, callback: Callable[[EntityView], None]) -> None:
        """Register ``callback(view)``, fired after each refetch lands."""
        self._refresh_listeners.append(callback)

    def _refreshed(self) -> None:
        if self.closed:
            return
        for callback in list(self._refresh_listeners):
            try:
                callback(self)
            except Exception:
                logger.exception("%s:%s refresh listener failed", self.kind, self.entity_id)

    @property
    def closed(self) -> bool:
        return self.coordinator.closed

    def close(self) -> None:
        """Release subscriptions and discard any late mutation results."""
        for sub in self._subscriptions:
            sub.release()
        self._subscriptions.clear()
        self._refresh_listeners.clear()
        self.coordinator.close()
        logger.debug("%s:%s view closed", self.kind, self.entity_id)

    async def __aenter__(self):
        try:
            await self.open()
        except BaseException:
            self.close()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()
