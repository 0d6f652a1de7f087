"""
agora.services.grievance_view — Grievance Detail View State
============================================================

One grievance with its resolution notes and community stance tally.

Status changes and mediator assignment are validated against the
lifecycle in :mod:`agora.engine.grievance` *before* anything changes
locally; an invalid move raises instead of rolling back.  The write is a
compare-and-set on the status the view last saw, so two moderators
racing on the same case cannot both win.

Notes are append-only and accepted in every status, including terminal
ones.  Each community member may cast one stance; the parties to the case
(reporter, respondent, mediator) may not.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from agora.database.engine import run_db
from agora.database.models import NoteType, Stance
from agora.engine.grievance import (
    GrievanceCategory,
    GrievancePriority,
    GrievanceStatus,
    assign_mediator_status,
    ensure_mutable,
    status_update,
)
from agora.engine.optimistic import Mutation, MutationOutcome, PreconditionFailed
from agora.engine.reactions import StanceSummary, aggregate_stances
from agora.services import store
from agora.services.context import ClientContext, EntityView
from agora.services.store import GrievanceRecord, NoteRecord, StoreError

logger = logging.getLogger(__name__)

_STANCE_FIELDS = {
    Stance.SUPPORT_REPORTER: "support_reporter",
    Stance.SUPPORT_RESPONDENT: "support_respondent",
    Stance.NEUTRAL: "neutral",
}


def apply_stance(summary: StanceSummary, target: Stance) -> StanceSummary:
    if summary.current_user_stance == target:
        return summary
    changes: dict[str, Any] = {"current_user_stance": target}
    if summary.current_user_stance is not None:
        field = _STANCE_FIELDS[summary.current_user_stance]
        changes[field] = max(0, getattr(summary, field) - 1)
    field = _STANCE_FIELDS[target]
    changes[field] = changes.get(field, getattr(summary, field)) + 1
    return replace(summary, **changes)


async def file_grievance(
    ctx: ClientContext,
    *,
    title: str,
    description: str,
    category: str = GrievanceCategory.GENERAL,
    priority: str = GrievancePriority.MEDIUM,
    against_user_id: str | None = None,
    group_id: str | None = None,
    location: str | None = None,
    evidence_urls: list[str] | None = None,
) -> GrievanceRecord | None:
    """File a new case in status ``open``.  Returns ``None`` on failure (toast raised)."""
    reporter = ctx.require_viewer("file a grievance")
    if not title.strip() or not description.strip():
        raise ValueError("A grievance needs a title and a description")
    if against_user_id == reporter:
        raise ValueError("You cannot file a grievance against yourself")
    try:
        record = await run_db(
            store.create_grievance,
            ctx.engine,
            reporter,
            title=title.strip(),
            description=description.strip(),
            category=GrievanceCategory(category).value,
            priority=GrievancePriority(priority).value,
            against_user_id=against_user_id,
            group_id=group_id,
            location=location,
            evidence_urls=list(evidence_urls) if evidence_urls else None,
        )
    except StoreError as exc:
        logger.warning("Filing grievance failed: %s", exc)
        ctx.notifier.error("Failed to file grievance")
        return None
    ctx.notifier.success("Grievance filed")
    logger.info("Grievance %s filed by %s", record.id, reporter)
    return record


class GrievanceView(EntityView):
    kind = "grievance"

    def __init__(self, ctx, grievance_id: str) -> None:
        super().__init__(ctx, grievance_id)
        self.notes: list[NoteRecord] = []

    @property
    def grievance_id(self) -> str:
        return self.entity_id

    @property
    def grievance(self) -> GrievanceRecord | None:
        return self.coordinator.get(("grievance", self.grievance_id))

    @property
    def status(self) -> GrievanceStatus:
        return GrievanceStatus(self.grievance.status)

    @property
    def stances(self) -> StanceSummary | None:
        return self.coordinator.get(("stances", self.grievance_id))

    def _is_party(self, user_id: str) -> bool:
        g = self.grievance
        return user_id in (g.reporter_id, g.against_user_id, g.mediator_id)

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    async def load(self) -> None:
        await self.refresh_grievance()
        if self.grievance is None:
            raise LookupError(f"Grievance {self.grievance_id} not found")
        await self.refresh_notes()
        await self.refresh_stances()

    def _open_subscriptions(self) -> None:
        self._subscribe("grievances", "id", self.refresh_grievance)
        self._subscribe("resolution_notes", "grievance_id", self.refresh_notes)
        self._subscribe("grievance_votes", "grievance_id", self.refresh_stances)

    async def refresh_grievance(self) -> None:
        record = await run_db(store.fetch_grievance, self.ctx.engine, self.grievance_id)
        if self.closed or record is None:
            return
        self.coordinator.rebase(("grievance", self.grievance_id), record)
        self._refreshed()

    async def refresh_notes(self) -> None:
        notes = await run_db(store.fetch_notes, self.ctx.engine, self.grievance_id)
        if self.closed:
            return
        self.notes = notes
        self._refreshed()

    async def refresh_stances(self) -> None:
        rows = await run_db(store.fetch_stances, self.ctx.engine, self.grievance_id)
        if self.closed:
            return
        self.coordinator.rebase(
            ("stances", self.grievance_id), aggregate_stances(rows, self.ctx.viewer_id)
        )
        self._refreshed()

    # -------------------------------------------------------------------
    # Lifecycle actions
    # -------------------------------------------------------------------
    async def advance(
        self, status: GrievanceStatus | str, resolution_text: str | None = None
    ) -> MutationOutcome:
        """Move the case forward one step (raises on an invalid move)."""
        self.ctx.require_viewer("update grievances")
        new = GrievanceStatus(status)
        status_update(self.status, new)  # validate before touching local state
        engine, grievance_id = self.ctx.engine, self.grievance_id

        def _resolve(g: GrievanceRecord) -> tuple[str, dict[str, Any]]:
            fields = status_update(
                GrievanceStatus(g.status), new,
                resolution_text=resolution_text, now=datetime.now(UTC),
            )
            return g.status, fields

        outcome = await self.coordinator.submit(Mutation(
            key=("grievance", grievance_id),
            resolve=_resolve,
            apply=lambda g, target: replace(g, **target[1]),
            commit=lambda target: run_db(
                store.update_grievance, engine, grievance_id,
                expected_status=target[0], **target[1],
            ),
            label=f"status→{new}",
            failure_message="Failed to update status",
        ))
        if outcome is MutationOutcome.CONFIRMED:
            self.ctx.notifier.success(f"Status updated to {new.replace('_', ' ')}")
        return outcome

    async def assign_mediator(self, mediator_id: str) -> MutationOutcome:
        """Assign (or reassign) a mediator; an open case moves to review."""
        actor = self.ctx.require_viewer("assign mediators")
        ensure_mutable(self.status)
        if mediator_id in (self.grievance.reporter_id, self.grievance.against_user_id):
            raise PreconditionFailed("A party to the case cannot mediate it")
        engine, grievance_id = self.ctx.engine, self.grievance_id

        def _resolve(g: GrievanceRecord) -> tuple[str, dict[str, Any]]:
            new = assign_mediator_status(GrievanceStatus(g.status))
            return g.status, {"mediator_id": mediator_id, "status": new.value}

        outcome = await self.coordinator.submit(Mutation(
            key=("grievance", grievance_id),
            resolve=_resolve,
            apply=lambda g, target: replace(g, **target[1]),
            commit=lambda target: run_db(
                store.assign_mediator, engine, grievance_id,
                mediator_id=mediator_id, assigned_by=actor,
                expected_status=target[0], status=target[1]["status"],
            ),
            label="assign-mediator",
            failure_message="Failed to assign mediator",
        ))
        if outcome is MutationOutcome.CONFIRMED:
            self.ctx.notifier.success("Mediator assigned")
            await self.refresh_notes()
        return outcome

    # -------------------------------------------------------------------
    # Annotations & stances
    # -------------------------------------------------------------------
    async def add_note(
        self, content: str, note_type: NoteType | str = NoteType.NOTE
    ) -> str | None:
        """Append a resolution note.  Allowed in every status."""
        author = self.ctx.require_viewer("add notes")
        note_type = NoteType(note_type)
        if not content.strip():
            raise ValueError("Note is empty")
        try:
            note_id = await run_db(
                store.add_note, self.ctx.engine, self.grievance_id, author, content, note_type.value
            )
        except StoreError as exc:
            logger.warning("grievance:%s note failed: %s", self.grievance_id, exc)
            if not self.closed:
                self.ctx.notifier.error("Failed to add note")
            return None
        if not self.closed:
            self.ctx.notifier.success("Note added")
            await self.refresh_notes()
        return note_id

    async def cast_stance(self, stance: Stance | str) -> MutationOutcome:
        viewer = self.ctx.require_viewer("vote on cases")
        stance = Stance(stance)
        if self._is_party(viewer):
            raise PreconditionFailed("Parties to the case cannot vote on it")
        if self.stances is not None and self.stances.current_user_stance is not None:
            raise PreconditionFailed("You have already voted on this case")
        engine, grievance_id = self.ctx.engine, self.grievance_id
        outcome = await self.coordinator.submit(Mutation(
            key=("stances", grievance_id),
            resolve=lambda s: stance,
            apply=apply_stance,
            commit=lambda target: run_db(
                store.add_stance, engine, grievance_id, viewer, target.value
            ),
            label="stance",
            failure_message="Failed to vote",
        ))
        if outcome is MutationOutcome.CONFIRMED:
            self.ctx.notifier.success("Vote recorded")
        return outcome
