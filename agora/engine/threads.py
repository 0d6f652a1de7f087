"""
agora.engine.threads — Thread Builder
======================================

Turns the flat, parent-referencing comment list of one post into a reply
forest.  Records are first placed in an arena indexed by id; a separate
pass derives the parent → children adjacency, so malformed data (dangling
parents, self-references, cycles) is repaired before any node is linked.

Rules:
- ``parent_id is None`` → root.
- Parent missing from the input, or on another post → orphan root.
  Mis-placed nesting is preferred over silently dropping a comment.
- Self-parent → the edge is ignored and the comment becomes a root.
- A parent cycle is broken at the member that sorts first, which becomes
  a root.
- Roots and siblings are ordered by ``(created_at, id)`` ascending.

The builder is pure and iterative: no I/O, no state across calls, and no
recursion, so arbitrarily deep threads cannot overflow the stack.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

__all__ = [
    "CommentNode",
    "CommentRecord",
    "build_thread",
    "count_comments",
    "flatten",
]


@dataclass(frozen=True, slots=True)
class CommentRecord:
    """One row of the ``comments`` table, detached from the ORM."""

    id: str
    post_id: str
    author_id: str
    body: str
    created_at: datetime
    parent_id: str | None = None
    author_name: str | None = None


@dataclass(slots=True)
class CommentNode:
    """A comment plus its replies, oldest first."""

    record: CommentRecord
    depth: int = 0
    children: list[CommentNode] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.record.id


def _sort_key(record: CommentRecord) -> tuple[datetime, str]:
    # SQLite hands back naive datetimes; treat them as UTC so they compare.
    ts = record.created_at
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return (ts, record.id)


def build_thread(records: Iterable[CommentRecord]) -> list[CommentNode]:
    """Build the reply forest for one post.

    Never raises: any unexpected failure is logged and yields an empty
    forest, so a bad payload cannot break the whole view.
    """
    try:
        return _build(records)
    except Exception:
        logger.exception("Thread build failed — degrading to an empty thread")
        return []


def _build(records: Iterable[CommentRecord]) -> list[CommentNode]:
    # 1. Arena: first occurrence of an id wins.
    arena: dict[str, CommentRecord] = {}
    for rec in records:
        if rec.id in arena:
            logger.warning("Duplicate comment id %s in thread input — ignoring", rec.id)
            continue
        arena[rec.id] = rec

    if not arena:
        return []

    # 2. Resolve parent edges.
    parent_of: dict[str, str | None] = {}
    for cid, rec in arena.items():
        pid = rec.parent_id
        if pid is None:
            parent_of[cid] = None
        elif pid == cid:
            logger.warning("Comment %s references itself as parent — treating as root", cid)
            parent_of[cid] = None
        elif pid not in arena:
            logger.debug("Comment %s has unresolved parent %s — orphan root", cid, pid)
            parent_of[cid] = None
        elif arena[pid].post_id != rec.post_id:
            logger.warning(
                "Comment %s (post %s) cites parent %s on post %s — orphan root",
                cid, rec.post_id, pid, arena[pid].post_id,
            )
            parent_of[cid] = None
        else:
            parent_of[cid] = pid

    # 3. Break cycles.  0 = unvisited, 1 = on current path, 2 = done.
    ordered = sorted(arena.values(), key=_sort_key)
    state: dict[str, int] = dict.fromkeys(arena, 0)
    for rec in ordered:
        path: list[str] = []
        cur: str | None = rec.id
        while cur is not None and state[cur] == 0:
            state[cur] = 1
            path.append(cur)
            cur = parent_of[cur]
        if cur is not None and state[cur] == 1:
            cycle = path[path.index(cur):]
            breaker = min(cycle, key=lambda c: _sort_key(arena[c]))
            logger.warning(
                "Parent cycle among comments %s — detaching %s as root",
                cycle, breaker,
            )
            parent_of[breaker] = None
        for cid in path:
            state[cid] = 2

    # 4. Adjacency + linking (ordered iteration keeps siblings sorted).
    nodes = {cid: CommentNode(record=rec) for cid, rec in arena.items()}
    roots: list[CommentNode] = []
    for rec in ordered:
        pid = parent_of[rec.id]
        if pid is None:
            roots.append(nodes[rec.id])
        else:
            nodes[pid].children.append(nodes[rec.id])

    # 5. Depths, breadth-first from the roots.
    frontier = list(roots)
    while frontier:
        nxt: list[CommentNode] = []
        for node in frontier:
            for child in node.children:
                child.depth = node.depth + 1
                nxt.append(child)
        frontier = nxt

    return roots


def flatten(forest: Iterable[CommentNode]) -> list[CommentNode]:
    """Return every node in pre-order (parent before its replies)."""
    out: list[CommentNode] = []
    stack = list(reversed(list(forest)))
    while stack:
        node = stack.pop()
        out.append(node)
        stack.extend(reversed(node.children))
    return out


def count_comments(forest: Iterable[CommentNode]) -> int:
    return len(flatten(forest))
