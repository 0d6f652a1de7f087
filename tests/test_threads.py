"""
tests/test_threads.py — Tests for the Thread Builder
=====================================================

Covers nesting and ordering, orphan / self-parent / cycle repair,
duplicate ids, deep chains, and determinism.
"""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

from agora.engine.threads import CommentRecord, build_thread, count_comments, flatten

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def _c(cid: str, minute: int, parent: str | None = None, post: str = "p1") -> CommentRecord:
    return CommentRecord(
        id=cid,
        post_id=post,
        author_id="u1",
        body=f"comment {cid}",
        created_at=T0 + timedelta(minutes=minute),
        parent_id=parent,
    )


def _ids(nodes) -> list[str]:
    return [n.id for n in nodes]


class TestNesting:
    def test_empty_input_is_empty_forest(self):
        assert build_thread([]) == []

    def test_three_roots_one_with_two_replies(self):
        records = [
            _c("b", 2),
            _c("b-2", 6, parent="b"),
            _c("a", 1),
            _c("b-1", 4, parent="b"),
            _c("c", 3),
        ]
        roots = build_thread(records)

        assert _ids(roots) == ["a", "b", "c"]
        b = roots[1]
        assert _ids(b.children) == ["b-1", "b-2"]
        assert all(child.depth == 1 for child in b.children)
        assert roots[0].children == [] and roots[2].children == []

    def test_ties_broken_by_id(self):
        roots = build_thread([_c("z", 5), _c("m", 5), _c("a", 5)])
        assert _ids(roots) == ["a", "m", "z"]

    def test_depth_grows_along_chain(self):
        roots = build_thread([_c("r", 0), _c("x", 1, "r"), _c("y", 2, "x")])
        assert [n.depth for n in flatten(roots)] == [0, 1, 2]

    def test_preorder_flatten(self):
        records = [
            _c("a", 1), _c("a1", 2, "a"), _c("a1x", 3, "a1"),
            _c("b", 4), _c("a2", 5, "a"),
        ]
        assert _ids(flatten(build_thread(records))) == ["a", "a1", "a1x", "a2", "b"]

    def test_naive_timestamps_compare_with_aware(self):
        naive = CommentRecord(
            id="n", post_id="p1", author_id="u", body="", created_at=datetime(2026, 3, 1, 8, 0),
        )
        roots = build_thread([_c("aware", 0), naive])
        assert _ids(roots) == ["n", "aware"]


class TestRepair:
    def test_orphan_becomes_root(self):
        roots = build_thread([_c("a", 1), _c("late", 2, parent="not-loaded-yet")])
        assert _ids(roots) == ["a", "late"]

    def test_orphan_reattaches_once_parent_arrives(self):
        reply = _c("reply", 5, parent="parent")
        assert _ids(build_thread([reply])) == ["reply"]

        roots = build_thread([reply, _c("parent", 1)])
        assert _ids(roots) == ["parent"]
        assert _ids(roots[0].children) == ["reply"]

    def test_self_parent_is_root(self):
        roots = build_thread([_c("a", 1, parent="a")])
        assert _ids(roots) == ["a"]
        assert roots[0].children == []

    def test_parent_on_other_post_is_orphan_root(self):
        roots = build_thread([_c("a", 1, post="p2"), _c("b", 2, parent="a", post="p1")])
        assert _ids(roots) == ["a", "b"]

    def test_two_cycle_breaks_at_earliest(self):
        roots = build_thread([_c("a", 1, parent="b"), _c("b", 2, parent="a")])
        assert _ids(roots) == ["a"]
        assert _ids(roots[0].children) == ["b"]

    def test_long_cycle_with_tail_terminates(self):
        records = [_c(f"n{i}", i, parent=f"n{(i + 1) % 50}") for i in range(50)]
        records.append(_c("tail", 100, parent="n10"))
        roots = build_thread(records)
        flat = flatten(roots)
        assert len(flat) == 51
        assert _ids(roots) == ["n0"]

    def test_duplicate_ids_first_wins(self):
        first = _c("a", 1)
        dup = CommentRecord(
            id="a", post_id="p1", author_id="u2", body="dup", created_at=T0,
        )
        roots = build_thread([first, dup])
        assert len(roots) == 1
        assert roots[0].record.body == "comment a"

    def test_unexpected_error_degrades_to_empty(self):
        broken = [object()]
        assert build_thread(broken) == []  # type: ignore[list-item]


class TestProperties:
    def _random_records(self, rng: random.Random, n: int) -> list[CommentRecord]:
        ids = [f"c{i}" for i in range(n)]
        records = []
        for i, cid in enumerate(ids):
            roll = rng.random()
            if roll < 0.2:
                parent = None
            elif roll < 0.3:
                parent = "missing-" + cid
            elif roll < 0.35:
                parent = cid
            else:
                parent = rng.choice(ids)  # may create cycles
            records.append(_c(cid, rng.randint(0, 20), parent=parent))
        rng.shuffle(records)
        return records

    def test_flatten_preserves_exact_id_set(self):
        rng = random.Random(1234)
        for _ in range(50):
            records = self._random_records(rng, rng.randint(0, 60))
            flat = _ids(flatten(build_thread(records)))
            assert sorted(flat) == sorted(r.id for r in records)
            assert len(flat) == len(set(flat))

    def test_deterministic_regardless_of_input_order(self):
        rng = random.Random(99)
        records = self._random_records(rng, 40)
        expected = [(n.id, n.depth) for n in flatten(build_thread(records))]
        for _ in range(10):
            rng.shuffle(records)
            assert [(n.id, n.depth) for n in flatten(build_thread(records))] == expected

    def test_deep_chain_does_not_overflow(self):
        n = 20_000
        records = [_c("c0", 0)] + [_c(f"c{i}", i, parent=f"c{i - 1}") for i in range(1, n)]
        roots = build_thread(records)
        assert count_comments(roots) == n
        assert flatten(roots)[-1].depth == n - 1

    def test_deep_adversarial_cycle_does_not_overflow(self):
        n = 20_000
        records = [_c(f"c{i}", i, parent=f"c{(i + 1) % n}") for i in range(n)]
        roots = build_thread(records)
        assert count_comments(roots) == n
