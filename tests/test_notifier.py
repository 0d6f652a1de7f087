"""
tests/test_notifier.py — Tests for the Toast Notifier
======================================================
"""

from __future__ import annotations

import logging

from agora.services.notifier import Notifier, ToastLevel


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestNotifier:
    def test_push_and_active(self):
        n = Notifier()
        n.success("Vote recorded")
        n.error("Failed to vote")
        assert [t.message for t in n.active()] == ["Vote recorded", "Failed to vote"]
        assert [t.level for t in n.active()] == [ToastLevel.SUCCESS, ToastLevel.ERROR]

    def test_expiry(self):
        clock = FakeClock()
        n = Notifier(default_duration=5.0, clock=clock)
        n.info("short")
        n.info("sticky", duration=0)
        clock.now += 6
        assert [t.message for t in n.active()] == ["sticky"]
        assert len(n.history()) == 2

    def test_capacity_drops_oldest(self):
        n = Notifier(capacity=3)
        for i in range(5):
            n.info(f"t{i}")
        assert [t.message for t in n.history()] == ["t2", "t3", "t4"]

    def test_dismiss(self):
        n = Notifier()
        keep = n.info("keep")
        drop = n.info("drop")
        n.dismiss(drop)
        assert [t.id for t in n.history()] == [keep]

    def test_history_filter(self):
        n = Notifier()
        n.error("a")
        n.success("b")
        assert [t.message for t in n.history(ToastLevel.ERROR)] == ["a"]

    def test_listener_called_and_failures_contained(self):
        n = Notifier()
        seen = []
        n.add_listener(lambda toast: 1 / 0)
        n.add_listener(seen.append)
        n.error("boom")
        assert [t.message for t in seen] == ["boom"]

    def test_errors_are_logged(self, caplog):
        n = Notifier()
        with caplog.at_level(logging.WARNING, logger="agora.toast"):
            n.error("Failed to like post")
        assert "Failed to like post" in caplog.text

    def test_clear(self):
        n = Notifier()
        n.info("x")
        n.clear()
        assert n.active() == []
