"""
agora.services.notifier — User-Visible Toast Notifications
===========================================================

Transient success / error / info messages surfaced to the user, e.g.
"Failed to vote" after an optimistic rollback.  Toasts are kept in a
bounded, thread-safe ring buffer and expire after their duration; the
presentation layer polls :meth:`Notifier.active` or registers a listener.

Every toast is also written to the ``agora.toast`` logger so failures are
visible in the logs even when nothing renders them.
"""

from __future__ import annotations

import enum
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger("agora.toast")

DEFAULT_CAPACITY = 50
DEFAULT_DURATION = 5.0


class ToastLevel(enum.StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


_LOG_LEVELS = {
    ToastLevel.SUCCESS: logging.INFO,
    ToastLevel.ERROR: logging.WARNING,
    ToastLevel.INFO: logging.INFO,
}


@dataclass(frozen=True, slots=True)
class Toast:
    id: int
    message: str
    level: ToastLevel
    created_at: float
    duration: float  # seconds; 0 → sticky until dismissed

    def expired(self, now: float) -> bool:
        return self.duration > 0 and now - self.created_at >= self.duration


class Notifier:
    """Bounded toast queue shared by the views of one client session."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        default_duration: float = DEFAULT_DURATION,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._toasts: deque[Toast] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._default_duration = default_duration
        self._clock = clock
        self._listeners: list[Callable[[Toast], None]] = []

    def push(self, message: str, level: ToastLevel, duration: float | None = None) -> int:
        toast = Toast(
            id=next(self._ids),
            message=message,
            level=level,
            created_at=self._clock(),
            duration=self._default_duration if duration is None else duration,
        )
        with self._lock:
            self._toasts.append(toast)
            listeners = list(self._listeners)
        logger.log(_LOG_LEVELS[level], "[%s] %s", level, message)
        for callback in listeners:
            try:
                callback(toast)
            except Exception:
                logger.exception("Toast listener failed")
        return toast.id

    def success(self, message: str, duration: float | None = None) -> int:
        return self.push(message, ToastLevel.SUCCESS, duration)

    def error(self, message: str, duration: float | None = None) -> int:
        return self.push(message, ToastLevel.ERROR, duration)

    def info(self, message: str, duration: float | None = None) -> int:
        return self.push(message, ToastLevel.INFO, duration)

    def dismiss(self, toast_id: int) -> None:
        with self._lock:
            self._toasts = deque(
                (t for t in self._toasts if t.id != toast_id), maxlen=self._toasts.maxlen
            )

    def active(self) -> list[Toast]:
        """Toasts that have not expired yet, oldest first."""
        now = self._clock()
        with self._lock:
            return [t for t in self._toasts if not t.expired(now)]

    def history(self, level: ToastLevel | None = None) -> list[Toast]:
        """Everything still in the buffer, expired or not."""
        with self._lock:
            return [t for t in self._toasts if level is None or t.level == level]

    def add_listener(self, callback: Callable[[Toast], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def clear(self) -> None:
        with self._lock:
            self._toasts.clear()
