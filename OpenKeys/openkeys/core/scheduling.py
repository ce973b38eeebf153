from __future__ import annotations

import threading
from typing import Callable, Protocol

from PySide6.QtCore import QObject, QTimer


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle: ...


class _QtTimerHandle:

    def __init__(self, owner: "QtScheduler", timer: QTimer) -> None:
        self._owner = owner
        self._timer: QTimer | None = timer

    def cancel(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is None:
            return
        timer.stop()
        self._owner._discard(timer)

    def _fired(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None:
            self._owner._discard(timer)


class QtScheduler(QObject):
    """Single-shot callbacks on the event loop of the thread owning the scheduler.

    ``call_later`` and ``cancel`` must be called from that thread.
    """

    def __init__(self, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._timers: set[QTimer] = set()

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        timer = QTimer(self)
        timer.setSingleShot(True)
        timer.setInterval(max(0, int(round(float(delay_ms)))))
        handle = _QtTimerHandle(self, timer)

        def _fire() -> None:
            handle._fired()
            callback()

        timer.timeout.connect(_fire)
        self._timers.add(timer)
        timer.start()
        return handle

    def pending_count(self) -> int:
        return len(self._timers)

    def _discard(self, timer: QTimer) -> None:
        if timer in self._timers:
            self._timers.discard(timer)
            timer.deleteLater()


class PlaybackHandle:
    """Cancellation token shared by every timer scheduled for one playback."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._timers: list[TimerHandle] = []
        self._cancelled = False
        self._finished = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._finished)

    def schedule(self, scheduler: Scheduler, delay_ms: float, callback: Callable[[], None]) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._timers.append(scheduler.call_later(delay_ms, lambda: self._run(callback)))

    def schedule_finish(self, scheduler: Scheduler, delay_ms: float, callback: Callable[[], None] | None) -> None:
        def _finish() -> None:
            self._finished = True
            if callback is not None:
                callback()

        self.schedule(scheduler, delay_ms, _finish)

    def mark_finished(self) -> None:
        with self._lock:
            self._finished = True

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            timers = self._timers
            self._timers = []
        for timer in timers:
            timer.cancel()

    # cancel() waits for a running callback; nothing fires after it returns.
    def _run(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if self._cancelled:
                return
            callback()

    stop = cancel
