import threading

from conftest import ManualScheduler, wait_until
from openkeys.core.scheduling import PlaybackHandle, QtScheduler


def test_qt_scheduler_fires_once () -> None:

    """Callbacks run on the event loop after the delay."""

    scheduler = QtScheduler()
    fired: list[str] = []

    scheduler.call_later(10, lambda: fired.append("a"))
    scheduler.call_later(0, lambda: fired.append("b"))

    assert wait_until(lambda: len(fired) == 2)
    assert fired == ["b", "a"]
    assert scheduler.pending_count() == 0


def test_qt_scheduler_cancel_prevents_callback () -> None:

    scheduler = QtScheduler()
    fired: list[str] = []

    handle = scheduler.call_later(20, lambda: fired.append("late"))
    handle.cancel()
    handle.cancel()
    scheduler.call_later(60, lambda: fired.append("marker"))

    assert wait_until(lambda: "marker" in fired)
    assert fired == ["marker"]


def test_playback_handle_cancel_is_total (scheduler: ManualScheduler) -> None:

    handle = PlaybackHandle()
    fired: list[int] = []
    for delay in (0, 10, 20):
        handle.schedule(scheduler, delay, lambda delay=delay: fired.append(delay))

    scheduler.advance(10)
    handle.cancel()
    scheduler.advance(100)
    handle.schedule(scheduler, 0, lambda: fired.append(-1))
    scheduler.advance(10)

    assert fired == [0, 10]
    assert handle.cancelled
    assert not handle.active


def test_stop_is_an_alias_for_cancel (scheduler: ManualScheduler) -> None:

    handle = PlaybackHandle()
    finished: list[bool] = []
    handle.schedule_finish(scheduler, 5, lambda: finished.append(True))

    handle.stop()
    scheduler.advance(10)

    assert finished == []
    assert not handle.finished


def test_cancel_waits_for_running_callback (scheduler: ManualScheduler) -> None:

    """A cancel issued while a callback runs returns only after it completes."""

    handle = PlaybackHandle()
    entered = threading.Event()
    release = threading.Event()
    order: list[str] = []

    def _slow() -> None:
        entered.set()
        release.wait(2.0)
        order.append("callback")

    handle.schedule(scheduler, 0, _slow)
    runner = threading.Thread(target=lambda: scheduler.advance(0))
    runner.start()
    assert entered.wait(2.0)

    canceller = threading.Thread(target=lambda: (handle.cancel(), order.append("cancelled")))
    canceller.start()
    release.set()
    runner.join(2.0)
    canceller.join(2.0)

    assert order == ["callback", "cancelled"]
