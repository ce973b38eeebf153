from __future__ import annotations

import time
import typing

import mido
import pytest
from PySide6.QtCore import QCoreApplication, QEventLoop

from openkeys.core.midi_input import Device, MidiBackendError


class ManualTimer:

    """Timer handle returned by :class:`ManualScheduler`."""

    def __init__(self, due: float, seq: int, callback: typing.Callable[[], None]) -> None:
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:

    """Scheduler driven by hand: timers only fire inside ``advance``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.requested_delays: list[float] = []
        self._timers: list[ManualTimer] = []
        self._seq = 0

    def call_later(self, delay_ms: float, callback: typing.Callable[[], None]) -> ManualTimer:
        self._seq += 1
        self.requested_delays.append(float(delay_ms))
        timer = ManualTimer(self.now + float(delay_ms), self._seq, callback)
        self._timers.append(timer)
        return timer

    def pending(self) -> list[ManualTimer]:
        return [timer for timer in self._timers if not timer.cancelled and not timer.fired]

    def advance(self, milliseconds: float) -> None:
        target = self.now + float(milliseconds)
        while True:
            due = [timer for timer in self.pending() if timer.due <= target]
            if not due:
                break
            timer = min(due, key=lambda item: (item.due, item.seq))
            self.now = max(self.now, timer.due)
            timer.fired = True
            timer.callback()
        self.now = target


class FakeClock:

    """Settable millisecond clock."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now


class FakePort:

    """Open device port that lets tests inject incoming messages."""

    def __init__(self, device: Device, callback: typing.Callable[[typing.Any], None]) -> None:
        self.device = device
        self.callback = callback
        self.closed = False

    def inject(self, message: typing.Any) -> None:
        if not self.closed:
            self.callback(message)

    def close(self) -> None:
        self.closed = True


class FakeBackend:

    """In-memory device backend with scriptable failures."""

    def __init__(self, names: typing.Iterable[str] = ("Keys A",)) -> None:
        self.devices = [Device(id=name, name=name) for name in names]
        self.probe_error: Exception | None = None
        self.list_error: Exception | None = None
        self.failing: set[str] = set()
        self.open_calls: list[str] = []
        self.ports: list[FakePort] = []

    def probe(self) -> None:
        if self.probe_error is not None:
            raise self.probe_error

    def list_input_devices(self) -> list[Device]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.devices)

    def open_port(self, device: Device, callback: typing.Callable[[typing.Any], None]) -> FakePort:
        self.open_calls.append(device.id)
        if device.id in self.failing:
            raise MidiBackendError(f"MIDI input connection to '{device.name}' failed: device busy")
        port = FakePort(device, callback)
        self.ports.append(port)
        return port

    def port_for(self, device_id: str) -> FakePort:
        return [port for port in self.ports if port.device.id == device_id][-1]


class DeferredSpawn:

    """Spawn replacement that holds work until ``run_all``."""

    def __init__(self) -> None:
        self.jobs: list[typing.Callable[[], None]] = []

    def __call__(self, target: typing.Callable[[], None]) -> None:
        self.jobs.append(target)

    def run_all(self) -> None:
        jobs = self.jobs
        self.jobs = []
        for job in jobs:
            job()


def run_inline(target: typing.Callable[[], None]) -> None:

    """Spawn replacement that runs worker bodies on the calling thread."""

    target()


def wait_until(predicate: typing.Callable[[], bool], timeout: float = 2.0) -> bool:

    """Pump the Qt event loop until ``predicate`` holds or the timeout passes."""

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        QCoreApplication.processEvents(QEventLoop.ProcessEventsFlag.AllEvents, 20)
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture(scope="session", autouse=True)
def qapp() -> QCoreApplication:
    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication([])
    return app


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1000.0)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend(("Keys A", "Keys B", "Keys C"))


class FakeMidiIn:

    """Minimal mido input stub for tests."""

    def __init__(self, callback: typing.Optional[typing.Callable] = None) -> None:
        self.callback = callback
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def inject(self, message: mido.Message) -> None:

        """Simulate receiving a MIDI message by calling the stored callback."""

        if self.callback is not None:
            self.callback(message)


_current_fake_input: typing.Optional[FakeMidiIn] = None


def current_fake_input() -> typing.Optional[FakeMidiIn]:
    return _current_fake_input


def _fake_get_input_names() -> list[str]:
    return ["Dummy MIDI", "Dummy MIDI"]


def _fake_open_input(name: str, callback: typing.Optional[typing.Callable] = None) -> FakeMidiIn:
    global _current_fake_input
    fake = FakeMidiIn(callback=callback)
    _current_fake_input = fake
    return fake


@pytest.fixture
def patch_midi(monkeypatch: pytest.MonkeyPatch) -> None:

    """Patch mido so device enumeration and port opening never touch real hardware."""

    monkeypatch.setattr(mido, "get_input_names", _fake_get_input_names)
    monkeypatch.setattr(mido, "open_input", _fake_open_input)
