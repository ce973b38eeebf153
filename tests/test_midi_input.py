import mido
import pytest

import conftest
import openkeys.core.midi_input
from conftest import wait_until
from openkeys.core.midi_input import Device, MidiBackendError, MidiInputBackend


@pytest.mark.parametrize(
    ("text", "code"),
    [
        ("Permission denied by the OS", "permission_denied"),
        ("MIDI input is not supported: no backend", "not_supported"),
        ("MIDI input device 'x' not found", "device_not_found"),
        ("MIDI input connection to 'x' failed", "connection_failed"),
        ("something odd", "unknown"),
        ("", "unknown"),
    ],
)
def test_classify_error (text: str, code: str) -> None:

    assert openkeys.core.midi_input.classify_error(text) == code


def test_error_info_falls_back_on_empty_message () -> None:

    info = openkeys.core.midi_input.error_info(None, fallback="Failed to connect to MIDI device")

    assert info.message == "Failed to connect to MIDI device"
    assert info.code == "unknown"


def test_probe_and_list_deduplicate_names (patch_midi: None) -> None:

    """Duplicate port names collapse into one device."""

    backend = MidiInputBackend()
    backend.probe()

    assert backend.available
    assert backend.list_input_devices() == [Device(id="Dummy MIDI", name="Dummy MIDI")]


def test_list_before_probe_raises () -> None:

    with pytest.raises(MidiBackendError):
        MidiInputBackend().list_input_devices()


def test_open_port_delivers_callback_messages (patch_midi: None) -> None:

    backend = MidiInputBackend()
    backend.probe()
    received: list[mido.Message] = []

    port = backend.open_port(Device("Dummy MIDI", "Dummy MIDI"), received.append)
    conftest.current_fake_input().inject(mido.Message("note_on", note=60, velocity=90))
    port.close()

    assert [message.note for message in received] == [60]
    assert port.closed
    assert conftest.current_fake_input().closed


def test_missing_backend_module_is_not_supported () -> None:

    backend = MidiInputBackend(module_name="openkeys_no_such_midi_backend")

    with pytest.raises(MidiBackendError) as excinfo:
        backend.probe()

    assert openkeys.core.midi_input.classify_error(excinfo.value) == "not_supported"
    assert not backend.available
    assert "not supported" in backend.backend_error()


def test_missing_rtmidi_suggests_install (monkeypatch: pytest.MonkeyPatch) -> None:

    def _no_rtmidi() -> list[str]:
        raise ModuleNotFoundError("No module named 'rtmidi'", name="rtmidi")

    monkeypatch.setattr(mido, "get_input_names", _no_rtmidi)

    with pytest.raises(MidiBackendError, match="python-rtmidi"):
        MidiInputBackend().probe()


def test_open_failure_is_wrapped (patch_midi: None, monkeypatch: pytest.MonkeyPatch) -> None:

    backend = MidiInputBackend()
    backend.probe()

    def _refuse(name: str, callback=None):
        raise OSError("device busy")

    monkeypatch.setattr(mido, "open_input", _refuse)

    with pytest.raises(MidiBackendError) as excinfo:
        backend.open_port(Device("Dummy MIDI", "Dummy MIDI"), lambda message: None)

    assert "MIDI input connection to 'Dummy MIDI' failed" in str(excinfo.value)
    assert openkeys.core.midi_input.classify_error(excinfo.value) == "connection_failed"


class _PollOnlyPort:

    """Port that refuses callbacks and hands out queued messages when polled."""

    def __init__(self) -> None:
        self.pending = [mido.Message("note_on", note=62, velocity=40)]
        self.closed = False

    def iter_pending(self):
        messages, self.pending = self.pending, []
        return iter(messages)

    def close(self) -> None:
        self.closed = True


def test_ports_without_callbacks_are_polled (patch_midi: None, monkeypatch: pytest.MonkeyPatch) -> None:

    """When opening with a callback fails the port is polled instead."""

    raw_port = _PollOnlyPort()

    def _open(name: str, callback=None):
        if callback is not None:
            raise TypeError("callbacks are not supported by this port")
        return raw_port

    monkeypatch.setattr(mido, "open_input", _open)
    backend = MidiInputBackend()
    backend.probe()
    received: list[mido.Message] = []

    port = backend.open_port(Device("Dummy MIDI", "Dummy MIDI"), received.append)
    try:
        assert wait_until(lambda: len(received) == 1)
    finally:
        port.close()

    assert received[0].note == 62
    assert raw_port.closed
