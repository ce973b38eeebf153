from __future__ import annotations

import logging
from concurrent.futures import Future
from pathlib import Path
from typing import Callable

from PySide6.QtCore import QObject, Signal

from openkeys.core.config import NoteSource
from openkeys.core.messages import NormalizedMessage, local_note_message
from openkeys.core.midi_recording import MidiRecorder
from openkeys.core.note_recognition import NoteMatcher
from openkeys.core.scheduling import PlaybackHandle, QtScheduler, Scheduler
from openkeys.core.settings_store import MidiSettingsStore
from openkeys.core.timing_analysis import TimingAnalyzer
from openkeys.services.midi_connection import DeviceBackend, MidiConnectionManager, Spawn
from openkeys.services.note_lifecycle import NoteActivationTracker, SustainController

logger = logging.getLogger(__name__)

RecorderFactory = Callable[[Scheduler], MidiRecorder]

_RECORDED_LOCAL_SOURCES: frozenset[str] = frozenset({"keyboard", "pointer"})


class PianoSessionController(QObject):
    noteOn = Signal(str, float)
    noteOff = Signal(str)
    sustainChanged = Signal(bool)
    playbackFinished = Signal()

    def __init__(
        self,
        *,
        backend: DeviceBackend | None = None,
        settings_path: Path | None = None,
        scheduler: Scheduler | None = None,
        spawn: Spawn | None = None,
        recorder_factory: RecorderFactory | None = None,
        hotplug_poll_ms: int | None = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._scheduler: Scheduler = scheduler or QtScheduler(self)
        self.store = MidiSettingsStore(settings_path)
        preferences = self.store.preferences()

        connection_kwargs: dict[str, object] = {}
        if hotplug_poll_ms is not None:
            connection_kwargs["hotplug_poll_ms"] = hotplug_poll_ms
        self.connection = MidiConnectionManager(
            backend,
            store=self.store,
            scheduler=self._scheduler,
            spawn=spawn,
            preferences=preferences,
            parent=self,
            **connection_kwargs,
        )
        self.tracker = NoteActivationTracker()
        self.sustain = SustainController(self.tracker, on_release=self._emit_note_off)
        factory = recorder_factory or (lambda sched: MidiRecorder(scheduler=sched))
        self.recorder = factory(self._scheduler)
        self.timing = TimingAnalyzer(preferences.tempo_bpm)
        self.matcher = NoteMatcher()
        self._playback: PlaybackHandle | None = None
        self._device_pedal = False
        self._connection_state = self.connection.state

        self.connection.messageReceived.connect(self.handle_message)
        self.connection.stateChanged.connect(self._on_connection_state)

    def start(self) -> bool:
        return self.connection.start()

    def shutdown(self) -> None:
        self.stop_playback()
        self.connection.shutdown()
        self.all_notes_off()

    def handle_message(self, message: NormalizedMessage) -> None:
        self.recorder.process_message(message)
        self.timing.handle_message(message)
        if message.is_sustain:
            self._device_pedal = bool(message.sustain)
            self.set_sustain(self._device_pedal)
            return
        if message.note is None:
            return
        if message.is_note_on:
            self.matcher.handle_message(message)
            self._press(message.note, "device", message.velocity)
        elif message.is_note_off:
            self._release(message.note, "device")

    def press_note(self, note: str | int, source: NoteSource = "pointer", velocity: float = 1.0) -> bool:
        message = local_note_message(note, on=True, velocity=velocity, source_name=source)
        if message is None or message.note is None:
            return False
        if source in _RECORDED_LOCAL_SOURCES:
            self.recorder.process_message(message)
            self.timing.handle_message(message)
        return self._press(message.note, source, message.velocity)

    def release_note(self, note: str | int, source: NoteSource = "pointer") -> bool:
        message = local_note_message(note, on=False, source_name=source)
        if message is None or message.note is None:
            return False
        if source in _RECORDED_LOCAL_SOURCES and self.tracker.holds(message.note, source):
            self.recorder.process_message(message)
            self.timing.handle_message(message)
        return self._release(message.note, source)

    def set_sustain(self, engaged: bool) -> None:
        flag = bool(engaged)
        if flag == self.sustain.engaged:
            return
        self.sustain.set_engaged(flag)
        self.sustainChanged.emit(flag)

    def toggle_sustain(self) -> None:
        self.set_sustain(not self.sustain.engaged)

    def all_notes_off(self) -> None:
        self.sustain.release_all()

    def sounding_notes(self) -> set[str]:
        return self.sustain.sounding_notes()

    def connect_device(self, device_id: str) -> Future:
        return self.connection.connect_device(device_id)

    def disconnect_device(self) -> None:
        self.connection.disconnect_device()
        self._release_device()

    def start_recording(self) -> None:
        self.recorder.start_recording()

    def stop_recording(self) -> None:
        self.recorder.stop_recording()

    def save_recording(self, path: Path) -> None:
        self.recorder.save_as(path)

    def play_recording(self) -> PlaybackHandle:
        self.stop_playback()
        handle = self.recorder.play_recording(
            lambda note, velocity: self._press(note, "program", velocity),
            lambda note: self._release(note, "program"),
            self._on_playback_finished,
        )
        if handle.active:
            self._playback = handle
        return handle

    def stop_playback(self) -> None:
        handle = self._playback
        self._playback = None
        if handle is not None:
            handle.cancel()
        self.sustain.release_source("program")

    @property
    def is_playing(self) -> bool:
        return self._playback is not None and self._playback.active

    def set_tempo(self, bpm: float) -> None:
        self.timing.set_tempo(bpm)
        self.store.save_preferences(tempo_bpm=int(round(bpm)))

    def _on_connection_state(self, state: str) -> None:
        previous, self._connection_state = self._connection_state, state
        if previous == "connected" and state != "connected":
            self._release_device()

    def _release_device(self) -> None:
        # Lift the pedal before releasing device notes.
        if self._device_pedal:
            self._device_pedal = False
            self.set_sustain(False)
        for note in self.sustain.release_source("device"):
            logger.debug("Released %s after device loss", note)

    def _on_playback_finished(self) -> None:
        self._playback = None
        self.sustain.release_source("program")
        self.playbackFinished.emit()

    def _press(self, note: str, source: NoteSource, velocity: float) -> bool:
        started = self.sustain.press(note, source)
        if started:
            self.noteOn.emit(note, float(velocity))
        return started

    def _release(self, note: str, source: NoteSource) -> bool:
        return self.sustain.release(note, source)

    def _emit_note_off(self, note: str) -> None:
        self.noteOff.emit(note)
