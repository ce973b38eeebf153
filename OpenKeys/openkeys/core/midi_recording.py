from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from openkeys.core.config import (
    PLAYBACK_FINISH_PADDING_MS,
    SMF_NOTE_OFF_VELOCITY,
    SUSTAIN_CONTROLLER,
    SUSTAIN_ON_THRESHOLD,
)
from openkeys.core.messages import NormalizedMessage, normalize_kind, resolve_note, wall_clock_ms
from openkeys.core.midi_file import TrackEvent, write_standard_midi_file
from openkeys.core.normalize import clamp_int, clamp_unit
from openkeys.core.scheduling import PlaybackHandle, QtScheduler, Scheduler

logger = logging.getLogger(__name__)

NoteOnCallback = Callable[[str, float], None]
NoteOffCallback = Callable[[str], None]
Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class RecordedEvent:
    message: NormalizedMessage
    time_ms: float


class RecordingImportError(ValueError):
    pass


class MidiRecorder:

    def __init__(self, *, scheduler: Scheduler | None = None, clock: Clock | None = None) -> None:
        self._events: list[RecordedEvent] = []
        self._recording = False
        self._start_time: float | None = None
        self._stop_time: float | None = None
        self._scheduler = scheduler
        self._clock = clock or wall_clock_ms

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def start_time(self) -> float | None:
        return self._start_time

    @property
    def stop_time(self) -> float | None:
        return self._stop_time

    def start_recording(self) -> None:
        self._events = []
        self._recording = True
        self._start_time = self._clock()
        self._stop_time = None

    def stop_recording(self) -> None:
        if not self._recording:
            return
        self._recording = False
        self._stop_time = self._clock()

    def process_message(self, message: NormalizedMessage) -> None:
        if not self._recording or self._start_time is None:
            return
        relative = max(0.0, self._clock() - self._start_time)
        if self._events and relative < self._events[-1].time_ms:
            relative = self._events[-1].time_ms
        self._events.append(RecordedEvent(message=message, time_ms=relative))

    def get_recording(self) -> list[RecordedEvent]:
        return list(self._events)

    def get_event_count(self) -> int:
        return len(self._events)

    def has_take(self) -> bool:
        return len(self._events) > 0

    def get_duration(self) -> float:
        if not self._events:
            return 0.0
        return max(event.time_ms for event in self._events)

    def clear_recording(self) -> None:
        self._events = []
        self._recording = False
        self._start_time = None
        self._stop_time = None

    def play_recording(
        self,
        on_note_on: NoteOnCallback | None,
        on_note_off: NoteOffCallback | None,
        on_finish: Callable[[], None] | None = None,
    ) -> PlaybackHandle:
        handle = PlaybackHandle()
        events = tuple(self._events)
        if not events:
            handle.mark_finished()
            if on_finish is not None:
                on_finish()
            return handle

        scheduler = self._playback_scheduler()
        for event in events:
            message = event.message
            note = message.note
            if note is None:
                continue
            if message.is_note_on:
                if on_note_on is not None:
                    handle.schedule(scheduler, event.time_ms, _bind_note_on(on_note_on, note, message.velocity))
            elif message.is_note_off:
                if on_note_off is not None:
                    handle.schedule(scheduler, event.time_ms, _bind_note_off(on_note_off, note))

        end_time = max(event.time_ms for event in events)
        handle.schedule_finish(scheduler, end_time + PLAYBACK_FINISH_PADDING_MS, on_finish)
        return handle

    def _playback_scheduler(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = QtScheduler()
        return self._scheduler

    def export_to_json(self) -> str:
        duration = None
        if self._start_time is not None and self._stop_time is not None:
            duration = self._stop_time - self._start_time
        payload = {
            "startTime": self._start_time,
            "stopTime": self._stop_time,
            "duration": duration,
            "events": [_event_payload(event) for event in self._events],
        }
        return json.dumps(payload, indent=2)

    def import_from_json(self, text: str) -> bool:
        try:
            data = json.loads(text)
            events = _parse_events(data)
            start_time = _optional_number(data.get("startTime"), "startTime")
            stop_time = _optional_number(data.get("stopTime"), "stopTime")
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Failed to import recording: %s", exc)
            return False

        self._events = events
        self._recording = False
        self._start_time = self._clock() if start_time is None else start_time
        self._stop_time = stop_time
        return True

    def export_to_midi(self) -> bytes:
        track_events: list[TrackEvent] = []
        for event in self._events:
            message = event.message
            if message.kind == "control_change":
                track_events.append(
                    TrackEvent(
                        time_ms=event.time_ms,
                        kind="control_change",
                        data1=int(message.controller or 0),
                        data2=int(message.value or 0),
                    )
                )
                continue
            if message.number is None:
                continue
            if message.is_note_on:
                velocity = clamp_int(round(message.velocity * 127), 1, 127, default=100)
                track_events.append(
                    TrackEvent(time_ms=event.time_ms, kind="note_on", data1=message.number, data2=velocity)
                )
            else:
                track_events.append(
                    TrackEvent(
                        time_ms=event.time_ms,
                        kind="note_off",
                        data1=message.number,
                        data2=SMF_NOTE_OFF_VELOCITY,
                    )
                )
        return write_standard_midi_file(track_events)

    def save_as(self, path: Path) -> None:
        if not self._events:
            raise RuntimeError("No recording data available.")
        destination = Path(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.export_to_midi())


def _bind_note_on(callback: NoteOnCallback, note: str, velocity: float) -> Callable[[], None]:
    return lambda: callback(note, velocity)


def _bind_note_off(callback: NoteOffCallback, note: str) -> Callable[[], None]:
    return lambda: callback(note)


def _event_payload(event: RecordedEvent) -> dict[str, Any]:
    message = event.message
    payload: dict[str, Any] = {
        "type": message.kind,
        "note": message.note,
        "velocity": message.velocity,
        "time": event.time_ms,
    }
    if message.kind == "control_change":
        payload["controller"] = message.controller
        payload["value"] = message.value
    return payload


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def _optional_number(value: Any, field_name: str) -> float | None:
    if value is None:
        return None
    if not _is_finite_number(value):
        raise RecordingImportError(f"'{field_name}' must be a finite number")
    return float(value)


def _parse_events(data: Any) -> list[RecordedEvent]:
    if not isinstance(data, dict):
        raise RecordingImportError("recording must be an object")
    raw_events = data.get("events")
    if not isinstance(raw_events, list):
        raise RecordingImportError("'events' must be an array")
    parsed = [_parse_event(index, item) for index, item in enumerate(raw_events)]
    # sorted() is stable, so events sharing a timestamp keep their order.
    return sorted(parsed, key=lambda item: item.time_ms)


def _parse_event(index: int, item: Any) -> RecordedEvent:
    if not isinstance(item, dict):
        raise RecordingImportError(f"event {index} must be an object")
    kind = normalize_kind(item.get("type"))
    if kind is None:
        raise RecordingImportError(f"event {index} has unknown type {item.get('type')!r}")
    time_ms = item.get("time")
    if not _is_finite_number(time_ms) or time_ms < 0:
        raise RecordingImportError(f"event {index} has invalid time {time_ms!r}")
    velocity_raw = item.get("velocity")
    if velocity_raw is None:
        velocity = 0.0
    elif not _is_finite_number(velocity_raw):
        raise RecordingImportError(f"event {index} has invalid velocity {velocity_raw!r}")
    else:
        velocity = clamp_unit(velocity_raw)

    if kind == "control_change":
        controller = item.get("controller")
        value = item.get("value")
        if not isinstance(controller, int) or not isinstance(value, int):
            raise RecordingImportError(f"event {index} is missing controller data")
        message = NormalizedMessage(
            kind=kind,
            controller=controller,
            value=value,
            sustain=(value >= SUSTAIN_ON_THRESHOLD) if controller == SUSTAIN_CONTROLLER else None,
            velocity=velocity,
        )
        return RecordedEvent(message=message, time_ms=float(time_ms))

    resolved = resolve_note(item.get("note"))
    if resolved is None:
        raise RecordingImportError(f"event {index} has invalid note {item.get('note')!r}")
    note, number = resolved
    message = NormalizedMessage(kind=kind, note=note, number=number, velocity=velocity)
    return RecordedEvent(message=message, time_ms=float(time_ms))
