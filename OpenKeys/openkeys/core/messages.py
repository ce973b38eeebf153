from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Literal

from openkeys.core.config import (
    MIDI_CHANNEL_COUNT,
    MIDI_VALUE_MAX,
    SUSTAIN_CONTROLLER,
    SUSTAIN_ON_THRESHOLD,
)
from openkeys.core.music_logic import canonical_note_name, note_name_to_number, number_to_note_name
from openkeys.core.normalize import clamp_int, clamp_unit

MessageKind = Literal["note_on", "note_off", "control_change"]

_KIND_ALIASES: dict[str, MessageKind] = {
    "note_on": "note_on",
    "noteon": "note_on",
    "note_off": "note_off",
    "noteoff": "note_off",
    "control_change": "control_change",
    "controlchange": "control_change",
}


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def wall_clock_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True, slots=True)
class RawDeviceEvent:
    kind: str
    note: int | str | None = None
    velocity: int | float = 0
    controller: int | None = None
    value: int | None = None
    channel: int = 0
    source_name: str = ""
    timestamp_ms: float | None = None


@dataclass(frozen=True, slots=True)
class NormalizedMessage:
    kind: MessageKind
    note: str | None = None
    number: int | None = None
    velocity: float = 0.0
    controller: int | None = None
    value: int | None = None
    sustain: bool | None = None
    channel: int = 0
    source_name: str = ""
    timestamp_ms: float = 0.0

    @property
    def is_note_on(self) -> bool:
        return self.kind == "note_on" and self.velocity > 0

    @property
    def is_note_off(self) -> bool:
        return self.kind == "note_off" or (self.kind == "note_on" and self.velocity <= 0)

    @property
    def is_sustain(self) -> bool:
        return self.kind == "control_change" and self.sustain is not None


def normalize_kind(kind: Any) -> MessageKind | None:
    return _KIND_ALIASES.get(str(kind or "").strip().lower())


def normalize_velocity(value: Any) -> float:
    # Integers are 7-bit MIDI values, floats are already unit scaled.
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, int):
        return clamp_unit(value / float(MIDI_VALUE_MAX))
    return clamp_unit(value)


def resolve_note(note: Any) -> tuple[str, int] | None:
    if isinstance(note, bool) or note is None:
        return None
    if isinstance(note, int):
        name = number_to_note_name(note)
        if name is None:
            return None
        return name, int(note)
    canonical = canonical_note_name(str(note))
    if canonical is None:
        return None
    number = note_name_to_number(canonical)
    if number is None:
        return None
    return canonical, number


def normalize_message(raw: RawDeviceEvent, *, velocity_sensitive: bool = True) -> NormalizedMessage | None:
    kind = normalize_kind(raw.kind)
    if kind is None:
        return None
    timestamp = monotonic_ms() if raw.timestamp_ms is None else float(raw.timestamp_ms)
    channel = clamp_int(raw.channel, 0, MIDI_CHANNEL_COUNT - 1, default=0)
    source_name = str(raw.source_name or "")

    if kind == "control_change":
        if raw.controller is None:
            return None
        controller = clamp_int(raw.controller, 0, MIDI_VALUE_MAX, default=0)
        value = clamp_int(raw.value, 0, MIDI_VALUE_MAX, default=0)
        sustain = value >= SUSTAIN_ON_THRESHOLD if controller == SUSTAIN_CONTROLLER else None
        return NormalizedMessage(
            kind=kind,
            controller=controller,
            value=value,
            sustain=sustain,
            channel=channel,
            source_name=source_name,
            timestamp_ms=timestamp,
        )

    resolved = resolve_note(raw.note)
    if resolved is None:
        return None
    note, number = resolved
    velocity = normalize_velocity(raw.velocity)
    if kind == "note_on" and velocity > 0 and not velocity_sensitive:
        velocity = 1.0
    return NormalizedMessage(
        kind=kind,
        note=note,
        number=number,
        velocity=velocity,
        channel=channel,
        source_name=source_name,
        timestamp_ms=timestamp,
    )


def raw_event_from_mido(message: Any, *, source_name: str = "", timestamp_ms: float | None = None) -> RawDeviceEvent:
    msg_type = str(getattr(message, "type", "")).lower()
    channel = int(getattr(message, "channel", 0) or 0)
    if msg_type == "control_change":
        return RawDeviceEvent(
            kind=msg_type,
            controller=int(getattr(message, "control", 0)),
            value=int(getattr(message, "value", 0)),
            channel=channel,
            source_name=source_name,
            timestamp_ms=timestamp_ms,
        )
    return RawDeviceEvent(
        kind=msg_type,
        note=int(getattr(message, "note", -1)) if hasattr(message, "note") else None,
        velocity=int(getattr(message, "velocity", 0)),
        channel=channel,
        source_name=source_name,
        timestamp_ms=timestamp_ms,
    )


def local_note_message(
    note: str | int,
    *,
    on: bool,
    velocity: float = 1.0,
    source_name: str = "",
    timestamp_ms: float | None = None,
) -> NormalizedMessage | None:
    raw = RawDeviceEvent(
        kind="note_on" if on else "note_off",
        note=note,
        velocity=float(velocity) if on else 0.0,
        source_name=source_name,
        timestamp_ms=timestamp_ms,
    )
    return normalize_message(raw)
