from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal

from openkeys.core.config import (
    SMF_MICROSECONDS_PER_QUARTER,
    SMF_TICKS_PER_QUARTER,
)

NOTE_OFF_STATUS = 0x80
NOTE_ON_STATUS = 0x90
CONTROL_CHANGE_STATUS = 0xB0
META_EVENT = 0xFF
META_SET_TEMPO = 0x51
META_END_OF_TRACK = 0x2F
END_OF_TRACK = bytes((0x00, META_EVENT, META_END_OF_TRACK, 0x00))

TrackEventKind = Literal["note_on", "note_off", "control_change"]


def encode_variable_length(value: int) -> bytes:
    """Encode ``value`` as a MIDI variable-length quantity.

    Seven bits per byte, most significant group first; every byte but the
    last has the 0x80 continuation bit set.
    """
    number = int(value)
    if number < 0:
        raise ValueError("Cannot encode a negative variable-length quantity.")
    if number > 0x0FFFFFFF:
        raise ValueError("Variable-length quantity exceeds 28 bits.")
    groups = [number & 0x7F]
    number >>= 7
    while number:
        groups.append((number & 0x7F) | 0x80)
        number >>= 7
    return bytes(reversed(groups))


def ms_to_ticks(milliseconds: float, *, ticks_per_quarter: int = SMF_TICKS_PER_QUARTER) -> int:
    quarter_ms = SMF_MICROSECONDS_PER_QUARTER / 1000.0
    return int(round(max(0.0, float(milliseconds)) * ticks_per_quarter / quarter_ms))


class ByteWriter:

    def __init__(self) -> None:
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def write_u8(self, value: int) -> "ByteWriter":
        number = int(value)
        if number < 0 or number > 0xFF:
            raise ValueError(f"Byte value out of range: {number}")
        self._buffer.append(number)
        return self

    def write_u16(self, value: int) -> "ByteWriter":
        self._buffer += int(value).to_bytes(2, "big")
        return self

    def write_u24(self, value: int) -> "ByteWriter":
        self._buffer += int(value).to_bytes(3, "big")
        return self

    def write_u32(self, value: int) -> "ByteWriter":
        self._buffer += int(value).to_bytes(4, "big")
        return self

    def write_vlq(self, value: int) -> "ByteWriter":
        self._buffer += encode_variable_length(value)
        return self

    def write_bytes(self, data: bytes | bytearray) -> "ByteWriter":
        self._buffer += data
        return self

    def write_ascii(self, text: str) -> "ByteWriter":
        self._buffer += text.encode("ascii")
        return self

    def write_chunk(self, chunk_id: str, payload: bytes | bytearray) -> "ByteWriter":
        if len(chunk_id) != 4:
            raise ValueError(f"Chunk id must be four characters: {chunk_id!r}")
        self.write_ascii(chunk_id)
        self.write_u32(len(payload))
        self.write_bytes(payload)
        return self

    def getvalue(self) -> bytes:
        return bytes(self._buffer)


@dataclass(frozen=True, slots=True)
class TrackEvent:
    time_ms: float
    kind: TrackEventKind
    data1: int
    data2: int


def header_chunk(*, track_count: int, ticks_per_quarter: int = SMF_TICKS_PER_QUARTER, file_format: int = 1) -> bytes:
    payload = ByteWriter().write_u16(file_format).write_u16(track_count).write_u16(ticks_per_quarter)
    return ByteWriter().write_chunk("MThd", payload.getvalue()).getvalue()


def tempo_track(*, microseconds_per_quarter: int = SMF_MICROSECONDS_PER_QUARTER) -> bytes:
    payload = ByteWriter()
    payload.write_vlq(0).write_u8(META_EVENT).write_u8(META_SET_TEMPO).write_u8(3)
    payload.write_u24(microseconds_per_quarter)
    payload.write_bytes(END_OF_TRACK)
    return ByteWriter().write_chunk("MTrk", payload.getvalue()).getvalue()


def note_track(events: Iterable[TrackEvent], *, channel: int = 0) -> bytes:
    payload = ByteWriter()
    previous_tick = 0
    for event in sorted(events, key=lambda item: item.time_ms):
        tick = ms_to_ticks(event.time_ms)
        payload.write_vlq(max(0, tick - previous_tick))
        previous_tick = tick
        if event.kind == "note_on":
            payload.write_u8(NOTE_ON_STATUS | channel)
        elif event.kind == "note_off":
            payload.write_u8(NOTE_OFF_STATUS | channel)
        else:
            payload.write_u8(CONTROL_CHANGE_STATUS | channel)
        payload.write_u8(event.data1 & 0x7F).write_u8(event.data2 & 0x7F)
    payload.write_bytes(END_OF_TRACK)
    return ByteWriter().write_chunk("MTrk", payload.getvalue()).getvalue()


def write_standard_midi_file(events: Iterable[TrackEvent]) -> bytes:
    writer = ByteWriter()
    writer.write_bytes(header_chunk(track_count=2))
    writer.write_bytes(tempo_track())
    writer.write_bytes(note_track(events))
    return writer.getvalue()
