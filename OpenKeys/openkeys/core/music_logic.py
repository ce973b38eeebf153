from __future__ import annotations

import math
import re

from openkeys.core.config import MIDI_NOTE_MAX, MIDI_NOTE_MIN

SHARP_NAMES: tuple[str, ...] = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")
_PITCH_CLASS = {name: index for index, name in enumerate(SHARP_NAMES)}
_LETTER_CLASS = {"C": 0, "D": 2, "E": 4, "F": 5, "G": 7, "A": 9, "B": 11}
_NOTE_RE = re.compile(r"^\s*([A-Ga-g])([#b♯♭]?)(-?\d+)\s*$")

A4_NUMBER = 69
A4_FREQUENCY = 440.0


def number_to_note_name(number: int) -> str | None:
    value = int(number)
    if value < MIDI_NOTE_MIN or value > MIDI_NOTE_MAX:
        return None
    return f"{SHARP_NAMES[value % 12]}{value // 12 - 1}"


def canonical_note_name(name: str) -> str | None:
    match = _NOTE_RE.match(str(name or ""))
    if match is None:
        return None
    letter, accidental, octave_text = match.groups()
    pitch = _LETTER_CLASS[letter.upper()]
    octave = int(octave_text)
    if accidental in {"#", "♯"}:
        pitch += 1
    elif accidental in {"b", "♭"}:
        pitch -= 1
    # Cb4 is B3 and B#3 is C4.
    octave += pitch // 12
    pitch %= 12
    return f"{SHARP_NAMES[pitch]}{octave}"


def note_name_to_number(name: str) -> int | None:
    canonical = canonical_note_name(name)
    if canonical is None:
        return None
    pitch_name = canonical.rstrip("-0123456789")
    octave = int(canonical[len(pitch_name):])
    number = (octave + 1) * 12 + _PITCH_CLASS[pitch_name]
    if number < MIDI_NOTE_MIN or number > MIDI_NOTE_MAX:
        return None
    return number


def note_frequency(note: str | int) -> float | None:
    number = note_name_to_number(note) if isinstance(note, str) else int(note)
    if number is None:
        return None
    return A4_FREQUENCY * (2.0 ** ((number - A4_NUMBER) / 12.0))


def frequency_to_number(frequency: float) -> int | None:
    value = float(frequency)
    if value <= 0:
        return None
    number = int(round(A4_NUMBER + 12.0 * math.log2(value / A4_FREQUENCY)))
    if number < MIDI_NOTE_MIN or number > MIDI_NOTE_MAX:
        return None
    return number
