from __future__ import annotations

from typing import Callable, Iterable, TypeAlias

from openkeys.core.messages import NormalizedMessage
from openkeys.core.music_logic import note_name_to_number, number_to_note_name

NoteLike: TypeAlias = str | int
MatchCallback = Callable[[str, int], None]

CHORD_PATTERNS: dict[tuple[int, ...], str] = {
    (4, 7): "major",
    (4, 7, 12): "major",
    (3, 7): "minor",
    (3, 7, 12): "minor",
    (3, 6): "diminished",
    (4, 8): "augmented",
    (4, 7, 10): "dominant 7th",
    (4, 7, 11): "major 7th",
    (3, 7, 10): "minor 7th",
    (3, 6, 10): "half-diminished 7th",
    (3, 6, 9): "diminished 7th",
    (5, 7): "sus4",
    (2, 7): "sus2",
}


def to_number(note: NoteLike) -> int | None:
    if isinstance(note, bool):
        return None
    if isinstance(note, int):
        return note
    return note_name_to_number(note)


def notes_match(played: NoteLike, expected: NoteLike) -> bool:
    played_number = to_number(played)
    return played_number is not None and played_number == to_number(expected)


def note_in_expected_set(played: NoteLike, expected: Iterable[NoteLike]) -> bool:
    played_number = to_number(played)
    if played_number is None:
        return False
    return played_number in {to_number(note) for note in expected}


def recognize_chord(notes: Iterable[NoteLike]) -> str | None:
    numbers = sorted({number for number in (to_number(note) for note in notes) if number is not None})
    if len(numbers) < 2:
        return None
    root = numbers[0]
    intervals = tuple(number - root for number in numbers[1:])
    quality = CHORD_PATTERNS.get(intervals)
    if quality is None:
        return None
    return f"{number_to_note_name(root)} {quality}"


class NoteMatcher:

    def __init__(self, on_match: MatchCallback | None = None, on_mismatch: MatchCallback | None = None) -> None:
        self._on_match = on_match
        self._on_mismatch = on_mismatch
        self._expected: frozenset[int] = frozenset()

    @property
    def expected_notes(self) -> frozenset[int]:
        return self._expected

    def set_expected_notes(self, notes: Iterable[NoteLike]) -> None:
        self._expected = frozenset(number for number in (to_number(note) for note in notes) if number is not None)

    def handle_message(self, message: NormalizedMessage) -> bool | None:
        if not message.is_note_on or message.number is None or message.note is None:
            return None
        if message.number in self._expected:
            if self._on_match is not None:
                self._on_match(message.note, message.number)
            return True
        if self._on_mismatch is not None:
            self._on_mismatch(message.note, message.number)
        return False
