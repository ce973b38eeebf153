import pytest

import openkeys.core.music_logic


def test_number_to_note_name_uses_sharps_and_octave_minus_one () -> None:

    """MIDI 60 is C4 and 61 is spelled with a sharp."""

    assert openkeys.core.music_logic.number_to_note_name(60) == "C4"
    assert openkeys.core.music_logic.number_to_note_name(61) == "C#4"
    assert openkeys.core.music_logic.number_to_note_name(21) == "A0"
    assert openkeys.core.music_logic.number_to_note_name(0) == "C-1"
    assert openkeys.core.music_logic.number_to_note_name(127) == "G9"


@pytest.mark.parametrize("number", [-1, 128])
def test_number_to_note_name_rejects_out_of_range (number: int) -> None:

    assert openkeys.core.music_logic.number_to_note_name(number) is None


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Db4", "C#4"),
        ("db4", "C#4"),
        ("C♯4", "C#4"),
        ("Cb4", "B3"),
        ("B#3", "C4"),
        ("E#4", "F4"),
        (" A4 ", "A4"),
    ],
)
def test_canonical_note_name_folds_flats_into_sharps (name: str, expected: str) -> None:

    """Flats and enharmonic spellings map to one sharp spelling, wrapping the octave."""

    assert openkeys.core.music_logic.canonical_note_name(name) == expected


@pytest.mark.parametrize("name", ["H4", "C", "", "C##4", "4C"])
def test_canonical_note_name_rejects_garbage (name: str) -> None:

    assert openkeys.core.music_logic.canonical_note_name(name) is None


def test_note_name_to_number_round_trips_every_midi_note () -> None:

    """Every MIDI note number survives name conversion."""

    for number in range(128):
        name = openkeys.core.music_logic.number_to_note_name(number)
        assert openkeys.core.music_logic.note_name_to_number(name) == number


def test_note_name_to_number_handles_flats_and_range () -> None:

    assert openkeys.core.music_logic.note_name_to_number("A4") == 69
    assert openkeys.core.music_logic.note_name_to_number("Bb3") == 58
    assert openkeys.core.music_logic.note_name_to_number("G#9") is None


def test_note_frequency_and_back () -> None:

    """A4 is 440 Hz and C4 sits near 261.63 Hz."""

    assert openkeys.core.music_logic.note_frequency("A4") == pytest.approx(440.0)
    assert openkeys.core.music_logic.note_frequency(60) == pytest.approx(261.626, abs=0.01)
    assert openkeys.core.music_logic.frequency_to_number(440.0) == 69
    assert openkeys.core.music_logic.frequency_to_number(262.0) == 60
    assert openkeys.core.music_logic.frequency_to_number(0.0) is None
