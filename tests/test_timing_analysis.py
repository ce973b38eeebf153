import pytest

import openkeys.core.timing_analysis
from openkeys.core.messages import RawDeviceEvent, local_note_message, normalize_message
from openkeys.core.timing_analysis import TimingAnalyzer


def _hold(analyzer: TimingAnalyzer, note: str, start: float, end: float) -> None:
    analyzer.handle_message(local_note_message(note, on=True, timestamp_ms=start))
    analyzer.handle_message(local_note_message(note, on=False, timestamp_ms=end))


def test_exact_beat_scores_full_accuracy () -> None:

    """At 120 BPM a 500 ms note is exactly one beat."""

    analyzer = TimingAnalyzer(120)
    _hold(analyzer, "C4", 1000, 1500)

    result = analyzer.analyze_rhythm()[60]

    assert analyzer.beat_duration == 500.0
    assert result.actual == 500.0
    assert result.expected == 500.0
    assert result.accuracy == 100
    assert not result.is_too_long
    assert not result.is_too_short


def test_long_note_is_flagged () -> None:

    analyzer = TimingAnalyzer(120)
    _hold(analyzer, "C4", 0, 700)

    result = analyzer.analyze_rhythm()[60]

    assert result.accuracy == 60
    assert result.is_too_long
    assert not result.is_too_short


def test_short_note_is_flagged () -> None:

    analyzer = TimingAnalyzer(120)
    _hold(analyzer, "D4", 0, 300)

    result = analyzer.analyze_rhythm()[62]

    assert result.accuracy == 60
    assert result.is_too_short


@pytest.mark.parametrize(("actual", "accuracy"), [(0, 0), (1000, 0), (5000, 0), (450, 90), (550, 90)])
def test_accuracy_is_clamped_percent (actual: float, accuracy: int) -> None:

    assert openkeys.core.timing_analysis.score_duration(actual, 500).accuracy == accuracy


def test_ratio_boundaries_are_exclusive () -> None:

    at_long = openkeys.core.timing_analysis.score_duration(600, 500)
    at_short = openkeys.core.timing_analysis.score_duration(400, 500)

    assert not at_long.is_too_long
    assert not at_short.is_too_short


def test_default_tempo_is_sixty () -> None:

    analyzer = TimingAnalyzer()

    assert analyzer.tempo_bpm == 60
    assert analyzer.beat_duration == 1000.0


@pytest.mark.parametrize("bpm", [0, -10])
def test_non_positive_tempo_is_rejected (bpm: float) -> None:

    analyzer = TimingAnalyzer(90)

    with pytest.raises(ValueError):
        analyzer.set_tempo(bpm)

    assert analyzer.tempo_bpm == 90


def test_non_positive_expected_duration_is_rejected () -> None:

    with pytest.raises(ValueError):
        openkeys.core.timing_analysis.score_duration(100, 0)


def test_open_notes_are_not_scored () -> None:

    analyzer = TimingAnalyzer(120)
    analyzer.handle_message(local_note_message("C4", on=True, timestamp_ms=0))

    assert analyzer.analyze_rhythm() == {}
    assert analyzer.get_note_timings()[60].duration is None


def test_second_note_off_does_not_overwrite_duration () -> None:

    analyzer = TimingAnalyzer(120)
    _hold(analyzer, "C4", 0, 500)
    analyzer.handle_message(local_note_message("C4", on=False, timestamp_ms=900))

    assert analyzer.get_note_timings()[60].duration == 500.0


def test_note_on_restarts_timing () -> None:

    analyzer = TimingAnalyzer(120)
    _hold(analyzer, "C4", 0, 500)
    _hold(analyzer, "C4", 1000, 1250)

    assert analyzer.get_note_timings()[60].duration == 250.0


def test_analyze_timing_uses_given_expectation () -> None:

    analyzer = TimingAnalyzer(120)
    _hold(analyzer, "C4", 0, 1000)

    assert analyzer.analyze_timing(1000)[60].accuracy == 100


def test_clear_keeps_tempo () -> None:

    analyzer = TimingAnalyzer(100)
    _hold(analyzer, "C4", 0, 600)
    analyzer.clear()

    assert analyzer.get_note_timings() == {}
    assert analyzer.tempo_bpm == 100


def test_silent_note_on_closes_timing () -> None:

    analyzer = TimingAnalyzer(120)
    analyzer.handle_message(normalize_message(RawDeviceEvent("note_on", note=60, velocity=90, timestamp_ms=0.0)))
    analyzer.handle_message(normalize_message(RawDeviceEvent("note_on", note=60, velocity=0, timestamp_ms=500.0)))

    timing = analyzer.get_note_timings()[60]

    assert timing.end_time == 500.0
    assert timing.duration == 500.0
    assert analyzer.analyze_rhythm()[60].accuracy == 100
