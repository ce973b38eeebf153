from __future__ import annotations

from dataclasses import dataclass

from openkeys.core.config import DEFAULT_TEMPO_BPM, TIMING_TOO_LONG_RATIO, TIMING_TOO_SHORT_RATIO
from openkeys.core.messages import NormalizedMessage


@dataclass(slots=True)
class NoteTiming:
    start_time: float
    end_time: float | None = None
    duration: float | None = None


@dataclass(frozen=True, slots=True)
class TimingResult:
    expected: float
    actual: float
    accuracy: int
    is_too_long: bool
    is_too_short: bool


def beat_duration_ms(bpm: float) -> float:
    tempo = float(bpm)
    if tempo <= 0:
        raise ValueError(f"Tempo must be positive, got {bpm!r}")
    return 60000.0 / tempo


def score_duration(actual_ms: float, expected_ms: float) -> TimingResult:
    expected = float(expected_ms)
    if expected <= 0:
        raise ValueError(f"Expected duration must be positive, got {expected_ms!r}")
    actual = float(actual_ms)
    ratio = actual / expected
    accuracy = 1.0 - min(abs(1.0 - ratio), 1.0)
    return TimingResult(
        expected=expected,
        actual=actual,
        accuracy=int(round(accuracy * 100)),
        is_too_long=ratio > TIMING_TOO_LONG_RATIO,
        is_too_short=ratio < TIMING_TOO_SHORT_RATIO,
    )


class TimingAnalyzer:

    def __init__(self, tempo_bpm: float = DEFAULT_TEMPO_BPM) -> None:
        self._timings: dict[int, NoteTiming] = {}
        self._tempo_bpm = float(DEFAULT_TEMPO_BPM)
        self._beat_duration = beat_duration_ms(DEFAULT_TEMPO_BPM)
        self.set_tempo(tempo_bpm)

    @property
    def tempo_bpm(self) -> float:
        return self._tempo_bpm

    @property
    def beat_duration(self) -> float:
        return self._beat_duration

    def set_tempo(self, bpm: float) -> None:
        self._beat_duration = beat_duration_ms(bpm)
        self._tempo_bpm = float(bpm)

    def handle_message(self, message: NormalizedMessage) -> None:
        number = message.number
        if number is None:
            return
        if message.is_note_on:
            self._timings[number] = NoteTiming(start_time=message.timestamp_ms)
            return
        if not message.is_note_off:
            return
        timing = self._timings.get(number)
        if timing is None or timing.end_time is not None:
            return
        timing.end_time = message.timestamp_ms
        timing.duration = max(0.0, message.timestamp_ms - timing.start_time)

    def get_note_timings(self) -> dict[int, NoteTiming]:
        return {
            number: NoteTiming(timing.start_time, timing.end_time, timing.duration)
            for number, timing in self._timings.items()
        }

    def analyze_timing(self, expected_ms: float) -> dict[int, TimingResult]:
        results: dict[int, TimingResult] = {}
        for number, timing in self._timings.items():
            if timing.duration is None:
                continue
            results[number] = score_duration(timing.duration, expected_ms)
        return results

    def analyze_rhythm(self) -> dict[int, TimingResult]:
        return self.analyze_timing(self._beat_duration)

    def clear(self) -> None:
        self._timings.clear()
