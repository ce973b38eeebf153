from __future__ import annotations

from typing import Literal

APP_NAME = "OpenKeys"
APP_VERSION = "0.4.0"

NoteSource = Literal["keyboard", "pointer", "device", "program"]
NOTE_SOURCES: tuple[NoteSource, ...] = ("keyboard", "pointer", "device", "program")

MIDI_NOTE_MIN = 0
MIDI_NOTE_MAX = 127
MIDI_VALUE_MAX = 127
MIDI_CHANNEL_COUNT = 16
SUSTAIN_CONTROLLER = 64
SUSTAIN_ON_THRESHOLD = 64

DEFAULT_MAX_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY_MS = 1000
CONNECTION_HISTORY_LIMIT = 5
HOTPLUG_POLL_MS = 1500

PLAYBACK_FINISH_PADDING_MS = 100

SMF_TICKS_PER_QUARTER = 480
SMF_TEMPO_BPM = 120
SMF_MICROSECONDS_PER_QUARTER = 60_000_000 // SMF_TEMPO_BPM
SMF_NOTE_OFF_VELOCITY = 64

DEFAULT_TEMPO_BPM = 60
TIMING_TOO_LONG_RATIO = 1.2
TIMING_TOO_SHORT_RATIO = 0.8
