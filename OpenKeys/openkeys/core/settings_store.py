from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from openkeys.core.config import (
    APP_NAME,
    CONNECTION_HISTORY_LIMIT,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_TEMPO_BPM,
    MIDI_CHANNEL_COUNT,
)
from openkeys.core.normalize import clamp_float, clamp_int, clean_text
from openkeys.core.runtime_paths import app_local_data_dir, project_root

logger = logging.getLogger(__name__)

SETTINGS_FILE_NAME = "OpenKeys_midi.json"
MAX_RETRY_ATTEMPTS_LIMIT = 10
TEMPO_MIN = 20
TEMPO_MAX = 300


@dataclass(frozen=True, slots=True)
class ConnectionHistoryEntry:
    device_id: str
    name: str
    last_connected_at: float


@dataclass(frozen=True, slots=True)
class MidiPreferences:
    auto_connect: bool = True
    auto_retry: bool = True
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    velocity_sensitive: bool = True
    input_channel: int | None = None
    show_debug_info: bool = False
    tempo_bpm: int = DEFAULT_TEMPO_BPM


@dataclass(frozen=True, slots=True)
class MidiSettings:
    last_device_id: str = ""
    connection_history: tuple[ConnectionHistoryEntry, ...] = ()
    preferences: MidiPreferences = field(default_factory=MidiPreferences)


def _settings_dir() -> Path:
    directory = app_local_data_dir(APP_NAME)
    if directory is None:
        directory = project_root()
    return directory


def default_settings_path() -> Path:
    return _settings_dir() / SETTINGS_FILE_NAME


def _clamp_bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _clamp_channel(value: Any) -> int | None:
    if value is None or value == "all" or isinstance(value, bool):
        return None
    try:
        channel = int(value)
    except Exception:
        return None
    if channel < 1 or channel > MIDI_CHANNEL_COUNT:
        return None
    return channel


def _clamp_history_entry(value: Any) -> ConnectionHistoryEntry | None:
    if not isinstance(value, dict):
        return None
    device_id = clean_text(value.get("id"))
    if not device_id:
        return None
    name = clean_text(value.get("name")) or device_id
    last_connected = clamp_float(value.get("lastConnected"), 0.0, float("inf"), default=0.0)
    return ConnectionHistoryEntry(device_id=device_id, name=name, last_connected_at=last_connected)


def clamp_history(entries: Any) -> tuple[ConnectionHistoryEntry, ...]:
    if not isinstance(entries, (list, tuple)):
        return ()
    parsed: list[ConnectionHistoryEntry] = []
    seen: set[str] = set()
    for item in entries:
        entry = item if isinstance(item, ConnectionHistoryEntry) else _clamp_history_entry(item)
        if entry is None or entry.device_id in seen:
            continue
        seen.add(entry.device_id)
        parsed.append(entry)
        if len(parsed) >= CONNECTION_HISTORY_LIMIT:
            break
    return tuple(parsed)


def _clamp_preferences(value: Any) -> MidiPreferences:
    if isinstance(value, MidiPreferences):
        payload = _preferences_payload(value)
    elif isinstance(value, dict):
        payload = value
    else:
        return MidiPreferences()
    defaults = MidiPreferences()
    return MidiPreferences(
        auto_connect=_clamp_bool(payload.get("autoConnect"), defaults.auto_connect),
        auto_retry=_clamp_bool(payload.get("autoRetry"), defaults.auto_retry),
        max_retry_attempts=clamp_int(
            payload.get("maxRetryAttempts"),
            0,
            MAX_RETRY_ATTEMPTS_LIMIT,
            default=defaults.max_retry_attempts,
        ),
        velocity_sensitive=_clamp_bool(payload.get("velocitySensitive"), defaults.velocity_sensitive),
        input_channel=_clamp_channel(payload.get("midiInputChannel")),
        show_debug_info=_clamp_bool(payload.get("showDebugInfo"), defaults.show_debug_info),
        tempo_bpm=clamp_int(payload.get("tempoBpm"), TEMPO_MIN, TEMPO_MAX, default=defaults.tempo_bpm),
    )


def _preferences_payload(preferences: MidiPreferences) -> dict[str, Any]:
    return {
        "autoConnect": preferences.auto_connect,
        "autoRetry": preferences.auto_retry,
        "maxRetryAttempts": preferences.max_retry_attempts,
        "velocitySensitive": preferences.velocity_sensitive,
        "midiInputChannel": "all" if preferences.input_channel is None else preferences.input_channel,
        "showDebugInfo": preferences.show_debug_info,
        "tempoBpm": preferences.tempo_bpm,
    }


def load_settings(path: Path | None = None) -> MidiSettings:
    file_path = path if path is not None else default_settings_path()
    try:
        if not file_path.exists():
            return MidiSettings()
        payload = json.loads(file_path.read_text(encoding="utf-8"))
    except Exception as exc:
        logger.debug("Could not read MIDI settings from %s: %s", file_path, exc)
        return MidiSettings()
    if not isinstance(payload, dict):
        return MidiSettings()
    return MidiSettings(
        last_device_id=clean_text(payload.get("lastDevice")),
        connection_history=clamp_history(payload.get("connectionHistory")),
        preferences=_clamp_preferences(payload.get("preferences")),
    )


def save_settings(settings: MidiSettings, path: Path | None = None) -> None:
    payload = {
        "lastDevice": clean_text(settings.last_device_id),
        "connectionHistory": [
            {"id": entry.device_id, "name": entry.name, "lastConnected": entry.last_connected_at}
            for entry in clamp_history(settings.connection_history)
        ],
        "preferences": _preferences_payload(_clamp_preferences(settings.preferences)),
    }
    raw = json.dumps(payload, indent=2)

    file_path = path if path is not None else default_settings_path()
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(raw, encoding="utf-8")
    except Exception as exc:
        logger.debug("Could not write MIDI settings to %s: %s", file_path, exc)


class MidiSettingsStore:

    def __init__(self, path: Path | None = None) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path if self._path is not None else default_settings_path()

    def load(self) -> MidiSettings:
        try:
            return load_settings(self._path)
        except Exception as exc:
            logger.debug("MIDI settings unavailable, using defaults: %s", exc)
            return MidiSettings()

    def _update(self, **changes: Any) -> None:
        try:
            save_settings(replace(self.load(), **changes), self._path)
        except Exception as exc:
            logger.debug("MIDI settings update dropped: %s", exc)

    def last_device_id(self) -> str:
        return self.load().last_device_id

    def save_last_device_id(self, device_id: str) -> None:
        self._update(last_device_id=clean_text(device_id))

    def connection_history(self) -> tuple[ConnectionHistoryEntry, ...]:
        return self.load().connection_history

    def save_connection_history(self, entries: tuple[ConnectionHistoryEntry, ...] | list[ConnectionHistoryEntry]) -> None:
        self._update(connection_history=clamp_history(list(entries)))

    def preferences(self) -> MidiPreferences:
        return self.load().preferences

    def save_preferences(self, **changes: Any) -> MidiPreferences:
        current = self.preferences()
        try:
            updated = _clamp_preferences(replace(current, **changes))
        except TypeError as exc:
            logger.debug("Ignoring unknown MIDI preference: %s", exc)
            return current
        self._update(preferences=updated)
        return updated

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except Exception as exc:
            logger.debug("Could not clear MIDI settings: %s", exc)
