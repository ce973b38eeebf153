from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Literal, Protocol

from PySide6.QtCore import QObject, QTimer, Signal

from openkeys.core.config import (
    CONNECTION_HISTORY_LIMIT,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    HOTPLUG_POLL_MS,
    RETRY_BASE_DELAY_MS,
)
from openkeys.core.messages import (
    RawDeviceEvent,
    monotonic_ms,
    normalize_message,
    raw_event_from_mido,
    wall_clock_ms,
)
from openkeys.core.midi_input import (
    ConnectionErrorInfo,
    Device,
    MidiBackendError,
    MidiInputBackend,
    PortCallback,
    error_info,
)
from openkeys.core.scheduling import QtScheduler, Scheduler, TimerHandle
from openkeys.core.settings_store import ConnectionHistoryEntry, MidiPreferences, MidiSettingsStore

logger = logging.getLogger(__name__)

ConnectionState = Literal["unavailable", "disconnected", "connecting", "connected", "error"]
Spawn = Callable[[Callable[[], None]], None]


class PortHandle(Protocol):
    def close(self) -> None: ...


class DeviceBackend(Protocol):
    def probe(self) -> None: ...

    def list_input_devices(self) -> list[Device]: ...

    def open_port(self, device: Device, callback: PortCallback) -> PortHandle: ...


@dataclass(frozen=True, slots=True)
class ConnectResult:
    success: bool
    device: Device | None = None
    error: ConnectionErrorInfo | None = None


def backoff_delay_ms(attempt: int) -> int:
    return (2 ** max(0, int(attempt))) * RETRY_BASE_DELAY_MS


def spawn_thread(target: Callable[[], None]) -> None:
    worker = threading.Thread(target=target, daemon=True)
    worker.start()


def _resolve(future: Future, value: Any) -> None:
    if not future.done():
        future.set_result(value)


_SUPERSEDED = ConnectionErrorInfo(message="Connection attempt was superseded", code="connection_failed")


class MidiConnectionManager(QObject):
    """Owns the MIDI input device lifecycle.

    All state lives on the thread that owns this object. Port callbacks and
    worker threads only emit the private queued signals below, so hot-plug,
    enumeration and connection results are applied in event loop order and a
    hung device open never blocks the loop.
    """

    stateChanged = Signal(str)
    devicesChanged = Signal(object)
    messageReceived = Signal(object)
    errorOccurred = Signal(object)
    _attemptFinished = Signal(int, object, object, object)
    _rawMessageReady = Signal(int, object, float)
    _enumerationReady = Signal(object, object, object)

    def __init__(
        self,
        backend: DeviceBackend | None = None,
        *,
        store: MidiSettingsStore | None = None,
        scheduler: Scheduler | None = None,
        spawn: Spawn | None = None,
        preferences: MidiPreferences | None = None,
        hotplug_poll_ms: int = HOTPLUG_POLL_MS,
        clock: Callable[[], float] | None = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._backend: DeviceBackend = backend or MidiInputBackend()
        self._store = store or MidiSettingsStore()
        self._scheduler: Scheduler = scheduler or QtScheduler(self)
        self._spawn: Spawn = spawn or spawn_thread
        self._clock = clock or wall_clock_ms
        prefs = preferences or self._load_preferences()
        self.auto_connect_enabled = prefs.auto_connect
        self.auto_retry = prefs.auto_retry
        self.max_retry_attempts = max(0, int(prefs.max_retry_attempts))
        self.input_channel = prefs.input_channel
        self.velocity_sensitive = prefs.velocity_sensitive

        self._state: ConnectionState = "disconnected"
        self._devices: dict[str, Device] = {}
        self._selected: Device | None = None
        self._port: PortHandle | None = None
        self._error: ConnectionErrorInfo | None = None
        self._history: list[ConnectionHistoryEntry] = []

        self._attempt_id = 0
        self._connected_attempt = 0
        self._pending: dict[int, Future] = {}
        self._target_id = ""
        self._retry_attempt = 0
        self._retry_timer: TimerHandle | None = None

        self._auto_connect_done = False
        self._refreshes_in_flight = 0
        self._poll_timer: QTimer | None = None
        self._hotplug_poll_ms = max(0, int(hotplug_poll_ms))
        self._is_shutdown = False

        self._attemptFinished.connect(self._finish_attempt)
        self._rawMessageReady.connect(self._deliver_message)
        self._enumerationReady.connect(self._finish_enumeration)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def selected_device(self) -> Device | None:
        return self._selected

    @property
    def error_info(self) -> ConnectionErrorInfo | None:
        return self._error

    @property
    def retry_attempt(self) -> int:
        return self._retry_attempt

    @property
    def retry_pending(self) -> bool:
        return self._retry_timer is not None

    @property
    def is_refreshing(self) -> bool:
        return self._refreshes_in_flight > 0

    @property
    def connection_history(self) -> tuple[ConnectionHistoryEntry, ...]:
        return tuple(self._history)

    def devices(self) -> list[Device]:
        return list(self._devices.values())

    def start(self) -> bool:
        self._is_shutdown = False
        try:
            self._backend.probe()
        except Exception as exc:
            info = error_info(exc, fallback="MIDI input is not supported")
            logger.warning("MIDI input unavailable: %s (%s)", info.message, info.code)
            self._error = info
            self._set_state("unavailable")
            self.errorOccurred.emit(info)
            return False

        self._history = list(self._load_history())
        self._error = None
        if self._state == "unavailable":
            self._set_state("disconnected")
        self._auto_connect_done = False
        self.refresh_devices()
        self._start_polling()
        return True

    def shutdown(self) -> None:
        self._is_shutdown = True
        if self._poll_timer is not None:
            self._poll_timer.stop()
            self._poll_timer = None
        self.disconnect_device()

    def connect_device(self, device_id: str) -> Future:
        self._retry_attempt = 0
        return self._begin_attempt(device_id)

    def auto_connect(self) -> Future:
        if self._selected is not None and self._state == "connected":
            future: Future = Future()
            future.set_result(ConnectResult(True, device=self._selected))
            return future
        target = self._auto_connect_target()
        if target is None:
            future = Future()
            info = ConnectionErrorInfo(message="No MIDI input device found for auto-connect", code="device_not_found")
            future.set_result(ConnectResult(False, error=info))
            return future
        return self.connect_device(target)

    def disconnect_device(self) -> None:
        self._cancel_retry()
        self._attempt_id += 1
        self._supersede_pending()
        previous = self._selected
        self._release_port()
        self._selected = None
        self._target_id = ""
        self._error = None
        if previous is not None:
            logger.info("Disconnected from MIDI input %r", previous.name)
        if self._state != "unavailable":
            self._set_state("disconnected")

    def retry_connection(self) -> Future | None:
        if self._state == "unavailable":
            self.start()
            return None
        self._error = None
        self._cancel_retry()
        self._retry_attempt = 0
        target = self._selected.id if self._selected is not None else self._target_id
        if target:
            logger.info("Retrying MIDI input connection to %r", target)
            return self._begin_attempt(target)
        if self._devices:
            return self.auto_connect()
        self.refresh_devices()
        return None

    def refresh_devices(self) -> Future:
        future: Future = Future()
        if self._state == "unavailable":
            future.set_result([])
            return future
        self._refreshes_in_flight += 1

        def _worker() -> None:
            devices: list[Device] | None = None
            error: Exception | None = None
            try:
                devices = list(self._backend.list_input_devices())
            except Exception as exc:
                error = exc
            try:
                self._enumerationReady.emit(future, devices, error)
            except RuntimeError:
                _resolve(future, [])

        self._spawn(_worker)
        return future

    def handle_device_added(self, device: Device) -> None:
        if self._devices.get(device.id) == device:
            return
        self._devices[device.id] = device
        logger.info("MIDI input added: %s", device.name)
        self.devicesChanged.emit(self.devices())
        self._auto_connect_once()

    def handle_device_removed(self, device_id: str) -> None:
        if self._remove_device(device_id):
            self.devicesChanged.emit(self.devices())

    def _begin_attempt(self, device_id: str) -> Future:
        future: Future = Future()
        target = str(device_id or "").strip()
        if self._state == "unavailable":
            info = self._error or ConnectionErrorInfo(message="MIDI input is not supported", code="not_supported")
            future.set_result(ConnectResult(False, error=info))
            return future

        self._cancel_retry()
        self._supersede_pending()
        self._release_port()
        self._selected = None
        self._attempt_id += 1
        attempt = self._attempt_id
        self._target_id = target
        self._pending[attempt] = future
        self._set_state("connecting")

        device = self._devices.get(target)
        if device is None:
            self._finish_attempt(attempt, None, None, MidiBackendError(f"MIDI input device '{target}' not found"))
            return future

        logger.info("Connecting to MIDI input %r", device.name)

        def _on_port_message(message: Any) -> None:
            try:
                self._rawMessageReady.emit(attempt, message, monotonic_ms())
            except RuntimeError:
                return

        def _worker() -> None:
            port: PortHandle | None = None
            error: Exception | None = None
            try:
                port = self._backend.open_port(device, _on_port_message)
            except Exception as exc:
                error = exc
            try:
                self._attemptFinished.emit(attempt, device, port, error)
            except RuntimeError:
                if port is not None:
                    self._close_port(port)

        self._spawn(_worker)
        return future

    def _finish_attempt(self, attempt: int, device: Device | None, port: PortHandle | None, error: Exception | None) -> None:
        future = self._pending.pop(attempt, None)
        if attempt != self._attempt_id or self._is_shutdown:
            if port is not None:
                self._close_port(port)
            if future is not None:
                _resolve(future, ConnectResult(False, error=_SUPERSEDED))
            return

        if error is None and (port is None or device is None):
            error = MidiBackendError("MIDI input connection failed")
        if error is not None:
            if port is not None:
                self._close_port(port)
            info = error_info(error, fallback="Failed to connect to MIDI device")
            logger.warning("MIDI input connection failed: %s (%s)", info.message, info.code)
            self._error = info
            self._set_state("error")
            self.errorOccurred.emit(info)
            self._schedule_retry(self._target_id)
            if future is not None:
                _resolve(future, ConnectResult(False, error=info))
            return

        self._port = port
        self._selected = device
        self._connected_attempt = attempt
        self._error = None
        self._retry_attempt = 0
        self._remember(device)
        logger.info("Connected to MIDI input %r", device.name)
        self._set_state("connected")
        if future is not None:
            _resolve(future, ConnectResult(True, device=device))

    def _schedule_retry(self, device_id: str) -> None:
        if not self.auto_retry or not device_id:
            return
        if self._retry_attempt >= self.max_retry_attempts:
            logger.info("Giving up on MIDI input %r after %d retries", device_id, self._retry_attempt)
            return
        delay = backoff_delay_ms(self._retry_attempt)
        logger.info(
            "Retrying MIDI input %r in %d ms (attempt %d of %d)",
            device_id,
            delay,
            self._retry_attempt + 1,
            self.max_retry_attempts,
        )
        self._retry_timer = self._scheduler.call_later(delay, lambda: self._run_retry(device_id))

    def _run_retry(self, device_id: str) -> None:
        self._retry_timer = None
        if self._state != "error" or self._is_shutdown:
            return
        self._retry_attempt += 1
        self._begin_attempt(device_id)

    def _cancel_retry(self) -> None:
        timer = self._retry_timer
        self._retry_timer = None
        if timer is not None:
            timer.cancel()

    def _supersede_pending(self) -> None:
        pending = self._pending
        self._pending = {}
        for future in pending.values():
            _resolve(future, ConnectResult(False, error=_SUPERSEDED))

    def _release_port(self) -> None:
        port = self._port
        self._port = None
        self._connected_attempt = 0
        if port is not None:
            self._close_port(port)

    @staticmethod
    def _close_port(port: PortHandle) -> None:
        try:
            port.close()
        except Exception as exc:
            logger.debug("Closing MIDI input port failed: %s", exc)

    def _remove_device(self, device_id: str) -> bool:
        removed = self._devices.pop(device_id, None)
        selected_removed = self._selected is not None and self._selected.id == device_id
        connecting_removed = self._state == "connecting" and self._target_id == device_id
        if selected_removed or connecting_removed:
            logger.info("Selected MIDI input %r was removed", device_id)
            self._cancel_retry()
            self._attempt_id += 1
            self._supersede_pending()
            self._release_port()
            self._selected = None
            self._set_state("disconnected")
        elif removed is not None:
            logger.info("MIDI input removed: %s", removed.name)
        return removed is not None or selected_removed or connecting_removed

    def _finish_enumeration(self, future: Future, devices: list[Device] | None, error: Exception | None) -> None:
        self._refreshes_in_flight = max(0, self._refreshes_in_flight - 1)
        if error is not None or devices is None:
            info = error_info(error, fallback="MIDI device enumeration failed")
            logger.warning("MIDI device enumeration failed: %s", info.message)
            self._error = info
            self.errorOccurred.emit(info)
            _resolve(future, self.devices())
            return

        changed = self._merge_devices(devices)
        if changed:
            self.devicesChanged.emit(self.devices())
        logger.debug("Found %d MIDI inputs", len(self._devices))

        self._auto_connect_once()
        _resolve(future, self.devices())

    def _merge_devices(self, devices: list[Device]) -> bool:
        incoming = {device.id: device for device in devices}
        changed = False
        for device_id in [known for known in self._devices if known not in incoming]:
            changed = self._remove_device(device_id) or changed
        merged: dict[str, Device] = {}
        for device_id, device in incoming.items():
            if self._devices.get(device_id) != device:
                changed = True
                logger.info("MIDI input added: %s", device.name)
            merged[device_id] = device
        self._devices = merged
        return changed

    def _start_polling(self) -> None:
        if self._hotplug_poll_ms <= 0 or self._poll_timer is not None:
            return
        timer = QTimer(self)
        timer.setInterval(self._hotplug_poll_ms)
        timer.timeout.connect(self._poll_devices)
        timer.start()
        self._poll_timer = timer

    def _poll_devices(self) -> None:
        if self._refreshes_in_flight > 0 or self._state == "unavailable":
            return
        self.refresh_devices()

    def _deliver_message(self, attempt: int, message: Any, timestamp_ms: float) -> None:
        device = self._selected
        if attempt != self._connected_attempt or self._state != "connected" or device is None:
            return
        if isinstance(message, RawDeviceEvent):
            raw = dataclasses.replace(
                message,
                source_name=message.source_name or device.name,
                timestamp_ms=timestamp_ms if message.timestamp_ms is None else message.timestamp_ms,
            )
        else:
            raw = raw_event_from_mido(message, source_name=device.name, timestamp_ms=timestamp_ms)
        if self.input_channel is not None and raw.channel != self.input_channel - 1:
            return
        normalized = normalize_message(raw, velocity_sensitive=self.velocity_sensitive)
        if normalized is None:
            return
        logger.debug("MIDI %s %s from %s", normalized.kind, normalized.note or normalized.controller, device.name)
        self.messageReceived.emit(normalized)

    def _auto_connect_once(self) -> None:
        # Only the first enumeration that finds any device triggers it.
        if self._auto_connect_done or not self._devices:
            return
        self._auto_connect_done = True
        if self.auto_connect_enabled and self._selected is None and self._state == "disconnected":
            self.auto_connect()

    def _auto_connect_target(self) -> str | None:
        if not self._devices:
            return None
        last_device = self._store_call(self._store.last_device_id, "")
        if last_device and last_device in self._devices:
            logger.info("Auto-connecting to last used MIDI input %r", last_device)
            return last_device
        for entry in self._history:
            if entry.device_id in self._devices:
                logger.info("Auto-connecting to MIDI input %r from history", entry.name)
                return entry.device_id
        first = next(iter(self._devices))
        logger.info("Auto-connecting to first available MIDI input %r", first)
        return first

    def _remember(self, device: Device) -> None:
        entry = ConnectionHistoryEntry(
            device_id=device.id,
            name=device.name or "Unknown Device",
            last_connected_at=self._clock(),
        )
        history = [entry] + [item for item in self._history if item.device_id != device.id]
        self._history = history[:CONNECTION_HISTORY_LIMIT]
        self._store_call(lambda: self._store.save_connection_history(tuple(self._history)), None)
        self._store_call(lambda: self._store.save_last_device_id(device.id), None)

    def _load_history(self) -> tuple[ConnectionHistoryEntry, ...]:
        history = self._store_call(self._store.connection_history, ())
        return tuple(history)[:CONNECTION_HISTORY_LIMIT]

    def _load_preferences(self) -> MidiPreferences:
        prefs = self._store_call(self._store.preferences, None)
        if not isinstance(prefs, MidiPreferences):
            return MidiPreferences(max_retry_attempts=DEFAULT_MAX_RETRY_ATTEMPTS)
        return prefs

    @staticmethod
    def _store_call(func: Callable[[], Any], default: Any) -> Any:
        try:
            return func()
        except Exception as exc:
            logger.debug("MIDI settings store failed: %s", exc)
            return default

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.debug("MIDI connection state %s -> %s", self._state, state)
        self._state = state
        self.stateChanged.emit(state)
