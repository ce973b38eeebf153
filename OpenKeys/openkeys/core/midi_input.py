from __future__ import annotations

import importlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

ErrorCode = Literal["permission_denied", "not_supported", "device_not_found", "connection_failed", "unknown"]
PortCallback = Callable[[Any], None]

_ERROR_PATTERNS: tuple[tuple[str, ErrorCode], ...] = (
    ("permission", "permission_denied"),
    ("not supported", "not_supported"),
    ("not found", "device_not_found"),
    ("connection", "connection_failed"),
)


@dataclass(frozen=True, slots=True)
class Device:
    id: str
    name: str
    manufacturer: str = ""
    kind: str = "input"


@dataclass(frozen=True, slots=True)
class ConnectionErrorInfo:
    message: str
    code: ErrorCode


class MidiBackendError(RuntimeError):
    pass


def classify_error(error: BaseException | str | None) -> ErrorCode:
    text = str(error or "").lower()
    for needle, code in _ERROR_PATTERNS:
        if needle in text:
            return code
    return "unknown"


def error_info(error: BaseException | str | None, *, fallback: str = "MIDI input error") -> ConnectionErrorInfo:
    message = str(error or "").strip() or fallback
    return ConnectionErrorInfo(message=message, code=classify_error(message))


class MidiInputPort:

    def __init__(self, device: Device, port: Any, *, poll_interval: float = 0.01) -> None:
        self.device = device
        self._port = port
        self._lock = threading.Lock()
        self._poll_thread: threading.Thread | None = None
        self._poll_stop: threading.Event | None = None
        self._poll_interval = float(poll_interval)

    @property
    def closed(self) -> bool:
        return self._port is None

    def start_polling(self, callback: PortCallback) -> None:
        with self._lock:
            if self._port is None or self._poll_thread is not None:
                return
            stop = threading.Event()
            thread = threading.Thread(target=self._poll_loop, args=(self._port, stop, callback), daemon=True)
            self._poll_stop = stop
            self._poll_thread = thread
            thread.start()

    def close(self) -> None:
        with self._lock:
            self._stop_polling_locked()
            port = self._port
            self._port = None
        if port is None:
            return
        try:
            port.close()
        except Exception as exc:
            logger.debug("Closing MIDI input %r failed: %s", self.device.name, exc)

    def _stop_polling_locked(self) -> None:
        stop = self._poll_stop
        thread = self._poll_thread
        self._poll_stop = None
        self._poll_thread = None
        if stop is not None:
            stop.set()
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=0.2)

    def _poll_loop(self, port: Any, stop: threading.Event, callback: PortCallback) -> None:
        while not stop.is_set():
            try:
                messages = list(port.iter_pending())
            except Exception as exc:
                logger.debug("Polling MIDI input %r stopped: %s", self.device.name, exc)
                return
            for message in messages:
                callback(message)
            stop.wait(self._poll_interval)


class MidiInputBackend:

    def __init__(self, module_name: str = "mido") -> None:
        self._module_name = module_name
        self._mido_module = None
        self._backend_error = ""

    def probe(self) -> None:
        try:
            module = importlib.import_module(self._module_name)
        except Exception as exc:
            self._mido_module = None
            self._backend_error = f"MIDI input is not supported: could not import {self._module_name}: {exc}"
            raise MidiBackendError(self._backend_error) from exc

        try:
            list(module.get_input_names())
        except Exception as exc:
            self._mido_module = None
            self._backend_error = self._format_backend_error(exc)
            raise MidiBackendError(self._backend_error) from exc

        self._mido_module = module
        self._backend_error = ""

    @staticmethod
    def _format_backend_error(exc: Exception) -> str:
        missing_module = str(getattr(exc, "name", "")).strip().lower()
        if isinstance(exc, ModuleNotFoundError) and missing_module == "rtmidi":
            return (
                "MIDI input is not supported: could not load module 'rtmidi'. "
                "Install 'python-rtmidi' for this Python environment."
            )
        text = str(exc or "").strip()
        if "midiinwinmm::openport" in text.lower():
            return f"{type(exc).__name__}: {exc}. The MIDI input connection may already be in use by another app."
        return f"{type(exc).__name__}: {exc}"

    @property
    def available(self) -> bool:
        return self._mido_module is not None

    def backend_error(self) -> str:
        return self._backend_error

    def list_input_devices(self) -> list[Device]:
        if self._mido_module is None:
            raise MidiBackendError(self._backend_error or "MIDI input backend not available.")
        try:
            names = list(self._mido_module.get_input_names())
        except Exception as exc:
            self._backend_error = self._format_backend_error(exc)
            raise MidiBackendError(self._backend_error) from exc
        self._backend_error = ""
        devices: list[Device] = []
        seen: set[str] = set()
        for raw_name in names:
            name = str(raw_name).strip()
            if not name or name in seen:
                continue
            seen.add(name)
            devices.append(Device(id=name, name=name))
        return devices

    def open_port(self, device: Device, callback: PortCallback) -> MidiInputPort:
        if self._mido_module is None:
            detail = f" ({self._backend_error})" if self._backend_error else ""
            raise MidiBackendError(f"MIDI input backend not available{detail}.")
        try:
            return self._open_with_fallback(device, callback)
        except Exception as exc:
            detail = self._format_backend_error(exc)
            raise MidiBackendError(f"MIDI input connection to '{device.name}' failed: {detail}") from exc

    def _open_with_fallback(self, device: Device, callback: PortCallback) -> MidiInputPort:
        first_error: Exception | None = None
        for attempt in range(2):
            try:
                port = self._mido_module.open_input(device.id, callback=callback)
                return MidiInputPort(device, port)
            except Exception as exc:
                if first_error is None:
                    first_error = exc
                if attempt == 0 and self._is_winmm_open_error(exc):
                    time.sleep(0.12)
                    continue
                break

        # Some backends refuse callbacks; poll the port instead.
        try:
            port = self._mido_module.open_input(device.id)
        except Exception:
            if first_error is not None:
                raise first_error
            raise
        wrapper = MidiInputPort(device, port)
        wrapper.start_polling(callback)
        return wrapper

    @staticmethod
    def _is_winmm_open_error(exc: Exception) -> bool:
        text = str(exc or "").lower()
        return "midiinwinmm::openport" in text or "error creating windows mm midi input port" in text
