from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Sequence

from PySide6.QtCore import QCoreApplication, QTimer

from openkeys.app_controller import PianoSessionController
from openkeys.core.config import APP_NAME, APP_VERSION
from openkeys.core.messages import NormalizedMessage
from openkeys.core.midi_input import MidiBackendError, MidiInputBackend
from openkeys.core.note_recognition import recognize_chord

logger = logging.getLogger("openkeys")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="openkeys", description="Headless MIDI keyboard monitor and recorder.")
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("--list", action="store_true", help="list MIDI input devices and exit")
    parser.add_argument("--device", metavar="ID", help="connect to this input instead of auto-connecting")
    parser.add_argument("--record", metavar="FILE.mid", type=Path, help="record until interrupted and save a MIDI file")
    parser.add_argument("--json", metavar="FILE", type=Path, help="also export the recording as JSON")
    parser.add_argument("--tempo", metavar="BPM", type=float, help="tempo used for rhythm scoring")
    parser.add_argument("--settings", metavar="FILE", type=Path, help="settings file path")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    return parser


def list_devices(backend: MidiInputBackend) -> int:
    try:
        backend.probe()
        devices = backend.list_input_devices()
    except MidiBackendError as exc:
        print(f"MIDI input unavailable: {exc}", file=sys.stderr)
        return 1
    if not devices:
        print("No MIDI input devices found.")
        return 0
    for device in devices:
        print(device.id)
    return 0


def _describe(message: NormalizedMessage) -> str:
    if message.is_sustain:
        return f"sustain {'on' if message.sustain else 'off'}"
    if message.kind == "control_change":
        return f"cc {message.controller}={message.value}"
    if message.is_note_on:
        return f"{message.note} on  {message.velocity:.2f}"
    return f"{message.note} off"


def _report_rhythm(controller: PianoSessionController) -> None:
    results = controller.timing.analyze_rhythm()
    if not results:
        return
    print(f"Rhythm at {controller.timing.tempo_bpm:g} BPM:")
    for number in sorted(results):
        result = results[number]
        flag = " too long" if result.is_too_long else " too short" if result.is_too_short else ""
        print(f"  {number:3d}  {result.actual:7.0f} ms  {result.accuracy:3d}%{flag}")


def _write_outputs(controller: PianoSessionController, midi_path: Path | None, json_path: Path | None) -> int:
    recorder = controller.recorder
    recorder.stop_recording()
    if not recorder.has_take():
        if midi_path is not None or json_path is not None:
            print("Nothing was recorded.", file=sys.stderr)
        return 0
    status = 0
    if midi_path is not None:
        try:
            recorder.save_as(midi_path)
            print(f"Saved {recorder.get_event_count()} events to {midi_path}")
        except OSError as exc:
            logger.error("Could not write %s: %s", midi_path, exc)
            status = 1
    if json_path is not None:
        try:
            json_path.parent.mkdir(parents=True, exist_ok=True)
            json_path.write_text(recorder.export_to_json(), encoding="utf-8")
            print(f"Saved JSON recording to {json_path}")
        except OSError as exc:
            logger.error("Could not write %s: %s", json_path, exc)
            status = 1
    return status


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    backend = MidiInputBackend()
    if args.list:
        return list_devices(backend)

    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    app.setApplicationName(APP_NAME)
    app.setOrganizationName(APP_NAME)

    controller = PianoSessionController(backend=backend, settings_path=args.settings)
    if args.tempo is not None:
        try:
            controller.set_tempo(args.tempo)
        except ValueError as exc:
            print(f"Invalid tempo: {exc}", file=sys.stderr)
            return 2

    if args.device:
        controller.connection.auto_connect_enabled = False

    wants_recording = args.record is not None or args.json is not None

    def _on_state(state: str) -> None:
        if state == "connected" and wants_recording:
            if not controller.recorder.is_recording:
                controller.start_recording()
                print("Recording. Press Ctrl+C to stop.")

    def _on_message(message: NormalizedMessage) -> None:
        print(_describe(message))
        chord = recognize_chord(controller.tracker.notes_for("device"))
        if chord is not None and message.is_note_on:
            print(f"  chord: {chord}")

    controller.connection.stateChanged.connect(_on_state)
    controller.connection.messageReceived.connect(_on_message)

    if not controller.start():
        info = controller.connection.error_info
        print(f"MIDI input unavailable: {info.message if info else 'unknown error'}", file=sys.stderr)
        return 1

    if args.device:
        future = controller.connection.refresh_devices()
        future.add_done_callback(lambda _future: QTimer.singleShot(0, lambda: controller.connect_device(args.device)))

    signal.signal(signal.SIGINT, lambda *_args: app.quit())
    # Wake the loop periodically so the Python SIGINT handler gets to run.
    wake = QTimer()
    wake.timeout.connect(lambda: None)
    wake.start(200)

    try:
        app.exec()
    finally:
        wake.stop()
        status = _write_outputs(controller, args.record, args.json)
        _report_rhythm(controller)
        controller.shutdown()
    return status
