import pytest

import openkeys.cli


def test_parser_accepts_all_options (tmp_path) -> None:

    args = openkeys.cli.build_parser().parse_args(
        [
            "--device",
            "Keys A",
            "--record",
            str(tmp_path / "take.mid"),
            "--json",
            str(tmp_path / "take.json"),
            "--tempo",
            "96",
            "--settings",
            str(tmp_path / "settings.json"),
            "--verbose",
        ]
    )

    assert args.device == "Keys A"
    assert args.record == tmp_path / "take.mid"
    assert args.json == tmp_path / "take.json"
    assert args.tempo == 96.0
    assert args.verbose


def test_list_prints_devices (patch_midi: None, capsys: pytest.CaptureFixture) -> None:

    """--list prints each input once and exits cleanly."""

    assert openkeys.cli.main(["--list"]) == 0

    assert capsys.readouterr().out.splitlines() == ["Dummy MIDI"]


def test_list_reports_missing_backend (monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture) -> None:

    monkeypatch.setattr(openkeys.cli, "MidiInputBackend", _Unavailable)

    assert openkeys.cli.main(["--list"]) == 1
    assert "MIDI input unavailable" in capsys.readouterr().err


class _Unavailable:

    def probe(self) -> None:
        raise openkeys.cli.MidiBackendError("MIDI input is not supported: no backend")
