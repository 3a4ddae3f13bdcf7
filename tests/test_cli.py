from __future__ import annotations

import json
from pathlib import Path

import pytest

from yomi import cli
from yomi.cursor import Cursor
from yomi.progress import JsonProgressBackend, ProgressStore


@pytest.fixture
def yomi_home(tmp_path: Path, monkeypatch) -> Path:
    home = tmp_path / "home"
    monkeypatch.setenv("YOMI_HOME", str(home))
    return home


def test_segment_json_output(tmp_path: Path, capsys) -> None:
    book = tmp_path / "book.txt"
    book.write_text("Hello world. This is a test.\n\nSecond paragraph here.", encoding="utf-8")

    assert cli.main(["segment", str(book), "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert len(payload["text_sha1"]) == 40
    assert [len(p["sentences"]) for p in payload["paragraphs"]] == [2, 1]
    assert payload["paragraphs"][1]["sentences"][0] == {
        "index": 0,
        "start": 30,
        "end": 52,
        "text": "Second paragraph here.",
    }


def test_segment_missing_file_exits(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["segment", str(tmp_path / "nope.txt")])
    assert "Document not found" in str(excinfo.value)


def test_settings_update_persists(yomi_home: Path, capsys) -> None:
    assert cli.main(["settings", "--speed", "1.5", "--voice", "3"]) == 0
    out = capsys.readouterr().out
    assert "speed=1.5" in out
    assert "voice=3" in out

    stored = json.loads((yomi_home / "settings.json").read_text(encoding="utf-8"))
    assert stored["tts_settings"]["speed"] == 1.5

    assert cli.main(["settings", "--clear-voice"]) == 0
    out = capsys.readouterr().out
    assert "voice=engine default" in out
    assert "speed=1.5" in out


def test_settings_rejects_invalid_speed(yomi_home: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["settings", "--speed", "0"])
    assert "speed must be a positive number" in str(excinfo.value)


def test_progress_listing_and_reset(yomi_home: Path, capsys) -> None:
    store = ProgressStore(JsonProgressBackend(yomi_home / "progress.json"))
    store.save("alice", "moby", Cursor(4, 2, 100))

    assert cli.main(["progress", "--user", "alice"]) == 0
    assert "moby" in capsys.readouterr().out

    assert cli.main(["progress", "--user", "alice", "--reset", "moby"]) == 0
    assert "Reset progress for moby." in capsys.readouterr().out
    assert cli.main(["progress", "--user", "alice"]) == 0
    assert "No saved progress for alice." in capsys.readouterr().out


def test_main_without_arguments_prints_help(capsys) -> None:
    assert cli.main([]) == 0
    assert "Commands:" in capsys.readouterr().out


def test_unknown_command_errors() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["dance"])
    assert excinfo.value.code == 2
