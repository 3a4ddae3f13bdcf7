from __future__ import annotations

import argparse
import getpass
import json
import sys
from importlib import metadata
from pathlib import Path

import tomllib
import uvicorn
from rich.console import Console
from rich.table import Table

from .config import progress_path, settings_path
from .extraction import ExtractionFailure, FileTextSource
from .logging_utils import build_uvicorn_log_config, set_debug_logging
from .narration import NarrationDriver
from .progress import HttpProgressBackend, JsonProgressBackend, ProgressBackend, ProgressStore
from .progress_server import ProgressServerConfig, create_app
from .segmenter import segment_text
from .session import DEFAULT_SAVE_INTERVAL, ReadingSession, SessionConfig, SessionState
from .settings import JsonSettingsBackend, SettingsPersistenceError, SettingsStore
from .voice_defaults import DEFAULT_ENGINE_URL, DEFAULT_SPEAKER_ID
from .voicevox import (
    FfplayPlayer,
    VoiceVoxClient,
    VoiceVoxError,
    VoiceVoxSpeechEngine,
    VoiceVoxUnavailableError,
)

_COMMANDS = ("read", "segment", "voices", "settings", "progress", "serve")
_READ_HELP = "Enter: play/pause · n: next · b: back · s: status · q: quit"


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover - defensive
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("yomi")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_version_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"yomi {__version__}",
    )


def _add_debug_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Print debug traces for narration, persistence and state changes.",
    )


def _add_progress_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--user",
        default=None,
        help="User id for saved progress (default: the login name).",
    )
    parser.add_argument(
        "--progress-url",
        default=None,
        help="Base URL of a `yomi serve` progress service. Default: local progress file.",
    )


def _add_engine_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--engine-url",
        default=DEFAULT_ENGINE_URL,
        help="VoiceVox engine URL (default: %(default)s).",
    )
    parser.add_argument(
        "--speaker",
        type=int,
        default=DEFAULT_SPEAKER_ID,
        help="Fallback VoiceVox speaker id when no voice is configured (default: %(default)s).",
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Sentence-by-sentence narration with resumable reading positions.",
        epilog=f"Commands: {', '.join(_COMMANDS)}. Run `yomi <command> -h` for details.",
    )
    _add_version_flag(ap)
    return ap


def build_read_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Narrate a text file or chapterized book directory.")
    _add_version_flag(ap)
    ap.add_argument("input_path", help="Path to a .txt file or a directory of chapter .txt files.")
    ap.add_argument("--book", default=None, help="Book id for saved progress (default: file name).")
    _add_progress_flags(ap)
    _add_engine_flags(ap)
    ap.add_argument(
        "--ffplay",
        default="ffplay",
        help="Path to the ffplay binary used for playback (default: %(default)s).",
    )
    ap.add_argument(
        "--save-interval",
        type=float,
        default=DEFAULT_SAVE_INTERVAL,
        help="Seconds between automatic progress saves (default: %(default)s).",
    )
    ap.add_argument(
        "--autoplay",
        action="store_true",
        help="Start narrating immediately after loading.",
    )
    _add_debug_flag(ap)
    return ap


def build_segment_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Show the paragraph and sentence segmentation of a text.")
    _add_version_flag(ap)
    ap.add_argument("input_path", help="Path to a .txt file or a directory of chapter .txt files.")
    ap.add_argument("--json", action="store_true", help="Emit the segmentation as JSON.")
    return ap


def build_voices_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="List voices offered by the speech engine.")
    _add_version_flag(ap)
    _add_engine_flags(ap)
    ap.add_argument("--language", default=None, help="Only list voices whose language starts with this.")
    _add_debug_flag(ap)
    return ap


def build_settings_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Show or update the saved TTS settings.")
    _add_version_flag(ap)
    ap.add_argument("--language", default=None, help="Speech language tag, e.g. en-US.")
    ap.add_argument("--voice", default=None, help="Voice identifier to use.")
    ap.add_argument("--clear-voice", action="store_true", help="Use the engine's default voice.")
    ap.add_argument("--speed", type=float, default=None, help="Speech rate multiplier (typically 0.5–3.0).")
    ap.add_argument("--pitch", type=float, default=None, help="Pitch multiplier.")
    return ap


def build_progress_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="List or reset saved reading positions.")
    _add_version_flag(ap)
    _add_progress_flags(ap)
    ap.add_argument("--limit", type=int, default=10, help="Number of recent books to list (default: %(default)s).")
    ap.add_argument("--reset", metavar="BOOK", default=None, help="Forget the saved position for BOOK.")
    _add_debug_flag(ap)
    return ap


def build_serve_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Serve reading progress over HTTP.")
    _add_version_flag(ap)
    ap.add_argument("--host", default="127.0.0.1", help="Bind address (default: %(default)s).")
    ap.add_argument("--port", type=int, default=8765, help="Port (default: %(default)s).")
    ap.add_argument(
        "--store",
        default=None,
        help="Progress JSON file (default: the local progress file).",
    )
    return ap


def _default_user(value: str | None) -> str:
    if value and value.strip():
        return value.strip()
    try:
        return getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - no login name
        return "local"


def _progress_backend(progress_url: str | None) -> ProgressBackend:
    if progress_url:
        return HttpProgressBackend(progress_url)
    return JsonProgressBackend(progress_path())


def _settings_store() -> SettingsStore:
    return SettingsStore(JsonSettingsBackend(settings_path()))


def _run_segment(args: argparse.Namespace) -> int:
    console = Console()
    try:
        text = FileTextSource().extract_text(args.input_path)
    except ExtractionFailure as exc:
        raise SystemExit(str(exc)) from exc
    segmentation = segment_text(text)
    if args.json:
        payload = {
            "text_sha1": segmentation.text_sha1,
            "paragraphs": [
                {
                    "index": paragraph.index,
                    "start": paragraph.start,
                    "end": paragraph.end,
                    "sentences": [
                        {"index": s.index, "start": s.start, "end": s.end, "text": s.content}
                        for s in segmentation.sentences[paragraph.index]
                    ],
                }
                for paragraph in segmentation.paragraphs
            ],
        }
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return 0
    if segmentation.is_empty:
        console.print("No paragraphs found.")
        return 0
    table = Table(title=f"{segmentation.paragraph_count} paragraphs, {segmentation.total_sentences} sentences")
    table.add_column("¶", justify="right")
    table.add_column("#", justify="right")
    table.add_column("Offsets", justify="right")
    table.add_column("Sentence")
    for p_index, group in enumerate(segmentation.sentences):
        for sentence in group:
            table.add_row(
                str(p_index),
                str(sentence.index),
                f"{sentence.start}–{sentence.end}",
                sentence.content,
            )
    console.print(table)
    return 0


def _run_settings(args: argparse.Namespace) -> int:
    console = Console()
    store = _settings_store()
    updates: dict[str, object] = {}
    if args.language is not None:
        updates["language"] = args.language
    if args.clear_voice:
        updates["voice"] = None
    elif args.voice is not None:
        updates["voice"] = args.voice
    if args.speed is not None:
        updates["speed"] = args.speed
    if args.pitch is not None:
        updates["pitch"] = args.pitch
    if updates:
        try:
            store.update(**updates)
        except ValueError as exc:
            raise SystemExit(str(exc)) from exc
        except SettingsPersistenceError as exc:
            raise SystemExit(str(exc)) from exc
    settings = store.settings
    console.print(f"language={settings.language}")
    console.print(f"voice={settings.voice or 'engine default'}")
    console.print(f"speed={format(settings.speed, 'g')}")
    console.print(f"pitch={format(settings.pitch, 'g')}")
    return 0


def _run_voices(args: argparse.Namespace) -> int:
    set_debug_logging(bool(args.debug))
    console = Console()
    engine = VoiceVoxSpeechEngine(VoiceVoxClient(args.engine_url), default_speaker=args.speaker)
    try:
        voices = engine.list_voices(args.language)
    except (VoiceVoxError, VoiceVoxUnavailableError) as exc:
        raise SystemExit(str(exc)) from exc
    finally:
        engine.close()
    if not voices:
        console.print("No voices available.")
        return 0
    for voice in voices:
        console.print(f"{voice.id:>4}  {voice.name}  [dim]{voice.language}[/dim]")
    return 0


def _run_progress(args: argparse.Namespace) -> int:
    set_debug_logging(bool(args.debug))
    console = Console()
    user = _default_user(args.user)
    store = ProgressStore(_progress_backend(args.progress_url))
    if args.reset:
        if store.reset(user, args.reset):
            console.print(f"Reset progress for {args.reset}.")
        else:
            console.print(f"No saved progress for {args.reset}.")
        return 0
    snapshots = store.recent(user, args.limit)
    if not snapshots:
        console.print(f"No saved progress for {user}.")
        return 0
    table = Table(title=f"Recent books for {user}")
    table.add_column("Book")
    table.add_column("Paragraph", justify="right")
    table.add_column("Sentence", justify="right")
    table.add_column("Offset", justify="right")
    for snap in snapshots:
        table.add_row(
            snap.book_id,
            str(snap.position.paragraph_index + 1),
            str(snap.position.sentence_index + 1),
            str(snap.position.char_offset),
        )
    console.print(table)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    store_path = Path(args.store).expanduser().resolve() if args.store else progress_path()
    app = create_app(ProgressServerConfig(store_path=store_path))
    print(f"Serving yomi progress from {store_path}")
    print(f"Progress URL: http://{args.host}:{args.port}/api/progress/")
    print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="info",
        log_config=build_uvicorn_log_config(),
    )
    return 0


class _ReadConsole:
    """Prints session events as narration progresses."""

    def __init__(self, console: Console) -> None:
        self.console = console

    def __call__(self, event: dict[str, object]) -> None:
        kind = event.get("event")
        if kind == "sentence_start":
            label = f"{int(event['paragraph_index']) + 1}.{int(event['sentence_index']) + 1}"
            self.console.print(f"[dim]{label:>7}[/dim] {event.get('text')}")
        elif kind == "position":
            label = f"{int(event['paragraph_index']) + 1}.{int(event['sentence_index']) + 1}"
            self.console.print(f"[dim]→ {label}[/dim]")
        elif kind == "restored":
            position = event.get("position")
            if isinstance(position, dict):
                note = " (adjusted to the current text)" if event.get("clamped") else ""
                self.console.print(
                    f"Resuming at paragraph {int(position['paragraph_index']) + 1}, "
                    f"sentence {int(position['sentence_index']) + 1}{note}."
                )
        elif kind == "engine_error":
            self.console.print(f"[red]Speech failed:[/red] {event.get('error')}")
        elif kind == "load_error":
            self.console.print(f"[red]Unable to load book:[/red] {event.get('error')}")
        elif kind == "finished":
            self.console.print("[green]You have reached the end of the book.[/green]")


def _run_read(args: argparse.Namespace) -> int:
    set_debug_logging(bool(args.debug))
    console = Console()
    input_path = Path(args.input_path).expanduser().resolve()
    book_id = args.book or (input_path.stem if input_path.is_file() else input_path.name)
    engine = VoiceVoxSpeechEngine(
        VoiceVoxClient(args.engine_url),
        player=FfplayPlayer(args.ffplay),
        default_speaker=args.speaker,
    )
    driver = NarrationDriver(engine, _settings_store())
    session = ReadingSession(
        _default_user(args.user),
        book_id,
        str(input_path),
        source=FileTextSource(),
        driver=driver,
        store=ProgressStore(_progress_backend(args.progress_url)),
        config=SessionConfig(save_interval=args.save_interval),
        listener=_ReadConsole(console),
    )
    try:
        state = session.load()
        if state == SessionState.ERROR:
            return 1
        if session.cursor is None:
            console.print("This book has no readable text.")
            return 0
        console.print(_READ_HELP)
        if args.autoplay:
            session.play()
        _read_loop(session, console)
    finally:
        session.close()
        engine.close()
    return 0


def _read_loop(session: ReadingSession, console: Console) -> None:
    while True:
        try:
            command = input().strip().lower()
        except (EOFError, KeyboardInterrupt):
            return
        if command in {"q", "quit"}:
            return
        if command in {"", "p"}:
            if session.state == SessionState.PLAYING:
                session.pause()
            elif session.state == SessionState.FINISHED:
                console.print("Finished. Press b to go back.")
            else:
                session.play()
        elif command == "n":
            session.skip_forward()
        elif command == "b":
            session.skip_back()
        elif command == "s":
            position = session.position
            if position is not None:
                console.print(
                    f"{session.state.value} · paragraph {position.paragraph_index + 1} · "
                    f"sentence {position.sentence_index + 1} · {session.fraction_complete:.0%}"
                )
        else:
            console.print(_READ_HELP)


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if argv and argv[0] == "read":
        return _run_read(build_read_parser().parse_args(argv[1:]))
    if argv and argv[0] == "segment":
        return _run_segment(build_segment_parser().parse_args(argv[1:]))
    if argv and argv[0] == "voices":
        return _run_voices(build_voices_parser().parse_args(argv[1:]))
    if argv and argv[0] == "settings":
        return _run_settings(build_settings_parser().parse_args(argv[1:]))
    if argv and argv[0] == "progress":
        return _run_progress(build_progress_parser().parse_args(argv[1:]))
    if argv and argv[0] == "serve":
        return _run_serve(build_serve_parser().parse_args(argv[1:]))

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    parser.parse_args(argv)
    parser.error(f"unknown command: {argv[0]}")


if __name__ == "__main__":
    raise SystemExit(main())
