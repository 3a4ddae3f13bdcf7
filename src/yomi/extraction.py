from __future__ import annotations

from pathlib import Path
from typing import Protocol

_TEXT_ENCODINGS = ("utf-8-sig", "cp932", "euc_jp")
_CHAPTER_SEPARATOR = "\n\n"


class ExtractionFailure(RuntimeError):
    """Raised when no text can be obtained for a document."""


class TextSource(Protocol):
    def extract_text(self, uri: str) -> str: ...


def _decode_text(raw: bytes) -> str:
    for enc in _TEXT_ENCODINGS:
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="ignore")


def _is_chapter_file(path: Path) -> bool:
    return (
        path.is_file()
        and path.suffix.lower() == ".txt"
        and not path.name.endswith(".original.txt")
    )


def list_chapter_files(book_dir: Path) -> list[Path]:
    return [p for p in sorted(book_dir.glob("*.txt")) if _is_chapter_file(p)]


class FileTextSource:
    """
    Plain-text documents on disk.

    A URI naming a directory is read as a chapterized book: its chapter
    ``.txt`` files are joined in name order, one paragraph break apart.
    """

    def __init__(self, root: Path | None = None) -> None:
        self.root = root

    def resolve(self, uri: str) -> Path:
        path = Path(uri).expanduser()
        if self.root is not None and not path.is_absolute():
            path = self.root / path
        return path

    def extract_text(self, uri: str) -> str:
        path = self.resolve(uri)
        if path.is_dir():
            chapters = list_chapter_files(path)
            if not chapters:
                raise ExtractionFailure(f"No chapter text files found in {path}")
            parts = [self._read(chapter).strip() for chapter in chapters]
            return _CHAPTER_SEPARATOR.join(part for part in parts if part)
        if not path.exists():
            raise ExtractionFailure(f"Document not found: {path}")
        if path.suffix.lower() not in {".txt", ".text", ".md"}:
            raise ExtractionFailure(f"Unsupported document type: {path.suffix or path.name}")
        return self._read(path)

    def _read(self, path: Path) -> str:
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise ExtractionFailure(f"Failed to read {path}: {exc}") from exc
        return _decode_text(raw).replace("\r\n", "\n")


__all__ = [
    "ExtractionFailure",
    "FileTextSource",
    "TextSource",
    "list_chapter_files",
]
