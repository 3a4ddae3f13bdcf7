from __future__ import annotations

from pathlib import Path

import pytest

from yomi.extraction import ExtractionFailure, FileTextSource, list_chapter_files


def test_reads_plain_text_and_normalizes_newlines(tmp_path: Path) -> None:
    book = tmp_path / "book.txt"
    book.write_bytes("First.\r\n\r\nSecond.".encode("utf-8"))

    assert FileTextSource().extract_text(str(book)) == "First.\n\nSecond."


def test_relative_uri_resolves_against_root(tmp_path: Path) -> None:
    (tmp_path / "notes.md").write_text("Hello.", encoding="utf-8")
    assert FileTextSource(root=tmp_path).extract_text("notes.md") == "Hello."


def test_decodes_shift_jis_text(tmp_path: Path) -> None:
    book = tmp_path / "jp.txt"
    book.write_bytes("吾輩は猫である。".encode("cp932"))

    assert FileTextSource().extract_text(str(book)) == "吾輩は猫である。"


def test_directory_joins_chapters_in_order(tmp_path: Path) -> None:
    book_dir = tmp_path / "novel"
    book_dir.mkdir()
    (book_dir / "002.txt").write_text("Chapter two.\n", encoding="utf-8")
    (book_dir / "001.txt").write_text("\nChapter one.", encoding="utf-8")
    (book_dir / "001.original.txt").write_text("Ignored.", encoding="utf-8")
    (book_dir / "003.txt").write_text("   ", encoding="utf-8")
    (book_dir / "cover.jpg").write_bytes(b"\xff\xd8")

    assert [p.name for p in list_chapter_files(book_dir)] == ["001.txt", "002.txt", "003.txt"]
    assert FileTextSource().extract_text(str(book_dir)) == "Chapter one.\n\nChapter two."


def test_missing_and_unsupported_documents_fail(tmp_path: Path) -> None:
    source = FileTextSource()
    with pytest.raises(ExtractionFailure):
        source.extract_text(str(tmp_path / "missing.txt"))

    epub = tmp_path / "book.epub"
    epub.write_bytes(b"PK")
    with pytest.raises(ExtractionFailure):
        source.extract_text(str(epub))

    empty_dir = tmp_path / "empty"
    empty_dir.mkdir()
    with pytest.raises(ExtractionFailure):
        source.extract_text(str(empty_dir))
