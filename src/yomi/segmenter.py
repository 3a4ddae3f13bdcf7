from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Iterable, Literal

SegmentKind = Literal["paragraph", "sentence"]

_PARAGRAPH_BREAK_RE = re.compile(r"(?:\r?\n){2,}")
_SENTENCE_RE = re.compile(r"[^.!?]*[.!?]+|[^.!?]+$")
_WHITESPACE_RE = re.compile(r"\s+")
_MARKUP_CHARS_RE = re.compile(r"[*_~`]")


@dataclass(frozen=True, slots=True)
class Segment:
    kind: SegmentKind
    index: int
    content: str
    start: int
    end: int


@dataclass(frozen=True, slots=True)
class Segmentation:
    """
    Paragraphs of one text version, each with its sentences.

    Sentence offsets are absolute positions in the source text, like the
    paragraph offsets.
    """

    text_sha1: str
    paragraphs: tuple[Segment, ...]
    sentences: tuple[tuple[Segment, ...], ...]

    @property
    def paragraph_count(self) -> int:
        return len(self.paragraphs)

    @property
    def total_sentences(self) -> int:
        return sum(len(group) for group in self.sentences)

    @property
    def is_empty(self) -> bool:
        return not self.paragraphs

    def sentence_count(self, paragraph_index: int) -> int:
        if paragraph_index < 0 or paragraph_index >= len(self.sentences):
            return 0
        return len(self.sentences[paragraph_index])

    def sentence(self, paragraph_index: int, sentence_index: int) -> Segment | None:
        if self.sentence_count(paragraph_index) <= sentence_index or sentence_index < 0:
            return None
        return self.sentences[paragraph_index][sentence_index]

    def ordinal(self, paragraph_index: int, sentence_index: int) -> int:
        preceding = sum(len(group) for group in self.sentences[:paragraph_index])
        return preceding + sentence_index

    def locate(self, offset: int) -> tuple[int, int] | None:
        """
        Return the (paragraph, sentence) pair covering ``offset``.

        Offsets falling between sentences resolve to the next sentence;
        offsets past the end resolve to the last one.
        """
        if self.is_empty:
            return None
        for p_index, group in enumerate(self.sentences):
            for s_index, sentence in enumerate(group):
                if offset < sentence.end:
                    return p_index, s_index
        last_paragraph = len(self.sentences) - 1
        return last_paragraph, len(self.sentences[last_paragraph]) - 1


def text_version(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def segment_paragraphs(text: str) -> list[Segment]:
    """
    Split text into paragraphs on runs of two or more newlines.
    Whitespace-only blocks are dropped; offsets point at the trimmed content.
    """
    paragraphs: list[Segment] = []
    for raw, raw_start in _iter_blocks(text):
        start = raw_start + _leading_trim_index(raw)
        end = raw_start + len(raw) - _trailing_trim_count(raw)
        if start >= end:
            continue
        paragraphs.append(
            Segment(
                kind="paragraph",
                index=len(paragraphs),
                content=text[start:end],
                start=start,
                end=end,
            )
        )
    return paragraphs


def segment_sentences(paragraph: str) -> list[str]:
    return [span.content for span in _sentence_spans(paragraph, 0)]


def segment_sentence_spans(paragraph: Segment) -> list[Segment]:
    return _sentence_spans(paragraph.content, paragraph.start)


def segment_text(text: str) -> Segmentation:
    paragraphs = segment_paragraphs(text)
    sentences = tuple(tuple(segment_sentence_spans(paragraph)) for paragraph in paragraphs)
    return Segmentation(
        text_sha1=text_version(text),
        paragraphs=tuple(paragraphs),
        sentences=sentences,
    )


def clean_text_for_speech(text: str) -> str:
    collapsed = _WHITESPACE_RE.sub(" ", text)
    return _MARKUP_CHARS_RE.sub("", collapsed).strip()


def _sentence_spans(paragraph: str, base_start: int) -> list[Segment]:
    spans: list[Segment] = []
    for match in _SENTENCE_RE.finditer(paragraph):
        piece = match.group(0)
        start = match.start() + _leading_trim_index(piece)
        end = match.end() - _trailing_trim_count(piece)
        if start >= end:
            continue
        spans.append(
            Segment(
                kind="sentence",
                index=len(spans),
                content=paragraph[start:end],
                start=base_start + start,
                end=base_start + end,
            )
        )
    if not spans:
        start = _leading_trim_index(paragraph)
        end = len(paragraph) - _trailing_trim_count(paragraph)
        if start < end:
            # No terminal punctuation: the whole paragraph is one sentence.
            spans.append(
                Segment(
                    kind="sentence",
                    index=0,
                    content=paragraph[start:end],
                    start=base_start + start,
                    end=base_start + end,
                )
            )
    return spans


def _iter_blocks(text: str) -> Iterable[tuple[str, int]]:
    cursor = 0
    for match in _PARAGRAPH_BREAK_RE.finditer(text):
        yield text[cursor : match.start()], cursor
        cursor = match.end()
    yield text[cursor:], cursor


def _leading_trim_index(text: str) -> int:
    idx = 0
    while idx < len(text) and text[idx].isspace():
        idx += 1
    return idx


def _trailing_trim_count(text: str) -> int:
    idx = len(text)
    while idx > 0 and text[idx - 1].isspace():
        idx -= 1
    return len(text) - idx


__all__ = [
    "Segment",
    "SegmentKind",
    "Segmentation",
    "clean_text_for_speech",
    "segment_paragraphs",
    "segment_sentence_spans",
    "segment_sentences",
    "segment_text",
    "text_version",
]
