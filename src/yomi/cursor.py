from __future__ import annotations

import math
from dataclasses import dataclass

from .segmenter import Segment, Segmentation


class EmptyDocumentError(ValueError):
    """Raised when a cursor is requested for a document without paragraphs."""


@dataclass(frozen=True, slots=True)
class Cursor:
    paragraph_index: int = 0
    sentence_index: int = 0
    char_offset: int = 0

    def as_payload(self) -> dict[str, int]:
        return {
            "paragraph_index": self.paragraph_index,
            "sentence_index": self.sentence_index,
            "char_offset": self.char_offset,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "Cursor | None":
        if not isinstance(payload, dict):
            return None
        values: list[int] = []
        for key in ("paragraph_index", "sentence_index", "char_offset"):
            value = payload.get(key, 0)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
            if not math.isfinite(value):
                return None
            values.append(max(0, int(value)))
        return cls(*values)


@dataclass(frozen=True, slots=True)
class RestoreResult:
    cursor: "ReadingCursor | None"
    clamped: bool


def clamp_position(position: Cursor, segmentation: Segmentation) -> Cursor | None:
    """
    Clamp a stored position onto ``segmentation``.

    The character offset is re-derived from the clamped sentence so it
    tracks the current text version. Returns None for an empty document.
    """
    if segmentation.is_empty:
        return None
    return _clamp(position, segmentation)


def _clamp(position: Cursor, segmentation: Segmentation) -> Cursor:
    paragraph_index = min(max(position.paragraph_index, 0), segmentation.paragraph_count - 1)
    sentence_total = segmentation.sentence_count(paragraph_index)
    sentence_index = min(max(position.sentence_index, 0), sentence_total - 1)
    sentence = segmentation.sentences[paragraph_index][sentence_index]
    return Cursor(paragraph_index, sentence_index, sentence.start)


class ReadingCursor:
    """
    Sentence-level position within a segmentation.

    The cursor is either active on a valid (paragraph, sentence) pair or
    finished, in which case it stays pinned on the last sentence.
    """

    def __init__(self, segmentation: Segmentation, position: Cursor | None = None) -> None:
        if segmentation.is_empty:
            raise EmptyDocumentError("Cannot place a cursor in a document without paragraphs.")
        self.segmentation = segmentation
        self._finished = False
        self._position = _clamp(position or Cursor(), segmentation)

    @classmethod
    def restore(cls, position: Cursor, segmentation: Segmentation) -> "ReadingCursor | None":
        return cls.restore_with_result(position, segmentation).cursor

    @classmethod
    def restore_with_result(cls, position: Cursor, segmentation: Segmentation) -> RestoreResult:
        clamped = clamp_position(position, segmentation)
        if clamped is None:
            return RestoreResult(cursor=None, clamped=False)
        was_clamped = (clamped.paragraph_index, clamped.sentence_index) != (
            position.paragraph_index,
            position.sentence_index,
        )
        return RestoreResult(cursor=cls(segmentation, clamped), clamped=was_clamped)

    @property
    def position(self) -> Cursor:
        return self._position

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def sentence(self) -> Segment:
        p_index, s_index = self._position.paragraph_index, self._position.sentence_index
        return self.segmentation.sentences[p_index][s_index]

    @property
    def ordinal(self) -> int:
        return self.segmentation.ordinal(
            self._position.paragraph_index, self._position.sentence_index
        )

    def advance(self) -> Cursor:
        if self._finished:
            return self._position
        p_index, s_index = self._position.paragraph_index, self._position.sentence_index
        if s_index + 1 < self.segmentation.sentence_count(p_index):
            self._move(p_index, s_index + 1)
        elif p_index + 1 < self.segmentation.paragraph_count:
            self._move(p_index + 1, 0)
        else:
            self._finished = True
        return self._position

    def retreat(self) -> Cursor:
        if self._finished:
            # Back from the end lands on the last sentence again.
            self._finished = False
            return self._position
        p_index, s_index = self._position.paragraph_index, self._position.sentence_index
        if s_index > 0:
            self._move(p_index, s_index - 1)
        elif p_index > 0:
            self._move(p_index - 1, self.segmentation.sentence_count(p_index - 1) - 1)
        return self._position

    def jump_to_end(self) -> Cursor:
        last_paragraph = self.segmentation.paragraph_count - 1
        self._move(last_paragraph, self.segmentation.sentence_count(last_paragraph) - 1)
        self._finished = True
        return self._position

    def seek(self, paragraph_index: int, sentence_index: int = 0) -> Cursor:
        self._position = _clamp(Cursor(paragraph_index, sentence_index), self.segmentation)
        self._finished = False
        return self._position

    def seek_offset(self, char_offset: int) -> Cursor:
        located = self.segmentation.locate(char_offset)
        if located is None:
            return self._position
        return self.seek(*located)

    def _move(self, paragraph_index: int, sentence_index: int) -> None:
        sentence = self.segmentation.sentences[paragraph_index][sentence_index]
        self._position = Cursor(paragraph_index, sentence_index, sentence.start)

    def __repr__(self) -> str:
        state = "finished" if self._finished else "active"
        return (
            f"ReadingCursor({state}, paragraph={self._position.paragraph_index}, "
            f"sentence={self._position.sentence_index})"
        )


__all__ = [
    "Cursor",
    "EmptyDocumentError",
    "ReadingCursor",
    "RestoreResult",
    "clamp_position",
]
