from .cursor import Cursor, EmptyDocumentError, ReadingCursor, clamp_position
from .extraction import ExtractionFailure, FileTextSource, TextSource
from .narration import EngineFailure, NarrationDriver, SpeechEngine, SpeechOptions, VoiceOption
from .progress import (
    HttpProgressBackend,
    JsonProgressBackend,
    PersistenceFailure,
    ProgressSnapshot,
    ProgressStore,
)
from .segmenter import (
    Segment,
    Segmentation,
    segment_paragraphs,
    segment_sentences,
    segment_text,
)
from .session import ReadingSession, SessionConfig, SessionEvent, SessionState, transition
from .settings import JsonSettingsBackend, SettingsStore, TTSSettings

__all__ = [
    "Cursor",
    "EmptyDocumentError",
    "EngineFailure",
    "ExtractionFailure",
    "FileTextSource",
    "HttpProgressBackend",
    "JsonProgressBackend",
    "JsonSettingsBackend",
    "NarrationDriver",
    "PersistenceFailure",
    "ProgressSnapshot",
    "ProgressStore",
    "ReadingCursor",
    "ReadingSession",
    "Segment",
    "Segmentation",
    "SessionConfig",
    "SessionEvent",
    "SessionState",
    "SettingsStore",
    "SpeechEngine",
    "SpeechOptions",
    "TTSSettings",
    "TextSource",
    "VoiceOption",
    "clamp_position",
    "segment_paragraphs",
    "segment_sentences",
    "segment_text",
    "transition",
]
