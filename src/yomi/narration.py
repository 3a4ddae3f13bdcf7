from __future__ import annotations

import threading
from dataclasses import dataclass
from itertools import count
from typing import Callable, Protocol

from .logging_utils import debug_log
from .segmenter import clean_text_for_speech
from .settings import SettingsStore, TTSSettings


class EngineFailure(RuntimeError):
    """Raised or reported when the speech engine fails an utterance."""


@dataclass(frozen=True, slots=True)
class SpeechOptions:
    language: str
    voice: str | None
    pitch: float
    rate: float

    @classmethod
    def from_settings(cls, settings: TTSSettings) -> "SpeechOptions":
        return cls(
            language=settings.language,
            voice=settings.voice,
            pitch=settings.pitch,
            rate=settings.speed,
        )


@dataclass(frozen=True, slots=True)
class VoiceOption:
    id: str
    name: str
    language: str
    quality: str = "default"

    def as_payload(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "language": self.language,
            "quality": self.quality,
        }


DoneCallback = Callable[[], None]
ErrorCallback = Callable[[EngineFailure], None]


class SpeechEngine(Protocol):
    def speak(
        self,
        text: str,
        options: SpeechOptions,
        on_done: Callable[[], None],
        on_error: Callable[[object], None],
    ) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> None: ...

    def list_voices(self, language: str | None = None) -> list[VoiceOption]: ...


def _as_engine_failure(error: object) -> EngineFailure:
    if isinstance(error, EngineFailure):
        return error
    if isinstance(error, BaseException):
        failure = EngineFailure(str(error) or type(error).__name__)
        failure.__cause__ = error
        return failure
    return EngineFailure(str(error) if error is not None else "speech engine error")


class Utterance:
    """One speak request. Its callbacks fire at most once, and never after cancel."""

    _ids = count(1)

    def __init__(self, text: str, on_done: DoneCallback | None, on_error: ErrorCallback | None) -> None:
        self.id = next(self._ids)
        self.text = text
        self._on_done = on_done
        self._on_error = on_error
        self._settled = False
        self._lock = threading.Lock()

    @property
    def settled(self) -> bool:
        return self._settled

    def _claim(self) -> bool:
        with self._lock:
            if self._settled:
                return False
            self._settled = True
            return True

    def cancel(self) -> bool:
        return self._claim()

    def complete(self) -> bool:
        if not self._claim():
            debug_log(f"Dropping completion for utterance {self.id}")
            return False
        if self._on_done is not None:
            self._on_done()
        return True

    def fail(self, error: object) -> bool:
        if not self._claim():
            debug_log(f"Dropping error for utterance {self.id}: {error}")
            return False
        if self._on_error is not None:
            self._on_error(_as_engine_failure(error))
        return True


class NarrationDriver:
    """
    Wrapper around a speech engine that applies the current TTS settings.
    """

    def __init__(self, engine: SpeechEngine, settings_store: SettingsStore) -> None:
        self.engine = engine
        self.settings_store = settings_store
        self._lock = threading.Lock()
        self._current: Utterance | None = None
        self._speaking = False
        self._paused = False

    @property
    def settings(self) -> TTSSettings:
        return self.settings_store.settings

    @property
    def speaking(self) -> bool:
        return self._speaking

    @property
    def paused(self) -> bool:
        return self._paused

    def update_settings(self, **updates: object) -> TTSSettings:
        return self.settings_store.update(**updates)

    def speak(
        self,
        text: str,
        on_done: DoneCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Utterance:
        options = SpeechOptions.from_settings(self.settings_store.settings)
        utterance = Utterance(clean_text_for_speech(text), on_done, on_error)

        def _done() -> None:
            if self._finish(utterance):
                utterance.complete()

        def _error(error: object) -> None:
            if self._finish(utterance):
                utterance.fail(error)

        with self._lock:
            previous = self._current
            self._current = utterance
            self._speaking = True
            self._paused = False
        if previous is not None:
            previous.cancel()
        debug_log(f"speak #{utterance.id}: {utterance.text[:60]!r}")
        try:
            self.engine.speak(utterance.text, options, _done, _error)
        except Exception as exc:
            _error(exc)
        return utterance

    def _finish(self, utterance: Utterance) -> bool:
        with self._lock:
            if utterance.settled:
                return False
            if self._current is utterance:
                self._current = None
                self._speaking = False
                self._paused = False
            return True

    def pause(self) -> None:
        with self._lock:
            if not self._speaking or self._paused:
                return
            self._paused = True
        self.engine.pause()

    def resume(self) -> None:
        with self._lock:
            if not self._paused:
                return
            self._paused = False
        self.engine.resume()

    def stop(self) -> None:
        with self._lock:
            current = self._current
            self._current = None
            self._speaking = False
            self._paused = False
        if current is not None:
            current.cancel()
        self.engine.stop()

    def list_voices(self, language: str | None = None) -> list[VoiceOption]:
        try:
            voices = self.engine.list_voices()
        except Exception as exc:
            debug_log(f"Failed to list voices: {exc}")
            return []
        if not language:
            return list(voices)
        prefix = language.casefold()
        return [voice for voice in voices if voice.language.casefold().startswith(prefix)]


__all__ = [
    "EngineFailure",
    "NarrationDriver",
    "SpeechEngine",
    "SpeechOptions",
    "Utterance",
    "VoiceOption",
]
