from __future__ import annotations

from typing import Callable

from yomi.narration import EngineFailure, NarrationDriver, SpeechOptions, VoiceOption
from yomi.settings import MemorySettingsBackend, SettingsStore


class FakeEngine:
    def __init__(self) -> None:
        self.spoken: list[tuple[str, SpeechOptions]] = []
        self.callbacks: list[tuple[Callable[[], None], Callable[[object], None]]] = []
        self.calls: list[str] = []
        self.voices = [
            VoiceOption(id="a", name="Alice", language="en-US"),
            VoiceOption(id="b", name="Bob", language="en-GB"),
            VoiceOption(id="c", name="Chie", language="ja-JP"),
        ]
        self.raise_on_speak: Exception | None = None

    def speak(self, text, options, on_done, on_error) -> None:
        if self.raise_on_speak is not None:
            raise self.raise_on_speak
        self.spoken.append((text, options))
        self.callbacks.append((on_done, on_error))

    def pause(self) -> None:
        self.calls.append("pause")

    def resume(self) -> None:
        self.calls.append("resume")

    def stop(self) -> None:
        self.calls.append("stop")

    def list_voices(self, language=None) -> list[VoiceOption]:
        return list(self.voices)


def _driver(engine: FakeEngine | None = None) -> tuple[NarrationDriver, FakeEngine]:
    engine = engine or FakeEngine()
    return NarrationDriver(engine, SettingsStore(MemorySettingsBackend())), engine


def test_speak_applies_current_settings_and_cleans_text() -> None:
    driver, engine = _driver()
    driver.update_settings(speed=1.25, voice="a")

    driver.speak("  *Hello*\n  world. ")

    text, options = engine.spoken[0]
    assert text == "Hello world."
    assert options == SpeechOptions(language="en-US", voice="a", pitch=1.0, rate=1.25)
    assert driver.speaking


def test_completion_fires_once() -> None:
    driver, engine = _driver()
    done: list[int] = []
    driver.speak("One.", on_done=lambda: done.append(1))
    on_done, _ = engine.callbacks[0]

    on_done()
    on_done()

    assert done == [1]
    assert not driver.speaking


def test_stop_drops_late_callbacks() -> None:
    driver, engine = _driver()
    events: list[str] = []
    driver.speak(
        "One.",
        on_done=lambda: events.append("done"),
        on_error=lambda err: events.append("error"),
    )
    on_done, on_error = engine.callbacks[0]

    driver.stop()
    on_done()
    on_error(RuntimeError("late"))

    assert events == []
    assert engine.calls == ["stop"]


def test_new_speak_supersedes_previous_utterance() -> None:
    driver, engine = _driver()
    events: list[str] = []
    first = driver.speak("One.", on_done=lambda: events.append("first"))
    driver.speak("Two.", on_done=lambda: events.append("second"))

    engine.callbacks[0][0]()
    engine.callbacks[1][0]()

    assert first.settled
    assert events == ["second"]


def test_engine_error_is_reported_as_engine_failure() -> None:
    driver, engine = _driver()
    errors: list[EngineFailure] = []
    driver.speak("One.", on_error=errors.append)

    engine.callbacks[0][1]("synth failed")

    assert len(errors) == 1
    assert isinstance(errors[0], EngineFailure)
    assert str(errors[0]) == "synth failed"


def test_synchronous_engine_exception_goes_to_on_error() -> None:
    engine = FakeEngine()
    engine.raise_on_speak = ConnectionError("engine down")
    driver, _ = _driver(engine)
    errors: list[EngineFailure] = []

    utterance = driver.speak("One.", on_error=errors.append)

    assert utterance.settled
    assert isinstance(errors[0].__cause__, ConnectionError)
    assert not driver.speaking


def test_pause_and_resume_are_idempotent() -> None:
    driver, engine = _driver()
    driver.pause()
    assert engine.calls == []

    driver.speak("One.")
    driver.pause()
    driver.pause()
    assert driver.paused
    driver.resume()
    driver.resume()

    assert engine.calls == ["pause", "resume"]
    assert not driver.paused


def test_list_voices_filters_by_language_prefix() -> None:
    driver, _ = _driver()
    assert [v.id for v in driver.list_voices()] == ["a", "b", "c"]
    assert [v.id for v in driver.list_voices("EN")] == ["a", "b"]
    assert [v.id for v in driver.list_voices("ja-jp")] == ["c"]


def test_list_voices_failure_returns_empty_list() -> None:
    class NoVoices(FakeEngine):
        def list_voices(self, language=None):
            raise ConnectionError("offline")

    driver, _ = _driver(NoVoices())
    assert driver.list_voices() == []
