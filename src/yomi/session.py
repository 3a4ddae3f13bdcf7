from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .cursor import Cursor, ReadingCursor
from .extraction import ExtractionFailure, TextSource
from .logging_utils import debug_log
from .narration import EngineFailure, NarrationDriver, Utterance
from .progress import ProgressStore
from .segmenter import Segmentation, segment_text

DEFAULT_SAVE_INTERVAL = 30.0


class SessionState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    PLAYING = "playing"
    PAUSED = "paused"
    FINISHED = "finished"
    ERROR = "error"


class SessionEvent(str, Enum):
    LOADED = "loaded"
    LOAD_FAILED = "load_failed"
    PLAY = "play"
    PAUSE = "pause"
    ENGINE_ERROR = "engine_error"
    END_REACHED = "end_reached"
    REWOUND = "rewound"


_TRANSITIONS: dict[tuple[SessionState, SessionEvent], SessionState] = {
    (SessionState.LOADING, SessionEvent.LOADED): SessionState.READY,
    (SessionState.LOADING, SessionEvent.LOAD_FAILED): SessionState.ERROR,
    (SessionState.READY, SessionEvent.PLAY): SessionState.PLAYING,
    (SessionState.PAUSED, SessionEvent.PLAY): SessionState.PLAYING,
    (SessionState.PLAYING, SessionEvent.PAUSE): SessionState.PAUSED,
    (SessionState.PLAYING, SessionEvent.ENGINE_ERROR): SessionState.PAUSED,
    (SessionState.READY, SessionEvent.END_REACHED): SessionState.FINISHED,
    (SessionState.PLAYING, SessionEvent.END_REACHED): SessionState.FINISHED,
    (SessionState.PAUSED, SessionEvent.END_REACHED): SessionState.FINISHED,
    (SessionState.FINISHED, SessionEvent.REWOUND): SessionState.PAUSED,
}


def transition(state: SessionState, event: SessionEvent) -> SessionState:
    """Return the state reached from ``state`` on ``event``; undefined pairs keep ``state``."""
    return _TRANSITIONS.get((state, event), state)


@dataclass(slots=True)
class SessionConfig:
    save_interval: float | None = DEFAULT_SAVE_INTERVAL


SessionListener = Callable[[dict[str, object]], None]


class PeriodicSaver:
    """Calls ``callback`` every ``interval`` seconds on a daemon thread until stopped."""

    def __init__(self, interval: float, callback: Callable[[], object]) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive.")
        self.interval = interval
        self.callback = callback
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="yomi-progress-saver", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 1.0) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception as exc:  # pragma: no cover - defensive
                debug_log(f"Periodic save failed: {exc}")


class ReadingSession:
    """
    Narration of one book for one user.

    Speech completions arrive from the engine, possibly on another thread.
    Each utterance is tagged with a generation number and a completion is
    only honored when its generation is still current, so skips and stops
    never cause a second advance.
    """

    def __init__(
        self,
        user_id: str,
        book_id: str,
        uri: str,
        *,
        source: TextSource,
        driver: NarrationDriver,
        store: ProgressStore,
        config: SessionConfig | None = None,
        listener: SessionListener | None = None,
    ) -> None:
        self.user_id = user_id
        self.book_id = book_id
        self.uri = uri
        self.source = source
        self.driver = driver
        self.store = store
        self.config = config or SessionConfig()
        self.listener = listener
        self.segmentation: Segmentation | None = None
        self.cursor: ReadingCursor | None = None
        self.error: str | None = None
        self._state = SessionState.LOADING
        self._generation = 0
        self._utterance: Utterance | None = None
        self._lock = threading.RLock()
        self._save_lock = threading.Lock()
        self._last_saved: tuple[Cursor, str] | None = None
        self._saver: PeriodicSaver | None = None
        self._closed = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def position(self) -> Cursor | None:
        cursor = self.cursor
        return cursor.position if cursor is not None else None

    @property
    def fraction_complete(self) -> float:
        with self._lock:
            if self.cursor is None:
                return 0.0
            if self._state == SessionState.FINISHED:
                return 1.0
            total = self.cursor.segmentation.total_sentences
            return self.cursor.ordinal / total if total else 0.0

    def __enter__(self) -> "ReadingSession":
        self.load()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Lifecycle

    def load(self) -> SessionState:
        with self._lock:
            if self._state != SessionState.LOADING:
                return self._state
        try:
            text = self.source.extract_text(self.uri)
        except ExtractionFailure as exc:
            with self._lock:
                self.error = str(exc)
                self._apply(SessionEvent.LOAD_FAILED)
                self._emit("load_error", error=self.error)
            return self._state
        segmentation = segment_text(text)
        snapshot = self.store.load(self.user_id, self.book_id)
        with self._lock:
            self.segmentation = segmentation
            if not segmentation.is_empty:
                if snapshot is not None:
                    if snapshot.text_sha1 and snapshot.text_sha1 != segmentation.text_sha1:
                        debug_log(
                            f"Text for {self.book_id} changed since the last save; clamping position."
                        )
                    result = ReadingCursor.restore_with_result(snapshot.position, segmentation)
                    self.cursor = result.cursor
                    if result.cursor is not None:
                        self._emit(
                            "restored",
                            position=result.cursor.position.as_payload(),
                            clamped=result.clamped,
                        )
                else:
                    self.cursor = ReadingCursor(segmentation)
            self._apply(SessionEvent.LOADED)
        self._start_saver()
        return self._state

    def close(self) -> None:
        if self._saver is not None:
            self._saver.stop()
            self._saver = None
        with self._lock:
            if self._closed:
                return
            self._cancel_utterance()
            self._generation += 1
            if self._state == SessionState.PLAYING:
                self._apply(SessionEvent.PAUSE)
            self._closed = True
        self.flush()

    def _start_saver(self) -> None:
        interval = self.config.save_interval
        if interval is None or interval <= 0 or self._state == SessionState.ERROR:
            return
        self._saver = PeriodicSaver(interval, self.flush)
        self._saver.start()

    # Playback

    def play(self) -> bool:
        with self._lock:
            cursor = self.cursor
            if cursor is None or self._closed:
                return False
            if self._state not in (SessionState.READY, SessionState.PAUSED):
                return False
            if cursor.finished:
                self._finish(cursor)
                return False
            self._apply(SessionEvent.PLAY)
            self._speak_current(cursor)
            return True

    def resume(self) -> bool:
        return self.play()

    def pause(self) -> bool:
        with self._lock:
            if self._state != SessionState.PLAYING:
                return False
            self.driver.pause()
            self._apply(SessionEvent.PAUSE)
            self.flush()
            return True

    def skip_forward(self) -> bool:
        with self._lock:
            cursor = self._navigable_cursor()
            if cursor is None or self._state == SessionState.FINISHED:
                return False
            was_playing = self._interrupt()
            cursor.advance()
            if cursor.finished:
                self._finish(cursor)
                return True
            self._after_move(cursor, was_playing)
            return True

    def skip_back(self) -> bool:
        with self._lock:
            cursor = self._navigable_cursor()
            if cursor is None:
                return False
            was_playing = self._interrupt()
            cursor.retreat()
            if self._state == SessionState.FINISHED:
                self._apply(SessionEvent.REWOUND)
            self._after_move(cursor, was_playing)
            return True

    def seek(self, paragraph_index: int, sentence_index: int = 0) -> bool:
        with self._lock:
            cursor = self._navigable_cursor()
            if cursor is None:
                return False
            was_playing = self._interrupt()
            cursor.seek(paragraph_index, sentence_index)
            if self._state == SessionState.FINISHED:
                self._apply(SessionEvent.REWOUND)
            self._after_move(cursor, was_playing)
            return True

    def _navigable_cursor(self) -> ReadingCursor | None:
        if self._closed or self._state in (SessionState.LOADING, SessionState.ERROR):
            return None
        return self.cursor

    def _interrupt(self) -> bool:
        was_playing = self._state == SessionState.PLAYING
        self._cancel_utterance()
        self._generation += 1
        return was_playing

    def _after_move(self, cursor: ReadingCursor, was_playing: bool) -> None:
        self._emit("position", **self._position_fields())
        if was_playing:
            self._speak_current(cursor)

    def _speak_current(self, cursor: ReadingCursor) -> None:
        self._cancel_utterance()
        self._generation += 1
        generation = self._generation
        sentence = cursor.sentence
        self._emit("sentence_start", text=sentence.content, **self._position_fields())
        utterance = self.driver.speak(
            sentence.content,
            on_done=lambda: self._on_done(generation),
            on_error=lambda exc: self._on_error(generation, exc),
        )
        # A synchronous engine may already have moved on to the next sentence.
        if generation == self._generation:
            self._utterance = utterance

    def _cancel_utterance(self) -> None:
        utterance = self._utterance
        self._utterance = None
        if utterance is not None and not utterance.settled:
            self.driver.stop()

    def _on_done(self, generation: int) -> None:
        with self._lock:
            cursor = self.cursor
            if (
                cursor is None
                or generation != self._generation
                or self._state != SessionState.PLAYING
            ):
                debug_log(f"Ignoring stale completion (generation {generation}, current {self._generation})")
                return
            self._utterance = None
            cursor.advance()
            if cursor.finished:
                self._finish(cursor)
            else:
                self._speak_current(cursor)

    def _on_error(self, generation: int, error: EngineFailure) -> None:
        with self._lock:
            if generation != self._generation or self._state != SessionState.PLAYING:
                debug_log(f"Ignoring stale engine error (generation {generation}): {error}")
                return
            self._utterance = None
            self.error = str(error)
            self._apply(SessionEvent.ENGINE_ERROR)
            self._emit("engine_error", error=self.error, **self._position_fields())

    def _finish(self, cursor: ReadingCursor) -> None:
        self._utterance = None
        self._generation += 1
        self.driver.stop()
        if not cursor.finished:
            cursor.jump_to_end()
        self._apply(SessionEvent.END_REACHED)
        self._emit("finished", **self._position_fields())
        self.flush()

    # Persistence

    def flush(self) -> bool:
        """Save the current position; returns False when nothing could be saved."""
        with self._lock:
            if self._state in (SessionState.LOADING, SessionState.ERROR):
                return False
            if self.cursor is None or self.segmentation is None:
                return False
            entry = (self.cursor.position, self.segmentation.text_sha1)
        with self._save_lock:
            if entry == self._last_saved:
                return True
            saved = self.store.save(
                self.user_id,
                self.book_id,
                entry[0],
                text_sha1=entry[1],
            )
            if saved:
                self._last_saved = entry
            return saved

    # Events

    def _apply(self, event: SessionEvent) -> None:
        new_state = transition(self._state, event)
        if new_state == self._state:
            return
        debug_log(f"session {self.book_id}: {self._state.value} -> {new_state.value} ({event.value})")
        self._state = new_state
        self._emit("state", state=new_state.value)

    def _position_fields(self) -> dict[str, object]:
        cursor = self.cursor
        if cursor is None:
            return {}
        position = cursor.position
        return {
            "paragraph_index": position.paragraph_index,
            "sentence_index": position.sentence_index,
            "char_offset": position.char_offset,
            "ordinal": cursor.ordinal,
            "total": cursor.segmentation.total_sentences,
        }

    def _emit(self, event: str, **fields: object) -> None:
        if self.listener is None:
            return
        payload: dict[str, object] = {"event": event}
        payload.update(fields)
        try:
            self.listener(payload)
        except Exception as exc:  # pragma: no cover - defensive
            debug_log(f"Session listener failed on {event}: {exc}")


__all__ = [
    "DEFAULT_SAVE_INTERVAL",
    "PeriodicSaver",
    "ReadingSession",
    "SessionConfig",
    "SessionEvent",
    "SessionListener",
    "SessionState",
    "transition",
]
