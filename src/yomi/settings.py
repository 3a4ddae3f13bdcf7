from __future__ import annotations

import json
import math
import os
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Protocol

from .logging_utils import debug_log
from .voice_defaults import DEFAULT_LANGUAGE, DEFAULT_PITCH, DEFAULT_SPEED, DEFAULT_VOICE

TTS_SETTINGS_KEY = "tts_settings"
_SETTINGS_FIELDS = ("language", "voice", "speed", "pitch")


class SettingsPersistenceError(RuntimeError):
    """Raised when merged settings cannot be written to local storage."""


@dataclass(frozen=True, slots=True)
class TTSSettings:
    language: str = DEFAULT_LANGUAGE
    voice: str | None = DEFAULT_VOICE
    speed: float = DEFAULT_SPEED
    pitch: float = DEFAULT_PITCH

    def as_payload(self) -> dict[str, object]:
        return {
            "language": self.language,
            "voice": self.voice,
            "speed": self.speed,
            "pitch": self.pitch,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "TTSSettings":
        """Build settings from stored data, falling back per field on bad values."""
        defaults = cls()
        if not isinstance(payload, dict):
            return defaults
        language = payload.get("language")
        voice = payload.get("voice")
        speed = payload.get("speed")
        pitch = payload.get("pitch")
        return cls(
            language=language.strip()
            if isinstance(language, str) and language.strip()
            else defaults.language,
            voice=voice if isinstance(voice, str) and voice.strip() else None,
            speed=float(speed) if _is_positive_number(speed) else defaults.speed,
            pitch=float(pitch) if _is_positive_number(pitch) else defaults.pitch,
        )


def _is_positive_number(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def merge_settings(current: TTSSettings, **updates: object) -> TTSSettings:
    unknown = sorted(set(updates) - set(_SETTINGS_FIELDS))
    if unknown:
        raise ValueError(f"Unknown TTS setting(s): {', '.join(unknown)}")
    merged: dict[str, object] = {}
    if "language" in updates:
        language = updates["language"]
        if not isinstance(language, str) or not language.strip():
            raise ValueError("language must be a non-empty string.")
        merged["language"] = language.strip()
    if "voice" in updates:
        voice = updates["voice"]
        if voice is not None and not isinstance(voice, str):
            raise ValueError("voice must be a string or None.")
        merged["voice"] = voice.strip() if isinstance(voice, str) and voice.strip() else None
    for name in ("speed", "pitch"):
        if name in updates:
            value = updates[name]
            if not _is_positive_number(value):
                raise ValueError(f"{name} must be a positive number.")
            merged[name] = float(value)  # type: ignore[arg-type]
    return replace(current, **merged)


class SettingsBackend(Protocol):
    def get(self, key: str) -> object | None: ...

    def set(self, key: str, value: object) -> None: ...


class MemorySettingsBackend:
    def __init__(self, initial: dict[str, object] | None = None) -> None:
        self.values: dict[str, object] = dict(initial or {})

    def get(self, key: str) -> object | None:
        return self.values.get(key)

    def set(self, key: str, value: object) -> None:
        self.values[key] = value


class JsonSettingsBackend:
    """Key/value settings kept in a single JSON object on disk."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> dict[str, object]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            debug_log(f"Ignoring unreadable settings file {self.path}: {exc}")
            return {}
        return raw if isinstance(raw, dict) else {}

    def get(self, key: str) -> object | None:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: object) -> None:
        with self._lock:
            payload = self._read()
            payload[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            tmp_path.write_text(
                json.dumps(payload, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            os.replace(tmp_path, self.path)


class SettingsStore:
    """
    Process-wide TTS settings.

    Settings are read from the backend once, at construction. ``update``
    merges a partial change and writes the full merged object back.
    """

    def __init__(self, backend: SettingsBackend) -> None:
        self.backend = backend
        self._lock = threading.Lock()
        try:
            stored = backend.get(TTS_SETTINGS_KEY)
        except Exception as exc:
            debug_log(f"Failed to load TTS settings: {exc}")
            stored = None
        self._settings = TTSSettings.from_payload(stored)

    @property
    def settings(self) -> TTSSettings:
        with self._lock:
            return self._settings

    def update(self, **updates: object) -> TTSSettings:
        with self._lock:
            merged = merge_settings(self._settings, **updates)
            self._settings = merged
            try:
                self.backend.set(TTS_SETTINGS_KEY, merged.as_payload())
            except Exception as exc:
                debug_log(f"Failed to save TTS settings: {exc}")
                raise SettingsPersistenceError(f"Could not save TTS settings: {exc}") from exc
            return merged


__all__ = [
    "JsonSettingsBackend",
    "MemorySettingsBackend",
    "SettingsBackend",
    "SettingsPersistenceError",
    "SettingsStore",
    "TTSSettings",
    "TTS_SETTINGS_KEY",
    "merge_settings",
]
