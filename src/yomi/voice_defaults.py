from __future__ import annotations

DEFAULT_LANGUAGE = "en-US"
DEFAULT_VOICE: str | None = None
DEFAULT_SPEED = 1.0
DEFAULT_PITCH = 1.0
DEFAULT_SPEAKER_ID = 2
DEFAULT_ENGINE_URL = "http://127.0.0.1:50021"

__all__ = [
    "DEFAULT_ENGINE_URL",
    "DEFAULT_LANGUAGE",
    "DEFAULT_PITCH",
    "DEFAULT_SPEAKER_ID",
    "DEFAULT_SPEED",
    "DEFAULT_VOICE",
]
