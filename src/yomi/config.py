from __future__ import annotations

import os
from pathlib import Path

DATA_DIR_ENV = "YOMI_HOME"
SETTINGS_FILENAME = "settings.json"
PROGRESS_FILENAME = "progress.json"


def data_dir() -> Path:
    override = os.environ.get(DATA_DIR_ENV)
    if override and override.strip():
        return Path(override.strip()).expanduser()
    return Path.home() / ".yomi"


def settings_path() -> Path:
    return data_dir() / SETTINGS_FILENAME


def progress_path() -> Path:
    return data_dir() / PROGRESS_FILENAME


__all__ = [
    "DATA_DIR_ENV",
    "PROGRESS_FILENAME",
    "SETTINGS_FILENAME",
    "data_dir",
    "progress_path",
    "settings_path",
]
