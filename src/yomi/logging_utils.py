from __future__ import annotations

from copy import copy, deepcopy
from typing import Any
from urllib.parse import unquote

from uvicorn.config import LOGGING_CONFIG
from uvicorn.logging import AccessFormatter as UvicornAccessFormatter

_DEBUG_LOG = False
_PROGRESS_PATH_PREFIX = "/api/progress/"


def set_debug_logging(enabled: bool) -> None:
    global _DEBUG_LOG
    _DEBUG_LOG = enabled


def debug_enabled() -> bool:
    return _DEBUG_LOG


def debug_log(message: str) -> None:
    if _DEBUG_LOG:
        print(f"[yomi debug] {message}")


def _decode_id_segment(segment: str) -> str:
    decoded = unquote(segment, encoding="utf-8", errors="replace")
    # Ids that decode to control characters stay encoded so one request is one log line.
    return decoded if decoded.isprintable() else segment


def decode_progress_path(full_path: str) -> str:
    """
    Decode the user and book ids of a progress route for display.

    Other paths and the query string are returned as received.
    """
    path, sep, query = full_path.partition("?")
    if not path.startswith(_PROGRESS_PATH_PREFIX):
        return full_path
    ids = path[len(_PROGRESS_PATH_PREFIX) :].split("/")
    decoded = _PROGRESS_PATH_PREFIX + "/".join(_decode_id_segment(segment) for segment in ids)
    return decoded + sep + query


class ProgressAccessFormatter(UvicornAccessFormatter):
    """Access log formatter that prints progress route ids as readers typed them."""

    def formatMessage(self, record):  # type: ignore[override]
        try:
            client_addr, method, full_path, http_version, status_code = record.args
        except (TypeError, ValueError):
            return super().formatMessage(record)
        if not isinstance(full_path, str):
            return super().formatMessage(record)
        new_record = copy(record)
        new_record.args = (
            client_addr,
            method,
            decode_progress_path(full_path),
            http_version,
            status_code,
        )
        return super().formatMessage(new_record)


def build_uvicorn_log_config() -> dict[str, Any]:
    """Return the uvicorn logging config for ``yomi serve``."""
    config = deepcopy(LOGGING_CONFIG)
    formatter = config.get("formatters", {}).get("access")
    if isinstance(formatter, dict):
        formatter["()"] = "yomi.logging_utils.ProgressAccessFormatter"
    return config


__all__ = [
    "ProgressAccessFormatter",
    "build_uvicorn_log_config",
    "debug_enabled",
    "debug_log",
    "decode_progress_path",
    "set_debug_logging",
]
