from __future__ import annotations

import logging

from uvicorn.config import LOGGING_CONFIG

from yomi import logging_utils
from yomi.logging_utils import (
    ProgressAccessFormatter,
    build_uvicorn_log_config,
    debug_log,
    decode_progress_path,
    set_debug_logging,
)


def test_debug_log_is_silent_until_enabled(capsys) -> None:
    debug_log("hidden")
    assert capsys.readouterr().out == ""

    set_debug_logging(True)
    try:
        debug_log("saved position")
    finally:
        set_debug_logging(False)

    assert capsys.readouterr().out == "[yomi debug] saved position\n"
    assert not logging_utils.debug_enabled()


def test_uvicorn_log_config_uses_progress_formatter() -> None:
    config = build_uvicorn_log_config()
    assert config["formatters"]["access"]["()"] == "yomi.logging_utils.ProgressAccessFormatter"
    assert LOGGING_CONFIG["formatters"]["access"]["()"] == "uvicorn.logging.AccessFormatter"


def test_decode_progress_path_only_touches_route_ids() -> None:
    assert decode_progress_path("/api/progress/%E8%AA%AD%E8%80%85") == "/api/progress/読者"
    assert (
        decode_progress_path("/api/progress/u%201/%E6%9C%AC?limit=5&q=%20")
        == "/api/progress/u 1/本?limit=5&q=%20"
    )
    assert decode_progress_path("/docs/%E6%9C%AC") == "/docs/%E6%9C%AC"
    assert decode_progress_path("/api/progress/u1/evil%0Aline") == "/api/progress/u1/evil%0Aline"


def test_access_formatter_decodes_progress_paths() -> None:
    formatter = ProgressAccessFormatter(
        fmt='%(client_addr)s - "%(request_line)s" %(status_code)s',
        use_colors=False,
    )
    record = logging.LogRecord(
        "uvicorn.access",
        logging.INFO,
        __file__,
        1,
        '%s - "%s %s HTTP/%s" %d',
        ("127.0.0.1:5000", "GET", "/api/progress/%E8%AA%AD%E8%80%85/book%201", "1.1", 200),
        None,
    )

    line = formatter.format(record)

    assert "/api/progress/読者/book 1" in line
