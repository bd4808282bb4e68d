"""Centralized logging configuration for relaybridge.

Sets up Python's logging system to write to both stdout and a rotating
log file in the configured log directory, plus a dedicated JSONL stream
of every relayed exchange.

Log directory structure::

    ~/.relaybridge/.logs/
    ├── relaybridge.log     # All Python logger output (rotating)
    ├── exchanges.log       # One JSON record per relayed message/reply
    └── cli.log             # Raw stderr lines from the claude subprocess
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

exchange_logger = logging.getLogger("relaybridge._exchanges")


def get_log_dir() -> str:
    """Return the configured log directory, falling back to default."""
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".relaybridge" / ".logs")
    return os.getenv("BRIDGE_LOG_DIR", default)


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` files from the log directory.

    Called before any handlers are attached so there are no open-file
    conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for path in glob.glob(os.path.join(log_dir, "*.log*")):
        try:
            os.remove(path)
        except OSError:
            pass


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    global _log_dir
    _log_dir = log_dir

    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "relaybridge.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(exchange_logger, os.path.join(log_dir, "exchanges.log"))

    logging.getLogger("relaybridge").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


def log_exchange(
    channel: str,
    key: str,
    message: str,
    reply: str,
    *,
    session_id: str = "",
    duration_ms: int = 0,
    tool_count: int = 0,
    is_error: bool = False,
) -> None:
    """Log one relayed message and its reply to the exchanges log."""
    record = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "channel": channel,
        "key": key,
        "session_id": session_id,
        "message": message[:2000],
        "reply_preview": reply[:500],
        "duration_ms": duration_ms,
        "tools": tool_count,
        "error": is_error,
    }
    try:
        exchange_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def get_cli_log_path() -> str:
    """Return the path to the claude subprocess stderr log."""
    return os.path.join(get_log_dir(), "cli.log")


def append_to_file(path: str, line: str) -> None:
    """Append a timestamped line to a log file, flushing immediately."""
    try:
        ts = time.strftime("%Y-%m-%dT%H:%M:%S")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{ts} {line}\n")
            f.flush()
    except Exception:  # noqa: BLE001
        pass
