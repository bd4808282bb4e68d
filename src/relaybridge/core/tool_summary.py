"""Short, human-readable summaries of tool invocations.

Used for progress pings and permission prompts. Each known tool maps to
the input field that best describes what it is doing; unknown tools
fall back to a truncated JSON dump of their input.
"""
from __future__ import annotations

import json
from typing import Any, Callable, Dict

_MAX_CHARS = 80


def _field(name: str) -> Callable[[Dict[str, Any]], str]:
    def _get(tool_input: Dict[str, Any]) -> str:
        value = tool_input.get(name)
        return value if isinstance(value, str) else ""
    return _get


def _default(tool_input: Dict[str, Any]) -> str:
    if not tool_input:
        return ""
    return json.dumps(tool_input, ensure_ascii=False, default=str)


SUMMARIZERS: Dict[str, Callable[[Dict[str, Any]], str]] = {
    "Bash": _field("command"),
    "Read": _field("file_path"),
    "Write": _field("file_path"),
    "Edit": _field("file_path"),
    "MultiEdit": _field("file_path"),
    "NotebookEdit": _field("notebook_path"),
    "Glob": _field("pattern"),
    "Grep": _field("pattern"),
    "LS": _field("path"),
    "WebFetch": _field("url"),
    "WebSearch": _field("query"),
    "Task": _field("description"),
}


def summarize_input(tool_name: str, tool_input: Dict[str, Any] | None, max_chars: int = _MAX_CHARS) -> str:
    summarizer = SUMMARIZERS.get(tool_name, _default)
    text = summarizer(tool_input or {}) or _default(tool_input or {})
    text = " ".join(text.split())
    if len(text) > max_chars:
        text = text[: max_chars - 1] + "…"
    return text


def describe(tool_name: str, tool_input: Dict[str, Any] | None, max_chars: int = _MAX_CHARS) -> str:
    """``Name: summary``, or just the name when there is nothing to show."""
    summary = summarize_input(tool_name, tool_input, max_chars=max_chars)
    return f"{tool_name}: {summary}" if summary else tool_name
