"""Incremental decoder for the CLI's ``stream-json`` output.

Each stdout line is an independent JSON record. Two shapes matter:

* ``{"type": "assistant", "message": {"content": [...]}}`` carries
  ``tool_use`` blocks and ``text`` blocks as the turn progresses;
* ``{"type": "result", ...}`` is the final summary with the reply text,
  resolved session id, duration, error flag and permission denials.

Everything else (``system``, ``user`` tool results, ...) is counted and
ignored. Lines that are not JSON objects are skipped.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Dict, List, Optional

from relaybridge.core.models import PermissionDenial, ToolCall

logger = logging.getLogger("relaybridge.stream")


@dataclass
class FinalRecord:
    result: str
    session_id: Optional[str]
    duration_ms: int
    is_error: bool
    permission_denials: List[PermissionDenial] = field(default_factory=list)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def _parse_denials(raw: Any) -> List[PermissionDenial]:
    denials: List[PermissionDenial] = []
    if not isinstance(raw, list):
        return denials
    for item in raw:
        if not isinstance(item, dict):
            continue
        name = item.get("tool_name")
        if not isinstance(name, str) or not name:
            continue
        tool_input = item.get("tool_input")
        denials.append(PermissionDenial(
            tool_name=name,
            tool_input=tool_input if isinstance(tool_input, dict) else {},
            tool_use_id=item.get("tool_use_id") if isinstance(item.get("tool_use_id"), str) else None,
        ))
    return denials


class StreamDecoder:
    def __init__(self) -> None:
        self.tool_calls: List[ToolCall] = []
        self.text_parts: List[str] = []
        self.final: Optional[FinalRecord] = None
        self.session_id: Optional[str] = None
        self.records = 0
        self.malformed = 0

    def feed(self, line: str) -> Optional[str]:
        """Decode one line. Returns the record type, or None if skipped."""
        line = line.strip()
        if not line:
            return None
        try:
            record = json.loads(line)
        except ValueError:
            self.malformed += 1
            logger.debug("Skipping malformed stream line: %s", line[:200])
            return None
        if not isinstance(record, dict):
            self.malformed += 1
            logger.debug("Skipping non-object stream record: %s", line[:200])
            return None

        self.records += 1
        kind = record.get("type")
        sid = record.get("session_id")
        if isinstance(sid, str) and sid:
            self.session_id = sid

        if kind == "assistant":
            self._on_assistant(record)
        elif kind == "result":
            self._on_result(record)
        return kind if isinstance(kind, str) else ""

    def _on_assistant(self, record: Dict[str, Any]) -> None:
        message = record.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            if content.strip():
                self.text_parts.append(content)
            return
        if not isinstance(content, list):
            return
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "tool_use":
                name = block.get("name")
                if isinstance(name, str) and name:
                    tool_input = block.get("input")
                    self.tool_calls.append(ToolCall(
                        name=name,
                        input=tool_input if isinstance(tool_input, dict) else {},
                    ))
            elif block_type == "text":
                text = block.get("text")
                if isinstance(text, str) and text.strip():
                    self.text_parts.append(text)

    def _on_result(self, record: Dict[str, Any]) -> None:
        result = record.get("result")
        sid = record.get("session_id")
        self.final = FinalRecord(
            result=result if isinstance(result, str) else "",
            session_id=sid if isinstance(sid, str) and sid else None,
            duration_ms=_as_int(record.get("duration_ms")),
            is_error=bool(record.get("is_error", False)),
            permission_denials=_parse_denials(record.get("permission_denials")),
        )

    @property
    def fallback_text(self) -> str:
        """Accumulated assistant text, in arrival order."""
        return "\n\n".join(part.strip() for part in self.text_parts).strip()
