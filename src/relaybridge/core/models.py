from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union


class SessionMode(str, Enum):
    CREATE = "create"   # --session-id <id>
    RESUME = "resume"   # --resume <id>

    def other(self) -> "SessionMode":
        return SessionMode.RESUME if self is SessionMode.CREATE else SessionMode.CREATE


class AttemptOutcome(str, Enum):
    """How a single subprocess attempt ended."""

    COMPLETED = "completed"
    SESSION_IN_USE = "session_in_use"
    SESSION_NOT_FOUND = "session_not_found"
    TIMED_OUT = "timed_out"
    SPAWN_ERROR = "spawn_error"


@dataclass
class ToolCall:
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PermissionDenial:
    tool_name: str
    tool_input: Dict[str, Any] = field(default_factory=dict)
    tool_use_id: Optional[str] = None


@dataclass
class ProgressUpdate:
    elapsed_seconds: float
    tool_count: int
    last_tool: str = ""


ProgressSink = Callable[[ProgressUpdate], Union[Awaitable[None], None]]


@dataclass
class InvocationRequest:
    session_id: str
    message: str
    is_first: bool = False
    extra_tools: List[str] = field(default_factory=list)
    on_progress: Optional[ProgressSink] = None


@dataclass
class InvocationResult:
    result: str
    session_id: str
    duration_ms: int = 0
    is_error: bool = False
    tool_calls: List[ToolCall] = field(default_factory=list)
    permission_denials: List[PermissionDenial] = field(default_factory=list)
    timed_out: bool = False
    retried: bool = False

    @property
    def denied_tools(self) -> List[str]:
        """Denied tool names, de-duplicated, in first-seen order."""
        names: List[str] = []
        for denial in self.permission_denials:
            if denial.tool_name not in names:
                names.append(denial.tool_name)
        return names
