"""Channel-agnostic message relay.

Parses incoming messages from any channel into a ChatRequest, handles
slash-commands and permission approvals, and queues free text as one
claude turn under the conversation's key.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Dict, List, Optional

from relaybridge.core.logging_config import log_exchange
from relaybridge.core.models import InvocationRequest, InvocationResult, ProgressSink
from relaybridge.core.queue import KeyedTaskQueue
from relaybridge.core.session import Session, SessionStore
from relaybridge.core.tool_summary import describe
from relaybridge.integrations.claude_cli import ClaudeCli

logger = logging.getLogger("relaybridge.relay")

APPROVE_PATTERNS = re.compile(r"^(yes|y|approve|approved|go|👍|yep|yeah|do it|ok|okay|confirmed?)[.!]*$", re.IGNORECASE)
REJECT_PATTERNS = re.compile(r"^(no|n|reject|deny|cancel|👎|nope|nah|don'?t)[.!]*$", re.IGNORECASE)


@dataclass
class ChatRequest:
    """Channel-agnostic inbound message."""
    channel: str            # "telegram" | "http" | ...
    key: str                # conversation key (topic id, subject key, "general")
    text: str
    sender_id: str = ""
    chat_id: str = ""


@dataclass
class ChatResponse:
    """What to send back."""
    text: str
    status: str = "ok"      # ok | error | command
    session_id: str = ""
    denied_tools: List[str] = field(default_factory=list)


def format_denials(result: InvocationResult) -> str:
    lines = [f"  - {describe(d.tool_name, d.tool_input)}" for d in result.permission_denials]
    return (
        "Permission needed for:\n"
        + "\n".join(lines)
        + '\nReply "yes" to approve these tools for the next message.'
    )


class Relay:
    def __init__(
        self,
        sessions: SessionStore,
        cli: ClaudeCli,
        queue: Optional[KeyedTaskQueue] = None,
        prompt_on_all_denials: bool = False,
    ) -> None:
        self.sessions = sessions
        self.cli = cli
        self.queue = queue or KeyedTaskQueue()
        self.prompt_on_all_denials = prompt_on_all_denials
        # key -> tool names waiting for a yes/no from the user
        self._pending_approvals: Dict[str, List[str]] = {}

    def pending_approvals(self, key: str) -> List[str]:
        return list(self._pending_approvals.get(key, []))

    async def handle_chat(self, req: ChatRequest, on_progress: Optional[ProgressSink] = None) -> ChatResponse:
        """Route a normalised chat request and return a response."""
        text = req.text.strip()

        if text == "/help":
            return _cmd_help()
        if text.startswith("/new"):
            return await self._cmd_new(req.key)
        if text.startswith("/status"):
            return self._cmd_status(req.key)
        if text.startswith("/sessions"):
            return self._cmd_sessions()

        extra_tools: List[str] = []
        pending = self._pending_approvals.get(req.key)
        if pending:
            if APPROVE_PATTERNS.match(text):
                extra_tools = self._pending_approvals.pop(req.key)
                logger.info("Approved %s for key %r", ",".join(extra_tools), req.key)
            elif REJECT_PATTERNS.match(text):
                self._pending_approvals.pop(req.key, None)
                return ChatResponse(text="OK, those tools stay blocked.", status="command")

        return await self._relay(req, text, extra_tools, on_progress)

    async def _relay(
        self,
        req: ChatRequest,
        text: str,
        extra_tools: List[str],
        on_progress: Optional[ProgressSink],
    ) -> ChatResponse:
        key = req.key
        logger.info("Message for %r: %s", key, text[:100])

        async def _turn() -> tuple[Session, InvocationResult]:
            session = self.sessions.get_or_create(key)
            result = await self.cli.invoke(InvocationRequest(
                session_id=session.session_id,
                message=text,
                is_first=session.is_first,
                extra_tools=extra_tools,
                on_progress=on_progress,
            ))
            if result.session_id != session.session_id:
                logger.warning(
                    "claude reported session %s for %r (stored %s)",
                    result.session_id, key, session.session_id,
                )
            if not result.is_error:
                self.sessions.record_success(key)
            return session, result

        try:
            session, result = await self.queue.enqueue(key, _turn)
        except Exception as exc:  # noqa: BLE001
            logger.error("Turn for %r failed: %s", key, exc, exc_info=True)
            log_exchange(req.channel, key, text, f"Error: {exc}", is_error=True)
            return ChatResponse(text=f"Error: {exc}", status="error")

        reply = result.result
        denied: List[str] = []
        if result.permission_denials and (result.is_error or self.prompt_on_all_denials):
            denied = result.denied_tools
            self._pending_approvals[key] = denied
            reply = f"{reply}\n\n{format_denials(result)}"
        else:
            self._pending_approvals.pop(key, None)

        log_exchange(
            req.channel,
            key,
            text,
            reply,
            session_id=session.session_id,
            duration_ms=result.duration_ms,
            tool_count=len(result.tool_calls),
            is_error=result.is_error,
        )
        return ChatResponse(
            text=reply,
            status="error" if result.is_error else "ok",
            session_id=session.session_id,
            denied_tools=denied,
        )

    async def label_conversation(self, key: str, label: str) -> None:
        """Name a conversation (e.g. a forum topic title)."""
        async def _label() -> None:
            self.sessions.set_label(key, label)
        await self.queue.enqueue(key, _label)

    # ── slash commands ─────────────────────────────────────────

    async def _cmd_new(self, key: str) -> ChatResponse:
        # Runs behind any in-flight turn; that turn keeps its old session.
        async def _reset() -> Session:
            return self.sessions.reset(key)

        session = await self.queue.enqueue(key, _reset)
        self._pending_approvals.pop(key, None)
        return ChatResponse(
            text=f"Fresh session started.\nID: `{session.session_id}`",
            status="command",
            session_id=session.session_id,
        )

    def _cmd_status(self, key: str) -> ChatResponse:
        s = self.sessions.get(key)
        queued = self.queue.length(key)
        if s is None:
            lines = [f"No session yet for `{key}`."]
        else:
            lines = [
                f"Session: `{s.session_id}`",
                f"Created: {s.created_at}",
                f"Messages: {s.message_count}",
            ]
            if s.label:
                lines.insert(0, f"Topic: {s.label}")
        if queued:
            lines.append(f"Queued: {queued}")
        pending = self._pending_approvals.get(key)
        if pending:
            lines.append(f"Awaiting approval: {', '.join(pending)}")
        return ChatResponse(text="\n".join(lines), status="command", session_id=s.session_id if s else "")

    def _cmd_sessions(self) -> ChatResponse:
        all_sessions = self.sessions.list()
        if not all_sessions:
            return ChatResponse(text="No sessions yet.", status="command")
        lines = [f"{len(all_sessions)} session(s):"]
        for s in all_sessions:
            name = f"{s.key} ({s.label})" if s.label else s.key
            lines.append(f"- {name}: `{s.session_id[:8]}` {s.message_count} msgs")
        total = self.queue.length()
        if total:
            lines.append(f"Queued across all: {total}")
        return ChatResponse(text="\n".join(lines), status="command")


def _cmd_help() -> ChatResponse:
    help_text = (
        "relaybridge commands:\n\n"
        "/new: start a fresh session for this conversation\n"
        "/status: session id, message count, queue length\n"
        "/sessions: list every conversation\n"
        "/help: this help message\n\n"
        'When a tool is blocked, reply "yes" to allow it for the next message.\n'
        "Anything else is sent to claude as free text."
    )
    return ChatResponse(text=help_text, status="command")
