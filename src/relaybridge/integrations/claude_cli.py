from __future__ import annotations

import asyncio
from dataclasses import dataclass
import inspect
import logging
import os
import re
import shutil
import subprocess
import time
from typing import List, Optional, Sequence

from relaybridge.core.logging_config import append_to_file, get_cli_log_path
from relaybridge.core.models import (
    AttemptOutcome,
    InvocationRequest,
    InvocationResult,
    ProgressSink,
    ProgressUpdate,
    SessionMode,
)
from relaybridge.core.stream import StreamDecoder
from relaybridge.core.tool_summary import describe

logger = logging.getLogger("relaybridge.claude_cli")

DEFAULT_TIMEOUT = 1800.0  # seconds (30 minutes)
DEFAULT_PROGRESS_INTERVAL = 180.0
DEFAULT_KILL_GRACE = 5.0

# stream-json lines can carry whole file contents
_STREAM_LIMIT = 16 * 1024 * 1024
_MAX_ERROR_CHARS = 4000

_CANDIDATE_PATHS = (
    "/opt/homebrew/bin/claude",
    "/usr/local/bin/claude",
    "/home/linuxbrew/.linuxbrew/bin/claude",
    os.path.expanduser("~/.claude/local/claude"),
    os.path.expanduser("~/.local/bin/claude"),
)

_SESSION_IN_USE_RE = re.compile(r"session id \S+ is already in use", re.IGNORECASE)
_SESSION_NOT_FOUND_RE = re.compile(r"no conversation found with session id", re.IGNORECASE)


class ClaudeCliError(RuntimeError):
    pass


@dataclass
class _Attempt:
    outcome: AttemptOutcome
    mode: SessionMode
    decoder: StreamDecoder
    returncode: Optional[int] = None
    stderr: str = ""
    error: str = ""


def _format_elapsed(seconds: float) -> str:
    if seconds >= 60:
        return f"{seconds / 60:.0f} min"
    return f"{seconds:.0f}s"


class ClaudeCli:
    """Runs one conversation turn through the ``claude`` CLI.

    Every call spawns a fresh subprocess in print mode with
    ``--output-format stream-json`` and either ``--session-id`` (first
    turn of a session) or ``--resume`` (every later turn). If the CLI
    rejects the chosen mode because the session id is already taken, or
    does not exist, the turn is retried once in the other mode.

    Stdout is decoded line by line while the process runs so tool calls
    are visible to progress callbacks before the final record arrives.
    Every failure mode of a turn comes back as an ``InvocationResult``
    with ``is_error`` set; only a missing binary raises, and only from
    :meth:`resolve_executable`.
    """

    def __init__(
        self,
        executable: Optional[str] = None,
        cwd: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        kill_grace: float = DEFAULT_KILL_GRACE,
        allowed_tools: Optional[Sequence[str]] = None,
        system_prompt: str = "",
    ) -> None:
        self.executable = executable or os.getenv("CLAUDE_PATH")
        self.cwd = cwd or os.path.expanduser("~")
        self.timeout = timeout
        self.progress_interval = progress_interval
        self.kill_grace = kill_grace
        self.allowed_tools: List[str] = list(allowed_tools or [])
        self.system_prompt = system_prompt

    # ── internal helpers ──────────────────────────────────────

    def resolve_executable(self) -> str:
        """Locate the CLI binary or raise ``ClaudeCliError``."""
        if self.executable:
            if os.sep in self.executable:
                if os.access(self.executable, os.X_OK) and os.path.isfile(self.executable):
                    return self.executable
                raise ClaudeCliError(f"claude CLI not executable: {self.executable}")
            path = shutil.which(self.executable)
            if path:
                return path
            raise ClaudeCliError(f"claude CLI not found on PATH: {self.executable}")
        path = shutil.which("claude")
        if path:
            return path
        for candidate in _CANDIDATE_PATHS:
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                return candidate
        raise ClaudeCliError(
            "claude CLI not found. Run 'which claude' and set CLAUDE_PATH to the result."
        )

    def tools_for(self, extra_tools: Sequence[str] = ()) -> List[str]:
        """Baseline whitelist plus *extra_tools*, without duplicates."""
        tools: List[str] = []
        for name in [*self.allowed_tools, *extra_tools]:
            if name and name not in tools:
                tools.append(name)
        return tools

    def _build_command(
        self,
        *,
        session_id: str,
        mode: SessionMode,
        allowed_tools: Sequence[str],
        message: str,
    ) -> list[str]:
        cmd = [self.resolve_executable(), "-p", "--output-format", "stream-json", "--verbose"]
        if mode is SessionMode.CREATE:
            cmd.extend(["--session-id", session_id])
        else:
            cmd.extend(["--resume", session_id])
        if allowed_tools:
            cmd.extend(["--allowedTools", ",".join(allowed_tools)])
        if self.system_prompt:
            cmd.extend(["--append-system-prompt", self.system_prompt])
        # "--" keeps a message that starts with a dash from being read as a flag
        cmd.extend(["--", message])
        return cmd

    def _make_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.setdefault("TERM", "dumb")
        env["FORCE_COLOR"] = "0"
        env["PYTHONIOENCODING"] = "utf-8"
        return env

    @staticmethod
    def _classify(decoder: StreamDecoder, returncode: Optional[int], stderr: str) -> AttemptOutcome:
        final = decoder.final
        if final is not None and not final.is_error:
            return AttemptOutcome.COMPLETED
        if returncode == 0 and final is None:
            return AttemptOutcome.COMPLETED
        # Only the CLI's own output selects the mode; assistant text never does.
        cli_said = [stderr]
        if final is not None and not decoder.text_parts and not decoder.tool_calls:
            cli_said.append(final.result)
        haystack = "\n".join(part for part in cli_said if part)
        if _SESSION_IN_USE_RE.search(haystack):
            return AttemptOutcome.SESSION_IN_USE
        if _SESSION_NOT_FOUND_RE.search(haystack):
            return AttemptOutcome.SESSION_NOT_FOUND
        return AttemptOutcome.COMPLETED

    async def _read_stdout(self, proc: asyncio.subprocess.Process, decoder: StreamDecoder) -> None:
        assert proc.stdout is not None
        while True:
            try:
                raw = await proc.stdout.readline()
            except ValueError as exc:
                decoder.malformed += 1
                logger.warning("Dropping oversized stream line: %s", exc)
                continue
            if not raw:
                break
            seen = len(decoder.tool_calls)
            decoder.feed(raw.decode("utf-8", errors="replace"))
            for call in decoder.tool_calls[seen:]:
                logger.info("  tool %s", describe(call.name, call.input))

    async def _read_stderr(self, proc: asyncio.subprocess.Process, lines: List[str]) -> None:
        assert proc.stderr is not None
        cli_log = get_cli_log_path()
        while True:
            raw = await proc.stderr.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            lines.append(line)
            append_to_file(cli_log, f"[stderr pid={proc.pid}] {line}")

    async def _progress_loop(self, sink: ProgressSink, decoder: StreamDecoder, started: float) -> None:
        while True:
            await asyncio.sleep(self.progress_interval)
            last = decoder.tool_calls[-1] if decoder.tool_calls else None
            update = ProgressUpdate(
                elapsed_seconds=time.monotonic() - started,
                tool_count=len(decoder.tool_calls),
                last_tool=describe(last.name, last.input) if last else "",
            )
            try:
                value = sink(update)
                if inspect.isawaitable(value):
                    await value
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("Progress callback failed: %s", exc)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL after ``kill_grace`` seconds."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning("claude pid=%s ignored SIGTERM; killing", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    async def _attempt(
        self,
        request: InvocationRequest,
        mode: SessionMode,
        tools: Sequence[str],
        started: float,
    ) -> _Attempt:
        decoder = StreamDecoder()
        try:
            cmd = self._build_command(
                session_id=request.session_id,
                mode=mode,
                allowed_tools=tools,
                message=request.message,
            )
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.cwd,
                env=self._make_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
                start_new_session=True,
            )
        except (ClaudeCliError, OSError) as exc:
            logger.error("Spawn error: %s", exc)
            return _Attempt(AttemptOutcome.SPAWN_ERROR, mode, decoder, error=str(exc))

        logger.info("  claude pid=%s (%s session %s)", proc.pid, mode.value, request.session_id[:8])
        stderr_lines: List[str] = []
        readers = {
            asyncio.create_task(self._read_stdout(proc, decoder)),
            asyncio.create_task(self._read_stderr(proc, stderr_lines)),
        }
        progress: Optional[asyncio.Task] = None
        if request.on_progress is not None and self.progress_interval > 0:
            progress = asyncio.create_task(self._progress_loop(request.on_progress, decoder, started))

        timed_out = False
        try:
            remaining = max(0.0, self.timeout - (time.monotonic() - started))
            try:
                await asyncio.wait_for(
                    asyncio.gather(asyncio.wait(readers), proc.wait()),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning("claude pid=%s hit the %ss timeout; terminating", proc.pid, self.timeout)
                await self._terminate(proc)
                # Pipes close once the process is gone; don't wait forever on grandchildren.
                await asyncio.wait(readers, timeout=self.kill_grace)
        finally:
            if progress is not None:
                progress.cancel()
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            await asyncio.gather(*readers, *([progress] if progress else []), return_exceptions=True)
            if proc.returncode is None:
                await self._terminate(proc)

        stderr = "\n".join(stderr_lines).strip()
        if timed_out:
            outcome = AttemptOutcome.TIMED_OUT
        else:
            outcome = self._classify(decoder, proc.returncode, stderr)
        return _Attempt(outcome, mode, decoder, returncode=proc.returncode, stderr=stderr)

    def _finish(self, request: InvocationRequest, attempt: _Attempt, elapsed: float) -> InvocationResult:
        decoder = attempt.decoder
        final = decoder.final
        elapsed_ms = int(elapsed * 1000)
        session_id = (final.session_id if final else None) or decoder.session_id or request.session_id
        tool_calls = list(decoder.tool_calls)

        if attempt.outcome is AttemptOutcome.SPAWN_ERROR:
            return InvocationResult(
                result=f"Spawn error: {attempt.error}",
                session_id=request.session_id,
                is_error=True,
            )

        if attempt.outcome is AttemptOutcome.TIMED_OUT:
            partial = decoder.fallback_text
            if partial:
                text = f"[Timed out after {_format_elapsed(self.timeout)}; partial response below]\n\n{partial}"
            else:
                text = (
                    f"Timed out after {_format_elapsed(self.timeout)} with no reply yet; "
                    f"it was likely mid-activity ({len(tool_calls)} tool calls so far). "
                    "Send a follow-up message to pick up where it left off."
                )
            return InvocationResult(
                result=text,
                session_id=session_id,
                duration_ms=elapsed_ms,
                is_error=True,
                tool_calls=tool_calls,
                timed_out=True,
            )

        mode_error = attempt.outcome in (AttemptOutcome.SESSION_IN_USE, AttemptOutcome.SESSION_NOT_FOUND)

        if final is not None:
            text = final.result.strip() or decoder.fallback_text or "(empty response)"
            return InvocationResult(
                result=text,
                session_id=session_id,
                duration_ms=final.duration_ms or elapsed_ms,
                is_error=final.is_error or mode_error,
                tool_calls=tool_calls,
                permission_denials=list(final.permission_denials),
            )

        if attempt.returncode and decoder.records == 0:
            message = attempt.stderr or f"claude exited with status {attempt.returncode}"
            logger.info("  Error: %s", message[:200])
            return InvocationResult(
                result=f"Error: {message[:_MAX_ERROR_CHARS]}",
                session_id=session_id,
                duration_ms=elapsed_ms,
                is_error=True,
                tool_calls=tool_calls,
            )

        partial = decoder.fallback_text
        if partial:
            return InvocationResult(
                result=partial,
                session_id=session_id,
                duration_ms=elapsed_ms,
                is_error=bool(attempt.returncode) or mode_error,
                tool_calls=tool_calls,
            )

        logger.warning("claude produced no decodable reply (exit=%s)", attempt.returncode)
        return InvocationResult(
            result="No response from claude. Try again or send /new to start a fresh session.",
            session_id=session_id,
            duration_ms=elapsed_ms,
            is_error=True,
            tool_calls=tool_calls,
        )

    # ── public API ────────────────────────────────────────────

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        """Run one turn, retrying once if the session mode was wrong."""
        started = time.monotonic()
        mode = SessionMode.CREATE if request.is_first else SessionMode.RESUME
        tools = self.tools_for(request.extra_tools)
        logger.info(
            "Running claude (%s session %s..., %d tools%s)",
            mode.value,
            request.session_id[:8],
            len(tools),
            f", +{','.join(request.extra_tools)}" if request.extra_tools else "",
        )

        attempt = await self._attempt(request, mode, tools, started)
        retried = False
        if (attempt.outcome is AttemptOutcome.SESSION_IN_USE and mode is SessionMode.CREATE) or (
            attempt.outcome is AttemptOutcome.SESSION_NOT_FOUND and mode is SessionMode.RESUME
        ):
            logger.warning(
                "Session %s rejected in %s mode (%s); retrying in %s mode",
                request.session_id[:8],
                mode.value,
                attempt.outcome.value,
                mode.other().value,
            )
            retried = True
            attempt = await self._attempt(request, mode.other(), tools, started)

        result = self._finish(request, attempt, time.monotonic() - started)
        result.retried = retried
        logger.info(
            "  %s in %.1fs (%d tools, %d denied)",
            "Error" if result.is_error else "Success",
            result.duration_ms / 1000,
            len(result.tool_calls),
            len(result.permission_denials),
        )
        return result

    def version(self) -> str:
        """Return the CLI version string."""
        exe = self.resolve_executable()
        try:
            result = subprocess.run(
                [exe, "--version"],
                capture_output=True,
                text=True,
                timeout=15,
                encoding="utf-8",
                errors="replace",
            )
            return result.stdout.strip()
        except Exception as exc:
            raise ClaudeCliError(f"failed to get version: {exc}") from exc
