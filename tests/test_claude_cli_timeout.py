import sys
import time

import pytest

from relaybridge.core.models import InvocationRequest, ProgressUpdate

from fake_claude import fake_cli

SID = "5c0f2a7e-1111-4b4b-8c8c-0123456789ab"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="relies on POSIX signals")


@posix_only
@pytest.mark.asyncio
async def test_timeout_returns_partial_text_and_progress(tmp_path) -> None:
    cli, _ = fake_cli(tmp_path, """
emit({"type": "assistant", "message": {"content": [{"type": "text", "text": "working on it"}]}})
emit({"type": "assistant", "message": {"content": [
    {"type": "tool_use", "name": "Bash", "input": {"command": "pytest -x"}}]}})
time.sleep(30)
""", timeout=1.0, kill_grace=0.5, progress_interval=0.2)
    updates: list[ProgressUpdate] = []

    started = time.monotonic()
    result = await cli.invoke(InvocationRequest(session_id=SID, message="hi", on_progress=updates.append))
    elapsed = time.monotonic() - started

    assert elapsed < 5
    assert result.timed_out is True
    assert result.is_error is True
    assert result.result.startswith("[Timed out after 1s; partial response below]")
    assert "working on it" in result.result
    assert updates
    assert updates[-1].tool_count == 1
    assert updates[-1].last_tool == "Bash: pytest -x"


@posix_only
@pytest.mark.asyncio
async def test_process_ignoring_sigterm_is_killed(tmp_path) -> None:
    cli, _ = fake_cli(tmp_path, """
import signal
signal.signal(signal.SIGTERM, signal.SIG_IGN)
emit({"type": "system", "subtype": "init", "session_id": session_id})
time.sleep(30)
""", timeout=1.0, kill_grace=0.5)

    started = time.monotonic()
    result = await cli.invoke(InvocationRequest(session_id=SID, message="hi"))

    assert time.monotonic() - started < 5
    assert result.timed_out is True
    assert "no reply yet" in result.result


@pytest.mark.asyncio
async def test_failing_progress_callback_does_not_abort_turn(tmp_path) -> None:
    cli, _ = fake_cli(tmp_path, """
time.sleep(0.6)
result("done")
""", timeout=10.0, progress_interval=0.1)
    calls = []

    def _sink(update: ProgressUpdate) -> None:
        calls.append(update)
        raise RuntimeError("chat is down")

    result = await cli.invoke(InvocationRequest(session_id=SID, message="hi", on_progress=_sink))

    assert result.result == "done"
    assert result.is_error is False
    assert calls


@pytest.mark.asyncio
async def test_async_progress_callback(tmp_path) -> None:
    cli, _ = fake_cli(tmp_path, """
time.sleep(0.5)
result("done")
""", timeout=10.0, progress_interval=0.1)
    seen: list[float] = []

    async def _sink(update: ProgressUpdate) -> None:
        seen.append(update.elapsed_seconds)

    result = await cli.invoke(InvocationRequest(session_id=SID, message="hi", on_progress=_sink))

    assert result.result == "done"
    assert seen
    assert seen == sorted(seen)
