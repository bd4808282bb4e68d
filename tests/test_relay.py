import pytest

from relaybridge.core.models import InvocationResult, PermissionDenial
from relaybridge.core.relay import ChatRequest, Relay
from relaybridge.core.session import SessionStore

from fake_claude import FakeCli


def _relay(tmp_path, *results, **kwargs) -> tuple[Relay, FakeCli]:
    cli = FakeCli(*results)
    store = SessionStore(sessions_dir=str(tmp_path / "sessions"))
    return Relay(sessions=store, cli=cli, **kwargs), cli


def _msg(text: str, key: str = "general") -> ChatRequest:
    return ChatRequest(channel="test", key=key, text=text)


def _denied(text: str = "Need to run a command.") -> InvocationResult:
    return InvocationResult(
        result=text,
        session_id="",
        is_error=True,
        permission_denials=[PermissionDenial(tool_name="Bash", tool_input={"command": "make test"})],
    )


@pytest.mark.asyncio
async def test_first_message_creates_then_resumes(tmp_path) -> None:
    relay, cli = _relay(tmp_path)

    first = await relay.handle_chat(_msg("hello"))
    second = await relay.handle_chat(_msg("again"))

    assert first.text == "echo: hello"
    assert first.status == "ok"
    assert [r.is_first for r in cli.requests] == [True, False]
    assert cli.requests[0].session_id == cli.requests[1].session_id == first.session_id
    assert relay.sessions.get("general").message_count == 2


@pytest.mark.asyncio
async def test_failed_turn_does_not_count(tmp_path) -> None:
    relay, cli = _relay(tmp_path, InvocationResult(result="Error: boom", session_id="", is_error=True))

    resp = await relay.handle_chat(_msg("hello"))
    await relay.handle_chat(_msg("retry"))

    assert resp.status == "error"
    assert [r.is_first for r in cli.requests] == [True, True]
    assert relay.sessions.get("general").message_count == 1


@pytest.mark.asyncio
async def test_keys_get_separate_sessions(tmp_path) -> None:
    relay, cli = _relay(tmp_path)
    a = await relay.handle_chat(_msg("one", key="10"))
    b = await relay.handle_chat(_msg("two", key="20"))
    assert a.session_id != b.session_id
    assert all(r.is_first for r in cli.requests)


@pytest.mark.asyncio
async def test_denial_prompt_then_approval(tmp_path) -> None:
    relay, cli = _relay(tmp_path, _denied())

    resp = await relay.handle_chat(_msg("run the tests"))
    assert resp.status == "error"
    assert resp.denied_tools == ["Bash"]
    assert "Permission needed for:" in resp.text
    assert "Bash: make test" in resp.text
    assert relay.pending_approvals("general") == ["Bash"]

    approved = await relay.handle_chat(_msg("yes"))
    assert approved.status == "ok"
    assert cli.requests[-1].extra_tools == ["Bash"]
    assert cli.requests[-1].message == "yes"
    assert relay.pending_approvals("general") == []


@pytest.mark.asyncio
async def test_denial_rejected(tmp_path) -> None:
    relay, cli = _relay(tmp_path, _denied())
    await relay.handle_chat(_msg("run the tests"))

    resp = await relay.handle_chat(_msg("no"))

    assert resp.text == "OK, those tools stay blocked."
    assert len(cli.requests) == 1
    assert relay.pending_approvals("general") == []


@pytest.mark.asyncio
async def test_denials_on_success_are_not_prompted_by_default(tmp_path) -> None:
    ok_with_denial = _denied("Did it another way.")
    ok_with_denial.is_error = False
    relay, _ = _relay(tmp_path, ok_with_denial)

    resp = await relay.handle_chat(_msg("go"))

    assert resp.text == "Did it another way."
    assert resp.denied_tools == []


@pytest.mark.asyncio
async def test_prompt_on_all_denials(tmp_path) -> None:
    ok_with_denial = _denied("Did it another way.")
    ok_with_denial.is_error = False
    relay, _ = _relay(tmp_path, ok_with_denial, prompt_on_all_denials=True)

    resp = await relay.handle_chat(_msg("go"))

    assert "Permission needed for:" in resp.text
    assert relay.pending_approvals("general") == ["Bash"]


@pytest.mark.asyncio
async def test_invoke_exception_becomes_error_reply(tmp_path) -> None:
    relay, _ = _relay(tmp_path, RuntimeError("kaput"))
    resp = await relay.handle_chat(_msg("hello"))
    assert resp.status == "error"
    assert resp.text == "Error: kaput"


@pytest.mark.asyncio
async def test_new_command_resets_session(tmp_path) -> None:
    relay, cli = _relay(tmp_path)
    before = await relay.handle_chat(_msg("hello"))

    resp = await relay.handle_chat(_msg("/new"))
    await relay.handle_chat(_msg("hello again"))

    assert resp.status == "command"
    assert resp.text.startswith("Fresh session started.")
    assert resp.session_id != before.session_id
    assert cli.requests[-1].session_id == resp.session_id
    assert cli.requests[-1].is_first is True


@pytest.mark.asyncio
async def test_status_command(tmp_path) -> None:
    relay, _ = _relay(tmp_path)
    empty = await relay.handle_chat(_msg("/status"))
    assert empty.text == "No session yet for `general`."

    await relay.handle_chat(_msg("hello"))
    resp = await relay.handle_chat(_msg("/status"))
    assert resp.status == "command"
    assert "Messages: 1" in resp.text
    assert resp.session_id in resp.text


@pytest.mark.asyncio
async def test_sessions_command_lists_labels(tmp_path) -> None:
    relay, _ = _relay(tmp_path)
    assert (await relay.handle_chat(_msg("/sessions"))).text == "No sessions yet."

    await relay.label_conversation("55", "Refactor")
    await relay.handle_chat(_msg("hello"))
    resp = await relay.handle_chat(_msg("/sessions"))

    assert resp.text.startswith("2 session(s):")
    assert "55 (Refactor)" in resp.text
    assert "general" in resp.text


@pytest.mark.asyncio
async def test_help_command(tmp_path) -> None:
    relay, cli = _relay(tmp_path)
    resp = await relay.handle_chat(_msg("/help"))
    assert resp.status == "command"
    assert "/new" in resp.text
    assert cli.requests == []
