from relaybridge.core.config import DEFAULT_ALLOWED_TOOLS, Settings


def test_defaults(monkeypatch) -> None:
    for name in ("BRIDGE_ALLOWED_TOOLS", "BRIDGE_CLI_TIMEOUT", "TELEGRAM_CHAT_ID", "BRIDGE_SINGLE_SESSION",
                 "BRIDGE_DEFAULT_KEY", "BRIDGE_PORT"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env()
    assert settings.allowed_tools == DEFAULT_ALLOWED_TOOLS
    assert settings.cli_timeout == 1800.0
    assert settings.telegram_chat_ids == []
    assert settings.single_session is False
    assert settings.default_key == "general"
    assert settings.port == 18790


def test_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("BRIDGE_ALLOWED_TOOLS", "Read, Bash ,,Edit")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "100,200")
    monkeypatch.setenv("BRIDGE_SINGLE_SESSION", "yes")
    monkeypatch.setenv("BRIDGE_CLI_TIMEOUT", "90")
    monkeypatch.setenv("BRIDGE_SESSIONS_DIR", str(tmp_path))
    settings = Settings.from_env()
    assert settings.allowed_tools == ["Read", "Bash", "Edit"]
    assert settings.telegram_chat_ids == ["100", "200"]
    assert settings.single_session is True
    assert settings.cli_timeout == 90.0
    assert settings.sessions_dir == str(tmp_path)
