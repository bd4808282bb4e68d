from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

# Tools every invocation may use without asking. Anything else shows up as a
# permission denial and has to be approved from the chat.
DEFAULT_ALLOWED_TOOLS = [
    "Read",
    "Glob",
    "Grep",
    "LS",
    "WebSearch",
    "WebFetch",
    "Task",
    "TodoWrite",
]


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [v.strip() for v in raw.split(",") if v.strip()]


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    log_level: str
    log_dir: str
    sessions_dir: str
    legacy_session_file: str
    default_key: str
    single_session: bool
    claude_path: str | None
    claude_cwd: str
    cli_timeout: float
    progress_interval: float
    kill_grace: float
    allowed_tools: list[str]
    system_prompt_file: str | None
    prompt_on_all_denials: bool
    telegram_bot_token: str | None
    telegram_chat_ids: list[str]
    telegram_webhook_secret: str | None
    host: str
    port: int
    clear_logs_on_launch: bool

    @staticmethod
    def from_env() -> "Settings":
        home = Path(os.path.expanduser("~"))
        default_log_dir = str(home / ".relaybridge" / ".logs")
        return Settings(
            log_level=os.getenv("BRIDGE_LOG_LEVEL", "info"),
            log_dir=os.getenv("BRIDGE_LOG_DIR") or default_log_dir,
            sessions_dir=os.getenv("BRIDGE_SESSIONS_DIR") or str(home / ".claude-bridge-sessions"),
            legacy_session_file=os.getenv("BRIDGE_SESSION_FILE") or str(home / ".claude-bridge-session"),
            default_key=os.getenv("BRIDGE_DEFAULT_KEY", "general"),
            single_session=_env_flag("BRIDGE_SINGLE_SESSION"),
            claude_path=os.getenv("CLAUDE_PATH"),
            claude_cwd=os.getenv("BRIDGE_CLAUDE_CWD") or str(home),
            cli_timeout=float(os.getenv("BRIDGE_CLI_TIMEOUT", "1800")),
            progress_interval=float(os.getenv("BRIDGE_PROGRESS_INTERVAL", "180")),
            kill_grace=float(os.getenv("BRIDGE_KILL_GRACE", "5")),
            allowed_tools=_env_list("BRIDGE_ALLOWED_TOOLS") or list(DEFAULT_ALLOWED_TOOLS),
            system_prompt_file=os.getenv("BRIDGE_SYSTEM_PROMPT_FILE"),
            prompt_on_all_denials=_env_flag("BRIDGE_PROMPT_ON_ALL_DENIALS"),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            telegram_chat_ids=_env_list("TELEGRAM_CHAT_ID"),
            telegram_webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET"),
            host=os.getenv("BRIDGE_HOST", "127.0.0.1"),
            port=int(os.getenv("BRIDGE_PORT", "18790")),
            clear_logs_on_launch=_env_flag("BRIDGE_CLEAR_LOGS_ON_LAUNCH"),
        )
