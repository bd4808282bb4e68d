from __future__ import annotations

from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


def _settings():  # noqa: ANN202
    from relaybridge.core.config import Settings

    return Settings.from_env()


def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from relaybridge.core.logging_config import setup_logging

    settings = _settings()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default: BRIDGE_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default: BRIDGE_PORT)"),
) -> None:
    """Run the HTTP gateway and the Telegram poller."""
    _load_env()
    _setup_logging()
    settings = _settings()
    uvicorn.run(
        "relaybridge.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        factory=True,
    )


@app.command()
def sessions() -> None:
    """List every stored conversation session."""
    _load_env()
    from relaybridge.core.gateway import build_sessions

    store = build_sessions(_settings())
    found = store.list()
    if not found:
        typer.echo("No sessions.")
        raise typer.Exit()
    for s in found:
        label = f" ({s.label})" if s.label else ""
        typer.echo(f"{s.key}{label}\t{s.session_id}\t{s.message_count} msgs\t{s.created_at}")


@app.command("new-session")
def new_session(key: str = typer.Argument("general", help="Conversation key to reset")) -> None:
    """Start a fresh session for KEY. Do not run while the bridge is busy with that key."""
    _load_env()
    from relaybridge.core.gateway import build_sessions

    session = build_sessions(_settings()).reset(key)
    typer.echo(f"{key}: {session.session_id}")


@app.command()
def check() -> None:
    """Verify the claude CLI can be found and report its version."""
    _load_env()
    from relaybridge.core.gateway import build_cli
    from relaybridge.integrations.claude_cli import ClaudeCliError

    try:
        cli = build_cli(_settings())
        typer.echo(f"claude: {cli.resolve_executable()}")
        typer.echo(f"version: {cli.version()}")
        typer.echo(f"allowed tools: {', '.join(cli.allowed_tools)}")
    except (ClaudeCliError, FileNotFoundError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    from relaybridge import __version__

    typer.echo(__version__)


if __name__ == "__main__":
    app()
