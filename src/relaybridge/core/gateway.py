from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import Any, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel

from relaybridge import __version__
from relaybridge.core.config import Settings
from relaybridge.core.dedup import ProcessedUpdates
from relaybridge.core.logging_config import setup_logging
from relaybridge.core.queue import KeyedTaskQueue
from relaybridge.core.relay import ChatRequest, Relay
from relaybridge.core.session import SessionStore
from relaybridge.core.templates import system_prompt
from relaybridge.integrations.claude_cli import ClaudeCli
from relaybridge.integrations.telegram import TelegramAdapter, TelegramBridge

logger = logging.getLogger("relaybridge.gateway")


class AgentRequest(BaseModel):
    message: str
    key: Optional[str] = None


class AgentResponse(BaseModel):
    response: str
    status: str
    session_id: str = ""
    denied_tools: list[str] = []


def build_cli(settings: Settings) -> ClaudeCli:
    return ClaudeCli(
        executable=settings.claude_path,
        cwd=settings.claude_cwd,
        timeout=settings.cli_timeout,
        progress_interval=settings.progress_interval,
        kill_grace=settings.kill_grace,
        allowed_tools=settings.allowed_tools,
        system_prompt=system_prompt(settings.system_prompt_file),
    )


def build_sessions(settings: Settings) -> SessionStore:
    return SessionStore(
        sessions_dir=settings.sessions_dir,
        legacy_file=settings.legacy_session_file,
        default_key=settings.default_key,
    )


def create_app(settings: Optional[Settings] = None, cli: Optional[ClaudeCli] = None) -> FastAPI:
    if settings is None:
        # Ensure .env is loaded before anything reads os.getenv
        load_dotenv(override=False)
        settings = Settings.from_env()
        setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

    sessions = build_sessions(settings)
    cli = cli or build_cli(settings)
    queue = KeyedTaskQueue()
    relay = Relay(
        sessions=sessions,
        cli=cli,
        queue=queue,
        prompt_on_all_denials=settings.prompt_on_all_denials,
    )

    telegram: Optional[TelegramBridge] = None
    if settings.telegram_bot_token:
        telegram = TelegramBridge(
            adapter=TelegramAdapter(settings.telegram_bot_token),
            relay=relay,
            allowed_chat_ids=settings.telegram_chat_ids,
            processed=ProcessedUpdates(settings.sessions_dir),
            default_key=settings.default_key,
            single_session=settings.single_session,
        )

    background: Set[asyncio.Task] = set()

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        # A missing binary is fatal at startup, not per message
        exe = cli.resolve_executable()
        logger.info("Using claude CLI at %s", exe)
        existing = sessions.list()
        logger.info("Known sessions: %d", len(existing))

        stop = asyncio.Event()
        poller: Optional[asyncio.Task] = None
        if telegram and not settings.telegram_webhook_secret:
            if not settings.telegram_chat_ids:
                logger.warning("TELEGRAM_CHAT_ID not set; every Telegram message will be rejected")
            poller = asyncio.create_task(telegram.adapter.poll(telegram.handle_update, stop))

        yield

        stop.set()
        if poller:
            poller.cancel()
            await asyncio.gather(poller, return_exceptions=True)
        for task in list(background):
            task.cancel()

    app = FastAPI(title="relaybridge", version=__version__, lifespan=lifespan)
    app.state.relay = relay

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/control/status")
    def control_status() -> dict[str, Any]:
        return {
            "sessions": [
                {
                    "key": s.key,
                    "session_id": s.session_id,
                    "message_count": s.message_count,
                    "label": s.label,
                }
                for s in sessions.list()
            ],
            "queued": queue.length(),
            "active_keys": queue.active_keys(),
            "telegram": "configured" if telegram else "missing",
        }

    @app.post("/agent", response_model=AgentResponse)
    async def agent(req: AgentRequest) -> AgentResponse:
        if not req.message.strip():
            raise HTTPException(status_code=400, detail="empty message")
        chat_req = ChatRequest(channel="http", key=req.key or settings.default_key, text=req.message)
        resp = await relay.handle_chat(chat_req)
        return AgentResponse(
            response=resp.text,
            status=resp.status,
            session_id=resp.session_id,
            denied_tools=resp.denied_tools,
        )

    # ---- Telegram webhook ----

    @app.post("/telegram/webhook")
    async def telegram_webhook(
        request: Request,
        x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
    ) -> dict[str, str]:
        if telegram is None:
            raise HTTPException(status_code=400, detail="Telegram not configured")
        if settings.telegram_webhook_secret and x_telegram_bot_api_secret_token != settings.telegram_webhook_secret:
            raise HTTPException(status_code=401, detail="Invalid Telegram secret")
        update = await request.json()
        if not isinstance(update, dict):
            return {"status": "ignored"}
        # Telegram retries webhooks that take too long; reply after acking.
        task = asyncio.create_task(telegram.handle_update(update))
        background.add(task)
        task.add_done_callback(background.discard)
        return {"status": "accepted"}

    return app
