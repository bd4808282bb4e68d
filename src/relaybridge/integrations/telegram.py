from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Awaitable, Callable, Optional, Set

import httpx

from relaybridge.core.dedup import ProcessedUpdates
from relaybridge.core.models import ProgressUpdate
from relaybridge.core.relay import ChatRequest, Relay

logger = logging.getLogger("relaybridge.telegram")

# Telegram API limit for a single message
MAX_TEXT_LENGTH = 4096
TYPING_INTERVAL = 4.0


def split_text(text: str, max_len: int = MAX_TEXT_LENGTH) -> list[str]:
    """Split *text* into chunks of at most *max_len* characters.

    Prefers to cut at a newline when one falls in the second half of the
    chunk, so paragraphs are not broken mid-line.
    """
    if len(text) <= max_len:
        return [text]
    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_len:
            chunks.append(remaining)
            break
        split_at = max_len
        newline = remaining.rfind("\n", 0, max_len)
        if newline > max_len * 0.5:
            split_at = newline
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip("\n")
    return chunks


@dataclass
class TelegramAdapter:
    token: str
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, repr=False)

    def _base_url(self) -> str:
        return f"https://api.telegram.org/bot{self.token}"

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    async def send_typing(self, chat_id: int, thread_id: Optional[int] = None) -> None:
        """Send 'typing...' chat action indicator."""
        payload: dict[str, Any] = {"chat_id": chat_id, "action": "typing"}
        if thread_id:
            payload["message_thread_id"] = thread_id
        try:
            async with self._client(5.0) as client:
                await client.post(f"{self._base_url()}/sendChatAction", json=payload)
        except Exception as exc:  # noqa: BLE001
            logger.debug("sendChatAction failed (non-critical): %s", exc)

    def start_typing_loop(self, chat_id: int, thread_id: Optional[int] = None) -> asyncio.Task:
        """Send the typing indicator every few seconds until the task is cancelled."""
        async def _loop() -> None:
            while True:
                await self.send_typing(chat_id, thread_id)
                await asyncio.sleep(TYPING_INTERVAL)

        return asyncio.create_task(_loop(), name=f"typing-{chat_id}")

    async def send_message(self, chat_id: int, text: str, thread_id: Optional[int] = None) -> None:
        if not text:
            text = "(empty response)"
        url = f"{self._base_url()}/sendMessage"
        async with self._client(15.0) as client:
            for chunk in split_text(text):
                payload: dict[str, Any] = {"chat_id": chat_id, "text": chunk}
                if thread_id:
                    payload["message_thread_id"] = thread_id
                resp = await client.post(url, json=payload)
                if resp.status_code != 200:
                    logger.error(
                        "Telegram sendMessage failed: %s %s",
                        resp.status_code,
                        resp.text[:500],
                    )
                    return

    async def delete_webhook(self, drop_pending: bool = False) -> None:
        """Remove any existing webhook so polling works."""
        async with self._client(10.0) as client:
            resp = await client.post(
                f"{self._base_url()}/deleteWebhook",
                json={"drop_pending_updates": drop_pending},
            )
            logger.info("deleteWebhook (drop_pending=%s): %s", drop_pending, resp.status_code)

    async def get_updates(self, offset: int = 0, timeout: int = 25) -> list[dict[str, Any]]:
        """Long-poll Telegram for updates."""
        params: dict[str, Any] = {"timeout": timeout, "allowed_updates": '["message"]'}
        if offset:
            params["offset"] = offset
        async with self._client(timeout + 10) as client:
            resp = await client.get(f"{self._base_url()}/getUpdates", params=params)
            if resp.status_code != 200:
                logger.error("getUpdates failed: %s %s", resp.status_code, resp.text[:300])
                return []
            data = resp.json()
            if not data.get("ok"):
                logger.error("getUpdates not ok: %s", data)
                return []
            return data.get("result", [])

    async def poll(
        self,
        on_update: Callable[[dict[str, Any]], Awaitable[None]],
        stop: asyncio.Event,
    ) -> None:
        """Long-poll until *stop* is set, dispatching each update as its own task."""
        async def _dispatch(update: dict[str, Any]) -> None:
            try:
                await on_update(update)
            except Exception as exc:  # noqa: BLE001
                logger.error("Error processing Telegram update %s: %s", update.get("update_id"), exc, exc_info=True)

        await self.delete_webhook()
        offset = 0
        running: Set[asyncio.Task] = set()
        logger.info("Telegram polling started")
        try:
            while not stop.is_set():
                try:
                    updates = await self.get_updates(offset=offset)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Telegram polling error: %s", exc)
                    await asyncio.sleep(5)  # back off on errors
                    continue
                for update in updates:
                    offset = max(offset, int(update.get("update_id", 0)) + 1)
                    task = asyncio.create_task(_dispatch(update))
                    running.add(task)
                    task.add_done_callback(running.discard)
        finally:
            for task in list(running):
                task.cancel()
            logger.info("Telegram polling stopped")


class TelegramBridge:
    """Turns Telegram updates into relay requests and sends back replies.

    Forum topics each get their own conversation key (the thread id);
    plain chats and the General topic share ``default_key``.
    """

    def __init__(
        self,
        adapter: TelegramAdapter,
        relay: Relay,
        allowed_chat_ids: list[str],
        processed: Optional[ProcessedUpdates] = None,
        default_key: str = "general",
        single_session: bool = False,
    ) -> None:
        self.adapter = adapter
        self.relay = relay
        self.allowed_chat_ids = set(allowed_chat_ids)
        self.processed = processed
        self.default_key = default_key
        self.single_session = single_session

    def conversation_key(self, message: dict[str, Any]) -> str:
        if self.single_session:
            return self.default_key
        thread_id = message.get("message_thread_id")
        if message.get("is_topic_message") and thread_id:
            return str(thread_id)
        return self.default_key

    async def handle_update(self, update: dict[str, Any]) -> None:
        if not isinstance(update, dict):
            return
        message = update.get("message")
        if not isinstance(message, dict):
            return
        update_id = update.get("update_id")
        chat_id = message.get("chat", {}).get("id")
        if chat_id is None:
            return
        if str(chat_id) not in self.allowed_chat_ids:
            logger.info("Rejected message from chat %s", chat_id)
            return

        key = self.conversation_key(message)
        # Replies go back to the topic they came from, whichever key is used.
        thread_id = message.get("message_thread_id") if message.get("is_topic_message") else None

        topic = message.get("forum_topic_created")
        if isinstance(topic, dict) and topic.get("name"):
            await self.relay.label_conversation(key, topic["name"])
            return

        text = message.get("text") or message.get("caption") or ""
        if not text:
            return

        if self.processed is not None and update_id is not None:
            if self.processed.is_processed(update_id):
                logger.debug("Skipping already-processed update %s", update_id)
                return
            self.processed.mark(update_id)

        # No awaits between here and the relay's enqueue: updates for
        # the same key must reach the queue in arrival order.
        typing = self.adapter.start_typing_loop(chat_id, thread_id)

        async def _progress(progress: ProgressUpdate) -> None:
            line = f"Still working ({progress.elapsed_seconds / 60:.0f} min, {progress.tool_count} tool calls"
            if progress.last_tool:
                line += f"; last: {progress.last_tool}"
            await self.adapter.send_message(chat_id, line + ")", thread_id)

        req = ChatRequest(
            channel="telegram",
            key=key,
            text=text,
            sender_id=str(message.get("from", {}).get("id", "")),
            chat_id=str(chat_id),
        )
        try:
            resp = await self.relay.handle_chat(req, on_progress=_progress)
        finally:
            typing.cancel()
        await self.adapter.send_message(chat_id, resp.text, thread_id)
