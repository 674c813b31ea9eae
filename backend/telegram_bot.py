import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

import database
from assistant import SessionRegistry, format_result_text
from config import Settings
from models import User
from prompts import HELP_TEXT

logger = logging.getLogger("taskpal.telegram")

# Stay under Telegram's 4096 character limit
MAX_MESSAGE_LENGTH = 4000

AWAITING_ACTIVATION = (
    "Your account is awaiting activation. An administrator will enable it shortly."
)


def split_text(text: str, max_len: int = MAX_MESSAGE_LENGTH) -> list[str]:
    if len(text) <= max_len:
        return [text]
    return [text[start:start + max_len] for start in range(0, len(text), max_len)]


@dataclass
class TelegramAdapter:
    token: str
    transport: Optional[httpx.AsyncBaseTransport] = None

    def _base_url(self) -> str:
        return f"https://api.telegram.org/bot{self.token}"

    async def send_message(self, chat_id: int, text: str) -> bool:
        if not text:
            text = "(empty response)"
        url = f"{self._base_url()}/sendMessage"
        async with httpx.AsyncClient(timeout=15.0, transport=self.transport) as client:
            for chunk in split_text(text):
                resp = await client.post(url, json={"chat_id": chat_id, "text": chunk})
                if resp.status_code != 200:
                    logger.error("Telegram sendMessage failed: %s %s", resp.status_code, resp.text[:500])
                    return False
        return True


def resolve_user(sender: dict[str, Any], settings: Settings) -> User:
    """Look up (or register) the sender; configured admins are activated automatically."""
    telegram_id = sender["id"]
    is_admin = str(telegram_id) in settings.telegram_admin_ids

    user = database.get_user_by_telegram_id_db(telegram_id)
    if user is None:
        name = " ".join(part for part in (sender.get("first_name"), sender.get("last_name")) if part)
        user = database.create_user_db(
            telegram_id=telegram_id,
            name=name or sender.get("username"),
            role="admin" if is_admin else "user",
            status="active" if is_admin else "inactive",
        )
    elif is_admin and user.status != "active":
        user = database.set_user_status_db(user.id, "active") or user
    return user


async def handle_update(
    update: Any,
    registry: SessionRegistry,
    settings: Settings,
    adapter: TelegramAdapter,
) -> dict[str, str]:
    if not isinstance(update, dict):
        return {"status": "ignored"}
    message = update.get("message") or update.get("edited_message")
    if not message:
        return {"status": "ignored"}

    sender = message.get("from") or {}
    chat_id = (message.get("chat") or {}).get("id")
    text = (message.get("text") or "").strip()
    if chat_id is None or not text or "id" not in sender:
        return {"status": "ignored"}

    user = resolve_user(sender, settings)
    if user.status != "active":
        logger.info("Message from inactive user %s ignored", user.id)
        await adapter.send_message(chat_id, AWAITING_ACTIVATION)
        return {"status": "inactive"}

    if text.split()[0].lower() == "/start":
        await adapter.send_message(chat_id, f"Welcome to TaskPal!\n\n{HELP_TEXT}")
        return {"status": "ok"}

    # Group chats carry several senders; each gets their own session
    result = await registry.handle(f"telegram:{chat_id}:{user.id}", text, owner_id=user.id)
    await adapter.send_message(chat_id, format_result_text(result))
    return {"status": "ok" if result.success else "failed"}
