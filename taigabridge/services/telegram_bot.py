"""Telegram Bot API integration.

Provides functions to send messages via Telegram Bot API.
Uses webhook mode: Telegram sends updates to our endpoint.

Setup instructions:
1. Create a bot via @BotFather on Telegram
2. Set TELEGRAM_BOT_TOKEN in environment
3. Set TELEGRAM_WEBHOOK_URL (https://your-domain.com/telegram/webhook) and
   optionally TELEGRAM_WEBHOOK_SECRET; the webhook is registered on startup
"""

import logging
from typing import Any

import httpx

from taigabridge.config import get_settings
from taigabridge.schemas.telegram import InlineKeyboardMarkup
from taigabridge.services.telegram_formatter import split_message
from taigabridge.utils.retry import with_retry

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org/bot"

# Errors raised before the request left this process
RETRYABLE_SEND_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


async def _call(method: str, payload: dict[str, Any], timeout: float = 30.0) -> dict[str, Any]:
    settings = get_settings()
    if not settings.telegram_bot_token:
        raise ValueError("Telegram bot token not configured")

    url = f"{TELEGRAM_API_BASE}{settings.telegram_bot_token}/{method}"

    async with httpx.AsyncClient() as client:
        response = await client.post(url, json=payload, timeout=timeout)
        response.raise_for_status()
        return response.json()


async def send_message(
    chat_id: int,
    text: str,
    reply_markup: InlineKeyboardMarkup | None = None,
    disable_notification: bool = False,
) -> dict[str, Any]:
    """
    Send one plain-text message to a Telegram chat.

    Only connection failures are retried. A request that may have reached
    Telegram (read timeout, HTTP error) is never sent again.

    Args:
        chat_id: Telegram chat ID
        text: Message text (max 4096 characters)
        reply_markup: Optional inline keyboard
        disable_notification: Send silently

    Returns:
        Telegram API response

    Raises:
        httpx.HTTPError: On network error or non-2xx answer
        ValueError: If bot token not configured
    """
    payload: dict[str, Any] = {
        "chat_id": chat_id,
        "text": text,
        "disable_notification": disable_notification,
    }
    if reply_markup is not None:
        payload["reply_markup"] = reply_markup.model_dump(exclude_none=True)

    return await with_retry(
        _call,
        "sendMessage",
        payload,
        max_attempts=3,
        exceptions=RETRYABLE_SEND_ERRORS,
    )


async def send_text(chat_id: int, text: str) -> None:
    """Send text of any length, split into chunks under the configured limit."""
    if not text:
        return
    limit = get_settings().telegram_message_limit
    for chunk in split_message(text, limit):
        await send_message(chat_id, chunk)


async def answer_callback_query(callback_query_id: str, text: str | None = None) -> bool:
    """Acknowledge a callback query."""
    payload: dict[str, Any] = {"callback_query_id": callback_query_id}
    if text:
        payload["text"] = text
    try:
        result = await _call("answerCallbackQuery", payload, timeout=10.0)
        return result.get("ok", False)
    except Exception:
        logger.exception("Failed to answer callback query")
        return False


async def delete_message(chat_id: int, message_id: int) -> bool:
    """Delete a message. Best effort: the bot may lack the rights in groups."""
    try:
        result = await _call(
            "deleteMessage", {"chat_id": chat_id, "message_id": message_id}, timeout=10.0
        )
        return result.get("ok", False)
    except Exception:
        logger.warning("Failed to delete message %s in chat %s", message_id, chat_id)
        return False


async def set_webhook(
    webhook_url: str,
    secret_token: str | None = None,
    drop_pending_updates: bool = False,
) -> dict[str, Any]:
    """
    Set the webhook URL for the bot.

    Args:
        webhook_url: Full HTTPS URL for webhook endpoint
        secret_token: Optional secret for webhook verification
        drop_pending_updates: Drop pending updates on webhook set

    Returns:
        Telegram API response
    """
    payload: dict[str, Any] = {
        "url": webhook_url,
        "drop_pending_updates": drop_pending_updates,
        "allowed_updates": ["message", "callback_query"],
    }
    if secret_token:
        payload["secret_token"] = secret_token

    return await _call("setWebhook", payload)


def verify_webhook_secret(provided_secret: str | None) -> bool:
    """
    Verify the webhook secret token from Telegram.

    Args:
        provided_secret: Secret from X-Telegram-Bot-Api-Secret-Token header

    Returns:
        True if valid or no secret configured
    """
    settings = get_settings()
    if not settings.telegram_webhook_secret:
        # No secret configured, allow all
        return True
    return provided_secret == settings.telegram_webhook_secret


class TelegramTransport:
    """Outbound chat operations used by the command handlers."""

    async def send_text(self, chat_id: int, text: str) -> None:
        await send_text(chat_id, text)

    async def send_keyboard(self, chat_id: int, text: str, markup: InlineKeyboardMarkup) -> None:
        await send_message(chat_id, text, reply_markup=markup)

    async def answer_callback(self, callback_query_id: str, text: str | None = None) -> None:
        await answer_callback_query(callback_query_id, text)

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        await delete_message(chat_id, message_id)
