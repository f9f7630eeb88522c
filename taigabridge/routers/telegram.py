"""
Telegram webhook endpoint.

Telegram posts every update here. The update is handled before answering,
and the answer is always 200 once the update parses: a non-2xx answer would
make Telegram redeliver it.
"""

import logging

from fastapi import APIRouter, Header, HTTPException, Request

from taigabridge.schemas.telegram import TelegramUpdate
from taigabridge.services.commands import BridgeBot
from taigabridge.services.telegram_bot import verify_webhook_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/telegram", tags=["telegram"])


def get_bot(request: Request) -> BridgeBot:
    return request.app.state.bot


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
):
    """
    Handle incoming Telegram webhook updates.

    Telegram sends:
    - message: commands and wizard answers
    - callback_query: inline button taps from the /new wizard
    """
    if not verify_webhook_secret(x_telegram_bot_api_secret_token):
        logger.warning("Telegram webhook called with a bad secret token")
        raise HTTPException(status_code=403, detail="Invalid secret token")

    try:
        body = await request.json()
        update = TelegramUpdate.model_validate(body)
    except Exception as e:
        logger.error("Failed to parse Telegram update: %s", e)
        raise HTTPException(status_code=400, detail="Invalid update") from e

    try:
        await get_bot(request).handle_update(update)
    except Exception:
        logger.exception("Failed to handle Telegram update %s", update.update_id)

    return {"ok": True}
