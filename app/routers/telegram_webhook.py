import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app.config import settings
from app.logging_config import get_logger
from app.runtime import Runtime, get_runtime
from app.schemas.telegram import TelegramUpdate, TelegramWebhookResponse

logger = get_logger("telegram_webhook")

router = APIRouter()


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(enc, errors="replace"))
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


@router.post("/v1/telegram/webhook", response_model=TelegramWebhookResponse)
async def handle_telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
    runtime: Runtime = Depends(get_runtime),
):
    """Customer messages from the bot chat: text, voice, photo and documents go to the debouncer."""
    if not settings.telegram_bot_token:
        raise HTTPException(status_code=400, detail="telegram bot token not configured")
    if settings.telegram_webhook_secret and x_telegram_bot_api_secret_token != settings.telegram_webhook_secret:
        raise HTTPException(status_code=401, detail="invalid webhook secret")

    body = await parse_telegram_update(request)
    if body is None:
        return TelegramWebhookResponse(success=False, message="Invalid telegram payload")

    try:
        update = TelegramUpdate(**body)
    except Exception as e:
        logger.warning(f"Telegram update rejected: {e}")
        return TelegramWebhookResponse(success=False, message="Invalid telegram update")

    queued = await run_in_threadpool(runtime.channel.handle_update, update)
    if not queued:
        return TelegramWebhookResponse(success=True, message="No actionable content")
    return TelegramWebhookResponse(success=True, message="queued")
