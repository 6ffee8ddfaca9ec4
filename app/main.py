import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from app.config import settings
from app.logging_config import get_logger, setup_logging
from app.routers import chat, quotes, telegram_webhook
from app.runtime import close_runtime, get_runtime

setup_logging(settings.log_level)

app = FastAPI(
    title="Salesbot API",
    description="Sales consultant backend: chat turns, quotes, Telegram channel",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)
app.include_router(quotes.router)
app.include_router(telegram_webhook.router)

relay_logger = get_logger("manager_relay")
_relay_task: asyncio.Task | None = None


def _is_relay_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    if not settings.relay_enabled:
        return False
    if not settings.telegram_bot_token:
        relay_logger.info("Manager relay disabled: telegram not configured")
        return False
    return True


async def _relay_loop() -> None:
    relay = get_runtime().relay
    await run_in_threadpool(relay.start)
    while True:
        try:
            await asyncio.sleep(max(settings.relay_poll_seconds, 0.5))
            sent = await run_in_threadpool(relay.poll_once)
            if sent:
                relay_logger.info("Manager relay forwarded", extra={"context": {"sent": sent}})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            relay_logger.error(
                "Manager relay poll failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_relay() -> None:
    global _relay_task
    if not _is_relay_enabled():
        return
    if _relay_task is None or _relay_task.done():
        _relay_task = asyncio.create_task(_relay_loop())
        relay_logger.info("Manager relay started")


@app.on_event("shutdown")
async def stop_background_work() -> None:
    global _relay_task
    if _relay_task is not None:
        _relay_task.cancel()
        try:
            await _relay_task
        except asyncio.CancelledError:
            pass
        _relay_task = None
    close_runtime()


@app.get("/health")
async def health():
    return {"status": "ok"}
